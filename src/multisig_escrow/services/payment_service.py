"""Payment Service: simulated chain access for the escrow.

Stands in for the wallet RPC and network layer: it hands out 2-of-3
multisig deposit addresses, reports the deposit transaction the payment
watcher "sees" on chain, and broadcasts the finalized release transaction.

Nothing here moves value; every identifier is an opaque, randomly generated
string in the shape the real network would return.
"""

from __future__ import annotations

import secrets
import uuid
from typing import TYPE_CHECKING

from multisig_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from decimal import Decimal

logger = get_logger(__name__)

# Monero base58 alphabet (no 0, O, I, l).
_BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"


def _fake_tx_hash() -> str:
    return uuid.uuid4().hex + uuid.uuid4().hex


class PaymentService:
    """Hands out multisig addresses and simulated transaction hashes."""

    def __init__(self, address_prefix: str = "888") -> None:
        self._address_prefix = address_prefix

    def create_multisig_address(self) -> str:
        """Return a fresh 2-of-3 multisig deposit address."""
        body = "".join(secrets.choice(_BASE58_ALPHABET) for _ in range(35))
        address = self._address_prefix + body
        logger.info("payment.multisig_address_created", address=address, simulated=True)
        return address

    def observe_deposit(self, address: str, amount: Decimal) -> str:
        """Return the hash of the deposit transaction seen paying into ``address``."""
        tx_hash = _fake_tx_hash()
        logger.info(
            "payment.deposit_observed",
            tx_hash=tx_hash,
            amount=str(amount),
            to_address=address,
            simulated=True,
        )
        return tx_hash

    async def broadcast_release(self, order_id: str) -> str:
        """Broadcast the fully signed release transaction and return its hash."""
        tx_hash = _fake_tx_hash()
        logger.info("payment.release_broadcast", order_id=order_id, tx_hash=tx_hash, simulated=True)
        return tx_hash
