"""Shared test fixtures for the multisig escrow test suite.

Provides:
    - Settings with compressed timers (milliseconds instead of seconds)
    - Factory functions for creating orders and contracts
    - A running EscrowService and an already-funded order
    - Async test support via pytest-asyncio
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
import pytest_asyncio

from multisig_escrow.config import Settings
from multisig_escrow.domain.enums import EscrowStep, OrderState
from multisig_escrow.domain.models import EscrowContract, Order
from multisig_escrow.services.contract_store import ContractStore
from multisig_escrow.services.escrow_service import EscrowService

BUYER = "BUYER_GHOST_01"
SELLER = "VENDOR_NEXUS_PRIME"

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    """Settings with every simulation timer shrunk to a few milliseconds."""
    return Settings(
        _env_file=None,
        app_env="development",
        database_url="",
        seed_demo_contracts=False,
        detection_delay_seconds=0.01,
        confirmation_interval_seconds=0.01,
        countdown_tick_seconds=0.01,
        payment_window_seconds=900,
        phase1_duration_seconds=0.0,
        phase2_duration_seconds=0.0,
    )


# ---------------------------------------------------------------------------
# Domain Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def make_pair():
    """Factory for an (Order, EscrowContract) pair at a given step."""
    counter = iter(range(1, 10_000))

    def _make(
        step: EscrowStep = EscrowStep.AWAITING_DEPOSIT,
        order_state: OrderState = OrderState.PENDING,
        amount: str = "4.2500",
        buyer: str = BUYER,
        seller: str = SELLER,
        created_at: datetime | None = None,
    ) -> tuple[Order, EscrowContract]:
        n = next(counter)
        created_at = created_at or datetime(2026, 1, 1, tzinfo=UTC) + timedelta(minutes=n)
        order = Order(
            id=f"ORD-T{n:04d}",
            buyer_id=buyer,
            seller_id=seller,
            listing_id=f"LST-{n:04d}",
            listing_title="QUANTUM_DATA_SHARD_V4",
            quantity=1,
            unit_price=Decimal(amount),
            state=order_state,
            created_at=created_at,
        )
        locked_at = created_at + timedelta(minutes=30) if step.is_funded else None
        contract = EscrowContract(
            id=f"CTR-T{n:04d}",
            order_id=order.id,
            listing_title=order.listing_title,
            listing_image="",
            buyer_id=buyer,
            seller_id=seller,
            amount=order.total,
            multisig_address="888tNkZrPN6JsEgekjMnQwT4wQ8J7K9Lz1y3pQ",
            current_step=step,
            created_at=created_at,
            locked_at=locked_at,
            auto_release_at=locked_at + timedelta(days=14) if locked_at else None,
            final_tx_hash="ab" * 32 if step is EscrowStep.COMPLETED else None,
        )
        return order, contract

    return _make


@pytest.fixture
def store() -> ContractStore:
    return ContractStore()


# ---------------------------------------------------------------------------
# Service Fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def service(settings: Settings):
    """A started EscrowService with in-memory state only."""
    svc = EscrowService.build(settings)
    await svc.startup()
    yield svc
    await svc.shutdown()


@pytest_asyncio.fixture
async def funded(service: EscrowService) -> tuple[str, str]:
    """Check out a 4.2500 XMR order and wait until its funds are locked.

    Returns (order_id, contract_id).
    """
    order_id = await service.start_checkout(
        buyer_id=BUYER,
        seller_id=SELLER,
        listing_id="LST-9928-AX",
        listing_title="QUANTUM_DATA_SHARD_V4",
        unit_price=Decimal("4.2500"),
    )
    await service.watcher.wait(order_id)
    contract = service.contract_for_order(order_id)
    assert contract.current_step is EscrowStep.FUNDS_LOCKED
    return order_id, contract.id
