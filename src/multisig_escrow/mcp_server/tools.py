"""MCP Tool definitions for the multisig escrow service.

These tools expose the escrow protocol via the Model Context Protocol,
allowing agent clients to discover and call them programmatically.

Tools:
    - start_checkout: Commit to checkout and get a multisig deposit address
    - list_contracts: Contracts a participant is party to
    - check_status: Current step and allowed next actions of a contract
    - ship_order: Seller ships with a tracking payload
    - initiate_release: Buyer signs the release (round-robin phase 1)
    - finalize_release: Seller countersigns and broadcasts (phase 2)
    - raise_dispute: Freeze a contract for arbitration

The MCP server is mounted into FastAPI at /mcp via app.mount(). Tools share
the app's EscrowService, bound during the lifespan startup. Callers identify
themselves by participant id; the role is resolved from the contract.
"""

from __future__ import annotations

from decimal import Decimal

from mcp.server.fastmcp import FastMCP

from multisig_escrow.domain.enums import EscrowStep
from multisig_escrow.domain.exceptions import EscrowError, InvalidTransitionError
from multisig_escrow.logging_config import get_logger
from multisig_escrow.services.dispute_gate import CONFIRM_PROMPT
from multisig_escrow.services.escrow_service import EscrowService

logger = get_logger(__name__)

# Initialize the MCP server
# This will be mounted into the FastAPI app in main.py
mcp = FastMCP(
    "Multisig Escrow",
    json_response=True,
)

_service: EscrowService | None = None


def bind_service(service: EscrowService | None) -> None:
    """Attach (or detach, with None) the EscrowService the tools operate on."""
    global _service
    _service = service


def _get_service() -> EscrowService:
    if _service is None:
        raise RuntimeError("Escrow service is not running")
    return _service


def _domain_error(tool: str, exc: EscrowError) -> dict:
    logger.warning(f"mcp.{tool}.rejected", code=exc.code, error=exc.message)
    return {"error": exc.code, "message": exc.message}


def _internal_error(tool: str, exc: Exception) -> dict:
    logger.exception(f"mcp.{tool}.error")
    return {"error": "INTERNAL_ERROR", "message": str(exc)}


@mcp.tool()
async def start_checkout(
    buyer_id: str,
    seller_id: str,
    listing_id: str,
    listing_title: str,
    unit_price: float,
    quantity: int = 1,
) -> dict:
    """Commit to buying a listing through a 2-of-3 multisig escrow.

    Args:
        buyer_id: Your participant id.
        seller_id: The vendor's participant id.
        listing_id: Listing reference.
        listing_title: Listing title shown on the contract.
        unit_price: Price per unit in XMR.
        quantity: Number of units.

    Returns:
        The order and contract ids, the multisig deposit address and the
        amount to send before the payment window closes.
    """
    try:
        svc = _get_service()
        order_id = await svc.start_checkout(
            buyer_id=buyer_id,
            seller_id=seller_id,
            listing_id=listing_id,
            listing_title=listing_title,
            unit_price=Decimal(str(unit_price)),
            quantity=quantity,
        )
        contract = svc.contract_for_order(order_id)
        return {
            "order_id": order_id,
            "contract_id": contract.id,
            "multisig_address": contract.multisig_address,
            "amount": str(contract.amount),
            "payment_window_seconds": svc.settings.payment_window_seconds,
            "message": (
                "Send the exact amount to the multisig address. "
                "Funds lock after 2 confirmations."
            ),
        }
    except EscrowError as exc:
        return _domain_error("start_checkout", exc)
    except Exception as exc:
        return _internal_error("start_checkout", exc)


@mcp.tool()
async def list_contracts(participant_id: str) -> dict:
    """List the escrow contracts you are party to, newest first.

    Args:
        participant_id: Your participant id.

    Returns:
        One entry per contract with your role, the counterparty and the current step.
    """
    try:
        views = _get_service().list_contracts(participant_id)
        return {
            "participant_id": participant_id,
            "contracts": [
                {
                    "contract_id": v.contract.id,
                    "order_id": v.contract.order_id,
                    "listing_title": v.contract.listing_title,
                    "role": str(v.role),
                    "counterparty": v.counterparty,
                    "amount": str(v.contract.amount),
                    "current_step": v.contract.current_step.name,
                }
                for v in views
            ],
        }
    except EscrowError as exc:
        return _domain_error("list_contracts", exc)
    except Exception as exc:
        return _internal_error("list_contracts", exc)


@mcp.tool()
async def check_status(contract_id: str) -> dict:
    """Check the current step of an escrow contract.

    Args:
        contract_id: Id of the escrow contract (e.g. CTR-8821-X).

    Returns:
        Current step, order state, and allowed next actions.
    """
    try:
        return _get_service().get_status(contract_id)
    except EscrowError as exc:
        return _domain_error("check_status", exc)
    except Exception as exc:
        return _internal_error("check_status", exc)


@mcp.tool()
async def ship_order(contract_id: str, participant_id: str, tracking_payload: str) -> dict:
    """Mark an order shipped (seller only).

    Args:
        contract_id: Id of the escrow contract.
        participant_id: Your participant id; must be the contract's seller.
        tracking_payload: Tracking number or PGP-encrypted logistics data. Must not be empty.

    Returns:
        The contract's new step.
    """
    try:
        svc = _get_service()
        role = svc.role_of(contract_id, participant_id)
        if svc.get_contract(contract_id).current_step is EscrowStep.SHIPPING_PENDING:
            contract = await svc.mark_shipped(contract_id, role, tracking_payload)
        else:
            contract = await svc.ship(contract_id, role, tracking_payload)
        return {
            "contract_id": contract.id,
            "current_step": contract.current_step.name,
            "message": "Shipped. The buyer can now certify receipt and sign the release.",
        }
    except EscrowError as exc:
        return _domain_error("ship_order", exc)
    except Exception as exc:
        return _internal_error("ship_order", exc)


@mcp.tool()
async def initiate_release(order_id: str, participant_id: str, confirmed: bool = False) -> dict:
    """Certify receipt and sign the release (buyer, round-robin phase 1).

    Args:
        order_id: Id of the order.
        participant_id: Your participant id; must be the buyer.
        confirmed: You certify the goods were received as described. Required.

    Returns:
        The contract at SIGNATURE_PARTIAL, waiting for the seller's countersignature.
    """
    try:
        svc = _get_service()
        contract = svc.contract_for_order(order_id)
        role = svc.role_of(contract.id, participant_id)
        contract = await svc.initiate_release(order_id, role, confirmed=confirmed)
        return {
            "contract_id": contract.id,
            "order_id": order_id,
            "current_step": contract.current_step.name,
            "message": "Partial signature transmitted. Waiting for the seller to countersign.",
        }
    except EscrowError as exc:
        return _domain_error("initiate_release", exc)
    except Exception as exc:
        return _internal_error("initiate_release", exc)


@mcp.tool()
async def finalize_release(order_id: str, participant_id: str) -> dict:
    """Countersign and broadcast the release (seller, round-robin phase 2).

    Args:
        order_id: Id of the order.
        participant_id: Your participant id; must be the seller.

    Returns:
        The completed contract and the final transaction hash.
    """
    try:
        svc = _get_service()
        contract = svc.contract_for_order(order_id)
        role = svc.role_of(contract.id, participant_id)
        contract = await svc.finalize_release(order_id, role)
        return {
            "contract_id": contract.id,
            "order_id": order_id,
            "current_step": contract.current_step.name,
            "final_tx_hash": contract.final_tx_hash,
            "message": "Release broadcast. Funds released to the seller.",
        }
    except EscrowError as exc:
        return _domain_error("finalize_release", exc)
    except Exception as exc:
        return _internal_error("finalize_release", exc)


@mcp.tool()
async def raise_dispute(
    contract_id: str,
    participant_id: str,
    confirmed: bool = False,
    reason: str = "",
) -> dict:
    """Open a dispute. This freezes the funds and notifies a moderator.

    Args:
        contract_id: Id of the escrow contract.
        participant_id: Your participant id (buyer or seller).
        confirmed: Explicit confirmation. Without it nothing happens and the
            reply carries the prompt to show the user.
        reason: Why you are disputing.

    Returns:
        The contract, now frozen at DISPUTE.
    """
    try:
        svc = _get_service()
        role = svc.role_of(contract_id, participant_id)
        contract = await svc.raise_dispute(
            contract_id, role, confirmed=confirmed, reason=reason or None
        )
        return {
            "contract_id": contract.id,
            "current_step": contract.current_step.name,
            "message": "Dispute raised. Funds are frozen pending arbitration.",
        }
    except EscrowError as exc:
        result = _domain_error("raise_dispute", exc)
        if not confirmed and isinstance(exc, InvalidTransitionError):
            result["confirm_prompt"] = CONFIRM_PROMPT
        return result
    except Exception as exc:
        return _internal_error("raise_dispute", exc)
