"""Order and escrow contract REST API routes.

These endpoints provide the HTTP interface for checkout, shipping, the
round-robin release and disputes. The MCP tools in mcp_server/tools.py
call the same service layer, ensuring consistency.

Routes:
    POST   /api/v1/orders/checkout             : Commit to checkout, start the payment watch
    GET    /api/v1/orders/{id}                 : Get order details
    GET    /api/v1/orders/{id}/payment         : Countdown + confirmation progress
    DELETE /api/v1/orders/{id}/payment         : Cancel the payment watch
    POST   /api/v1/orders/{id}/release         : Buyer signs (round-robin phase 1)
    POST   /api/v1/orders/{id}/finalize        : Seller countersigns (phase 2)
    GET    /api/v1/contracts?participant_id=…  : Contracts a participant is party to
    GET    /api/v1/contracts/{id}              : Get contract details
    GET    /api/v1/contracts/{id}/status       : Get lightweight status check
    GET    /api/v1/contracts/{id}/events       : Get audit trail
    POST   /api/v1/contracts/{id}/shipment     : Seller opens the shipment flow
    POST   /api/v1/contracts/{id}/ship         : Seller ships with a tracking payload
    POST   /api/v1/contracts/{id}/dispute      : Raise dispute

Mutations name the caller by participant_id and the role is resolved from
the contract, so a caller cannot claim the counterparty's role. A
participant who is not a party gets 404, as for an unknown contract.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from multisig_escrow.api.deps import get_escrow_service
from multisig_escrow.domain.enums import EscrowStep
from multisig_escrow.domain.models import EscrowContract, EscrowEvent, Order
from multisig_escrow.logging_config import get_logger
from multisig_escrow.schemas.escrow import (
    CheckoutRequest,
    CheckoutResponse,
    ContractStatusResponse,
    ContractViewResponse,
    EscrowEventResponse,
    EscrowResponse,
    FinalizeRequest,
    OrderResponse,
    PaymentStatusResponse,
    RaiseDisputeRequest,
    ReleaseRequest,
    ShipmentRequest,
    ShipRequest,
)
from multisig_escrow.services.escrow_service import EscrowService

orders_router = APIRouter(prefix="/api/v1/orders", tags=["Orders"])
contracts_router = APIRouter(prefix="/api/v1/contracts", tags=["Contracts"])
logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Domain -> response
# ---------------------------------------------------------------------------


def order_response(order: Order) -> OrderResponse:
    return OrderResponse(
        id=order.id,
        buyer_id=order.buyer_id,
        seller_id=order.seller_id,
        listing_id=order.listing_id,
        listing_title=order.listing_title,
        quantity=order.quantity,
        unit_price=order.unit_price,
        total=order.total,
        state=str(order.state),
        created_at=order.created_at,
    )


def contract_response(contract: EscrowContract) -> EscrowResponse:
    return EscrowResponse(
        id=contract.id,
        order_id=contract.order_id,
        listing_title=contract.listing_title,
        listing_image=contract.listing_image,
        buyer_id=contract.buyer_id,
        seller_id=contract.seller_id,
        amount=contract.amount,
        multisig_address=contract.multisig_address,
        current_step=contract.current_step.name,
        step_index=int(contract.current_step),
        created_at=contract.created_at,
        locked_at=contract.locked_at,
        auto_release_at=contract.auto_release_at,
        auto_release_due=contract.is_auto_release_due(),
        deposit_tx_hash=contract.deposit_tx_hash,
        final_tx_hash=contract.final_tx_hash,
        tracking_payload=contract.tracking_payload,
        dispute_reason=contract.dispute_reason,
        version=contract.version,
    )


def event_response(evt: EscrowEvent) -> EscrowEventResponse:
    return EscrowEventResponse(
        id=evt.id,
        contract_id=evt.contract_id,
        order_id=evt.order_id,
        event_type=str(evt.event_type),
        old_step=evt.old_step.name if evt.old_step is not None else None,
        new_step=evt.new_step.name,
        old_order_state=str(evt.old_order_state) if evt.old_order_state else None,
        new_order_state=str(evt.new_order_state),
        actor=str(evt.actor),
        metadata=evt.metadata or None,
        created_at=evt.created_at,
    )


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------


@orders_router.post(
    "/checkout",
    response_model=CheckoutResponse,
    status_code=201,
    summary="Commit to checkout",
)
async def checkout(
    request: CheckoutRequest,
    svc: EscrowService = Depends(get_escrow_service),
) -> CheckoutResponse:
    """Create a PENDING order and an AWAITING_DEPOSIT contract, then watch for the deposit."""
    order_id = await svc.start_checkout(
        buyer_id=request.buyer_id,
        seller_id=request.seller_id,
        listing_id=request.listing_id,
        listing_title=request.listing_title,
        unit_price=request.unit_price,
        quantity=request.quantity,
        listing_image=request.listing_image,
    )
    contract = svc.contract_for_order(order_id)
    return CheckoutResponse(
        order_id=order_id,
        contract_id=contract.id,
        multisig_address=contract.multisig_address,
        amount=contract.amount,
        payment_window_seconds=svc.settings.payment_window_seconds,
    )


@orders_router.get("/{order_id}", response_model=OrderResponse, summary="Get order details")
async def get_order(
    order_id: str,
    svc: EscrowService = Depends(get_escrow_service),
) -> OrderResponse:
    return order_response(svc.get_order(order_id))


@orders_router.get(
    "/{order_id}/payment",
    response_model=PaymentStatusResponse,
    summary="Get payment countdown and confirmations",
)
async def get_payment(
    order_id: str,
    svc: EscrowService = Depends(get_escrow_service),
) -> PaymentStatusResponse:
    timer = svc.payment_status(order_id)
    return PaymentStatusResponse(
        order_id=timer.order_id,
        contract_id=timer.contract_id,
        status=str(timer.status),
        remaining_seconds=timer.remaining_seconds,
        confirmations=timer.confirmations,
        required_confirmations=timer.required_confirmations,
    )


@orders_router.delete("/{order_id}/payment", summary="Cancel the payment watch")
async def cancel_payment(
    order_id: str,
    svc: EscrowService = Depends(get_escrow_service),
) -> dict:
    """Stop watching for the deposit. The order and contract are left untouched."""
    cancelled = await svc.cancel_checkout(order_id)
    return {"order_id": order_id, "cancelled": cancelled}


# ---------------------------------------------------------------------------
# Round-robin release
# ---------------------------------------------------------------------------


@orders_router.post(
    "/{order_id}/release",
    response_model=EscrowResponse,
    summary="Buyer signs the release (phase 1)",
)
async def initiate_release(
    order_id: str,
    request: ReleaseRequest,
    svc: EscrowService = Depends(get_escrow_service),
) -> EscrowResponse:
    """Certify receipt and contribute the first signature share.

    Transitions FUNDS_LOCKED | SHIPPED -> SIGNATURE_PARTIAL once phase 1 completes.
    """
    contract = await svc.initiate_release(
        order_id,
        svc.role_for_order(order_id, request.participant_id),
        confirmed=request.confirmed,
    )
    return contract_response(contract)


@orders_router.post(
    "/{order_id}/finalize",
    response_model=EscrowResponse,
    summary="Seller countersigns and broadcasts (phase 2)",
)
async def finalize_release(
    order_id: str,
    request: FinalizeRequest,
    svc: EscrowService = Depends(get_escrow_service),
) -> EscrowResponse:
    """Transitions SIGNATURE_PARTIAL -> COMPLETED and stamps the final tx hash."""
    contract = await svc.finalize_release(
        order_id, svc.role_for_order(order_id, request.participant_id)
    )
    return contract_response(contract)


# ---------------------------------------------------------------------------
# Contracts: read endpoints
# ---------------------------------------------------------------------------


@contracts_router.get(
    "",
    response_model=list[ContractViewResponse],
    summary="List a participant's contracts",
)
async def list_contracts(
    participant_id: str = Query(..., min_length=1),
    svc: EscrowService = Depends(get_escrow_service),
) -> list[ContractViewResponse]:
    """Contracts where the participant is buyer or seller, newest first."""
    return [
        ContractViewResponse(
            role=str(view.role),
            counterparty=view.counterparty,
            contract=contract_response(view.contract),
        )
        for view in svc.list_contracts(participant_id)
    ]


@contracts_router.get(
    "/{contract_id}", response_model=EscrowResponse, summary="Get contract details"
)
async def get_contract(
    contract_id: str,
    svc: EscrowService = Depends(get_escrow_service),
) -> EscrowResponse:
    return contract_response(svc.get_contract(contract_id))


@contracts_router.get(
    "/{contract_id}/status",
    response_model=ContractStatusResponse,
    summary="Get lightweight status check",
)
async def get_status(
    contract_id: str,
    svc: EscrowService = Depends(get_escrow_service),
) -> ContractStatusResponse:
    """Return the current step and allowed next actions."""
    return ContractStatusResponse(**svc.get_status(contract_id))


@contracts_router.get(
    "/{contract_id}/events",
    response_model=list[EscrowEventResponse],
    summary="Get audit trail",
)
async def get_events(
    contract_id: str,
    svc: EscrowService = Depends(get_escrow_service),
) -> list[EscrowEventResponse]:
    """Return the full audit trail for a contract."""
    return [event_response(e) for e in svc.get_events(contract_id)]


# ---------------------------------------------------------------------------
# Contracts: shipping and disputes
# ---------------------------------------------------------------------------


@contracts_router.post(
    "/{contract_id}/shipment",
    response_model=EscrowResponse,
    summary="Open the shipment flow",
)
async def start_shipment(
    contract_id: str,
    request: ShipmentRequest,
    svc: EscrowService = Depends(get_escrow_service),
) -> EscrowResponse:
    """Transitions FUNDS_LOCKED -> SHIPPING_PENDING."""
    contract = await svc.start_shipment(
        contract_id, svc.role_of(contract_id, request.participant_id)
    )
    return contract_response(contract)


@contracts_router.post(
    "/{contract_id}/ship",
    response_model=EscrowResponse,
    summary="Ship with a tracking payload",
)
async def ship(
    contract_id: str,
    request: ShipRequest,
    svc: EscrowService = Depends(get_escrow_service),
) -> EscrowResponse:
    """Mark the order shipped.

    From FUNDS_LOCKED both shipping transitions run; from SHIPPING_PENDING
    only the second.
    """
    role = svc.role_of(contract_id, request.participant_id)
    current = svc.get_contract(contract_id)
    if current.current_step is EscrowStep.SHIPPING_PENDING:
        contract = await svc.mark_shipped(contract_id, role, request.tracking_payload)
    else:
        contract = await svc.ship(contract_id, role, request.tracking_payload)
    return contract_response(contract)


@contracts_router.post(
    "/{contract_id}/dispute",
    response_model=EscrowResponse,
    summary="Raise a dispute",
)
async def raise_dispute(
    contract_id: str,
    request: RaiseDisputeRequest,
    svc: EscrowService = Depends(get_escrow_service),
) -> EscrowResponse:
    """Freeze the funds for arbitration. Requires explicit confirmation."""
    contract = await svc.raise_dispute(
        contract_id,
        svc.role_of(contract_id, request.participant_id),
        confirmed=request.confirmed,
        reason=request.reason,
    )
    return contract_response(contract)
