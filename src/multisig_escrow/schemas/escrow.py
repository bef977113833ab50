"""Pydantic schemas for the Escrow API.

These schemas define the request/response shapes for the REST API and
MCP tools. They are separate from the domain dataclasses and the ORM
models to keep clean boundaries between the layers.
"""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - pydantic resolves annotations at runtime
from decimal import Decimal  # noqa: TC003

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class CheckoutRequest(BaseModel):
    """Request body for committing to checkout on a listing."""

    buyer_id: str = Field(..., min_length=1, max_length=64, examples=["BUYER_GHOST_01"])
    seller_id: str = Field(..., min_length=1, max_length=64, examples=["VENDOR_NEXUS_PRIME"])
    listing_id: str = Field(..., min_length=1, max_length=64, examples=["LST-9928-AX"])
    listing_title: str = Field(
        ..., min_length=1, max_length=200, examples=["QUANTUM_DATA_SHARD_V4"]
    )
    listing_image: str = Field(default="", max_length=2000)
    unit_price: Decimal = Field(
        ...,
        gt=0,
        decimal_places=4,
        description="Listing price in XMR",
        examples=["4.2500"],
    )
    quantity: int = Field(default=1, ge=1, le=1000)


class ParticipantRequest(BaseModel):
    """A mutation made by one party; the role is resolved from the contract."""

    participant_id: str = Field(..., min_length=1, max_length=64, examples=["BUYER_GHOST_01"])


class ReleaseRequest(ParticipantRequest):
    """Buyer's phase-1 signature: explicit certification of receipt."""

    confirmed: bool = Field(
        default=False,
        description="The buyer certifies the goods were received as described",
    )


class FinalizeRequest(ParticipantRequest):
    """Seller's phase-2 countersignature."""


class ShipmentRequest(ParticipantRequest):
    """Seller opens the shipment flow."""


class ShipRequest(ParticipantRequest):
    """Seller supplies the logistics payload."""

    tracking_payload: str = Field(
        ...,
        max_length=10_000,
        description="Tracking number or PGP-encrypted logistics data",
        examples=["TRK-9981"],
    )


class RaiseDisputeRequest(ParticipantRequest):
    """Request body for raising a dispute against a contract."""

    confirmed: bool = Field(
        default=False,
        description="Explicit confirmation: this freezes the funds and notifies a moderator",
    )
    reason: str | None = Field(default=None, max_length=2000)


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class OrderResponse(BaseModel):
    id: str
    buyer_id: str
    seller_id: str
    listing_id: str
    listing_title: str
    quantity: int
    unit_price: Decimal
    total: Decimal
    state: str
    created_at: datetime


class CheckoutResponse(BaseModel):
    order_id: str
    contract_id: str
    multisig_address: str
    amount: Decimal
    payment_window_seconds: int


class PaymentStatusResponse(BaseModel):
    """Countdown and confirmation progress of a checkout."""

    order_id: str
    contract_id: str
    status: str
    remaining_seconds: int
    confirmations: int
    required_confirmations: int


class EscrowResponse(BaseModel):
    """Response schema for an escrow contract."""

    id: str
    order_id: str
    listing_title: str
    listing_image: str
    buyer_id: str
    seller_id: str
    amount: Decimal
    multisig_address: str
    current_step: str
    step_index: int
    created_at: datetime
    locked_at: datetime | None
    auto_release_at: datetime | None
    auto_release_due: bool
    deposit_tx_hash: str | None
    final_tx_hash: str | None
    tracking_payload: str | None
    dispute_reason: str | None
    version: int


class ContractViewResponse(BaseModel):
    """A contract as seen by one of its parties."""

    role: str
    counterparty: str
    contract: EscrowResponse


class EscrowEventResponse(BaseModel):
    """Response schema for an audit event."""

    id: str
    contract_id: str
    order_id: str
    event_type: str
    old_step: str | None
    new_step: str
    old_order_state: str | None
    new_order_state: str
    actor: str
    metadata: dict | None = None
    created_at: datetime


class ContractStatusResponse(BaseModel):
    """Lightweight status check response."""

    contract_id: str
    order_id: str
    current_step: str
    order_state: str
    is_terminal: bool
    auto_release_due: bool
    allowed_events: list[str] = Field(
        description="State machine events that can fire from the current step"
    )
    signing_progress: int | None = None
    version: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    contracts: int = 0
    database: str = "disabled"
