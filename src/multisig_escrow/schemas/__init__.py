"""Pydantic API schemas."""

from multisig_escrow.schemas.escrow import (
    CheckoutRequest,
    CheckoutResponse,
    ContractStatusResponse,
    ContractViewResponse,
    EscrowEventResponse,
    EscrowResponse,
    FinalizeRequest,
    HealthResponse,
    OrderResponse,
    PaymentStatusResponse,
    RaiseDisputeRequest,
    ReleaseRequest,
    ShipmentRequest,
    ShipRequest,
)

__all__ = [
    "CheckoutRequest",
    "CheckoutResponse",
    "ContractStatusResponse",
    "ContractViewResponse",
    "EscrowEventResponse",
    "EscrowResponse",
    "FinalizeRequest",
    "HealthResponse",
    "OrderResponse",
    "PaymentStatusResponse",
    "RaiseDisputeRequest",
    "ReleaseRequest",
    "ShipmentRequest",
    "ShipRequest",
]
