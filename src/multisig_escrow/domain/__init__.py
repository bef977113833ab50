"""Domain layer: pure business logic with zero framework dependencies."""

from multisig_escrow.domain.enums import (
    Actor,
    ContractRole,
    EscrowStep,
    EventType,
    OrderState,
    PaymentStatus,
    SigningRole,
)
from multisig_escrow.domain.exceptions import (
    ConcurrentModificationError,
    ContractFrozenError,
    ContractNotFoundError,
    EscrowError,
    IllegalPhaseError,
    InvalidTransitionError,
    NotFoundError,
    OrderNotFoundError,
    UnauthorizedActorError,
)
from multisig_escrow.domain.models import (
    ContractView,
    EscrowContract,
    EscrowEvent,
    Order,
)
from multisig_escrow.domain.state_machine import (
    EscrowStateMachine,
    OrderStateMachine,
    plan_transition,
    validate_transition,
)

__all__ = [
    "Actor",
    "ContractRole",
    "EscrowStep",
    "EventType",
    "OrderState",
    "PaymentStatus",
    "SigningRole",
    "ConcurrentModificationError",
    "ContractFrozenError",
    "ContractNotFoundError",
    "EscrowError",
    "IllegalPhaseError",
    "InvalidTransitionError",
    "NotFoundError",
    "OrderNotFoundError",
    "UnauthorizedActorError",
    "ContractView",
    "EscrowContract",
    "EscrowEvent",
    "Order",
    "EscrowStateMachine",
    "OrderStateMachine",
    "plan_transition",
    "validate_transition",
]
