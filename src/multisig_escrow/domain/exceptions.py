"""Domain exceptions for the multisig escrow protocol.

These exceptions are framework-agnostic and represent business rule violations.
All of them are recoverable: they are raised synchronously to the caller and
translated to HTTP responses by the API layer's middleware.
"""


class EscrowError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str = "ESCROW_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- State Machine Errors ---


class InvalidTransitionError(EscrowError):
    """Raised when the requested state change is not reachable from the current step.

    Also raised when a transition's guard fails, e.g. an empty logistics
    payload or a missing explicit confirmation.
    """

    def __init__(self, current_state: str, attempted: str, reason: str | None = None) -> None:
        message = f"Invalid transition: {attempted} from {current_state}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message=message, code="INVALID_TRANSITION")
        self.current_state = current_state
        self.attempted = attempted
        self.reason = reason


class UnauthorizedActorError(EscrowError):
    """Raised when the caller's role is not the actor required for a transition."""

    def __init__(self, actor: str, attempted: str, required: list[str]) -> None:
        super().__init__(
            message=f"{actor} may not {attempted}; requires {' or '.join(required)}",
            code="UNAUTHORIZED_ACTOR",
        )
        self.actor = actor
        self.attempted = attempted
        self.required = required


class IllegalPhaseError(EscrowError):
    """Raised when a signing operation is invoked outside its required step."""

    def __init__(self, operation: str, current_step: str, required: list[str]) -> None:
        super().__init__(
            message=(
                f"{operation} is not allowed at {current_step}; "
                f"requires {' or '.join(required)}"
            ),
            code="ILLEGAL_PHASE",
        )
        self.operation = operation
        self.current_step = current_step
        self.required = required


class ContractFrozenError(EscrowError):
    """Raised on any mutation of a contract in a terminal step (DISPUTE, COMPLETED, EXPIRED)."""

    def __init__(self, contract_id: str, current_step: str) -> None:
        super().__init__(
            message=f"Contract {contract_id} is frozen at {current_step}",
            code="CONTRACT_FROZEN",
        )
        self.contract_id = contract_id
        self.current_step = current_step


# --- Lookup Errors ---


class NotFoundError(EscrowError):
    """Base for unknown order or contract ids."""


class ContractNotFoundError(NotFoundError):
    """Raised when a contract ID does not exist."""

    def __init__(self, contract_id: str) -> None:
        super().__init__(
            message=f"Contract not found: {contract_id}",
            code="CONTRACT_NOT_FOUND",
        )
        self.contract_id = contract_id


class OrderNotFoundError(NotFoundError):
    """Raised when an order ID does not exist."""

    def __init__(self, order_id: str) -> None:
        super().__init__(
            message=f"Order not found: {order_id}",
            code="ORDER_NOT_FOUND",
        )
        self.order_id = order_id


# --- Concurrency Errors ---


class ConcurrentModificationError(EscrowError):
    """Raised when an update lost a race with another mutation on the same id."""

    def __init__(self, contract_id: str, detail: str) -> None:
        super().__init__(
            message=f"Concurrent modification of contract {contract_id}: {detail}",
            code="CONCURRENT_MODIFICATION",
        )
        self.contract_id = contract_id


class DuplicateOrderError(EscrowError):
    """Raised when an order or contract id is registered twice."""

    def __init__(self, entity_id: str) -> None:
        super().__init__(
            message=f"Duplicate id: {entity_id}",
            code="DUPLICATE_ID",
        )
        self.entity_id = entity_id
