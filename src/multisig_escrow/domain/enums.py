"""Domain enumerations for the multisig escrow protocol.

These enums define the canonical states and roles used throughout the system.
They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum


class OrderState(enum.StrEnum):
    """Buyer-facing lifecycle of an order.

    Mirrors the escrow contract but at checkout granularity. See
    domain/state_machine.py for the order transition table.
    """

    IDLE = "IDLE"
    PENDING = "PENDING"
    ESCROW_LOCKED = "ESCROW_LOCKED"
    SIGNING_INITIATED = "SIGNING_INITIATED"
    SHIPPED = "SHIPPED"
    FINALIZED = "FINALIZED"
    DISPUTE = "DISPUTE"
    EXPIRED = "EXPIRED"


class EscrowStep(enum.IntEnum):
    """Ordinal lifecycle of an escrow contract.

    The happy path is AWAITING_DEPOSIT..COMPLETED in ordinal order.
    DISPUTE and EXPIRED are out-of-band terminal steps: never compare
    against them with ``>``, use the predicates below instead.
    """

    AWAITING_DEPOSIT = 0
    FUNDS_LOCKED = 1  # 2-of-3 address funded
    SHIPPING_PENDING = 2
    SHIPPED = 3
    SIGNATURE_PARTIAL = 4  # buyer signed (round-robin phase 1)
    COMPLETED = 5  # seller countersigned (round-robin phase 2)
    DISPUTE = 6
    EXPIRED = 7

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STEPS

    @property
    def is_funded(self) -> bool:
        """True once the deposit has confirmed, including a disputed contract."""
        return self in FUNDED_STEPS

    @property
    def is_disputable(self) -> bool:
        return self in DISPUTABLE_STEPS

    def has_reached(self, milestone: "EscrowStep") -> bool:
        """Whether a happy-path milestone has been passed.

        Out-of-band steps never count as having reached a milestone, so a
        disputed contract does not read as "released".
        """
        if self in OUT_OF_BAND_STEPS or milestone in OUT_OF_BAND_STEPS:
            return self is milestone
        return self.value >= milestone.value


OUT_OF_BAND_STEPS = frozenset({EscrowStep.DISPUTE, EscrowStep.EXPIRED})

TERMINAL_STEPS = frozenset({EscrowStep.COMPLETED, EscrowStep.DISPUTE, EscrowStep.EXPIRED})

DISPUTABLE_STEPS = frozenset(
    {
        EscrowStep.FUNDS_LOCKED,
        EscrowStep.SHIPPING_PENDING,
        EscrowStep.SHIPPED,
        EscrowStep.SIGNATURE_PARTIAL,
    }
)

FUNDED_STEPS = DISPUTABLE_STEPS | {EscrowStep.COMPLETED, EscrowStep.DISPUTE}


class PaymentStatus(enum.StrEnum):
    """Sub-status of the payment watcher for one checkout."""

    WAITING_FOR_TX = "WAITING_FOR_TX"
    DETECTED = "DETECTED"
    CONFIRMING = "CONFIRMING"
    CONFIRMED = "CONFIRMED"
    EXPIRED = "EXPIRED"


class ContractRole(enum.StrEnum):
    """Counterparty role of a caller relative to a contract."""

    BUYER = "BUYER"
    SELLER = "SELLER"


class Actor(enum.StrEnum):
    """Who may fire a transition. SYSTEM is the payment watcher."""

    BUYER = "BUYER"
    SELLER = "SELLER"
    SYSTEM = "SYSTEM"


class SigningRole(enum.StrEnum):
    """Which half of the round-robin exchange a signing session computes."""

    INITIATOR = "INITIATOR"
    COMPLETER = "COMPLETER"


class EventType(enum.StrEnum):
    """Types of audit events recorded in the escrow_events table.

    Every committed store update produces exactly one event.
    """

    ORDER_PLACED = "ORDER_PLACED"
    PAYMENT_DETECTED = "PAYMENT_DETECTED"
    FUNDS_LOCKED = "FUNDS_LOCKED"
    PAYMENT_EXPIRED = "PAYMENT_EXPIRED"

    SHIPMENT_STARTED = "SHIPMENT_STARTED"
    SHIPMENT_SENT = "SHIPMENT_SENT"

    RELEASE_INITIATED = "RELEASE_INITIATED"
    RELEASE_FINALIZED = "RELEASE_FINALIZED"

    DISPUTE_RAISED = "DISPUTE_RAISED"
