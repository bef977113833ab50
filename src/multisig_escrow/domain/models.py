"""Domain records for orders, escrow contracts and their audit trail.

Plain dataclasses: the contract store owns the canonical instances and only
ever hands out copies, so a caller holding a record cannot write it back
without going through ContractStore.update.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal

from multisig_escrow.domain.enums import (
    Actor,
    ContractRole,
    EscrowStep,
    EventType,
    OrderState,
)

AMOUNT_QUANTUM = Decimal("0.0001")


def utcnow() -> datetime:
    return datetime.now(UTC)


def quantize_amount(amount: Decimal) -> Decimal:
    """Round an XMR amount to the four places shown on listings."""
    return amount.quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP)


@dataclass
class Order:
    """A buyer's purchase intent for one listing."""

    id: str
    buyer_id: str
    seller_id: str
    listing_id: str
    listing_title: str
    quantity: int
    unit_price: Decimal
    state: OrderState = OrderState.IDLE
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if self.quantity < 1:
            raise ValueError("quantity must be at least 1")
        if self.unit_price <= 0:
            raise ValueError("unit_price must be positive")

    @property
    def total(self) -> Decimal:
        return quantize_amount(self.unit_price * self.quantity)

    def copy(self) -> Order:
        return replace(self)


@dataclass
class EscrowContract:
    """State-tracking record mirroring the on-chain 2-of-3 multisig for one order.

    Participants are stored as absolute ids; the viewer-relative role and
    counterparty are resolved by ``view_for``.
    """

    id: str
    order_id: str
    listing_title: str
    listing_image: str
    buyer_id: str
    seller_id: str
    amount: Decimal
    multisig_address: str
    current_step: EscrowStep = EscrowStep.AWAITING_DEPOSIT
    created_at: datetime = field(default_factory=utcnow)
    locked_at: datetime | None = None
    auto_release_at: datetime | None = None
    deposit_tx_hash: str | None = None
    final_tx_hash: str | None = None
    tracking_payload: str | None = None
    dispute_reason: str | None = None
    version: int = 0

    def copy(self) -> EscrowContract:
        return replace(self)

    def role_of(self, participant_id: str) -> ContractRole | None:
        if participant_id == self.buyer_id:
            return ContractRole.BUYER
        if participant_id == self.seller_id:
            return ContractRole.SELLER
        return None

    def view_for(self, participant_id: str) -> ContractView:
        """Resolve the viewer-relative role and counterparty for a participant."""
        role = self.role_of(participant_id)
        if role is None:
            raise ValueError(f"{participant_id} is not a party to contract {self.id}")
        counterparty = self.seller_id if role is ContractRole.BUYER else self.buyer_id
        return ContractView(contract=self.copy(), role=role, counterparty=counterparty)

    def is_auto_release_due(self, now: datetime | None = None) -> bool:
        """Whether the auto-release timestamp has passed on a still-open contract."""
        if self.auto_release_at is None or self.current_step.is_terminal:
            return False
        return (now or utcnow()) >= self.auto_release_at

    def check_invariants(self) -> None:
        """Raise ValueError if the record breaks a step/proof invariant."""
        if (self.locked_at is not None) != self.current_step.is_funded:
            raise ValueError(
                f"{self.id}: locked_at must be set exactly when funds are locked "
                f"(step={self.current_step.name})"
            )
        if (self.final_tx_hash is not None) != (self.current_step is EscrowStep.COMPLETED):
            raise ValueError(
                f"{self.id}: final_tx_hash must be set exactly when COMPLETED "
                f"(step={self.current_step.name})"
            )


@dataclass(frozen=True)
class ContractView:
    """A contract as seen by one of its two parties."""

    contract: EscrowContract
    role: ContractRole
    counterparty: str


@dataclass(frozen=True)
class EscrowEvent:
    """Immutable audit record of one committed store update."""

    contract_id: str
    order_id: str
    event_type: EventType
    old_step: EscrowStep | None
    new_step: EscrowStep
    old_order_state: OrderState | None
    new_order_state: OrderState
    actor: Actor
    metadata: dict = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)
