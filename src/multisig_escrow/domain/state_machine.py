"""Escrow Contract State Machine Guard.

Uses python-statemachine to enforce legal step transitions at the domain level.
The payment watcher, the signing coordinator, the shipping operations and the
dispute gate all consult this module before touching the contract store, so
an illegal jump (e.g. FUNDS_LOCKED -> COMPLETED) is rejected no matter which
surface asked for it.

A machine is instantiated per validation at the contract's current step and
discarded afterwards; the store holds the canonical step.

Contract transition table:
    AWAITING_DEPOSIT   -> FUNDS_LOCKED       (funds_confirmed)    SYSTEM
    AWAITING_DEPOSIT   -> EXPIRED            (payment_expired)    SYSTEM
    FUNDS_LOCKED       -> SHIPPING_PENDING   (start_shipment)     SELLER
    SHIPPING_PENDING   -> SHIPPED            (mark_shipped)       SELLER
    SHIPPED            -> SIGNATURE_PARTIAL  (certify_receipt)    BUYER
    FUNDS_LOCKED       -> SIGNATURE_PARTIAL  (certify_receipt)    BUYER
    SIGNATURE_PARTIAL  -> COMPLETED          (countersign)        SELLER
    FUNDS_LOCKED..SIGNATURE_PARTIAL -> DISPUTE (raise_dispute)    BUYER | SELLER

Order transition table:
    IDLE               -> PENDING            (checkout_started)
    PENDING            -> ESCROW_LOCKED      (payment_confirmed)
    PENDING            -> EXPIRED            (payment_expired)
    ESCROW_LOCKED      -> SHIPPED            (shipped)
    ESCROW_LOCKED      -> SIGNING_INITIATED  (release_initiated)
    SHIPPED            -> SIGNING_INITIATED  (release_initiated)
    SIGNING_INITIATED  -> FINALIZED          (release_finalized)
    ESCROW_LOCKED..SIGNING_INITIATED -> DISPUTE (disputed)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from multisig_escrow.domain.enums import Actor, EscrowStep, OrderState
from multisig_escrow.domain.exceptions import (
    ContractFrozenError,
    InvalidTransitionError,
    UnauthorizedActorError,
)

if TYPE_CHECKING:
    from multisig_escrow.domain.models import EscrowContract, Order


class EscrowStateMachine(StateMachine):
    """State machine that guards escrow contract step transitions.

    Usage:
        sm = EscrowStateMachine(EscrowStep.SHIPPED)
        sm.certify_receipt()  # transitions to SIGNATURE_PARTIAL
        sm.step               # EscrowStep.SIGNATURE_PARTIAL
    """

    # --- States ---
    AWAITING_DEPOSIT = State("AWAITING_DEPOSIT", initial=True)
    FUNDS_LOCKED = State("FUNDS_LOCKED")
    SHIPPING_PENDING = State("SHIPPING_PENDING")
    SHIPPED = State("SHIPPED")
    SIGNATURE_PARTIAL = State("SIGNATURE_PARTIAL")
    COMPLETED = State("COMPLETED", final=True)
    DISPUTE = State("DISPUTE", final=True)
    EXPIRED = State("EXPIRED", final=True)

    # --- Events / Transitions ---

    # Deposit (payment watcher)
    funds_confirmed = AWAITING_DEPOSIT.to(FUNDS_LOCKED)
    payment_expired = AWAITING_DEPOSIT.to(EXPIRED)

    # Logistics
    start_shipment = FUNDS_LOCKED.to(SHIPPING_PENDING)
    mark_shipped = SHIPPING_PENDING.to(SHIPPED)

    # Round-robin signing
    certify_receipt = SHIPPED.to(SIGNATURE_PARTIAL) | FUNDS_LOCKED.to(SIGNATURE_PARTIAL)
    countersign = SIGNATURE_PARTIAL.to(COMPLETED)

    # Disputes
    raise_dispute = (
        FUNDS_LOCKED.to(DISPUTE)
        | SHIPPING_PENDING.to(DISPUTE)
        | SHIPPED.to(DISPUTE)
        | SIGNATURE_PARTIAL.to(DISPUTE)
    )

    def __init__(self, current_step: EscrowStep | str = EscrowStep.AWAITING_DEPOSIT) -> None:
        """Initialize the state machine at a given step.

        Args:
            current_step: An EscrowStep member or its name (e.g. "SHIPPED").
        """
        name = current_step.name if isinstance(current_step, EscrowStep) else current_step
        valid_values = {s.value for s in self.states}
        if name not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(f"Unknown step '{name}'. Valid steps: {valid}")
        super().__init__(start_value=name)

    @property
    def step(self) -> EscrowStep:
        return EscrowStep[str(self.current_state.value)]

    def get_allowed_events(self) -> list[str]:
        """Return the event names that can fire from the current step."""
        return [event for event in CONTRACT_EVENTS if _can_fire(type(self), self.step, event)]


class OrderStateMachine(StateMachine):
    """State machine that guards the buyer-facing order lifecycle."""

    IDLE = State("IDLE", initial=True)
    PENDING = State("PENDING")
    ESCROW_LOCKED = State("ESCROW_LOCKED")
    SHIPPED = State("SHIPPED")
    SIGNING_INITIATED = State("SIGNING_INITIATED")
    FINALIZED = State("FINALIZED", final=True)
    DISPUTE = State("DISPUTE", final=True)
    EXPIRED = State("EXPIRED", final=True)

    checkout_started = IDLE.to(PENDING)
    payment_confirmed = PENDING.to(ESCROW_LOCKED)
    payment_expired = PENDING.to(EXPIRED)
    shipped = ESCROW_LOCKED.to(SHIPPED)
    release_initiated = ESCROW_LOCKED.to(SIGNING_INITIATED) | SHIPPED.to(SIGNING_INITIATED)
    release_finalized = SIGNING_INITIATED.to(FINALIZED)
    disputed = (
        ESCROW_LOCKED.to(DISPUTE)
        | SHIPPED.to(DISPUTE)
        | SIGNING_INITIATED.to(DISPUTE)
    )

    def __init__(self, current_state: OrderState | str = OrderState.IDLE) -> None:
        value = str(current_state)
        valid_values = {s.value for s in self.states}
        if value not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(f"Unknown order state '{value}'. Valid states: {valid}")
        super().__init__(start_value=value)

    @property
    def order_state(self) -> OrderState:
        return OrderState(str(self.current_state.value))


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------

# Which actors may fire each contract event.
EVENT_ACTORS: dict[str, frozenset[Actor]] = {
    "funds_confirmed": frozenset({Actor.SYSTEM}),
    "payment_expired": frozenset({Actor.SYSTEM}),
    "start_shipment": frozenset({Actor.SELLER}),
    "mark_shipped": frozenset({Actor.SELLER}),
    "certify_receipt": frozenset({Actor.BUYER}),
    "countersign": frozenset({Actor.SELLER}),
    "raise_dispute": frozenset({Actor.BUYER, Actor.SELLER}),
}

CONTRACT_EVENTS = tuple(EVENT_ACTORS)

# The order event that accompanies each contract event. None leaves the order as is.
ORDER_EVENT_FOR: dict[str, str | None] = {
    "funds_confirmed": "payment_confirmed",
    "payment_expired": "payment_expired",
    "start_shipment": None,
    "mark_shipped": "shipped",
    "certify_receipt": "release_initiated",
    "countersign": "release_finalized",
    "raise_dispute": "disputed",
}


@dataclass(frozen=True)
class Transition:
    """A validated, not yet committed, contract + order transition."""

    event: str
    actor: Actor
    old_step: EscrowStep
    new_step: EscrowStep
    old_order_state: OrderState
    new_order_state: OrderState


def _can_fire(machine_cls: type[StateMachine], current, event: str) -> bool:
    sm = machine_cls(current)
    try:
        sm.send(event)
    except TransitionNotAllowed:
        return False
    return True


def validate_transition(current_step: EscrowStep, event_name: str) -> EscrowStep:
    """Validate a contract step transition and return the new step.

    Ignores actors and terminal-state freezing; see plan_transition for the
    full guard.

    Raises:
        TransitionNotAllowed: If the transition is illegal.
        ValueError: If the event name is invalid.
    """
    if event_name not in EVENT_ACTORS:
        raise ValueError(
            f"Unknown event '{event_name}'. Known events: {', '.join(CONTRACT_EVENTS)}"
        )
    sm = EscrowStateMachine(current_step)
    sm.send(event_name)
    return sm.step


def advance_order(current_state: OrderState, event_name: str) -> OrderState:
    """Fire an order event and return the new order state.

    Raises:
        InvalidTransitionError: If the order cannot take the event.
    """
    sm = OrderStateMachine(current_state)
    try:
        sm.send(event_name)
    except TransitionNotAllowed as err:
        raise InvalidTransitionError(str(current_state), event_name) from err
    return sm.order_state


def ensure_mutable(contract_id: str, current_step: EscrowStep) -> None:
    """Raise ContractFrozenError if the contract sits in a terminal step."""
    if current_step.is_terminal:
        raise ContractFrozenError(contract_id, current_step.name)


def authorize(event_name: str, actor: Actor) -> None:
    """Raise UnauthorizedActorError if ``actor`` may not fire ``event_name``."""
    if event_name not in EVENT_ACTORS:
        raise ValueError(f"Unknown event '{event_name}'")
    allowed = EVENT_ACTORS[event_name]
    if actor not in allowed:
        raise UnauthorizedActorError(
            actor=str(actor),
            attempted=event_name,
            required=sorted(str(a) for a in allowed),
        )


def apply_transition(contract: EscrowContract, order: Order, transition: Transition) -> None:
    """Write a planned transition onto working copies of a contract and its order."""
    contract.current_step = transition.new_step
    order.state = transition.new_order_state


def plan_transition(
    contract_id: str,
    current_step: EscrowStep,
    order_state: OrderState,
    event_name: str,
    actor: Actor,
) -> Transition:
    """Apply every guard for a contract event without mutating anything.

    Check order: frozen contract, actor, then reachability of both the
    contract step and the linked order state.

    Raises:
        ContractFrozenError: The contract is in a terminal step.
        UnauthorizedActorError: The actor may not fire this event.
        InvalidTransitionError: The event is not reachable from the current step.
    """
    ensure_mutable(contract_id, current_step)
    authorize(event_name, actor)

    try:
        new_step = validate_transition(current_step, event_name)
    except TransitionNotAllowed as err:
        raise InvalidTransitionError(current_step.name, event_name) from err

    order_event = ORDER_EVENT_FOR[event_name]
    new_order_state = order_state
    if order_event is not None:
        new_order_state = advance_order(order_state, order_event)

    return Transition(
        event=event_name,
        actor=actor,
        old_step=current_step,
        new_step=new_step,
        old_order_state=order_state,
        new_order_state=new_order_state,
    )
