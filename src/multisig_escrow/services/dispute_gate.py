"""Dispute Gate: either party may freeze a funded contract for arbitration."""

from __future__ import annotations

from typing import TYPE_CHECKING

from multisig_escrow.domain.enums import Actor, EventType
from multisig_escrow.domain.exceptions import ConcurrentModificationError, InvalidTransitionError
from multisig_escrow.domain.state_machine import apply_transition, plan_transition
from multisig_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from multisig_escrow.domain.enums import ContractRole
    from multisig_escrow.domain.models import EscrowContract, Order
    from multisig_escrow.services.contract_store import ContractStore
    from multisig_escrow.services.signing import SigningCoordinator

logger = get_logger(__name__)

CONFIRM_PROMPT = (
    "Are you sure you want to open a dispute? "
    "This will freeze the funds and notify a moderator."
)


class DisputeGate:
    def __init__(self, store: ContractStore, signing: SigningCoordinator | None = None) -> None:
        self._store = store
        self._signing = signing

    async def raise_dispute(
        self,
        contract_id: str,
        caller_role: ContractRole,
        *,
        confirmed: bool,
        reason: str | None = None,
    ) -> EscrowContract:
        """Move a contract to DISPUTE after the caller explicitly confirmed.

        Raises:
            ContractNotFoundError: Unknown contract.
            ContractFrozenError: Already COMPLETED, DISPUTE or EXPIRED.
            InvalidTransitionError: Not yet funded, or ``confirmed`` is False.
            ConcurrentModificationError: The seller's countersignature is
                being broadcast; the release can no longer be held back.
        """
        actor = Actor(caller_role)
        contract = self._store.get_contract(contract_id)
        order = self._store.get_order(contract.order_id)
        # Guard before consent: a frozen contract reports ContractFrozen
        # even when unconfirmed.
        plan_transition(contract.id, contract.current_step, order.state, "raise_dispute", actor)
        self._ensure_not_finalizing(contract.id)
        if not confirmed:
            raise InvalidTransitionError(
                contract.current_step.name,
                "raise_dispute",
                reason="explicit confirmation required",
            )

        def mutate(working: EscrowContract, working_order: Order) -> None:
            transition = plan_transition(
                working.id, working.current_step, working_order.state, "raise_dispute", actor
            )
            self._ensure_not_finalizing(working.id)
            apply_transition(working, working_order, transition)
            working.dispute_reason = reason or None

        contract, order = await self._store.update(
            contract_id,
            mutate,
            event_type=EventType.DISPUTE_RAISED,
            actor=actor,
            metadata={"reason": reason or "", "from_step": contract.current_step.name},
        )
        logger.warning(
            "escrow.dispute_raised",
            contract_id=contract.id,
            order_id=order.id,
            raised_by=str(actor),
            reason=reason,
        )
        return contract

    def _ensure_not_finalizing(self, contract_id: str) -> None:
        if self._signing is not None and self._signing.is_finalizing(contract_id):
            raise ConcurrentModificationError(contract_id, "the release is being broadcast")
