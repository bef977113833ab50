"""Signing Coordinator: the two-phase round-robin release of a 2-of-3 multisig.

Phase 1 (INITIATOR, buyer):  partial signature over the release transaction,
                             FUNDS_LOCKED | SHIPPED -> SIGNATURE_PARTIAL
Phase 2 (COMPLETER, seller): countersignature and broadcast,
                             SIGNATURE_PARTIAL -> COMPLETED, final_tx_hash stamped

The cryptography is opaque: a RoundRobinSigner performs each phase as an
awaitable unit of work that reports progress into a SigningSession. Reaching
100% progress and committing the step are separate signals; the commit
re-plans the transition inside ContractStore.update so a stale session can
never write over a contract that moved on (e.g. into DISPUTE) meanwhile.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from multisig_escrow.domain.enums import Actor, EscrowStep, EventType, SigningRole
from multisig_escrow.domain.exceptions import (
    ConcurrentModificationError,
    IllegalPhaseError,
    InvalidTransitionError,
)
from multisig_escrow.domain.state_machine import (
    apply_transition,
    authorize,
    ensure_mutable,
    plan_transition,
)
from multisig_escrow.logging_config import contract_context, get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

    from multisig_escrow.config import Settings
    from multisig_escrow.domain.enums import ContractRole
    from multisig_escrow.domain.models import EscrowContract, Order
    from multisig_escrow.services.contract_store import ContractStore
    from multisig_escrow.services.payment_service import PaymentService

logger = get_logger(__name__)

# (fraction of the phase duration, log line)
PHASE1_STEPS: tuple[tuple[float, str], ...] = (
    (0.08, "INITIALIZING WASM MODULE"),
    (0.32, "GENERATING EPHEMERAL KEYS (ED25519)"),
    (0.60, "COMPUTING RING CLSAG SIGNATURES"),
    (0.88, "ENCRYPTING ALPHA NONCE [CHACHA20]"),
    (1.00, "TRANSMITTING PARTIAL TX TO RELAY"),
)

PHASE2_STEPS: tuple[tuple[float, str], ...] = (
    (0.07, "FETCHING PARTIAL TX FROM RELAY"),
    (0.33, "COMPUTING SHARED SECRET (ECDH)"),
    (0.60, "DECRYPTING ALPHA NONCE"),
    (0.80, "VERIFYING TX PREFIX HASH"),
    (1.00, "BROADCASTING FINALIZED TX"),
)

# Steps a phase-1 signature may start from.
INITIATE_FROM = (EscrowStep.FUNDS_LOCKED, EscrowStep.SHIPPED)
FINALIZE_FROM = (EscrowStep.SIGNATURE_PARTIAL,)


@dataclass
class SigningSession:
    """Ephemeral state of one signing phase on one contract."""

    contract_id: str
    order_id: str
    role: SigningRole
    progress: int = 0
    log: list[str] = field(default_factory=list)
    progress_done: asyncio.Event = field(default_factory=asyncio.Event)
    committed: asyncio.Event = field(default_factory=asyncio.Event)
    listeners: list[Callable[[SigningSession], None]] = field(default_factory=list)

    def advance(self, progress: int, line: str | None = None) -> None:
        """Move progress forward (never back) and append a log line."""
        self.progress = max(self.progress, min(100, progress))
        if line is not None:
            self.log.append(line)
        if self.progress >= 100:
            self.progress_done.set()
        for listener in self.listeners:
            listener(self)


@runtime_checkable
class RoundRobinSigner(Protocol):
    """Performs the opaque cryptographic work of each phase."""

    async def sign_partial(self, session: SigningSession) -> None: ...

    async def complete_signature(self, session: SigningSession) -> str:
        """Countersign and broadcast; return the final transaction hash."""
        ...


class SimulatedRoundRobinSigner:
    """Stand-in signer that replays the phase logs over the nominal durations."""

    def __init__(self, settings: Settings, payments: PaymentService) -> None:
        self._phase1 = settings.phase1_duration_seconds
        self._phase2 = settings.phase2_duration_seconds
        self._payments = payments

    async def sign_partial(self, session: SigningSession) -> None:
        await self._replay(session, PHASE1_STEPS, self._phase1)

    async def complete_signature(self, session: SigningSession) -> str:
        await self._replay(session, PHASE2_STEPS[:-1], self._phase2)
        tx_hash = await self._payments.broadcast_release(session.order_id)
        fraction, line = PHASE2_STEPS[-1]
        await asyncio.sleep(self._phase2 * (fraction - PHASE2_STEPS[-2][0]))
        session.advance(round(fraction * 100), line)
        return tx_hash

    async def _replay(
        self,
        session: SigningSession,
        steps: tuple[tuple[float, str], ...],
        duration: float,
    ) -> None:
        elapsed = 0.0
        for fraction, line in steps:
            await asyncio.sleep(duration * (fraction - elapsed))
            elapsed = fraction
            session.advance(round(fraction * 100), line)
            logger.debug(
                "signing.step",
                contract_id=session.contract_id,
                role=str(session.role),
                progress=session.progress,
                step=line,
            )


class SigningCoordinator:
    """Enforces turn order and single-flight for the round-robin exchange."""

    def __init__(self, store: ContractStore, signer: RoundRobinSigner) -> None:
        self._store = store
        self._signer = signer
        self._in_flight: dict[str, SigningSession] = {}

    def active_session(self, contract_id: str) -> SigningSession | None:
        return self._in_flight.get(contract_id)

    def is_finalizing(self, contract_id: str) -> bool:
        """True while a countersignature, and so a broadcast, is in flight."""
        session = self._in_flight.get(contract_id)
        return session is not None and session.role is SigningRole.COMPLETER

    async def initiate_release(
        self,
        order_id: str,
        caller_role: ContractRole,
        *,
        confirmed: bool,
        on_progress: Callable[[SigningSession], None] | None = None,
    ) -> EscrowContract:
        """Buyer's partial signature (phase 1).

        Raises:
            OrderNotFoundError: Unknown order.
            ContractFrozenError: The contract is terminal.
            UnauthorizedActorError: Caller is not the buyer.
            IllegalPhaseError: Step is not FUNDS_LOCKED or SHIPPED.
            InvalidTransitionError: Receipt was not explicitly certified.
            ConcurrentModificationError: A signing phase is already running.
        """
        contract = self._store.contract_for_order(order_id)
        self._check_turn(
            contract, "certify_receipt", caller_role, "initiate_release", INITIATE_FROM
        )
        if not confirmed:
            raise InvalidTransitionError(
                contract.current_step.name,
                "certify_receipt",
                reason="buyer must explicitly certify receipt",
            )

        session = self._open_session(contract, SigningRole.INITIATOR, on_progress)
        try:
            with contract_context(contract.id, order_id):
                await self._signer.sign_partial(session)
                contract, _ = await self._commit(
                    session, "certify_receipt", Actor(caller_role), EventType.RELEASE_INITIATED
                )
        finally:
            self._in_flight.pop(contract.id, None)
        return contract

    async def finalize_release(
        self,
        order_id: str,
        caller_role: ContractRole,
        on_progress: Callable[[SigningSession], None] | None = None,
    ) -> EscrowContract:
        """Seller's countersignature and broadcast (phase 2).

        Raises:
            OrderNotFoundError: Unknown order.
            ContractFrozenError: The contract is terminal.
            UnauthorizedActorError: Caller is not the seller.
            IllegalPhaseError: Step is not SIGNATURE_PARTIAL.
            ConcurrentModificationError: A signing phase is already running.
        """
        contract = self._store.contract_for_order(order_id)
        self._check_turn(contract, "countersign", caller_role, "finalize_release", FINALIZE_FROM)

        session = self._open_session(contract, SigningRole.COMPLETER, on_progress)
        try:
            with contract_context(contract.id, order_id):
                tx_hash = await self._signer.complete_signature(session)
                contract, _ = await self._commit(
                    session,
                    "countersign",
                    Actor(caller_role),
                    EventType.RELEASE_FINALIZED,
                    final_tx_hash=tx_hash,
                )
        finally:
            self._in_flight.pop(contract.id, None)
        return contract

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_turn(
        self,
        contract: EscrowContract,
        event_name: str,
        caller_role: ContractRole,
        operation: str,
        allowed_steps: tuple[EscrowStep, ...],
    ) -> None:
        ensure_mutable(contract.id, contract.current_step)
        authorize(event_name, Actor(caller_role))
        if contract.current_step not in allowed_steps:
            raise IllegalPhaseError(
                operation,
                contract.current_step.name,
                [step.name for step in allowed_steps],
            )

    def _open_session(
        self,
        contract: EscrowContract,
        role: SigningRole,
        on_progress: Callable[[SigningSession], None] | None,
    ) -> SigningSession:
        if contract.id in self._in_flight:
            raise ConcurrentModificationError(contract.id, "a signing session is already running")
        session = SigningSession(contract_id=contract.id, order_id=contract.order_id, role=role)
        if on_progress is not None:
            session.listeners.append(on_progress)
        self._in_flight[contract.id] = session
        logger.info(
            "signing.phase_started",
            contract_id=contract.id,
            order_id=contract.order_id,
            role=str(role),
        )
        return session

    async def _commit(
        self,
        session: SigningSession,
        event_name: str,
        actor: Actor,
        event_type: EventType,
        final_tx_hash: str | None = None,
    ) -> tuple[EscrowContract, Order]:
        if not session.progress_done.is_set():
            session.advance(100)

        def mutate(contract: EscrowContract, order: Order) -> None:
            transition = plan_transition(
                contract.id, contract.current_step, order.state, event_name, actor
            )
            apply_transition(contract, order, transition)
            if final_tx_hash is not None:
                contract.final_tx_hash = final_tx_hash

        metadata = {"role": str(session.role), "log": list(session.log)}
        if final_tx_hash is not None:
            metadata["final_tx_hash"] = final_tx_hash
        contract, order = await self._store.update(
            session.contract_id,
            mutate,
            event_type=event_type,
            actor=actor,
            metadata=metadata,
        )
        session.committed.set()
        logger.info(
            "signing.phase_committed",
            contract_id=contract.id,
            order_id=order.id,
            role=str(session.role),
            step=contract.current_step.name,
            order_state=str(order.state),
        )
        return contract, order
