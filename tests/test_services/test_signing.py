"""Tests for the round-robin SigningCoordinator.

These tests verify that:
    1. Phase 1 and phase 2 move the contract and order together.
    2. Turn order is enforced: frozen, then role, then phase.
    3. Progress is monotonic and the log replays the phase steps.
    4. Only one signing session runs per contract, and a stale session
       cannot overwrite a contract that was disputed meanwhile.
    5. A countersignature being broadcast cannot be disputed, and a
       cancelled phase leaves the contract untouched.
"""

from __future__ import annotations

import asyncio

import pytest

from multisig_escrow.config import Settings
from multisig_escrow.domain.enums import (
    Actor,
    ContractRole,
    EscrowStep,
    EventType,
    OrderState,
    SigningRole,
)
from multisig_escrow.domain.exceptions import (
    ConcurrentModificationError,
    ContractFrozenError,
    IllegalPhaseError,
    InvalidTransitionError,
    UnauthorizedActorError,
)
from multisig_escrow.domain.state_machine import apply_transition, plan_transition
from multisig_escrow.services.contract_store import ContractStore
from multisig_escrow.services.dispute_gate import DisputeGate
from multisig_escrow.services.payment_service import PaymentService
from multisig_escrow.services.signing import (
    PHASE1_STEPS,
    PHASE2_STEPS,
    RoundRobinSigner,
    SigningCoordinator,
    SigningSession,
    SimulatedRoundRobinSigner,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class GatedSigner:
    """Signer that blocks inside each phase until the test opens the gate."""

    def __init__(self) -> None:
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def sign_partial(self, session: SigningSession) -> None:
        session.advance(50, "WAITING AT GATE")
        self.entered.set()
        await self.gate.wait()
        session.advance(100, "GATE OPEN")

    async def complete_signature(self, session: SigningSession) -> str:
        self.entered.set()
        await self.gate.wait()
        session.advance(100)
        return "cd" * 32


@pytest.fixture
def coordinator(store: ContractStore, settings: Settings) -> SigningCoordinator:
    return SigningCoordinator(store, SimulatedRoundRobinSigner(settings, PaymentService()))


@pytest.fixture
def shipped(store: ContractStore, make_pair):
    order, contract = make_pair(step=EscrowStep.SHIPPED, order_state=OrderState.SHIPPED)
    store.register(order, contract)
    return order, contract


@pytest.fixture
def partial(store: ContractStore, make_pair):
    order, contract = make_pair(
        step=EscrowStep.SIGNATURE_PARTIAL, order_state=OrderState.SIGNING_INITIATED
    )
    store.register(order, contract)
    return order, contract


# ---------------------------------------------------------------------------
# Phase 1
# ---------------------------------------------------------------------------


class TestInitiateRelease:
    @pytest.mark.asyncio
    async def test_buyer_signs_partial(
        self, coordinator: SigningCoordinator, store: ContractStore, shipped
    ) -> None:
        order, contract = shipped
        result = await coordinator.initiate_release(order.id, ContractRole.BUYER, confirmed=True)

        assert result.current_step is EscrowStep.SIGNATURE_PARTIAL
        assert result.final_tx_hash is None
        assert store.get_order(order.id).state is OrderState.SIGNING_INITIATED
        assert coordinator.active_session(contract.id) is None

        evt = store.events(contract.id)[-1]
        assert evt.event_type is EventType.RELEASE_INITIATED
        assert evt.actor is Actor.BUYER
        assert evt.metadata["role"] == "INITIATOR"
        assert evt.metadata["log"] == [line for _, line in PHASE1_STEPS]

    @pytest.mark.asyncio
    async def test_release_without_shipping(
        self, coordinator: SigningCoordinator, store: ContractStore, make_pair
    ) -> None:
        order, contract = make_pair(
            step=EscrowStep.FUNDS_LOCKED, order_state=OrderState.ESCROW_LOCKED
        )
        store.register(order, contract)

        result = await coordinator.initiate_release(order.id, ContractRole.BUYER, confirmed=True)
        assert result.current_step is EscrowStep.SIGNATURE_PARTIAL

    @pytest.mark.asyncio
    async def test_progress_is_monotonic(self, coordinator: SigningCoordinator, shipped) -> None:
        order, _ = shipped
        seen: list[int] = []

        await coordinator.initiate_release(
            order.id,
            ContractRole.BUYER,
            confirmed=True,
            on_progress=lambda s: seen.append(s.progress),
        )

        assert seen == [8, 32, 60, 88, 100]

    @pytest.mark.asyncio
    async def test_requires_explicit_certification(
        self, coordinator: SigningCoordinator, store: ContractStore, shipped
    ) -> None:
        order, contract = shipped
        with pytest.raises(InvalidTransitionError, match="certify receipt"):
            await coordinator.initiate_release(order.id, ContractRole.BUYER, confirmed=False)
        assert store.get_contract(contract.id).current_step is EscrowStep.SHIPPED

    @pytest.mark.asyncio
    async def test_seller_cannot_initiate(self, coordinator: SigningCoordinator, shipped) -> None:
        order, _ = shipped
        with pytest.raises(UnauthorizedActorError):
            await coordinator.initiate_release(order.id, ContractRole.SELLER, confirmed=True)

    @pytest.mark.asyncio
    async def test_not_before_funding(
        self, coordinator: SigningCoordinator, store: ContractStore, make_pair
    ) -> None:
        order, contract = make_pair()
        store.register(order, contract)
        with pytest.raises(IllegalPhaseError):
            await coordinator.initiate_release(order.id, ContractRole.BUYER, confirmed=True)

    @pytest.mark.asyncio
    async def test_second_initiate_is_out_of_phase(
        self, coordinator: SigningCoordinator, store: ContractStore, shipped
    ) -> None:
        order, contract = shipped
        await coordinator.initiate_release(order.id, ContractRole.BUYER, confirmed=True)
        with pytest.raises(IllegalPhaseError):
            await coordinator.initiate_release(order.id, ContractRole.BUYER, confirmed=True)
        assert store.get_contract(contract.id).version == 1


# ---------------------------------------------------------------------------
# Phase 2
# ---------------------------------------------------------------------------


class TestFinalizeRelease:
    @pytest.mark.asyncio
    async def test_seller_countersigns(
        self, coordinator: SigningCoordinator, store: ContractStore, partial
    ) -> None:
        order, contract = partial
        seen: list[int] = []
        result = await coordinator.finalize_release(
            order.id, ContractRole.SELLER, on_progress=lambda s: seen.append(s.progress)
        )

        assert result.current_step is EscrowStep.COMPLETED
        assert result.final_tx_hash is not None
        assert len(result.final_tx_hash) == 64
        assert store.get_order(order.id).state is OrderState.FINALIZED
        assert seen == [7, 33, 60, 80, 100]

        evt = store.events(contract.id)[-1]
        assert evt.event_type is EventType.RELEASE_FINALIZED
        assert evt.metadata["final_tx_hash"] == result.final_tx_hash
        assert evt.metadata["log"] == [line for _, line in PHASE2_STEPS]

    @pytest.mark.asyncio
    async def test_buyer_cannot_finalize(self, coordinator: SigningCoordinator, partial) -> None:
        order, _ = partial
        with pytest.raises(UnauthorizedActorError):
            await coordinator.finalize_release(order.id, ContractRole.BUYER)

    @pytest.mark.asyncio
    async def test_finalize_before_partial(self, coordinator: SigningCoordinator, shipped) -> None:
        order, _ = shipped
        with pytest.raises(IllegalPhaseError) as exc_info:
            await coordinator.finalize_release(order.id, ContractRole.SELLER)
        assert exc_info.value.required == ["SIGNATURE_PARTIAL"]

    @pytest.mark.asyncio
    async def test_completed_contract_is_frozen(
        self, coordinator: SigningCoordinator, partial
    ) -> None:
        order, _ = partial
        await coordinator.finalize_release(order.id, ContractRole.SELLER)
        with pytest.raises(ContractFrozenError):
            await coordinator.finalize_release(order.id, ContractRole.SELLER)

    @pytest.mark.asyncio
    async def test_frozen_is_reported_before_role(
        self, coordinator: SigningCoordinator, store: ContractStore, make_pair
    ) -> None:
        order, contract = make_pair(step=EscrowStep.DISPUTE, order_state=OrderState.DISPUTE)
        store.register(order, contract)
        with pytest.raises(ContractFrozenError):
            await coordinator.finalize_release(order.id, ContractRole.BUYER)


# ---------------------------------------------------------------------------
# Single flight and stale sessions
# ---------------------------------------------------------------------------


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_one_session_per_contract(self, store: ContractStore, shipped) -> None:
        order, contract = shipped
        signer = GatedSigner()
        coordinator = SigningCoordinator(store, signer)

        first = asyncio.create_task(
            coordinator.initiate_release(order.id, ContractRole.BUYER, confirmed=True)
        )
        await signer.entered.wait()

        session = coordinator.active_session(contract.id)
        assert session is not None
        assert session.role is SigningRole.INITIATOR
        assert session.progress == 50

        with pytest.raises(ConcurrentModificationError):
            await coordinator.initiate_release(order.id, ContractRole.BUYER, confirmed=True)

        signer.gate.set()
        result = await first
        assert result.current_step is EscrowStep.SIGNATURE_PARTIAL
        assert coordinator.active_session(contract.id) is None

    @pytest.mark.asyncio
    async def test_dispute_during_signing_wins(self, store: ContractStore, shipped) -> None:
        order, contract = shipped
        signer = GatedSigner()
        coordinator = SigningCoordinator(store, signer)

        signing = asyncio.create_task(
            coordinator.initiate_release(order.id, ContractRole.BUYER, confirmed=True)
        )
        await signer.entered.wait()

        def dispute(c, o) -> None:
            apply_transition(
                c, o, plan_transition(c.id, c.current_step, o.state, "raise_dispute", Actor.SELLER)
            )

        await store.update(
            contract.id, dispute, event_type=EventType.DISPUTE_RAISED, actor=Actor.SELLER
        )
        signer.gate.set()

        with pytest.raises(ContractFrozenError):
            await signing

        assert store.get_contract(contract.id).current_step is EscrowStep.DISPUTE
        assert coordinator.active_session(contract.id) is None
        assert store.events(contract.id)[-1].event_type is EventType.DISPUTE_RAISED

    @pytest.mark.asyncio
    async def test_no_dispute_while_broadcasting(self, store: ContractStore, partial) -> None:
        order, contract = partial
        signer = GatedSigner()
        coordinator = SigningCoordinator(store, signer)
        gate = DisputeGate(store, coordinator)

        signing = asyncio.create_task(coordinator.finalize_release(order.id, ContractRole.SELLER))
        await signer.entered.wait()
        assert coordinator.is_finalizing(contract.id)

        with pytest.raises(ConcurrentModificationError):
            await gate.raise_dispute(contract.id, ContractRole.BUYER, confirmed=True)
        assert store.get_contract(contract.id).current_step is EscrowStep.SIGNATURE_PARTIAL

        signer.gate.set()
        result = await signing
        assert result.current_step is EscrowStep.COMPLETED
        assert result.final_tx_hash == "cd" * 32
        assert not coordinator.is_finalizing(contract.id)

    @pytest.mark.asyncio
    async def test_dispute_allowed_during_partial_signature(
        self, store: ContractStore, shipped
    ) -> None:
        order, contract = shipped
        signer = GatedSigner()
        coordinator = SigningCoordinator(store, signer)
        gate = DisputeGate(store, coordinator)

        signing = asyncio.create_task(
            coordinator.initiate_release(order.id, ContractRole.BUYER, confirmed=True)
        )
        await signer.entered.wait()
        assert not coordinator.is_finalizing(contract.id)

        disputed = await gate.raise_dispute(contract.id, ContractRole.SELLER, confirmed=True)
        assert disputed.current_step is EscrowStep.DISPUTE

        signer.gate.set()
        with pytest.raises(ContractFrozenError):
            await signing


class TestCancellation:
    """A signing task cancelled mid-phase leaves no trace."""

    @pytest.mark.asyncio
    async def test_cancel_partial_signature(self, store: ContractStore, shipped) -> None:
        order, contract = shipped
        signer = GatedSigner()
        coordinator = SigningCoordinator(store, signer)
        events_before = len(store.events(contract.id))

        task = asyncio.create_task(
            coordinator.initiate_release(order.id, ContractRole.BUYER, confirmed=True)
        )
        await signer.entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        current = store.get_contract(contract.id)
        assert current.current_step is EscrowStep.SHIPPED
        assert current.version == contract.version
        assert store.get_order(order.id).state is OrderState.SHIPPED
        assert len(store.events(contract.id)) == events_before
        assert coordinator.active_session(contract.id) is None

        # The contract can be signed again afterwards.
        signer.gate.set()
        result = await coordinator.initiate_release(order.id, ContractRole.BUYER, confirmed=True)
        assert result.current_step is EscrowStep.SIGNATURE_PARTIAL

    @pytest.mark.asyncio
    async def test_cancel_countersignature(self, store: ContractStore, partial) -> None:
        order, contract = partial
        signer = GatedSigner()
        coordinator = SigningCoordinator(store, signer)
        events_before = len(store.events(contract.id))

        task = asyncio.create_task(coordinator.finalize_release(order.id, ContractRole.SELLER))
        await signer.entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        current = store.get_contract(contract.id)
        assert current.current_step is EscrowStep.SIGNATURE_PARTIAL
        assert current.final_tx_hash is None
        assert store.get_order(order.id).state is OrderState.SIGNING_INITIATED
        assert len(store.events(contract.id)) == events_before
        assert coordinator.active_session(contract.id) is None
        assert not coordinator.is_finalizing(contract.id)


class TestSigningSession:
    def test_progress_never_moves_back(self) -> None:
        session = SigningSession(contract_id="CTR-1", order_id="ORD-1", role=SigningRole.INITIATOR)
        session.advance(60, "A")
        session.advance(30, "B")
        assert session.progress == 60
        assert session.log == ["A", "B"]
        assert not session.progress_done.is_set()

    def test_progress_is_clamped(self) -> None:
        session = SigningSession(contract_id="CTR-1", order_id="ORD-1", role=SigningRole.COMPLETER)
        session.advance(250)
        assert session.progress == 100
        assert session.progress_done.is_set()
        assert not session.committed.is_set()

    def test_simulated_signer_satisfies_protocol(self, settings: Settings) -> None:
        assert isinstance(SimulatedRoundRobinSigner(settings, PaymentService()), RoundRobinSigner)
