"""Escrow Service: application facade for the order and contract lifecycle.

This is the application layer that coordinates between:
    - ContractStore (canonical state + audit trail)
    - PaymentWatcher (deposit detection / payment window)
    - SigningCoordinator (round-robin release)
    - DisputeGate (arbitration side channel)
    - Persistence (optional snapshot repository)

REST routes, MCP tools and the simulation script all call into this service,
ensuring a single source of truth for all business rules.
"""

from __future__ import annotations

import uuid
from decimal import Decimal
from typing import TYPE_CHECKING

from multisig_escrow.config import Settings, get_settings
from multisig_escrow.domain.enums import Actor, EscrowStep, EventType, OrderState, PaymentStatus
from multisig_escrow.domain.exceptions import (
    ContractNotFoundError,
    InvalidTransitionError,
)
from multisig_escrow.domain.models import EscrowContract, Order, quantize_amount
from multisig_escrow.domain.state_machine import (
    EscrowStateMachine,
    advance_order,
    apply_transition,
    authorize,
    ensure_mutable,
    plan_transition,
)
from multisig_escrow.logging_config import get_logger
from multisig_escrow.services.contract_store import ContractStore
from multisig_escrow.services.dispute_gate import DisputeGate
from multisig_escrow.services.payment_service import PaymentService
from multisig_escrow.services.payment_watcher import PaymentTimer, PaymentWatcher
from multisig_escrow.services.signing import SigningCoordinator, SimulatedRoundRobinSigner

if TYPE_CHECKING:
    import asyncio
    from collections.abc import Callable

    from multisig_escrow.domain.enums import ContractRole
    from multisig_escrow.domain.models import ContractView, EscrowEvent
    from multisig_escrow.services.signing import RoundRobinSigner, SigningSession

logger = get_logger(__name__)


class EscrowService:
    """Manages the escrow order/contract lifecycle."""

    def __init__(
        self,
        settings: Settings,
        store: ContractStore,
        payments: PaymentService,
        watcher: PaymentWatcher,
        signing: SigningCoordinator,
        disputes: DisputeGate,
    ) -> None:
        self.settings = settings
        self.store = store
        self.payments = payments
        self.watcher = watcher
        self.signing = signing
        self.disputes = disputes

    @classmethod
    def build(
        cls,
        settings: Settings | None = None,
        signer: RoundRobinSigner | None = None,
    ) -> EscrowService:
        """Wire the default collaborators around a fresh ContractStore."""
        settings = settings or get_settings()
        store = ContractStore()
        payments = PaymentService(address_prefix=settings.multisig_address_prefix)
        watcher = PaymentWatcher(store, payments, settings)
        signing = SigningCoordinator(store, signer or SimulatedRoundRobinSigner(settings, payments))
        return cls(
            settings=settings,
            store=store,
            payments=payments,
            watcher=watcher,
            signing=signing,
            disputes=DisputeGate(store, signing),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def startup(self) -> None:
        """Load persisted state, then seed demo contracts if configured.

        Reloaded orders still awaiting their deposit get their payment watch
        back, with whatever remains of the payment window.
        """
        resumed = 0
        if self.settings.persistence_enabled:
            from multisig_escrow.infrastructure.database import (
                SnapshotRepository,
                init_db,
                session_scope,
            )

            await init_db(self.settings)
            async with session_scope() as session:
                await self.store.load(SnapshotRepository(session))
            resumed = self.watcher.resume_pending()

        if self.settings.seed_demo_contracts:
            self.store.seed(
                self.settings.demo_participant,
                self.settings.demo_participant_is_vendor,
                auto_release_window=self.settings.auto_release_window,
            )
        logger.info(
            "escrow.service_started",
            contracts=len(self.store),
            resumed_watches=resumed,
            persistence=self.settings.persistence_enabled,
        )

    async def shutdown(self) -> None:
        """Cancel pending watches and flush state."""
        await self.watcher.shutdown()
        if self.settings.persistence_enabled:
            from multisig_escrow.infrastructure.database import close_db

            await self.persist()
            await close_db()
        logger.info("escrow.service_stopped")

    async def persist(self) -> int:
        """Flush changed contracts and new events. No-op without a database."""
        if not self.settings.persistence_enabled:
            return 0
        from multisig_escrow.infrastructure.database import SnapshotRepository, session_scope

        async with session_scope() as session:
            return await self.store.flush(SnapshotRepository(session))

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    async def start_checkout(
        self,
        buyer_id: str,
        seller_id: str,
        listing_id: str,
        listing_title: str,
        unit_price: Decimal,
        quantity: int = 1,
        listing_image: str = "",
    ) -> str:
        """Create a PENDING order, its AWAITING_DEPOSIT contract, and start watching."""
        if buyer_id == seller_id:
            raise InvalidTransitionError(
                str(OrderState.IDLE), "checkout_started", reason="buyer and seller must differ"
            )
        price = Decimal(unit_price)
        if not price.is_finite() or quantize_amount(price) <= 0 or quantity < 1:
            raise InvalidTransitionError(
                str(OrderState.IDLE),
                "checkout_started",
                reason="unit price must be positive and quantity at least 1",
            )
        order = Order(
            id=f"ORD-{uuid.uuid4().hex[:8].upper()}",
            buyer_id=buyer_id,
            seller_id=seller_id,
            listing_id=listing_id,
            listing_title=listing_title,
            quantity=quantity,
            unit_price=quantize_amount(price),
        )
        contract = EscrowContract(
            id=f"CTR-{uuid.uuid4().hex[:8].upper()}",
            order_id=order.id,
            listing_title=listing_title,
            listing_image=listing_image,
            buyer_id=buyer_id,
            seller_id=seller_id,
            amount=order.total,
            multisig_address=self.payments.create_multisig_address(),
            created_at=order.created_at,
        )
        order.state = advance_order(order.state, "checkout_started")

        self.store.register(order, contract, actor=Actor.BUYER)
        self.watcher.start(order.id)

        logger.info(
            "escrow.checkout_started",
            order_id=order.id,
            contract_id=contract.id,
            amount=str(contract.amount),
        )
        return order.id

    async def cancel_checkout(self, order_id: str) -> bool:
        """Tear down the payment watch for an order; no state is changed."""
        self.store.get_order(order_id)
        return await self.watcher.cancel(order_id)

    def payment_status(self, order_id: str) -> PaymentTimer:
        """Countdown and confirmation progress of a checkout."""
        contract = self.store.contract_for_order(order_id)
        timer = self.watcher.timer(order_id)
        if timer is not None:
            return timer
        # Seeded or reloaded orders were never watched in this process.
        funded = contract.current_step.is_funded
        if funded:
            status = PaymentStatus.CONFIRMED
        elif contract.current_step is EscrowStep.EXPIRED:
            status = PaymentStatus.EXPIRED
        else:
            status = PaymentStatus.WAITING_FOR_TX
        return PaymentTimer(
            order_id=order_id,
            contract_id=contract.id,
            remaining_seconds=0,
            required_confirmations=self.settings.required_confirmations,
            status=status,
            confirmations=self.settings.required_confirmations if funded else 0,
        )

    # ------------------------------------------------------------------
    # Shipping
    # ------------------------------------------------------------------

    async def start_shipment(self, contract_id: str, caller_role: ContractRole) -> EscrowContract:
        """FUNDS_LOCKED -> SHIPPING_PENDING."""
        return await self._fire(
            contract_id, "start_shipment", caller_role, EventType.SHIPMENT_STARTED
        )

    async def mark_shipped(
        self,
        contract_id: str,
        caller_role: ContractRole,
        tracking_payload: str,
    ) -> EscrowContract:
        """SHIPPING_PENDING -> SHIPPED with a non-empty logistics payload."""
        payload = (tracking_payload or "").strip()
        if not payload:
            contract = self.store.get_contract(contract_id)
            ensure_mutable(contract.id, contract.current_step)
            raise InvalidTransitionError(
                contract.current_step.name, "mark_shipped", reason="tracking payload is empty"
            )

        def stamp(contract: EscrowContract) -> None:
            contract.tracking_payload = payload

        return await self._fire(
            contract_id,
            "mark_shipped",
            caller_role,
            EventType.SHIPMENT_SENT,
            extra=stamp,
            metadata={"tracking_payload": payload},
        )

    async def ship(
        self,
        contract_id: str,
        caller_role: ContractRole,
        tracking_payload: str,
    ) -> EscrowContract:
        """Start the shipment flow and mark it shipped in one call.

        Everything is validated before the first transition, so a rejected
        payload leaves the contract at FUNDS_LOCKED.
        """
        contract = self.store.get_contract(contract_id)
        ensure_mutable(contract.id, contract.current_step)
        authorize("start_shipment", Actor(caller_role))
        if not (tracking_payload or "").strip():
            raise InvalidTransitionError(
                contract.current_step.name, "mark_shipped", reason="tracking payload is empty"
            )
        await self.start_shipment(contract_id, caller_role)
        return await self.mark_shipped(contract_id, caller_role, tracking_payload)

    # ------------------------------------------------------------------
    # Release & disputes
    # ------------------------------------------------------------------

    async def initiate_release(
        self,
        order_id: str,
        caller_role: ContractRole,
        *,
        confirmed: bool,
        on_progress: Callable[[SigningSession], None] | None = None,
    ) -> EscrowContract:
        return await self.signing.initiate_release(
            order_id, caller_role, confirmed=confirmed, on_progress=on_progress
        )

    async def finalize_release(
        self,
        order_id: str,
        caller_role: ContractRole,
        on_progress: Callable[[SigningSession], None] | None = None,
    ) -> EscrowContract:
        return await self.signing.finalize_release(order_id, caller_role, on_progress=on_progress)

    async def raise_dispute(
        self,
        contract_id: str,
        caller_role: ContractRole,
        *,
        confirmed: bool,
        reason: str | None = None,
    ) -> EscrowContract:
        return await self.disputes.raise_dispute(
            contract_id, caller_role, confirmed=confirmed, reason=reason
        )

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    def get_contract(self, contract_id: str) -> EscrowContract:
        return self.store.get_contract(contract_id)

    def get_order(self, order_id: str) -> Order:
        return self.store.get_order(order_id)

    def contract_for_order(self, order_id: str) -> EscrowContract:
        return self.store.contract_for_order(order_id)

    def list_contracts(self, participant_id: str) -> list[ContractView]:
        return self.store.list_contracts(participant_id)

    def role_of(self, contract_id: str, participant_id: str) -> ContractRole:
        """Resolve a participant's role on a contract.

        Raises:
            ContractNotFoundError: Unknown contract, or the participant is not
                a party to it (contracts are not disclosed to outsiders).
        """
        role = self.store.get_contract(contract_id).role_of(participant_id)
        if role is None:
            raise ContractNotFoundError(contract_id)
        return role

    def role_for_order(self, order_id: str, participant_id: str) -> ContractRole:
        """Same as role_of, addressed by the order the contract backs."""
        return self.role_of(self.store.contract_for_order(order_id).id, participant_id)

    def get_status(self, contract_id: str) -> dict:
        """Get contract step, order state and the events that may fire next."""
        contract = self.store.get_contract(contract_id)
        order = self.store.get_order(contract.order_id)
        sm = EscrowStateMachine(contract.current_step)
        session = self.signing.active_session(contract.id)
        return {
            "contract_id": contract.id,
            "order_id": order.id,
            "current_step": contract.current_step.name,
            "order_state": str(order.state),
            "is_terminal": contract.current_step.is_terminal,
            "auto_release_due": contract.is_auto_release_due(),
            "allowed_events": [] if contract.current_step.is_terminal else sm.get_allowed_events(),
            "signing_progress": session.progress if session else None,
            "version": contract.version,
        }

    def get_events(self, contract_id: str) -> list[EscrowEvent]:
        """Get audit trail."""
        return self.store.events(contract_id)

    def subscribe(self, contract_id: str | None = None) -> asyncio.Queue[EscrowEvent]:
        return self.store.subscribe(contract_id)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _fire(
        self,
        contract_id: str,
        event_name: str,
        caller_role: ContractRole,
        event_type: EventType,
        extra: Callable[[EscrowContract], None] | None = None,
        metadata: dict | None = None,
    ) -> EscrowContract:
        """Plan and commit a contract transition under the store lock."""
        actor = Actor(caller_role)

        def mutate(contract: EscrowContract, order: Order) -> None:
            transition = plan_transition(
                contract.id, contract.current_step, order.state, event_name, actor
            )
            apply_transition(contract, order, transition)
            if extra is not None:
                extra(contract)

        contract, order = await self.store.update(
            contract_id, mutate, event_type=event_type, actor=actor, metadata=metadata
        )
        logger.info(
            f"escrow.{event_name}",
            contract_id=contract.id,
            order_id=order.id,
            step=contract.current_step.name,
            order_state=str(order.state),
        )
        return contract
