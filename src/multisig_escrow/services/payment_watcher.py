"""Payment Watcher: simulated chain monitor for pending checkouts.

For each checkout it runs two cooperating asyncio tasks:

    confirmations:  wait detection_delay      -> DETECTED (deposit tx recorded)
                    wait confirmation_interval -> CONFIRMING, 1 confirmation
                    wait confirmation_interval -> ... until required (2)
                    -> CONFIRMED, contract FUNDS_LOCKED, order ESCROW_LOCKED
    countdown:      tick once per countdown_tick until the payment window is
                    spent -> EXPIRED (order and contract)

Whichever finishes first cancels the other. Watches are keyed by order id and
cancellable; a cancelled watch never applies a mutation, because every write
goes through ContractStore.update and cancellation can only land before it.

The watcher is a detector, not a mover of value. Timer-driven transitions
that fail their guard (e.g. the contract was frozen meanwhile) are skipped
and logged, never raised: no caller is waiting on them.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from multisig_escrow.domain.enums import Actor, EscrowStep, EventType, PaymentStatus
from multisig_escrow.domain.exceptions import EscrowError, InvalidTransitionError
from multisig_escrow.domain.models import utcnow
from multisig_escrow.domain.state_machine import apply_transition, ensure_mutable, plan_transition
from multisig_escrow.logging_config import contract_context, get_logger

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from multisig_escrow.config import Settings
    from multisig_escrow.domain.models import EscrowContract, Order
    from multisig_escrow.services.contract_store import ContractStore
    from multisig_escrow.services.payment_service import PaymentService

logger = get_logger(__name__)


@dataclass
class PaymentTimer:
    """Ephemeral countdown and confirmation progress for one checkout."""

    order_id: str
    contract_id: str
    remaining_seconds: int
    required_confirmations: int
    status: PaymentStatus = PaymentStatus.WAITING_FOR_TX
    confirmations: int = 0

    def copy(self) -> PaymentTimer:
        return replace(self)


class PaymentWatcher:
    """Drives orders from checkout to ESCROW_LOCKED on timers."""

    def __init__(
        self,
        store: ContractStore,
        payments: PaymentService,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._payments = payments
        self._settings = settings
        self._clock = clock
        self._timers: dict[str, PaymentTimer] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}

    def confirmation_schedule(self) -> list[float]:
        """Offsets (seconds after start) of detection and each confirmation."""
        offsets = [self._settings.detection_delay_seconds]
        for _ in range(self._settings.required_confirmations):
            offsets.append(offsets[-1] + self._settings.confirmation_interval_seconds)
        return offsets

    # ------------------------------------------------------------------
    # Watch lifecycle
    # ------------------------------------------------------------------

    def start(self, order_id: str, remaining_seconds: int | None = None) -> PaymentTimer:
        """Begin watching a pending order. Idempotent while a watch is running.

        ``remaining_seconds`` defaults to the full payment window; a value of
        zero or less expires the order on the first countdown check.
        """
        task = self._tasks.get(order_id)
        if task is not None and not task.done():
            return self._timers[order_id].copy()

        contract = self._store.contract_for_order(order_id)
        timer = PaymentTimer(
            order_id=order_id,
            contract_id=contract.id,
            remaining_seconds=max(
                0,
                self._settings.payment_window_seconds
                if remaining_seconds is None
                else remaining_seconds,
            ),
            required_confirmations=self._settings.required_confirmations,
        )
        self._timers[order_id] = timer
        task = asyncio.create_task(self._watch(timer), name=f"payment-watch:{order_id}")
        self._tasks[order_id] = task
        task.add_done_callback(lambda t: self._forget(order_id, t))
        logger.info(
            "payment_watcher.started",
            order_id=order_id,
            contract_id=contract.id,
            window_seconds=timer.remaining_seconds,
        )
        return timer.copy()

    def resume_pending(self) -> int:
        """Re-arm watches for orders that were still awaiting their deposit.

        Used after a reload: the countdown continues with what is left of the
        payment window since the contract was created, so an order whose
        window already ran out expires straight away.
        """
        now = self._clock()
        resumed = 0
        for contract in self._store.contracts_at(EscrowStep.AWAITING_DEPOSIT):
            elapsed = int((now - contract.created_at).total_seconds())
            self.start(contract.order_id, self._settings.payment_window_seconds - elapsed)
            resumed += 1
        return resumed

    def timer(self, order_id: str) -> PaymentTimer | None:
        """Last observed payment state for an order, if it was ever watched."""
        timer = self._timers.get(order_id)
        return timer.copy() if timer else None

    def is_watching(self, order_id: str) -> bool:
        task = self._tasks.get(order_id)
        return task is not None and not task.done()

    async def wait(self, order_id: str) -> PaymentTimer | None:
        """Wait for a running watch to finish and return its final state."""
        task = self._tasks.get(order_id)
        if task is not None:
            await asyncio.shield(task)
        return self.timer(order_id)

    async def cancel(self, order_id: str) -> bool:
        """Tear down a watch. Returns False if none was running."""
        task = self._tasks.get(order_id)
        if task is None or task.done():
            return False
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("payment_watcher.cancelled", order_id=order_id)
        return True

    async def shutdown(self) -> None:
        """Cancel every running watch."""
        for order_id in list(self._tasks):
            await self.cancel(order_id)

    def _forget(self, order_id: str, task: asyncio.Task[None]) -> None:
        # A finished watch must not unregister a newer one for the same order.
        if self._tasks.get(order_id) is task:
            del self._tasks[order_id]

    # ------------------------------------------------------------------
    # Watch body
    # ------------------------------------------------------------------

    async def _watch(self, timer: PaymentTimer) -> None:
        with contract_context(timer.contract_id, timer.order_id):
            confirm = asyncio.create_task(self._run_confirmations(timer))
            countdown = asyncio.create_task(self._run_countdown(timer))
        try:
            done, _ = await asyncio.wait({confirm, countdown}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (confirm, countdown):
                task.cancel()
            await asyncio.gather(confirm, countdown, return_exceptions=True)
        for task in done:
            task.result()

    async def _run_confirmations(self, timer: PaymentTimer) -> None:
        await asyncio.sleep(self._settings.detection_delay_seconds)
        already_seen = self._store.get_contract(timer.contract_id).deposit_tx_hash is not None
        if not already_seen and not await self._record_deposit(timer):
            return
        timer.status = PaymentStatus.DETECTED

        while timer.confirmations < timer.required_confirmations:
            await asyncio.sleep(self._settings.confirmation_interval_seconds)
            timer.confirmations += 1
            timer.status = PaymentStatus.CONFIRMING
            logger.info(
                "payment_watcher.confirmation",
                order_id=timer.order_id,
                confirmations=timer.confirmations,
                required=timer.required_confirmations,
            )

        if await self._lock_funds(timer):
            timer.status = PaymentStatus.CONFIRMED

    async def _run_countdown(self, timer: PaymentTimer) -> None:
        while timer.remaining_seconds > 0:
            await asyncio.sleep(self._settings.countdown_tick_seconds)
            timer.remaining_seconds -= 1
        if await self._expire(timer):
            timer.status = PaymentStatus.EXPIRED

    # ------------------------------------------------------------------
    # Timer-driven transitions
    # ------------------------------------------------------------------

    async def _record_deposit(self, timer: PaymentTimer) -> bool:
        def mutate(contract: EscrowContract, order: Order) -> None:
            ensure_mutable(contract.id, contract.current_step)
            if contract.current_step is not EscrowStep.AWAITING_DEPOSIT:
                raise InvalidTransitionError(contract.current_step.name, "record_deposit")
            contract.deposit_tx_hash = self._payments.observe_deposit(
                contract.multisig_address, contract.amount
            )

        return await self._apply(timer, "record_deposit", mutate, EventType.PAYMENT_DETECTED)

    async def _lock_funds(self, timer: PaymentTimer) -> bool:
        def mutate(contract: EscrowContract, order: Order) -> None:
            transition = plan_transition(
                contract.id, contract.current_step, order.state, "funds_confirmed", Actor.SYSTEM
            )
            apply_transition(contract, order, transition)
            contract.locked_at = self._clock()
            contract.auto_release_at = contract.locked_at + self._settings.auto_release_window

        return await self._apply(
            timer,
            "funds_confirmed",
            mutate,
            EventType.FUNDS_LOCKED,
            {"confirmations": timer.confirmations},
        )

    async def _expire(self, timer: PaymentTimer) -> bool:
        def mutate(contract: EscrowContract, order: Order) -> None:
            transition = plan_transition(
                contract.id, contract.current_step, order.state, "payment_expired", Actor.SYSTEM
            )
            apply_transition(contract, order, transition)

        return await self._apply(
            timer,
            "payment_expired",
            mutate,
            EventType.PAYMENT_EXPIRED,
            {"last_status": str(timer.status), "confirmations": timer.confirmations},
        )

    async def _apply(
        self,
        timer: PaymentTimer,
        name: str,
        mutate: Callable[[EscrowContract, Order], None],
        event_type: EventType,
        metadata: dict | None = None,
    ) -> bool:
        try:
            contract, order = await self._store.update(
                timer.contract_id,
                mutate,
                event_type=event_type,
                actor=Actor.SYSTEM,
                metadata=metadata,
            )
        except EscrowError as exc:
            logger.warning(
                "payment_watcher.transition_skipped",
                order_id=timer.order_id,
                contract_id=timer.contract_id,
                transition=name,
                reason=exc.code,
                detail=exc.message,
            )
            return False

        logger.info(
            f"payment_watcher.{name}",
            order_id=order.id,
            contract_id=contract.id,
            step=contract.current_step.name,
            order_state=str(order.state),
        )
        return True
