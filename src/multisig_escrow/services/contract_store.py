"""Contract Store: the canonical, process-wide registry of orders and contracts.

The store is the only shared mutable resource in the service. It does not
apply business guards itself: callers plan the transition against the
EscrowStateMachine *inside* the mutate callback they pass to ``update``, so
the guard check and the write happen under the same per-contract lock.

Guarantees:
    - Reads return copies; writing a copy back requires ``update``.
    - ``update`` is atomic per contract id (asyncio.Lock) and optionally
      optimistic (``expected_version``).
    - A mutate callback that raises commits nothing.
    - Every committed update appends exactly one EscrowEvent and publishes it
      to subscribers.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Protocol

from multisig_escrow.domain.enums import (
    Actor,
    EscrowStep,
    EventType,
    OrderState,
)
from multisig_escrow.domain.exceptions import (
    ConcurrentModificationError,
    ContractNotFoundError,
    DuplicateOrderError,
    OrderNotFoundError,
)
from multisig_escrow.domain.models import (
    ContractView,
    EscrowContract,
    EscrowEvent,
    Order,
    utcnow,
)
from multisig_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = get_logger(__name__)

Mutator = Callable[[EscrowContract, Order], None]


class SnapshotRepository(Protocol):
    """Persistence collaborator used by ``load`` and ``flush``."""

    async def load_all(self) -> tuple[list[Order], list[EscrowContract], list[EscrowEvent]]: ...

    async def save(
        self,
        orders: list[Order],
        contracts: list[EscrowContract],
        events: list[EscrowEvent],
    ) -> None: ...


class ContractStore:
    """In-memory registry of escrow contracts and their 1:1 orders."""

    def __init__(self) -> None:
        self._orders: dict[str, Order] = {}
        self._contracts: dict[str, EscrowContract] = {}
        self._contract_by_order: dict[str, str] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._events: list[EscrowEvent] = []
        self._subscribers: list[tuple[str | None, asyncio.Queue[EscrowEvent]]] = []
        self._dirty: set[str] = set()
        self._flushed_events = 0

    def __len__(self) -> int:
        return len(self._contracts)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        order: Order,
        contract: EscrowContract,
        actor: Actor = Actor.BUYER,
    ) -> EscrowContract:
        """Insert a new order and the contract backing it."""
        if contract.order_id != order.id:
            raise ValueError(f"Contract {contract.id} does not back order {order.id}")
        if order.id in self._orders:
            raise DuplicateOrderError(order.id)
        if contract.id in self._contracts:
            raise DuplicateOrderError(contract.id)
        contract.check_invariants()

        self._orders[order.id] = order.copy()
        self._contracts[contract.id] = contract.copy()
        self._contract_by_order[order.id] = contract.id
        self._dirty.add(contract.id)
        self._append_event(
            EscrowEvent(
                contract_id=contract.id,
                order_id=order.id,
                event_type=EventType.ORDER_PLACED,
                old_step=None,
                new_step=contract.current_step,
                old_order_state=None,
                new_order_state=order.state,
                actor=actor,
                metadata={
                    "amount": str(contract.amount),
                    "multisig_address": contract.multisig_address,
                },
            )
        )
        logger.info(
            "store.contract_registered",
            contract_id=contract.id,
            order_id=order.id,
            step=contract.current_step.name,
        )
        return contract.copy()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_contract(self, contract_id: str) -> EscrowContract:
        contract = self._contracts.get(contract_id)
        if contract is None:
            raise ContractNotFoundError(contract_id)
        return contract.copy()

    def get_order(self, order_id: str) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order.copy()

    def contract_for_order(self, order_id: str) -> EscrowContract:
        contract_id = self._contract_by_order.get(order_id)
        if contract_id is None:
            raise OrderNotFoundError(order_id)
        return self.get_contract(contract_id)

    def list_contracts(self, participant_id: str) -> list[ContractView]:
        """All contracts the participant is a party to, newest first."""
        views = [
            contract.view_for(participant_id)
            for contract in self._contracts.values()
            if contract.role_of(participant_id) is not None
        ]
        return sorted(views, key=lambda v: v.contract.created_at, reverse=True)

    def contracts_at(self, step: EscrowStep) -> list[EscrowContract]:
        """Every contract currently at ``step``, oldest first."""
        found = [c.copy() for c in self._contracts.values() if c.current_step is step]
        return sorted(found, key=lambda c: c.created_at)

    def events(self, contract_id: str | None = None) -> list[EscrowEvent]:
        """Audit trail in commit order, optionally for one contract."""
        if contract_id is None:
            return list(self._events)
        if contract_id not in self._contracts:
            raise ContractNotFoundError(contract_id)
        return [e for e in self._events if e.contract_id == contract_id]

    # ------------------------------------------------------------------
    # Atomic update
    # ------------------------------------------------------------------

    async def update(
        self,
        contract_id: str,
        mutate: Mutator,
        *,
        event_type: EventType,
        actor: Actor,
        metadata: dict | None = None,
        expected_version: int | None = None,
    ) -> tuple[EscrowContract, Order]:
        """Read-modify-write one contract and its order under the contract's lock.

        ``mutate`` receives working copies and must re-validate its guard
        against them; if it raises, nothing is committed.

        Raises:
            ContractNotFoundError: Unknown contract id.
            ConcurrentModificationError: ``expected_version`` is stale.
        """
        async with self._lock_for(contract_id):
            current = self._contracts.get(contract_id)
            if current is None:
                raise ContractNotFoundError(contract_id)
            if expected_version is not None and current.version != expected_version:
                raise ConcurrentModificationError(
                    contract_id,
                    f"expected version {expected_version}, found {current.version}",
                )

            current_order = self._orders[current.order_id]
            contract = current.copy()
            order = current_order.copy()
            mutate(contract, order)

            contract.id = current.id
            contract.order_id = current.order_id
            contract.version = current.version + 1
            contract.check_invariants()

            self._contracts[contract_id] = contract
            self._orders[order.id] = order
            self._dirty.add(contract_id)
            self._append_event(
                EscrowEvent(
                    contract_id=contract_id,
                    order_id=order.id,
                    event_type=event_type,
                    old_step=current.current_step,
                    new_step=contract.current_step,
                    old_order_state=current_order.state,
                    new_order_state=order.state,
                    actor=actor,
                    metadata=dict(metadata or {}),
                )
            )
        return contract.copy(), order.copy()

    def _lock_for(self, contract_id: str) -> asyncio.Lock:
        lock = self._locks.get(contract_id)
        if lock is None:
            lock = self._locks[contract_id] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def subscribe(self, contract_id: str | None = None) -> asyncio.Queue[EscrowEvent]:
        """Return a queue receiving every event committed from now on."""
        queue: asyncio.Queue[EscrowEvent] = asyncio.Queue()
        self._subscribers.append((contract_id, queue))
        return queue

    def unsubscribe(self, queue: asyncio.Queue[EscrowEvent]) -> None:
        self._subscribers = [(cid, q) for cid, q in self._subscribers if q is not queue]

    def _append_event(self, event: EscrowEvent) -> None:
        self._events.append(event)
        for contract_id, queue in self._subscribers:
            if contract_id is None or contract_id == event.contract_id:
                queue.put_nowait(event)

    # ------------------------------------------------------------------
    # Lifecycle: seed / load / flush
    # ------------------------------------------------------------------

    def seed(
        self,
        participant_id: str,
        is_vendor: bool,
        now: datetime | None = None,
        auto_release_window: timedelta = timedelta(days=14),
    ) -> int:
        """Populate the store with the sample marketplace contracts.

        Returns the number of contracts added; existing ids are skipped.
        """
        added = 0
        records = demo_records(participant_id, is_vendor, now, auto_release_window)
        for order, contract in records:
            if contract.id in self._contracts or order.id in self._orders:
                continue
            self.register(order, contract, actor=Actor.SYSTEM)
            added += 1
        logger.info("store.seeded", participant=participant_id, contracts=added)
        return added

    async def load(self, repository: SnapshotRepository) -> int:
        """Replace in-memory state with the repository's snapshot."""
        orders, contracts, events = await repository.load_all()
        self._orders = {o.id: o for o in orders}
        self._contracts = {}
        self._contract_by_order = {}
        for contract in contracts:
            contract.check_invariants()
            self._contracts[contract.id] = contract
            self._contract_by_order[contract.order_id] = contract.id
        self._events = sorted(events, key=lambda e: e.created_at)
        self._dirty.clear()
        self._flushed_events = len(self._events)
        logger.info("store.loaded", contracts=len(self._contracts), events=len(self._events))
        return len(self._contracts)

    async def flush(self, repository: SnapshotRepository) -> int:
        """Write contracts changed since the last flush plus new events.

        Returns the number of contracts written.
        """
        dirty = sorted(self._dirty)
        contracts = [self._contracts[cid].copy() for cid in dirty]
        orders = [self._orders[c.order_id].copy() for c in contracts]
        events = self._events[self._flushed_events:]
        await repository.save(orders, contracts, list(events))
        self._dirty.difference_update(dirty)
        self._flushed_events += len(events)
        logger.info("store.flushed", contracts=len(contracts), events=len(events))
        return len(contracts)


# ---------------------------------------------------------------------------
# Demo data
# ---------------------------------------------------------------------------

_DEMO_ADDRESS = "888tNkZrPN6JsEgekjMnQwT4wQ8J7K9Lz1y3pQ"

# contract id, order id, title, image seed, buyer alias, vendor alias, amount, step, age
_DEMO_CONTRACTS = (
    ("CTR-8821-X", "ORD-9928-AX", "QUANTUM_DATA_SHARD_V4", "escrow1",
     "BUYER_GHOST_01", "VENDOR_NEXUS_PRIME", "4.2500", EscrowStep.SHIPPED, 2),
    ("CTR-9942-B", "ORD-5541-XY", "NEURAL_INTERFACE_KIT", "escrow2",
     "BUYER_PHANTOM_99", "VENDOR_CYBER_DYNE", "12.5000", EscrowStep.FUNDS_LOCKED, 1),
    ("CTR-3311-C", "ORD-3321-CC", "ENCRYPTED_SSD_BATCH_50", "escrow3",
     "BUYER_ZERO_COOL", "VENDOR_SYSTEM_SHOCK", "0.8500", EscrowStep.SIGNATURE_PARTIAL, 3),
)

_ORDER_STATE_FOR_STEP = {
    EscrowStep.FUNDS_LOCKED: OrderState.ESCROW_LOCKED,
    EscrowStep.SHIPPED: OrderState.SHIPPED,
    EscrowStep.SIGNATURE_PARTIAL: OrderState.SIGNING_INITIATED,
}


def demo_records(
    participant_id: str,
    is_vendor: bool,
    now: datetime | None = None,
    auto_release_window: timedelta = timedelta(days=14),
) -> Iterable[tuple[Order, EscrowContract]]:
    """Yield the sample orders/contracts with ``participant_id`` on one side."""
    now = now or utcnow()
    for (contract_id, order_id, title, seed, buyer_alias, vendor_alias,
         amount, step, age_days) in _DEMO_CONTRACTS:
        buyer_id = buyer_alias if is_vendor else participant_id
        seller_id = participant_id if is_vendor else vendor_alias
        created_at = now - timedelta(days=age_days)
        locked_at = created_at + timedelta(minutes=30)
        order = Order(
            id=order_id,
            buyer_id=buyer_id,
            seller_id=seller_id,
            listing_id=f"LST-{order_id[4:]}",
            listing_title=title,
            quantity=1,
            unit_price=Decimal(amount),
            state=_ORDER_STATE_FOR_STEP[step],
            created_at=created_at,
        )
        contract = EscrowContract(
            id=contract_id,
            order_id=order_id,
            listing_title=title,
            listing_image=f"https://picsum.photos/seed/{seed}/200/200",
            buyer_id=buyer_id,
            seller_id=seller_id,
            amount=Decimal(amount),
            multisig_address=_DEMO_ADDRESS,
            current_step=step,
            created_at=created_at,
            locked_at=locked_at,
            auto_release_at=locked_at + auto_release_window,
            tracking_payload="PGP:DEMO-TRACKING" if step.has_reached(EscrowStep.SHIPPED) else None,
        )
        yield order, contract
