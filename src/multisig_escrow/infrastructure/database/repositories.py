"""Repository classes for database access.

Repositories encapsulate all SQL queries and translate between ORM records
and domain dataclasses. They accept an AsyncSession and never manage their
own transactions (that's the caller's responsibility).
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import select

from multisig_escrow.domain.enums import Actor, EscrowStep, EventType, OrderState
from multisig_escrow.domain.models import EscrowContract, EscrowEvent, Order
from multisig_escrow.infrastructure.database.orm_models import (
    EscrowContractRecord,
    EscrowEventRecord,
    OrderRecord,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession


def _aware(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


# ---------------------------------------------------------------------------
# Record <-> domain mapping
# ---------------------------------------------------------------------------


def order_to_record(order: Order) -> OrderRecord:
    return OrderRecord(
        id=order.id,
        buyer_id=order.buyer_id,
        seller_id=order.seller_id,
        listing_id=order.listing_id,
        listing_title=order.listing_title,
        quantity=order.quantity,
        unit_price=order.unit_price,
        state=order.state.value,
        created_at=order.created_at,
    )


def order_from_record(record: OrderRecord) -> Order:
    return Order(
        id=record.id,
        buyer_id=record.buyer_id,
        seller_id=record.seller_id,
        listing_id=record.listing_id,
        listing_title=record.listing_title,
        quantity=record.quantity,
        unit_price=record.unit_price,
        state=OrderState(record.state),
        created_at=_aware(record.created_at),
    )


def contract_to_record(contract: EscrowContract) -> EscrowContractRecord:
    return EscrowContractRecord(
        id=contract.id,
        order_id=contract.order_id,
        listing_title=contract.listing_title,
        listing_image=contract.listing_image,
        buyer_id=contract.buyer_id,
        seller_id=contract.seller_id,
        amount=contract.amount,
        multisig_address=contract.multisig_address,
        deposit_tx_hash=contract.deposit_tx_hash,
        final_tx_hash=contract.final_tx_hash,
        current_step=contract.current_step.name,
        tracking_payload=contract.tracking_payload,
        dispute_reason=contract.dispute_reason,
        version=contract.version,
        created_at=contract.created_at,
        locked_at=contract.locked_at,
        auto_release_at=contract.auto_release_at,
    )


def contract_from_record(record: EscrowContractRecord) -> EscrowContract:
    return EscrowContract(
        id=record.id,
        order_id=record.order_id,
        listing_title=record.listing_title,
        listing_image=record.listing_image,
        buyer_id=record.buyer_id,
        seller_id=record.seller_id,
        amount=record.amount,
        multisig_address=record.multisig_address,
        current_step=EscrowStep[record.current_step],
        created_at=_aware(record.created_at),
        locked_at=_aware(record.locked_at),
        auto_release_at=_aware(record.auto_release_at),
        deposit_tx_hash=record.deposit_tx_hash,
        final_tx_hash=record.final_tx_hash,
        tracking_payload=record.tracking_payload,
        dispute_reason=record.dispute_reason,
        version=record.version,
    )


def event_to_record(evt: EscrowEvent) -> EscrowEventRecord:
    return EscrowEventRecord(
        id=evt.id,
        contract_id=evt.contract_id,
        order_id=evt.order_id,
        event_type=evt.event_type.value,
        old_step=evt.old_step.name if evt.old_step is not None else None,
        new_step=evt.new_step.name,
        old_order_state=evt.old_order_state.value if evt.old_order_state else None,
        new_order_state=evt.new_order_state.value,
        actor=evt.actor.value,
        metadata_json=evt.metadata or None,
        created_at=evt.created_at,
    )


def event_from_record(record: EscrowEventRecord) -> EscrowEvent:
    return EscrowEvent(
        id=record.id,
        contract_id=record.contract_id,
        order_id=record.order_id,
        event_type=EventType(record.event_type),
        old_step=EscrowStep[record.old_step] if record.old_step else None,
        new_step=EscrowStep[record.new_step],
        old_order_state=OrderState(record.old_order_state) if record.old_order_state else None,
        new_order_state=OrderState(record.new_order_state),
        actor=Actor(record.actor),
        metadata=dict(record.metadata_json or {}),
        created_at=_aware(record.created_at),
    )


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


class EscrowRepository:
    """Data access for orders and escrow contracts."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def upsert(self, order: Order, contract: EscrowContract) -> None:
        """Insert or overwrite an order and its contract (merge by primary key)."""
        await self._session.merge(order_to_record(order))
        await self._session.flush()
        await self._session.merge(contract_to_record(contract))
        await self._session.flush()

    async def all_orders(self) -> list[Order]:
        result = await self._session.execute(select(OrderRecord))
        return [order_from_record(r) for r in result.scalars().all()]

    async def all_contracts(self) -> list[EscrowContract]:
        result = await self._session.execute(select(EscrowContractRecord))
        return [contract_from_record(r) for r in result.scalars().all()]


class EventRepository:
    """Data access for the append-only audit event log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(self, evt: EscrowEvent) -> None:
        """Append an audit event. This is the ONLY write operation allowed."""
        self._session.add(event_to_record(evt))

    async def get_all(self) -> list[EscrowEvent]:
        result = await self._session.execute(
            select(EscrowEventRecord).order_by(EscrowEventRecord.created_at.asc())
        )
        return [event_from_record(r) for r in result.scalars().all()]


class SnapshotRepository:
    """Loads and saves the ContractStore's state through the two repositories above."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._escrows = EscrowRepository(session)
        self._events = EventRepository(session)

    async def load_all(self) -> tuple[list[Order], list[EscrowContract], list[EscrowEvent]]:
        orders = await self._escrows.all_orders()
        contracts = await self._escrows.all_contracts()
        events = await self._events.get_all()
        return orders, contracts, events

    async def save(
        self,
        orders: list[Order],
        contracts: list[EscrowContract],
        events: list[EscrowEvent],
    ) -> None:
        by_id = {o.id: o for o in orders}
        for contract in contracts:
            await self._escrows.upsert(by_id[contract.order_id], contract)
        for evt in events:
            await self._events.record(evt)
        await self._session.flush()
