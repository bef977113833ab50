"""SQLAlchemy 2.0 ORM models for the multisig escrow service.

Three tables:
    1. orders           : Buyer purchase intents, 1:1 with a contract.
    2. escrow_contracts : The 2-of-3 multisig agreements backing each order.
    3. escrow_events    : Append-only audit log of every committed store update.

Design decisions:
    - String primary keys: ids are minted by the service (ORD-…, CTR-…).
    - Decimal for XMR amounts (no floating point rounding errors).
    - Generic JSON (not JSONB) so the same schema runs on SQLite and PostgreSQL.
    - Steps stored by name and guarded with CHECK constraints.
    - escrow_events is append-only: no UPDATE or DELETE at the application level.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal  # noqa: TC003 - needed at runtime by SQLAlchemy Mapped[]

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    event,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from multisig_escrow.domain.enums import EscrowStep, OrderState


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def _set_updated_at(mapper, connection, target):  # noqa: ANN001
    """SQLAlchemy event listener that updates `updated_at` before flush."""
    if hasattr(target, "updated_at"):
        target.updated_at = datetime.now(UTC)


def _in_list(column: str, values) -> str:  # noqa: ANN001
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


_STEP_NAMES = [step.name for step in EscrowStep]
_ORDER_STATES = [state.value for state in OrderState]


# ---------------------------------------------------------------------------
# 1. orders
# ---------------------------------------------------------------------------
class OrderRecord(Base):
    """A buyer's purchase intent for one listing."""

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)

    # --- Participants ---
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # --- Listing ---
    listing_id: Mapped[str] = mapped_column(String(64), nullable=False)
    listing_title: Mapped[str] = mapped_column(String(200), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_price: Mapped[Decimal] = mapped_column(
        Numeric(18, 4),
        nullable=False,
        comment="Listing price in XMR (4 decimal places)",
    )

    state: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=OrderState.IDLE.value,
        comment="Order lifecycle state (guarded by OrderStateMachine)",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    contract: Mapped[EscrowContractRecord | None] = relationship(
        "EscrowContractRecord",
        back_populates="order",
        uselist=False,
    )

    __table_args__ = (
        CheckConstraint(_in_list("state", _ORDER_STATES), name="ck_order_valid_state"),
        CheckConstraint("quantity >= 1", name="ck_order_positive_quantity"),
        CheckConstraint("unit_price > 0", name="ck_order_positive_price"),
        Index("idx_order_buyer", "buyer_id"),
        Index("idx_order_seller", "seller_id"),
    )

    def __repr__(self) -> str:
        return f"<OrderRecord id={self.id} state={self.state}>"


# ---------------------------------------------------------------------------
# 2. escrow_contracts
# ---------------------------------------------------------------------------
class EscrowContractRecord(Base):
    """Persistent mirror of an EscrowContract."""

    __tablename__ = "escrow_contracts"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    order_id: Mapped[str] = mapped_column(
        String(32),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    # --- Display ---
    listing_title: Mapped[str] = mapped_column(String(200), nullable=False)
    listing_image: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # --- Participants ---
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # --- Financials ---
    amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 4),
        nullable=False,
        comment="Escrowed amount in XMR",
    )
    multisig_address: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        comment="2-of-3 multisig deposit address",
    )
    deposit_tx_hash: Mapped[str | None] = mapped_column(String(64), nullable=True, default=None)
    final_tx_hash: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        default=None,
        comment="Release transaction, set exactly when COMPLETED",
    )

    # --- Step (Enum-guarded) ---
    current_step: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=EscrowStep.AWAITING_DEPOSIT.name,
        comment="Current lifecycle step (guarded by EscrowStateMachine)",
    )
    tracking_payload: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)
    dispute_reason: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # --- Timestamps ---
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    auto_release_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    order: Mapped[OrderRecord] = relationship("OrderRecord", back_populates="contract")

    __table_args__ = (
        CheckConstraint(_in_list("current_step", _STEP_NAMES), name="ck_escrow_valid_step"),
        CheckConstraint("amount > 0", name="ck_escrow_positive_amount"),
        CheckConstraint("version >= 0", name="ck_escrow_version"),
        Index("idx_escrow_step", "current_step"),
        Index("idx_escrow_buyer", "buyer_id"),
        Index("idx_escrow_seller", "seller_id"),
        Index("idx_escrow_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<EscrowContractRecord id={self.id} step={self.current_step} "
            f"amount={self.amount} XMR>"
        )


# ---------------------------------------------------------------------------
# 3. escrow_events (Append-Only Audit Log)
# ---------------------------------------------------------------------------
class EscrowEventRecord(Base):
    """Immutable audit record of one committed transition.

    This table is APPEND-ONLY. No UPDATE or DELETE operations are permitted
    at the application level.
    """

    __tablename__ = "escrow_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    contract_id: Mapped[str] = mapped_column(
        String(32),
        ForeignKey("escrow_contracts.id", ondelete="CASCADE"),
        nullable=False,
    )
    order_id: Mapped[str] = mapped_column(String(32), nullable=False)

    # --- Event Details ---
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    old_step: Mapped[str | None] = mapped_column(
        String(20),
        nullable=True,
        comment="Contract step before this event (null for creation)",
    )
    new_step: Mapped[str] = mapped_column(String(20), nullable=False)
    old_order_state: Mapped[str | None] = mapped_column(String(20), nullable=True)
    new_order_state: Mapped[str] = mapped_column(String(20), nullable=False)
    actor: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="SYSTEM",
        comment="BUYER, SELLER or SYSTEM",
    )
    metadata_json: Mapped[dict | None] = mapped_column(
        "metadata",
        JSON,
        nullable=True,
        default=None,
        comment="Arbitrary context: tx hashes, tracking payload, signing log",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        Index("idx_event_contract", "contract_id"),
        Index("idx_event_type", "event_type"),
        Index("idx_event_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<EscrowEventRecord id={self.id} type={self.event_type} "
            f"{self.old_step}->{self.new_step}>"
        )


event.listen(EscrowContractRecord, "before_update", _set_updated_at)
