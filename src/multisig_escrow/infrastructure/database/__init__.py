"""Database infrastructure: engine, ORM models, and repositories."""

from multisig_escrow.infrastructure.database.engine import (
    close_db,
    init_db,
    session_scope,
)
from multisig_escrow.infrastructure.database.orm_models import (
    Base,
    EscrowContractRecord,
    EscrowEventRecord,
    OrderRecord,
)
from multisig_escrow.infrastructure.database.repositories import (
    EscrowRepository,
    EventRepository,
    SnapshotRepository,
)

__all__ = [
    "Base",
    "EscrowContractRecord",
    "EscrowEventRecord",
    "OrderRecord",
    "EscrowRepository",
    "EventRepository",
    "SnapshotRepository",
    "session_scope",
    "init_db",
    "close_db",
]
