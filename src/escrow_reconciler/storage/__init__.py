"""Storage layer - Database schemas and repositories."""

from escrow_reconciler.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from escrow_reconciler.storage.models import (
    Base,
    EscrowModel,
    EscrowStatus,
    OrderModel,
    OrderStatus,
    RawEventModel,
    SyncCheckpointModel,
    SyncStatus,
)
from escrow_reconciler.storage.repos import (
    CheckpointRepository,
    EscrowDTO,
    EscrowRepository,
    OrderDTO,
    OrderRepository,
    RawEventDTO,
    RawEventRepository,
    SyncCheckpointDTO,
)

__all__ = [
    "Base",
    "CheckpointRepository",
    "DatabaseManager",
    "EscrowDTO",
    "EscrowModel",
    "EscrowRepository",
    "EscrowStatus",
    "OrderDTO",
    "OrderModel",
    "OrderRepository",
    "OrderStatus",
    "RawEventDTO",
    "RawEventModel",
    "RawEventRepository",
    "SyncCheckpointDTO",
    "SyncCheckpointModel",
    "SyncStatus",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
