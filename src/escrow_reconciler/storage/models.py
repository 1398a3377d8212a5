"""SQLAlchemy models for persistent storage.

This module defines the database schema for raw escrow events, the sync
checkpoint, and the escrow/order status rows the reconciler mutates.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class EscrowStatus(str, Enum):
    """Off-chain mirror of an escrow's on-chain state."""

    PENDING = "PENDING"
    LOCKED = "LOCKED"
    RELEASED = "RELEASED"
    REFUNDED = "REFUNDED"
    DISPUTED = "DISPUTED"


class OrderStatus(str, Enum):
    """Trade/order lifecycle states owned by the CRUD layer."""

    CREATED = "CREATED"
    AWAITING_FUNDS = "AWAITING_FUNDS"
    ONCHAIN_LOCKED = "ONCHAIN_LOCKED"
    COMPLETED = "COMPLETED"
    REFUNDED = "REFUNDED"
    DISPUTED = "DISPUTED"


class SyncStatus(str, Enum):
    """Status of the block sync checkpoint."""

    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    ERROR = "ERROR"
    RESYNCING = "RESYNCING"


_PayloadType = JSON().with_variant(JSONB(), "postgresql")


class RawEventModel(Base):
    """One row per escrow contract log, keyed by tx_id for idempotent ingestion."""

    __tablename__ = "raw_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tx_id: Mapped[str] = mapped_column(String(90), nullable=False, unique=True)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    event_name: Mapped[str] = mapped_column(String(64), nullable=False)
    contract_address: Mapped[str] = mapped_column(String(42), nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(_PayloadType, nullable=False, default=dict)
    escrow_ref: Mapped[str | None] = mapped_column(String(66), nullable=True)

    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        Index("idx_raw_events_escrow_processed", "escrow_ref", "processed"),
        Index("idx_raw_events_processed_block", "processed", "block_number", "log_index"),
    )


class SyncCheckpointModel(Base):
    """Singleton sync checkpoint (id=1)."""

    __tablename__ = "sync_checkpoints"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    last_synced_block: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_synced_block_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=SyncStatus.ACTIVE.value)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_events_processed: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_errors: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )


class EscrowModel(Base):
    """Escrow mapping: one escrow per order."""

    __tablename__ = "escrows"

    escrow_ref: Mapped[str] = mapped_column(String(66), primary_key=True)
    order_ref: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=EscrowStatus.PENDING.value)
    release_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    refund_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    __table_args__ = (Index("idx_escrows_status", "status"),)


class OrderModel(Base):
    """Minimal order row: only the fields the reconciler reads or writes."""

    __tablename__ = "orders"

    order_ref: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=OrderStatus.CREATED.value)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    __table_args__ = (Index("idx_orders_status", "status"),)
