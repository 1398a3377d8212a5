"""Repository pattern implementations for data access.

This module provides data access abstractions for raw escrow events, the
sync checkpoint, and the escrow/order status rows.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from escrow_reconciler.storage.models import (
    EscrowModel,
    OrderModel,
    RawEventModel,
    SyncCheckpointModel,
    SyncStatus,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

CHECKPOINT_ID = 1


def _aware(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo; every timestamp in this schema is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


@dataclass
class RawEventDTO:
    """Data transfer object for raw escrow events."""

    tx_id: str
    tx_hash: str
    log_index: int
    event_name: str
    contract_address: str
    block_number: int
    block_hash: str
    payload: dict[str, Any] = field(default_factory=dict)
    escrow_ref: str | None = None
    processed: bool = False
    processed_at: datetime | None = None
    error_message: str | None = None
    id: int | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: RawEventModel) -> RawEventDTO:
        return cls(
            id=model.id,
            tx_id=model.tx_id,
            tx_hash=model.tx_hash,
            log_index=model.log_index,
            event_name=model.event_name,
            contract_address=model.contract_address,
            block_number=model.block_number,
            block_hash=model.block_hash,
            payload=dict(model.payload or {}),
            escrow_ref=model.escrow_ref,
            processed=model.processed,
            processed_at=_aware(model.processed_at),
            error_message=model.error_message,
            created_at=_aware(model.created_at),
        )


@dataclass
class SyncCheckpointDTO:
    """Data transfer object for the sync checkpoint."""

    last_synced_block: int
    last_synced_block_hash: str | None
    status: SyncStatus
    last_sync_at: datetime | None
    last_error: str | None
    total_events_processed: int
    total_errors: int

    @classmethod
    def from_model(cls, model: SyncCheckpointModel) -> SyncCheckpointDTO:
        return cls(
            last_synced_block=model.last_synced_block,
            last_synced_block_hash=model.last_synced_block_hash,
            status=SyncStatus(model.status),
            last_sync_at=_aware(model.last_sync_at),
            last_error=model.last_error,
            total_events_processed=model.total_events_processed,
            total_errors=model.total_errors,
        )


@dataclass
class EscrowDTO:
    """Data transfer object for escrow mappings."""

    escrow_ref: str
    order_ref: str
    status: str
    release_tx_hash: str | None = None
    refund_tx_hash: str | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: EscrowModel) -> EscrowDTO:
        return cls(
            escrow_ref=model.escrow_ref,
            order_ref=model.order_ref,
            status=model.status,
            release_tx_hash=model.release_tx_hash,
            refund_tx_hash=model.refund_tx_hash,
            updated_at=_aware(model.updated_at),
        )


@dataclass
class OrderDTO:
    """Data transfer object for orders."""

    order_ref: str
    status: str
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None

    @classmethod
    def from_model(cls, model: OrderModel) -> OrderDTO:
        return cls(
            order_ref=model.order_ref,
            status=model.status,
            completed_at=_aware(model.completed_at),
            cancelled_at=_aware(model.cancelled_at),
        )


class RawEventRepository:
    """Repository for raw escrow events."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_if_absent(self, dto: RawEventDTO) -> bool:
        """Insert an event unless its tx_id is already stored.

        Returns:
            True if a new row was written, False if tx_id already existed.
        """
        values = {
            "tx_id": dto.tx_id,
            "tx_hash": dto.tx_hash,
            "log_index": dto.log_index,
            "event_name": dto.event_name,
            "contract_address": dto.contract_address,
            "block_number": dto.block_number,
            "block_hash": dto.block_hash,
            "payload": dto.payload,
            "escrow_ref": dto.escrow_ref,
            "processed": False,
            "created_at": datetime.now(UTC),
        }
        insert = pg_insert if self.session.get_bind().dialect.name == "postgresql" else sqlite_insert
        stmt = (
            insert(RawEventModel)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["tx_id"])
            .returning(RawEventModel.id)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def exists(self, tx_id: str) -> bool:
        result = await self.session.execute(select(RawEventModel.id).where(RawEventModel.tx_id == tx_id))
        return result.scalar_one_or_none() is not None

    async def get_by_tx_id(self, tx_id: str) -> RawEventDTO | None:
        result = await self.session.execute(select(RawEventModel).where(RawEventModel.tx_id == tx_id))
        model = result.scalar_one_or_none()
        return RawEventDTO.from_model(model) if model else None

    async def list_unprocessed(
        self,
        *,
        limit: int | None = None,
        up_to_block: int | None = None,
    ) -> list[RawEventDTO]:
        """Unprocessed events in ledger order, optionally only up to a block (inclusive)."""
        query = select(RawEventModel).where(RawEventModel.processed.is_(False))
        if up_to_block is not None:
            query = query.where(RawEventModel.block_number <= up_to_block)
        query = query.order_by(RawEventModel.block_number, RawEventModel.log_index, RawEventModel.id)
        if limit is not None:
            query = query.limit(limit)
        result = await self.session.execute(query)
        return [RawEventDTO.from_model(m) for m in result.scalars().all()]

    async def list_for_escrow(
        self,
        escrow_ref: str,
        *,
        processed: bool | None = None,
        up_to_block: int | None = None,
    ) -> list[RawEventDTO]:
        """Events for one escrow ordered by (block_number, log_index)."""
        query = select(RawEventModel).where(RawEventModel.escrow_ref == escrow_ref)
        if processed is not None:
            query = query.where(RawEventModel.processed.is_(processed))
        if up_to_block is not None:
            query = query.where(RawEventModel.block_number <= up_to_block)
        query = query.order_by(RawEventModel.block_number, RawEventModel.log_index, RawEventModel.id)
        result = await self.session.execute(query)
        return [RawEventDTO.from_model(m) for m in result.scalars().all()]

    async def list_stuck(self, *, limit: int = 100) -> list[RawEventDTO]:
        """Unprocessed events that already carry an error."""
        result = await self.session.execute(
            select(RawEventModel)
            .where(RawEventModel.processed.is_(False), RawEventModel.error_message.is_not(None))
            .order_by(RawEventModel.block_number, RawEventModel.log_index)
            .limit(limit)
        )
        return [RawEventDTO.from_model(m) for m in result.scalars().all()]

    async def mark_processed(self, event_id: int, *, note: str | None = None) -> None:
        await self.session.execute(
            update(RawEventModel)
            .where(RawEventModel.id == event_id)
            .values(processed=True, processed_at=datetime.now(UTC), error_message=note)
        )

    async def record_error(self, event_id: int, message: str, *, processed: bool = False) -> None:
        """Record an error on one row; processed=True marks it as not retryable."""
        values: dict[str, Any] = {"error_message": message[:2000], "processed": processed}
        if processed:
            values["processed_at"] = datetime.now(UTC)
        await self.session.execute(update(RawEventModel).where(RawEventModel.id == event_id).values(**values))

    async def count(self, *, processed: bool | None = None, escrow_ref: str | None = None) -> int:
        query = select(func.count()).select_from(RawEventModel)
        if processed is not None:
            query = query.where(RawEventModel.processed.is_(processed))
        if escrow_ref is not None:
            query = query.where(RawEventModel.escrow_ref == escrow_ref)
        result = await self.session.execute(query)
        return int(result.scalar_one())


class CheckpointRepository:
    """Repository for the singleton sync checkpoint."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def _get_model(self) -> SyncCheckpointModel | None:
        return await self.session.get(SyncCheckpointModel, CHECKPOINT_ID)

    async def get(self) -> SyncCheckpointDTO | None:
        model = await self._get_model()
        return SyncCheckpointDTO.from_model(model) if model else None

    async def get_or_create(self, *, start_block: int = 0) -> SyncCheckpointDTO:
        model = await self._get_model()
        if model is None:
            model = SyncCheckpointModel(
                id=CHECKPOINT_ID,
                last_synced_block=start_block,
                status=SyncStatus.ACTIVE.value,
                total_events_processed=0,
                total_errors=0,
            )
            self.session.add(model)
            await self.session.flush()
            logger.info("Created sync checkpoint at block %d", start_block)
        return SyncCheckpointDTO.from_model(model)

    async def advance(
        self,
        *,
        to_block: int,
        block_hash: str | None,
        events_processed: int,
        errors: int,
        status: SyncStatus,
    ) -> SyncCheckpointDTO:
        """Record a validated batch; last_synced_block never moves backwards."""
        model = await self._get_model()
        if model is None:
            raise LookupError("sync checkpoint does not exist")
        if to_block >= model.last_synced_block:
            model.last_synced_block = to_block
            model.last_synced_block_hash = block_hash
        model.total_events_processed += events_processed
        model.total_errors += errors
        model.status = status.value
        model.last_sync_at = datetime.now(UTC)
        model.last_error = None
        await self.session.flush()
        return SyncCheckpointDTO.from_model(model)

    async def set_status(
        self,
        status: SyncStatus,
        *,
        error: str | None = None,
        count_error: bool = False,
    ) -> SyncCheckpointDTO | None:
        model = await self._get_model()
        if model is None:
            return None
        model.status = status.value
        if error is not None:
            model.last_error = error[:4000]
        if count_error:
            model.total_errors += 1
        await self.session.flush()
        return SyncCheckpointDTO.from_model(model)


class EscrowRepository:
    """Repository for escrow mappings."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create(self, escrow_ref: str, order_ref: str, *, status: str = "PENDING") -> EscrowDTO:
        model = EscrowModel(escrow_ref=escrow_ref.lower(), order_ref=order_ref, status=status)
        self.session.add(model)
        await self.session.flush()
        return EscrowDTO.from_model(model)

    async def get(self, escrow_ref: str) -> EscrowDTO | None:
        model = await self.session.get(EscrowModel, escrow_ref.lower(), populate_existing=True)
        return EscrowDTO.from_model(model) if model else None

    async def get_by_order(self, order_ref: str) -> EscrowDTO | None:
        result = await self.session.execute(select(EscrowModel).where(EscrowModel.order_ref == order_ref))
        model = result.scalar_one_or_none()
        return EscrowDTO.from_model(model) if model else None

    async def update_status(
        self,
        escrow_ref: str,
        status: str,
        *,
        expected_status: str | None = None,
        release_tx_hash: str | None = None,
        refund_tx_hash: str | None = None,
    ) -> bool:
        """Set the escrow status.

        With expected_status the write is a compare-and-set: it only applies
        while the row still has that status.

        Returns:
            True if a row was updated.
        """
        values: dict[str, Any] = {"status": status, "updated_at": datetime.now(UTC)}
        if release_tx_hash is not None:
            values["release_tx_hash"] = release_tx_hash
        if refund_tx_hash is not None:
            values["refund_tx_hash"] = refund_tx_hash
        stmt = update(EscrowModel).where(EscrowModel.escrow_ref == escrow_ref.lower())
        if expected_status is not None:
            stmt = stmt.where(EscrowModel.status == expected_status)
        result = await self.session.execute(
            stmt.values(**values).execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    async def list_by_status(self, statuses: Iterable[str]) -> list[EscrowDTO]:
        result = await self.session.execute(
            select(EscrowModel).where(EscrowModel.status.in_(list(statuses))).order_by(EscrowModel.escrow_ref)
        )
        return [EscrowDTO.from_model(m) for m in result.scalars().all()]

    async def list_all(self) -> list[EscrowDTO]:
        result = await self.session.execute(select(EscrowModel).order_by(EscrowModel.escrow_ref))
        return [EscrowDTO.from_model(m) for m in result.scalars().all()]


class OrderRepository:
    """Repository for the order status fields the reconciler touches."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create(self, order_ref: str, *, status: str = "CREATED") -> OrderDTO:
        model = OrderModel(order_ref=order_ref, status=status)
        self.session.add(model)
        await self.session.flush()
        return OrderDTO.from_model(model)

    async def get(self, order_ref: str) -> OrderDTO | None:
        model = await self.session.get(OrderModel, order_ref, populate_existing=True)
        return OrderDTO.from_model(model) if model else None

    async def get_many(self, order_refs: Iterable[str]) -> dict[str, OrderDTO]:
        refs = list(order_refs)
        if not refs:
            return {}
        result = await self.session.execute(select(OrderModel).where(OrderModel.order_ref.in_(refs)))
        return {m.order_ref: OrderDTO.from_model(m) for m in result.scalars().all()}

    async def update_status(
        self,
        order_ref: str,
        status: str,
        *,
        expected_status: str | None = None,
        completed_at: datetime | None = None,
        cancelled_at: datetime | None = None,
    ) -> bool:
        """Set the order status; a compare-and-set when expected_status is given."""
        values: dict[str, Any] = {"status": status, "updated_at": datetime.now(UTC)}
        if completed_at is not None:
            values["completed_at"] = completed_at
        if cancelled_at is not None:
            values["cancelled_at"] = cancelled_at
        stmt = update(OrderModel).where(OrderModel.order_ref == order_ref)
        if expected_status is not None:
            stmt = stmt.where(OrderModel.status == expected_status)
        result = await self.session.execute(
            stmt.values(**values).execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    async def list_by_status(self, statuses: Iterable[str]) -> list[OrderDTO]:
        result = await self.session.execute(
            select(OrderModel).where(OrderModel.status.in_(list(statuses))).order_by(OrderModel.order_ref)
        )
        return [OrderDTO.from_model(m) for m in result.scalars().all()]
