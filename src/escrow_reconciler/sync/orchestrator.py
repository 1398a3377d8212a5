"""Block sync orchestration with resumable resync.

The orchestrator drives forward sync in confirmation-bounded batches:
validate the block range, backfill its events, reconcile, then advance the
checkpoint. The checkpoint only moves after a range validates, and never
moves backwards. Long resyncs persist their progress after every batch so
an interrupted run resumes where it stopped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import SQLAlchemyError

from escrow_reconciler.chain.client import ChainClientError
from escrow_reconciler.ingestor.events import EventIngestor
from escrow_reconciler.storage.database import DatabaseManager
from escrow_reconciler.storage.models import SyncStatus
from escrow_reconciler.storage.repos import CheckpointRepository, SyncCheckpointDTO
from escrow_reconciler.sync.reconciler import StateReconciler
from escrow_reconciler.sync.validator import BlockValidator

if TYPE_CHECKING:
    from escrow_reconciler.jobs.locks import LockStore

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_BATCH_SIZE = 100
DEFAULT_CONFIRMATION_BLOCKS = 12
DEFAULT_BOOTSTRAP_BLOCKS = 1000
DEFAULT_STALE_AFTER_SECONDS = 3600
DEFAULT_MAX_BATCH_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 5.0
DEFAULT_RESYNC_PAUSE_SECONDS = 0.1
DEFAULT_STATE_TTL_SECONDS = 86400
DEFAULT_RESYNC_LOCK_TTL_SECONDS = 7200

RESYNC_JOB_NAME = "blockchain-full-resync"


class SyncError(Exception):
    """Raised when a batch fails after its retries are exhausted."""


class BatchStatus(str, Enum):
    """Outcome of one sync batch."""

    SYNCED = "synced"
    NOOP = "noop"
    INVALID = "invalid"


@dataclass
class BatchResult:
    """Outcome of sync_from_block."""

    status: BatchStatus
    from_block: int
    to_block: int
    events_ingested: int = 0
    events_reconciled: int = 0
    errors: int = 0
    validation_errors: list[str] = field(default_factory=list)


@dataclass
class ResyncProgress:
    """Progress of a full resync, saved after every batch."""

    from_block: int
    to_block: int
    current_block: int
    events_ingested: int = 0
    errors: int = 0
    error: str | None = None
    saved_at: str | None = None

    @property
    def is_unfinished(self) -> bool:
        return self.error is not None or self.current_block < self.to_block

    @property
    def percent(self) -> float:
        total = self.to_block - self.from_block
        if total <= 0:
            return 100.0
        return round(100.0 * (self.current_block - self.from_block) / total, 2)

    def to_dict(self) -> dict[str, Any]:
        return {
            "from_block": self.from_block,
            "to_block": self.to_block,
            "current_block": self.current_block,
            "events_ingested": self.events_ingested,
            "errors": self.errors,
            "error": self.error,
            "saved_at": self.saved_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResyncProgress:
        return cls(
            from_block=int(data["from_block"]),
            to_block=int(data["to_block"]),
            current_block=int(data["current_block"]),
            events_ingested=int(data.get("events_ingested", 0)),
            errors=int(data.get("errors", 0)),
            error=data.get("error"),
            saved_at=data.get("saved_at"),
        )


@dataclass
class ResyncResult:
    """Outcome of resync_from_block."""

    completed: bool
    progress: ResyncProgress
    batches: int = 0
    message: str = ""


@dataclass
class SyncStatusReport:
    """Snapshot returned by get_sync_status."""

    status: SyncStatus | None
    last_synced_block: int | None
    last_synced_block_hash: str | None
    last_sync_at: datetime | None
    last_error: str | None
    total_events_processed: int
    total_errors: int
    latest_block: int | None = None
    confirmed_head: int | None = None
    blocks_behind: int | None = None
    is_stale: bool = False
    live_ingestion: bool = False
    resync_progress: ResyncProgress | None = None


class SyncOrchestrator:
    """Coordinates ingestion, validation and reconciliation over block ranges.

    Example:
        ```python
        orchestrator = SyncOrchestrator(db, ingestor, validator, reconciler, state_store=locks)
        await orchestrator.start_sync()
        status = await orchestrator.get_sync_status()
        await orchestrator.stop_sync()
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        ingestor: EventIngestor,
        validator: BlockValidator,
        reconciler: StateReconciler,
        *,
        state_store: LockStore | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        confirmation_blocks: int = DEFAULT_CONFIRMATION_BLOCKS,
        bootstrap_blocks: int = DEFAULT_BOOTSTRAP_BLOCKS,
        stale_after_seconds: int = DEFAULT_STALE_AFTER_SECONDS,
        max_batch_retries: int = DEFAULT_MAX_BATCH_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        resync_pause_seconds: float = DEFAULT_RESYNC_PAUSE_SECONDS,
        state_ttl_seconds: int = DEFAULT_STATE_TTL_SECONDS,
        resync_lock_ttl_seconds: int = DEFAULT_RESYNC_LOCK_TTL_SECONDS,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._db = db
        self._ingestor = ingestor
        self._validator = validator
        self._reconciler = reconciler
        self._state_store = state_store
        self._batch_size = batch_size
        self._confirmation_blocks = confirmation_blocks
        self._bootstrap_blocks = bootstrap_blocks
        self._stale_after = stale_after_seconds
        self._max_batch_retries = max_batch_retries
        self._retry_delay = retry_delay_seconds
        self._resync_pause = resync_pause_seconds
        self._state_ttl = state_ttl_seconds
        self._resync_lock_ttl = resync_lock_ttl_seconds

        self._stop_requested = False
        self._resync_running = False

    @property
    def is_resyncing(self) -> bool:
        return self._resync_running

    # ------------------------------------------------------------------
    # Checkpoint helpers
    # ------------------------------------------------------------------

    async def _get_checkpoint(self) -> SyncCheckpointDTO | None:
        async with self._db.get_async_session() as session:
            return await CheckpointRepository(session).get()

    async def _get_or_create_checkpoint(self, start_block: int) -> SyncCheckpointDTO:
        async with self._db.get_async_session() as session:
            return await CheckpointRepository(session).get_or_create(start_block=start_block)

    async def _set_status(
        self,
        status: SyncStatus,
        *,
        error: str | None = None,
        count_error: bool = False,
    ) -> None:
        async with self._db.get_async_session() as session:
            await CheckpointRepository(session).set_status(status, error=error, count_error=count_error)

    async def _bootstrap_start(self) -> int:
        head = await self._validator.confirmed_head(self._confirmation_blocks)
        return max(0, head - self._bootstrap_blocks)

    def _is_stale(self, checkpoint: SyncCheckpointDTO) -> bool:
        if checkpoint.last_sync_at is None:
            return True
        age = (datetime.now(UTC) - checkpoint.last_sync_at).total_seconds()
        return age > self._stale_after

    # ------------------------------------------------------------------
    # Forward sync
    # ------------------------------------------------------------------

    async def start_sync(self) -> BatchResult:
        """Load or create the checkpoint, start live ingestion, sync one batch."""
        self._stop_requested = False
        checkpoint = await self._get_checkpoint()
        if checkpoint is None:
            checkpoint = await self._get_or_create_checkpoint(await self._bootstrap_start())
        elif checkpoint.status == SyncStatus.PAUSED:
            await self._set_status(SyncStatus.ACTIVE)

        await self._ingestor.ingest_live()
        logger.info("Block sync started from block %d", checkpoint.last_synced_block)
        return await self.sync_from_block(checkpoint.last_synced_block)

    async def stop_sync(self) -> None:
        """Stop starting new batches and pause the checkpoint.

        A batch already running completes.
        """
        self._stop_requested = True
        await self._ingestor.stop()
        await self._set_status(SyncStatus.PAUSED)
        logger.info("Block sync stopped")

    async def run_scheduled_sync(self) -> BatchResult | None:
        """One tick of the periodic sync job.

        Skips while paused, resyncing or in error; the status check job
        owns recovery from ERROR.
        """
        if self._stop_requested:
            return None
        checkpoint = await self._get_checkpoint()
        if checkpoint is None:
            checkpoint = await self._get_or_create_checkpoint(await self._bootstrap_start())
        if checkpoint.status != SyncStatus.ACTIVE:
            logger.info("Skipping scheduled sync: checkpoint status is %s", checkpoint.status.value)
            return None
        return await self.sync_from_block(
            checkpoint.last_synced_block, anchor_hash=checkpoint.last_synced_block_hash
        )

    async def sync_from_block(
        self,
        from_block: int,
        *,
        to_block: int | None = None,
        anchor_hash: str | None = None,
        status_on_success: SyncStatus = SyncStatus.ACTIVE,
    ) -> BatchResult:
        """Sync one batch starting at from_block.

        The batch ends at min(from_block + batch_size, head - confirmations),
        further capped by to_block when given.

        Args:
            from_block: First block of the batch.
            to_block: Optional upper bound for the batch.
            anchor_hash: Hash from_block must still have (the checkpoint hash).
            status_on_success: Checkpoint status to record after the batch.

        Raises:
            SyncError: If chain access keeps failing after all retries.
            Exception: Any other batch failure is re-raised after the
                checkpoint is marked ERROR.
        """
        last_error: Exception | None = None
        for attempt in range(1, self._max_batch_retries + 1):
            try:
                return await self._sync_batch(from_block, to_block, anchor_hash, status_on_success)
            except ChainClientError as e:
                last_error = e
                logger.warning(
                    "Sync batch from block %d failed (attempt %d/%d): %s",
                    from_block,
                    attempt,
                    self._max_batch_retries,
                    e,
                )
                if attempt < self._max_batch_retries:
                    await asyncio.sleep(self._retry_delay)
            except Exception as e:
                logger.exception("Sync batch from block %d failed", from_block)
                await self._record_batch_failure(f"Batch from block {from_block} failed: {e}")
                raise

        message = f"Batch from block {from_block} failed after {self._max_batch_retries} attempts: {last_error}"
        logger.error(message)
        await self._record_batch_failure(message)
        raise SyncError(message) from last_error

    async def _record_batch_failure(self, message: str) -> None:
        try:
            await self._set_status(SyncStatus.ERROR, error=message, count_error=True)
        except SQLAlchemyError as e:
            logger.error("Could not record sync failure on the checkpoint: %s", e)

    async def _sync_batch(
        self,
        from_block: int,
        to_block: int | None,
        anchor_hash: str | None,
        status_on_success: SyncStatus,
    ) -> BatchResult:
        head = await self._validator.confirmed_head(self._confirmation_blocks)
        end = min(from_block + self._batch_size, head)
        if to_block is not None:
            end = min(end, to_block)
        if end <= from_block:
            logger.debug("Nothing to sync from block %d (confirmed head %d)", from_block, head)
            return BatchResult(BatchStatus.NOOP, from_block, from_block)

        validation = await self._validator.validate_block_chain(from_block, end, expected_first_hash=anchor_hash)
        if not validation.is_valid:
            await self._set_status(
                SyncStatus.ERROR,
                error=f"Chain validation failed for blocks {from_block}-{end}: {validation.error_summary}",
                count_error=True,
            )
            return BatchResult(
                BatchStatus.INVALID,
                from_block,
                end,
                validation_errors=list(validation.errors),
            )

        new_events = await self._ingestor.backfill(from_block, end)
        reconciliation = await self._reconciler.reconcile_unprocessed_events(up_to_block=end)

        async with self._db.get_async_session() as session:
            repo = CheckpointRepository(session)
            await repo.get_or_create(start_block=from_block)
            checkpoint = await repo.advance(
                to_block=end,
                block_hash=validation.head_hash,
                events_processed=len(new_events),
                errors=reconciliation.errors,
                status=SyncStatus.PAUSED if self._stop_requested else status_on_success,
            )

        logger.info(
            "Synced blocks %d-%d: %d new events, %d reconciled, %d errors (checkpoint %d)",
            from_block,
            end,
            len(new_events),
            reconciliation.processed,
            reconciliation.errors,
            checkpoint.last_synced_block,
        )
        return BatchResult(
            BatchStatus.SYNCED,
            from_block,
            end,
            events_ingested=len(new_events),
            events_reconciled=reconciliation.processed,
            errors=reconciliation.errors,
        )

    # ------------------------------------------------------------------
    # Resync
    # ------------------------------------------------------------------

    async def _save_progress(self, progress: ResyncProgress) -> None:
        if self._state_store is None:
            return
        progress.saved_at = datetime.now(UTC).isoformat()
        await self._state_store.save_state(RESYNC_JOB_NAME, progress.to_dict(), ttl=self._state_ttl)

    async def _refresh_resync_lock(self) -> bool:
        """Extend the resync lock if this instance holds it.

        Returns:
            False if another instance now owns the lock.
        """
        if self._state_store is None:
            return True
        from escrow_reconciler.jobs.locks import LockError

        try:
            owner = await self._state_store.owner(RESYNC_JOB_NAME)
            if owner is None:
                return True
            if owner != self._state_store.instance_id:
                logger.error("Resync lock taken over by %s", owner)
                return False
            await self._state_store.extend(RESYNC_JOB_NAME, self._resync_lock_ttl)
        except LockError as e:
            logger.warning("Could not refresh resync lock: %s", e)
        return True

    async def load_resync_progress(self) -> ResyncProgress | None:
        if self._state_store is None:
            return None
        state = await self._state_store.load_state(RESYNC_JOB_NAME)
        if not state:
            return None
        try:
            return ResyncProgress.from_dict(state)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Ignoring malformed resync progress %r: %s", state, e)
            return None

    async def resync_from_block(self, from_block: int, *, origin_block: int | None = None) -> ResyncResult:
        """Re-sync every batch from from_block up to the confirmed head.

        Progress is saved after each batch. A stop request ends the loop
        between batches, leaving the saved progress resumable.
        The resync lock, when this instance holds it, is extended after
        every batch.

        Args:
            from_block: Block to start from.
            origin_block: Original start when resuming an earlier resync.

        Raises:
            SyncError: If a batch exhausts its retries; progress is saved
                with the error first.
        """
        if self._resync_running:
            raise SyncError("A resync is already running in this process")

        self._resync_running = True
        self._stop_requested = False
        try:
            await self._get_or_create_checkpoint(from_block)
            await self._set_status(SyncStatus.RESYNCING)

            target = await self._validator.confirmed_head(self._confirmation_blocks)
            progress = ResyncProgress(
                from_block=origin_block if origin_block is not None else from_block,
                to_block=max(target, from_block),
                current_block=from_block,
            )
            logger.info("Resyncing blocks %d-%d", from_block, progress.to_block)
            await self._save_progress(progress)

            batches = 0
            while progress.current_block < progress.to_block:
                if self._stop_requested:
                    logger.info("Resync stopped at block %d", progress.current_block)
                    return ResyncResult(False, progress, batches, "stopped")

                try:
                    batch = await self.sync_from_block(
                        progress.current_block,
                        to_block=progress.to_block,
                        status_on_success=SyncStatus.RESYNCING,
                    )
                except SyncError as e:
                    progress.error = str(e)
                    await self._save_progress(progress)
                    raise

                if batch.status == BatchStatus.INVALID:
                    progress.error = "; ".join(batch.validation_errors[:5])
                    progress.errors += 1
                    await self._save_progress(progress)
                    return ResyncResult(False, progress, batches, f"validation failed at {batch.from_block}")
                if batch.status == BatchStatus.NOOP:
                    break

                batches += 1
                progress.current_block = batch.to_block
                progress.events_ingested += batch.events_ingested
                progress.errors += batch.errors
                progress.error = None
                await self._save_progress(progress)
                if not await self._refresh_resync_lock():
                    return ResyncResult(False, progress, batches, "resync lock lost")

                if progress.current_block < progress.to_block:
                    await asyncio.sleep(self._resync_pause)

            progress.current_block = max(progress.current_block, progress.to_block)
            await self._save_progress(progress)
            await self._set_status(SyncStatus.ACTIVE)
            logger.info(
                "Resync completed: %d batches, %d events ingested",
                batches,
                progress.events_ingested,
            )
            return ResyncResult(True, progress, batches, "completed")
        finally:
            self._resync_running = False

    async def resume_interrupted_resync(self) -> ResyncResult | None:
        """Resume a saved, unfinished resync from its current_block."""
        progress = await self.load_resync_progress()
        if progress is None or not progress.is_unfinished:
            return None
        logger.info(
            "Resuming interrupted resync at block %d (target %d, started at %d)",
            progress.current_block,
            progress.to_block,
            progress.from_block,
        )
        return await self.resync_from_block(progress.current_block, origin_block=progress.from_block)

    async def auto_resync_if_needed(self) -> ResyncResult | None:
        """Resync when there is no checkpoint, the sync errored, or it went stale.

        Without a checkpoint only the most recent bootstrap_blocks are
        backfilled. A paused sync is left alone.
        """
        checkpoint = await self._get_checkpoint()
        if checkpoint is None:
            start = await self._bootstrap_start()
            logger.info("No sync checkpoint; bootstrapping from block %d", start)
            return await self.resync_from_block(start)

        if checkpoint.status == SyncStatus.PAUSED:
            return None
        if checkpoint.status == SyncStatus.ERROR or self._is_stale(checkpoint):
            logger.info(
                "Auto-resync needed (status=%s, last_sync_at=%s)",
                checkpoint.status.value,
                checkpoint.last_sync_at,
            )
            return await self.resync_from_block(checkpoint.last_synced_block)
        return None

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def get_sync_status(self) -> SyncStatusReport:
        """Checkpoint state plus chain head distance and resync progress."""
        checkpoint = await self._get_checkpoint()
        latest: int | None = None
        try:
            latest = await self._validator.latest_block_number()
        except ChainClientError as e:
            logger.warning("Could not read chain head for status: %s", e)

        confirmed = max(0, latest - self._confirmation_blocks) if latest is not None else None
        report = SyncStatusReport(
            status=checkpoint.status if checkpoint else None,
            last_synced_block=checkpoint.last_synced_block if checkpoint else None,
            last_synced_block_hash=checkpoint.last_synced_block_hash if checkpoint else None,
            last_sync_at=checkpoint.last_sync_at if checkpoint else None,
            last_error=checkpoint.last_error if checkpoint else None,
            total_events_processed=checkpoint.total_events_processed if checkpoint else 0,
            total_errors=checkpoint.total_errors if checkpoint else 0,
            latest_block=latest,
            confirmed_head=confirmed,
            is_stale=self._is_stale(checkpoint) if checkpoint else True,
            live_ingestion=self._ingestor.is_live,
            resync_progress=await self.load_resync_progress(),
        )
        if checkpoint is not None and confirmed is not None:
            report.blocks_behind = max(0, confirmed - checkpoint.last_synced_block)
        return report
