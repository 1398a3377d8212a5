"""Reconciliation service: process wiring and operator control surface.

This module provides the ReconciliationService class that wires the chain
client, storage, sync components and scheduled jobs together, and exposes
the control operations used by the CRUD layer and operators. Control
operations return ControlResult structures instead of raising.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from redis.asyncio import Redis

from escrow_reconciler.audit.consistency import ConsistencyAuditor
from escrow_reconciler.chain.client import ChainClient, Web3ChainClient
from escrow_reconciler.config import Settings, get_settings
from escrow_reconciler.ingestor.events import EventIngestor
from escrow_reconciler.jobs.locks import LockStore
from escrow_reconciler.jobs.recovery import JobRecovery, resync_summary
from escrow_reconciler.jobs.scheduler import (
    CONSISTENCY_CHECK_JOB,
    DEEP_CONSISTENCY_CHECK_JOB,
    DEEP_RECONCILIATION_JOB,
    FULL_RESYNC_JOB,
    RECOVERY_CHECK_JOB,
    STATUS_CHECK_JOB,
    SYNC_JOB,
    JobRunner,
    RunOutcome,
    RunResult,
    ScheduledJob,
    Scheduler,
)
from escrow_reconciler.jobs.tracker import JobTracker
from escrow_reconciler.storage.database import DatabaseManager
from escrow_reconciler.storage.models import SyncStatus
from escrow_reconciler.storage.repos import CheckpointRepository
from escrow_reconciler.sync.orchestrator import ResyncResult, SyncOrchestrator
from escrow_reconciler.sync.reconciler import StateReconciler
from escrow_reconciler.sync.validator import BlockValidator

logger = logging.getLogger(__name__)


class ServiceState(str, Enum):
    """Service lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class ControlResult:
    """Result of a control-surface call."""

    success: bool
    message: str
    data: dict[str, Any] = field(default_factory=dict)


def _jsonable(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {k: _jsonable(v) for k, v in dataclasses.asdict(value).items()}
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class ReconciliationService:
    """Owns the long-lived reconciliation components of one process.

    Collaborators can be injected (tests, embedding in a larger app);
    anything not injected is built from settings on initialize().

    Example:
        ```python
        from escrow_reconciler.config import get_settings
        from escrow_reconciler.service import ReconciliationService

        service = ReconciliationService(get_settings())
        await service.run()
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        db: DatabaseManager | None = None,
        redis: Redis | None = None,
        chain: ChainClient | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._state = ServiceState.STOPPED
        self._started_at: datetime | None = None

        self._db = db
        self._redis = redis
        self._chain = chain
        self._owns_db = db is None
        self._owns_redis = redis is None
        self._owns_chain = chain is None

        self._locks: LockStore | None = None
        self._tracker: JobTracker | None = None
        self._runner: JobRunner | None = None
        self._ingestor: EventIngestor | None = None
        self._validator: BlockValidator | None = None
        self._reconciler: StateReconciler | None = None
        self._orchestrator: SyncOrchestrator | None = None
        self._auditor: ConsistencyAuditor | None = None
        self._recovery: JobRecovery | None = None
        self._scheduler: Scheduler | None = None

        self._stop_event: asyncio.Event | None = None

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def orchestrator(self) -> SyncOrchestrator:
        if self._orchestrator is None:
            raise RuntimeError("Chain components are not initialized; is CHAIN_ESCROW_CONTRACT_ADDRESS set?")
        return self._orchestrator

    @property
    def validator(self) -> BlockValidator:
        if self._validator is None:
            raise RuntimeError("Chain components are not initialized; is CHAIN_ESCROW_CONTRACT_ADDRESS set?")
        return self._validator

    @property
    def reconciler(self) -> StateReconciler:
        if self._reconciler is None:
            raise RuntimeError("Service is not initialized")
        return self._reconciler

    @property
    def runner(self) -> JobRunner:
        if self._runner is None:
            raise RuntimeError("Service is not initialized")
        return self._runner

    @property
    def scheduler(self) -> Scheduler | None:
        return self._scheduler

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Build every component not injected in the constructor.

        The chain-facing components (ingestor, validator, orchestrator,
        recovery and scheduler) are only built when a chain client is
        injected or an escrow contract address is configured, so database
        only commands such as reconcile and audit work without one.
        """
        if self._reconciler is not None:
            return
        settings = self._settings

        if self._redis is None:
            logger.debug("Initializing Redis connection...")
            self._redis = Redis.from_url(settings.redis.url)

        if self._db is None:
            logger.debug("Initializing database manager...")
            self._db = DatabaseManager.from_settings(settings.database)

        if self._chain is None and settings.chain.escrow_contract_address:
            logger.debug("Initializing chain client...")
            self._chain = Web3ChainClient(
                settings.chain.rpc_url,
                settings.chain.escrow_contract_address,
                fallback_rpc_url=settings.chain.fallback_rpc_url,
                max_requests_per_second=settings.chain.max_requests_per_second,
                max_retries=settings.chain.max_retries,
                retry_delay_seconds=settings.chain.retry_delay_seconds,
                poll_interval_seconds=settings.chain.poll_interval_seconds,
            )

        jobs = settings.jobs
        self._locks = LockStore(self._redis, instance_id=jobs.instance_id)
        self._tracker = JobTracker(self._redis, ttl_seconds=jobs.execution_ttl_seconds)
        self._runner = JobRunner(self._locks, self._tracker)
        self._reconciler = StateReconciler(self._db)
        self._auditor = ConsistencyAuditor(self._db, state_store=self._locks)

        if self._chain is not None:
            self._initialize_chain_components(self._chain)
        logger.info("Reconciliation service initialized (instance %s)", self._locks.instance_id)

    def _initialize_chain_components(self, chain: ChainClient) -> None:
        assert self._db is not None and self._locks is not None and self._runner is not None
        assert self._reconciler is not None
        sync = self._settings.sync
        jobs = self._settings.jobs

        self._ingestor = EventIngestor(self._db, chain)
        self._validator = BlockValidator(chain)
        self._orchestrator = SyncOrchestrator(
            self._db,
            self._ingestor,
            self._validator,
            self._reconciler,
            state_store=self._locks,
            batch_size=sync.batch_size,
            confirmation_blocks=sync.confirmation_blocks,
            bootstrap_blocks=sync.bootstrap_blocks,
            stale_after_seconds=sync.stale_after_seconds,
            max_batch_retries=sync.max_batch_retries,
            retry_delay_seconds=sync.retry_delay_seconds,
            resync_pause_seconds=sync.resync_pause_seconds,
            state_ttl_seconds=sync.state_ttl_seconds,
            resync_lock_ttl_seconds=jobs.full_resync_lock_ttl_seconds,
        )
        self._recovery = JobRecovery(
            self._locks,
            self._runner,
            self._orchestrator,
            resync_lock_ttl_seconds=jobs.full_resync_lock_ttl_seconds,
        )
        self._scheduler = Scheduler(
            self._runner,
            self.build_jobs(),
            heartbeat_ttl_seconds=jobs.heartbeat_ttl_seconds,
        )

    def build_jobs(self) -> list[ScheduledJob]:
        """The periodic jobs this process schedules."""
        jobs = self._settings.jobs
        return [
            ScheduledJob(SYNC_JOB, jobs.sync_interval_seconds, jobs.sync_lock_ttl_seconds, self._job_sync),
            ScheduledJob(
                STATUS_CHECK_JOB,
                jobs.status_check_interval_seconds,
                jobs.status_check_lock_ttl_seconds,
                self._job_status_check,
            ),
            ScheduledJob(
                DEEP_RECONCILIATION_JOB,
                jobs.deep_reconciliation_interval_seconds,
                jobs.deep_reconciliation_lock_ttl_seconds,
                self._job_deep_reconciliation,
            ),
            ScheduledJob(
                RECOVERY_CHECK_JOB,
                jobs.recovery_check_interval_seconds,
                jobs.recovery_check_lock_ttl_seconds,
                self._job_recovery_check,
            ),
            ScheduledJob(
                CONSISTENCY_CHECK_JOB,
                jobs.consistency_check_interval_seconds,
                jobs.consistency_check_lock_ttl_seconds,
                self._job_consistency_check,
            ),
            ScheduledJob(
                DEEP_CONSISTENCY_CHECK_JOB,
                jobs.deep_consistency_interval_seconds,
                jobs.deep_consistency_lock_ttl_seconds,
                self._job_deep_consistency_check,
            ),
        ]

    # ------------------------------------------------------------------
    # Job bodies
    # ------------------------------------------------------------------

    async def _job_sync(self) -> dict[str, Any]:
        result = await self.orchestrator.run_scheduled_sync()
        return _jsonable(result) if result is not None else {"skipped": True}

    async def _job_status_check(self) -> dict[str, Any]:
        status = await self.orchestrator.get_sync_status()
        data: dict[str, Any] = {
            "status": status.status.value if status.status else None,
            "last_synced_block": status.last_synced_block,
            "blocks_behind": status.blocks_behind,
            "is_stale": status.is_stale,
        }
        logger.info(
            "Sync status: %s, last block %s, %s blocks behind, %d events",
            data["status"],
            status.last_synced_block,
            status.blocks_behind,
            status.total_events_processed,
        )
        if status.status == SyncStatus.ERROR or status.is_stale:
            run = await self._run_resync_locked(self.orchestrator.auto_resync_if_needed)
            data["auto_resync"] = run.outcome.value
        return data

    async def _synced_block(self) -> int | None:
        """Last checkpointed block; events past it are not reconciled yet."""
        assert self._db is not None
        async with self._db.get_async_session() as session:
            checkpoint = await CheckpointRepository(session).get()
        return checkpoint.last_synced_block if checkpoint else None

    async def _job_deep_reconciliation(self) -> dict[str, Any]:
        return _jsonable(await self.reconciler.reconcile_all(up_to_block=await self._synced_block()))

    async def _job_recovery_check(self) -> dict[str, Any]:
        assert self._recovery is not None
        return (await self._recovery.recover()).as_dict()

    async def _job_consistency_check(self) -> dict[str, Any]:
        assert self._auditor is not None
        report = await self._auditor.run()
        return {"issues_found": len(report.discrepancies), "orders_checked": report.orders_checked}

    async def _job_deep_consistency_check(self) -> dict[str, Any]:
        assert self._auditor is not None
        report = await self._auditor.run(deep=True)
        return {"issues_found": len(report.discrepancies), "events_checked": report.events_checked}

    async def _run_resync_locked(self, func: Callable[[], Awaitable[ResyncResult | None]]) -> RunResult:
        async def body() -> dict[str, Any]:
            return resync_summary(await func())

        return await self.runner.run_once(FULL_RESYNC_JOB, self._settings.jobs.full_resync_lock_ttl_seconds, body)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Initialize, recover from any crash, start live ingestion and jobs.

        Raises:
            RuntimeError: If the service is already running.
        """
        if self._state != ServiceState.STOPPED:
            raise RuntimeError(f"Cannot start service in state {self._state}")

        self._state = ServiceState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting reconciliation service...")
        try:
            await self.initialize()
            orchestrator = self.orchestrator
            assert self._recovery is not None and self._locks is not None
            await self._locks.heartbeat(self._settings.jobs.heartbeat_ttl_seconds)
            await self._recovery.recover()

            status = await orchestrator.get_sync_status()
            if status.status != SyncStatus.PAUSED:
                assert self._ingestor is not None
                await self._ingestor.ingest_live()

            if self._settings.jobs.enabled and self._scheduler is not None:
                await self._scheduler.start()

            self._started_at = datetime.now(UTC)
            self._state = ServiceState.RUNNING
            logger.info("Reconciliation service started")
        except Exception as e:
            self._state = ServiceState.ERROR
            logger.error("Failed to start reconciliation service: %s", e)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop jobs and live ingestion, then release resources.

        This is a process shutdown; it does not pause the shared checkpoint.
        """
        if self._state == ServiceState.STOPPED:
            return
        self._state = ServiceState.STOPPING
        logger.info("Stopping reconciliation service...")

        if self._stop_event:
            self._stop_event.set()
        if self._scheduler is not None:
            await self._scheduler.stop()
        if self._ingestor is not None:
            await self._ingestor.stop()
        await self._cleanup()

        self._state = ServiceState.STOPPED
        logger.info("Reconciliation service stopped")

    async def close(self) -> None:
        """Release resources of a service that was only initialized."""
        await self._cleanup()

    async def _cleanup(self) -> None:
        aclose = getattr(self._chain, "aclose", None)
        if self._owns_chain and callable(aclose):
            await aclose()
        if self._owns_db and self._db is not None:
            await self._db.dispose_async()
        if self._owns_redis and self._redis is not None:
            await self._redis.aclose()
        logger.debug("Resources cleaned up")

    async def run(self) -> None:
        """Start the service and block until stop() or cancellation."""
        await self.start()
        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    def request_stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    async def __aenter__(self) -> ReconciliationService:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    async def _control(self, name: str, op: Callable[[], Awaitable[ControlResult]]) -> ControlResult:
        try:
            await self.initialize()
            return await op()
        except Exception as e:
            logger.exception("Control operation %s failed: %s", name, e)
            return ControlResult(False, f"{name} failed: {e}")

    @staticmethod
    def _from_run(run: RunResult, ok_message: str) -> ControlResult:
        if run.outcome == RunOutcome.SKIPPED:
            return ControlResult(False, f"{run.job_name} is already running elsewhere")
        if run.outcome == RunOutcome.FAILED:
            return ControlResult(False, run.error or f"{run.job_name} failed")
        return ControlResult(True, ok_message, run.result)

    async def get_sync_status(self) -> ControlResult:
        async def op() -> ControlResult:
            return ControlResult(True, "ok", _jsonable(await self.orchestrator.get_sync_status()))

        return await self._control("get_sync_status", op)

    async def start_sync(self) -> ControlResult:
        async def op() -> ControlResult:
            async def body() -> dict[str, Any]:
                return _jsonable(await self.orchestrator.start_sync())

            run = await self.runner.run_once(SYNC_JOB, self._settings.jobs.sync_lock_ttl_seconds, body)
            return self._from_run(run, "sync started")

        return await self._control("start_sync", op)

    async def stop_sync(self) -> ControlResult:
        async def op() -> ControlResult:
            await self.orchestrator.stop_sync()
            return ControlResult(True, "sync paused")

        return await self._control("stop_sync", op)

    async def resync_from_block(self, block_number: int) -> ControlResult:
        async def op() -> ControlResult:
            if block_number < 0:
                return ControlResult(False, "block number must be >= 0")
            run = await self._run_resync_locked(lambda: self.orchestrator.resync_from_block(block_number))
            result = self._from_run(run, f"resync from block {block_number} finished")
            if result.success and not run.result.get("completed", False):
                result.success = False
                result.message = f"resync from block {block_number} did not complete: {run.result.get('message')}"
            return result

        return await self._control("resync_from_block", op)

    async def auto_resync(self) -> ControlResult:
        async def op() -> ControlResult:
            run = await self._run_resync_locked(self.orchestrator.auto_resync_if_needed)
            return self._from_run(run, "auto-resync check finished")

        return await self._control("auto_resync", op)

    async def reconcile_all(self) -> ControlResult:
        async def op() -> ControlResult:
            summary = await self.reconciler.reconcile_all(up_to_block=await self._synced_block())
            return ControlResult(summary.errors == 0, "reconciliation finished", _jsonable(summary))

        return await self._control("reconcile_all", op)

    async def reconcile_escrow(self, escrow_ref: str) -> ControlResult:
        async def op() -> ControlResult:
            result = await self.reconciler.reconcile_escrow(escrow_ref, up_to_block=await self._synced_block())
            return ControlResult(result.reconciled, f"escrow {result.escrow_ref} reconciled", _jsonable(result))

        return await self._control("reconcile_escrow", op)

    async def validate_block(self, block_number: int) -> ControlResult:
        async def op() -> ControlResult:
            result = await self.validator.validate_block(block_number)
            message = "valid" if result.is_valid else "; ".join(result.errors)
            return ControlResult(result.is_valid, message, _jsonable(result))

        return await self._control("validate_block", op)

    async def get_latest_block(self) -> ControlResult:
        async def op() -> ControlResult:
            block = await self.validator.latest_block()
            if block is None:
                return ControlResult(False, "latest block not available")
            return ControlResult(True, "ok", _jsonable(block))

        return await self._control("get_latest_block", op)

    async def run_consistency_check(self, *, deep: bool = False) -> ControlResult:
        async def op() -> ControlResult:
            assert self._auditor is not None
            report = await self._auditor.run(deep=deep)
            return ControlResult(
                report.is_consistent,
                f"{len(report.discrepancies)} issue(s) found",
                report.as_dict(),
            )

        return await self._control("run_consistency_check", op)
