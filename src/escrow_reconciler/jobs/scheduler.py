"""Lock-protected periodic job scheduling.

Every scheduled job runs in its own asyncio loop. A run first takes the
job's distributed lock; if another instance holds it the tick is skipped.
The outcome is recorded before the lock is released.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from escrow_reconciler.jobs.locks import DEFAULT_HEARTBEAT_TTL_SECONDS, LockError, LockStore
from escrow_reconciler.jobs.tracker import JobTracker
from escrow_reconciler.sync.orchestrator import RESYNC_JOB_NAME

logger = logging.getLogger(__name__)

SYNC_JOB = "blockchain-sync"
STATUS_CHECK_JOB = "blockchain-sync-status-check"
DEEP_RECONCILIATION_JOB = "blockchain-deep-reconciliation"
RECOVERY_CHECK_JOB = "job-recovery-check"
CONSISTENCY_CHECK_JOB = "consistency-check"
DEEP_CONSISTENCY_CHECK_JOB = "deep-consistency-check"
FULL_RESYNC_JOB = RESYNC_JOB_NAME

# Jobs whose locks are checked for orphans at startup
CRITICAL_JOBS: tuple[str, ...] = (
    SYNC_JOB,
    DEEP_RECONCILIATION_JOB,
    FULL_RESYNC_JOB,
    CONSISTENCY_CHECK_JOB,
)

JobFunc = Callable[[], Awaitable[dict[str, Any] | None]]


class RunOutcome(str, Enum):
    """Outcome of one scheduled tick."""

    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ScheduledJob:
    """A named job run every interval_seconds under a lock."""

    name: str
    interval_seconds: float
    lock_ttl_seconds: int
    func: JobFunc
    run_on_start: bool = False


@dataclass
class RunResult:
    """Outcome of JobRunner.run_once."""

    job_name: str
    outcome: RunOutcome
    execution_id: str | None = None
    result: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


class JobRunner:
    """Runs a job function under its distributed lock."""

    def __init__(self, locks: LockStore, tracker: JobTracker | None = None) -> None:
        self._locks = locks
        self._tracker = tracker

    @property
    def locks(self) -> LockStore:
        return self._locks

    async def run_once(self, name: str, lock_ttl: int, func: JobFunc) -> RunResult:
        """Run func once if the lock for name can be acquired."""
        if not await self._locks.acquire(name, lock_ttl):
            logger.info("Skipping %s: lock held elsewhere", name)
            return RunResult(name, RunOutcome.SKIPPED)

        execution = await self._tracker.start(name) if self._tracker else None
        execution_id = execution.execution_id if execution else None
        try:
            try:
                result = await func() or {}
            except Exception as e:
                logger.exception("Job %s failed: %s", name, e)
                if execution is not None and self._tracker is not None:
                    await self._tracker.fail(execution, str(e))
                return RunResult(name, RunOutcome.FAILED, execution_id, error=str(e))

            if execution is not None and self._tracker is not None:
                await self._tracker.complete(execution, result)
            logger.debug("Job %s completed: %s", name, result)
            return RunResult(name, RunOutcome.COMPLETED, execution_id, result)
        finally:
            try:
                await self._locks.release(name)
            except LockError as e:
                # The TTL frees it eventually.
                logger.warning("Could not release lock %s: %s", name, e)


class Scheduler:
    """Timer loops for a fixed set of scheduled jobs plus an instance heartbeat.

    Example:
        ```python
        scheduler = Scheduler(runner, jobs)
        await scheduler.start()
        ...
        await scheduler.stop()
        ```
    """

    def __init__(
        self,
        runner: JobRunner,
        jobs: Sequence[ScheduledJob],
        *,
        heartbeat_ttl_seconds: int = DEFAULT_HEARTBEAT_TTL_SECONDS,
    ) -> None:
        self._runner = runner
        self._jobs = list(jobs)
        self._heartbeat_ttl = heartbeat_ttl_seconds
        self._stop_event: asyncio.Event | None = None
        self._tasks: list[asyncio.Task[None]] = []
        self._last_results: dict[str, RunResult] = {}

    @property
    def jobs(self) -> list[ScheduledJob]:
        return list(self._jobs)

    @property
    def is_running(self) -> bool:
        return bool(self._tasks)

    def last_result(self, name: str) -> RunResult | None:
        return self._last_results.get(name)

    async def start(self) -> None:
        if self._tasks:
            return
        self._stop_event = asyncio.Event()
        await self._runner.locks.heartbeat(self._heartbeat_ttl)
        self._tasks.append(asyncio.create_task(self._heartbeat_loop(), name="heartbeat"))
        for job in self._jobs:
            self._tasks.append(asyncio.create_task(self._job_loop(job), name=f"job:{job.name}"))
        logger.info("Scheduler started with %d jobs", len(self._jobs))

    async def stop(self) -> None:
        """Stop scheduling; runs already in progress finish first."""
        if not self._tasks:
            return
        if self._stop_event is not None:
            self._stop_event.set()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Scheduler stopped")

    async def run_job(self, job: ScheduledJob) -> RunResult:
        result = await self._runner.run_once(job.name, job.lock_ttl_seconds, job.func)
        self._last_results[job.name] = result
        return result

    async def _wait(self, timeout: float) -> bool:
        """Sleep up to timeout; True if stop was requested meanwhile."""
        assert self._stop_event is not None
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
        return self._stop_event.is_set()

    async def _job_loop(self, job: ScheduledJob) -> None:
        if not job.run_on_start and await self._wait(job.interval_seconds):
            return
        while True:
            await self.run_job(job)
            if await self._wait(job.interval_seconds):
                return

    async def _heartbeat_loop(self) -> None:
        interval = max(1.0, self._heartbeat_ttl / 3)
        while not await self._wait(interval):
            await self._runner.locks.heartbeat(self._heartbeat_ttl)
