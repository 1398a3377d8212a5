"""Startup and periodic recovery of jobs after a crash."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from escrow_reconciler.jobs.locks import LockError, LockStore
from escrow_reconciler.jobs.scheduler import CRITICAL_JOBS, FULL_RESYNC_JOB, JobRunner, RunOutcome, RunResult
from escrow_reconciler.sync.orchestrator import ResyncResult, SyncOrchestrator

logger = logging.getLogger(__name__)

DEFAULT_RESYNC_LOCK_TTL_SECONDS = 7200


@dataclass
class RecoveryReport:
    """What a recovery pass did."""

    released_locks: list[str] = field(default_factory=list)
    resumed_resync: bool = False
    auto_resync: bool = False
    resync_run: RunResult | None = None
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "released_locks": list(self.released_locks),
            "resumed_resync": self.resumed_resync,
            "auto_resync": self.auto_resync,
            "resync_outcome": self.resync_run.outcome.value if self.resync_run else None,
            "errors": list(self.errors),
        }


def resync_summary(result: ResyncResult | None) -> dict[str, Any]:
    if result is None:
        return {"resynced": False}
    return {
        "resynced": True,
        "completed": result.completed,
        "message": result.message,
        **result.progress.to_dict(),
    }


class JobRecovery:
    """Releases orphaned job locks and resumes an interrupted resync.

    A lock is orphaned when its owner instance no longer has a heartbeat.
    """

    def __init__(
        self,
        locks: LockStore,
        runner: JobRunner,
        orchestrator: SyncOrchestrator,
        *,
        critical_jobs: tuple[str, ...] = CRITICAL_JOBS,
        resync_lock_ttl_seconds: int = DEFAULT_RESYNC_LOCK_TTL_SECONDS,
    ) -> None:
        self._locks = locks
        self._runner = runner
        self._orchestrator = orchestrator
        self._critical_jobs = critical_jobs
        self._resync_lock_ttl = resync_lock_ttl_seconds

    async def release_orphaned_locks(self) -> list[str]:
        released: list[str] = []
        for name in self._critical_jobs:
            owner = await self._locks.owner(name)
            if owner is None or owner == self._locks.instance_id:
                continue
            if await self._locks.is_instance_alive(owner):
                continue
            if await self._locks.release(name, force=True):
                logger.warning("Released orphaned lock %s held by dead instance %s", name, owner)
                released.append(name)
        return released

    async def recover(self) -> RecoveryReport:
        """Run one recovery pass."""
        report = RecoveryReport()
        try:
            report.released_locks = await self.release_orphaned_locks()
        except LockError as e:
            logger.error("Orphan lock check failed: %s", e)
            report.errors.append(str(e))

        if self._orchestrator.is_resyncing:
            return report

        progress = await self._orchestrator.load_resync_progress()
        if progress is not None and progress.is_unfinished:
            report.resumed_resync = True

            async def resume() -> dict[str, Any]:
                return resync_summary(await self._orchestrator.resume_interrupted_resync())

            report.resync_run = await self._runner.run_once(FULL_RESYNC_JOB, self._resync_lock_ttl, resume)
        else:

            async def auto() -> dict[str, Any]:
                return resync_summary(await self._orchestrator.auto_resync_if_needed())

            report.resync_run = await self._runner.run_once(FULL_RESYNC_JOB, self._resync_lock_ttl, auto)
            report.auto_resync = bool(
                report.resync_run.outcome == RunOutcome.COMPLETED and report.resync_run.result.get("resynced")
            )

        if report.resync_run.outcome == RunOutcome.FAILED and report.resync_run.error:
            report.errors.append(report.resync_run.error)

        logger.info("Recovery pass: %s", report.as_dict())
        return report
