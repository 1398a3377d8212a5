"""Job layer - distributed locks, execution tracking, scheduling and recovery."""

from escrow_reconciler.jobs.locks import LockError, LockStore
from escrow_reconciler.jobs.recovery import JobRecovery, RecoveryReport
from escrow_reconciler.jobs.scheduler import (
    CRITICAL_JOBS,
    JobRunner,
    RunOutcome,
    RunResult,
    ScheduledJob,
    Scheduler,
)
from escrow_reconciler.jobs.tracker import ExecutionStatus, JobExecution, JobTracker

__all__ = [
    "CRITICAL_JOBS",
    "ExecutionStatus",
    "JobExecution",
    "JobRecovery",
    "JobRunner",
    "JobTracker",
    "LockError",
    "LockStore",
    "RecoveryReport",
    "RunOutcome",
    "RunResult",
    "ScheduledJob",
    "Scheduler",
]
