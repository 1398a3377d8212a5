"""Job execution records for observability and crash-recovery hints."""

from __future__ import annotations

import json
import logging
import random
import time
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

EXECUTION_KEY_PREFIX = "job:execution:"
DEFAULT_EXECUTION_TTL_SECONDS = 86400


class ExecutionStatus(str, Enum):
    """Lifecycle of one job execution."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class JobExecution:
    """A single run of a scheduled job."""

    job_name: str
    execution_id: str
    started_at: str
    status: ExecutionStatus = ExecutionStatus.RUNNING
    completed_at: str | None = None
    error: str | None = None
    result: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        data = asdict(self)
        data["status"] = self.status.value
        return json.dumps(data, default=str)

    @classmethod
    def from_json(cls, raw: str | bytes) -> JobExecution:
        data = json.loads(raw)
        return cls(
            job_name=data["job_name"],
            execution_id=data["execution_id"],
            started_at=data["started_at"],
            status=ExecutionStatus(data.get("status", ExecutionStatus.RUNNING.value)),
            completed_at=data.get("completed_at"),
            error=data.get("error"),
            result=data.get("result") or {},
        )


def new_execution_id() -> str:
    return f"{int(time.time() * 1000)}-{random.randrange(16**8):08x}"


class JobTracker:
    """Stores JobExecution records under job:execution:<name>:<id> with a TTL.

    Tracking is best effort: a Redis failure is logged and never fails the
    job being tracked.
    """

    def __init__(self, redis: Redis, *, ttl_seconds: int = DEFAULT_EXECUTION_TTL_SECONDS) -> None:
        self._redis = redis
        self._ttl = ttl_seconds

    @staticmethod
    def execution_key(job_name: str, execution_id: str) -> str:
        return f"{EXECUTION_KEY_PREFIX}{job_name}:{execution_id}"

    async def _save(self, execution: JobExecution) -> None:
        try:
            await self._redis.set(
                self.execution_key(execution.job_name, execution.execution_id),
                execution.to_json(),
                ex=self._ttl,
            )
        except RedisError as e:
            logger.warning("Failed to record execution of %s: %s", execution.job_name, e)

    async def start(self, job_name: str) -> JobExecution:
        execution = JobExecution(
            job_name=job_name,
            execution_id=new_execution_id(),
            started_at=datetime.now(UTC).isoformat(),
        )
        await self._save(execution)
        return execution

    async def complete(self, execution: JobExecution, result: dict[str, Any] | None = None) -> None:
        execution.status = ExecutionStatus.COMPLETED
        execution.completed_at = datetime.now(UTC).isoformat()
        execution.result = result or {}
        await self._save(execution)

    async def fail(self, execution: JobExecution, error: str) -> None:
        execution.status = ExecutionStatus.FAILED
        execution.completed_at = datetime.now(UTC).isoformat()
        execution.error = error
        await self._save(execution)

    async def list_executions(self, job_name: str) -> list[JobExecution]:
        """All retained executions of a job, newest first."""
        executions: list[JobExecution] = []
        try:
            async for key in self._redis.scan_iter(match=f"{EXECUTION_KEY_PREFIX}{job_name}:*"):
                raw = await self._redis.get(key)
                if raw is None:
                    continue
                try:
                    executions.append(JobExecution.from_json(raw))
                except (ValueError, KeyError) as e:
                    logger.warning("Skipping unreadable execution record %s: %s", key, e)
        except RedisError as e:
            logger.warning("Failed to list executions of %s: %s", job_name, e)
        executions.sort(key=lambda ex: ex.started_at, reverse=True)
        return executions

    async def last_execution(self, job_name: str) -> JobExecution | None:
        executions = await self.list_executions(job_name)
        return executions[0] if executions else None
