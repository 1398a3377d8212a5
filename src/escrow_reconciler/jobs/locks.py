"""Distributed locks and job checkpoints on Redis.

Locks are plain keys set with NX and a TTL; the value is the owning
instance id. Each process also keeps an instance heartbeat key alive so
a lock whose owner has died can be told apart from a live one.
"""

from __future__ import annotations

import json
import logging
import os
import socket
import uuid
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "lock:"
STATE_KEY_PREFIX = "job:state:"
INSTANCE_KEY_PREFIX = "instance:"
COUNTER_KEY_PREFIX = "counter:"

DEFAULT_HEARTBEAT_TTL_SECONDS = 90


class LockError(Exception):
    """Raised when the lock backend cannot answer."""


def _decode(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode()
    return str(value)


def new_instance_id() -> str:
    """Identifier for this process: host, pid and a random suffix."""
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


class LockStore:
    """TTL-bounded locks, instance heartbeats and job state on Redis.

    Example:
        ```python
        redis = Redis.from_url("redis://localhost:6379")
        locks = LockStore(redis)
        if await locks.acquire("blockchain-sync", ttl=300):
            try:
                ...
            finally:
                await locks.release("blockchain-sync")
        ```
    """

    def __init__(self, redis: Redis, *, instance_id: str | None = None) -> None:
        self._redis = redis
        self._instance_id = instance_id or new_instance_id()

    @property
    def instance_id(self) -> str:
        return self._instance_id

    @staticmethod
    def lock_key(name: str) -> str:
        return f"{LOCK_KEY_PREFIX}{name}"

    @staticmethod
    def state_key(name: str) -> str:
        return f"{STATE_KEY_PREFIX}{name}"

    @staticmethod
    def instance_key(instance_id: str) -> str:
        return f"{INSTANCE_KEY_PREFIX}{instance_id}"

    async def acquire(self, name: str, ttl: int) -> bool:
        """Atomically take the lock if nobody holds it.

        A backend failure counts as not acquired.

        Returns:
            True only if this instance now holds the lock.
        """
        try:
            was_set = await self._redis.set(self.lock_key(name), self._instance_id, nx=True, ex=ttl)
        except RedisError as e:
            logger.error("Lock backend error acquiring %s: %s", name, e)
            return False
        if was_set:
            logger.debug("Acquired lock %s (ttl=%ds)", name, ttl)
        return bool(was_set)

    async def owner(self, name: str) -> str | None:
        try:
            return _decode(await self._redis.get(self.lock_key(name)))
        except RedisError as e:
            raise LockError(f"Cannot read lock {name}: {e}") from e

    async def is_held(self, name: str) -> bool:
        try:
            return bool(await self._redis.exists(self.lock_key(name)))
        except RedisError as e:
            raise LockError(f"Cannot read lock {name}: {e}") from e

    async def release(self, name: str, *, force: bool = False) -> bool:
        """Release the lock.

        Without force only the owning instance may release it.

        Returns:
            True if a lock key was deleted.
        """
        try:
            if not force:
                current = _decode(await self._redis.get(self.lock_key(name)))
                if current != self._instance_id:
                    if current is not None:
                        logger.warning("Not releasing lock %s held by %s", name, current)
                    return False
            deleted = await self._redis.delete(self.lock_key(name))
        except RedisError as e:
            raise LockError(f"Cannot release lock {name}: {e}") from e
        return bool(deleted)

    async def extend(self, name: str, ttl: int) -> bool:
        """Reset the TTL of a lock this instance holds."""
        try:
            if _decode(await self._redis.get(self.lock_key(name))) != self._instance_id:
                return False
            return bool(await self._redis.expire(self.lock_key(name), ttl))
        except RedisError as e:
            raise LockError(f"Cannot extend lock {name}: {e}") from e

    async def heartbeat(self, ttl: int = DEFAULT_HEARTBEAT_TTL_SECONDS) -> None:
        """Mark this instance as alive for ttl seconds."""
        try:
            await self._redis.set(self.instance_key(self._instance_id), "alive", ex=ttl)
        except RedisError as e:
            logger.warning("Heartbeat failed for %s: %s", self._instance_id, e)

    async def is_instance_alive(self, instance_id: str) -> bool:
        try:
            return bool(await self._redis.exists(self.instance_key(instance_id)))
        except RedisError as e:
            raise LockError(f"Cannot read heartbeat of {instance_id}: {e}") from e

    async def save_state(self, name: str, state: dict[str, Any], *, ttl: int) -> None:
        """Store job progress as JSON under job:state:<name>."""
        try:
            await self._redis.set(self.state_key(name), json.dumps(state), ex=ttl)
        except RedisError as e:
            logger.warning("Failed to save state for %s: %s", name, e)

    async def load_state(self, name: str) -> dict[str, Any] | None:
        try:
            raw = _decode(await self._redis.get(self.state_key(name)))
        except RedisError as e:
            logger.warning("Failed to load state for %s: %s", name, e)
            return None
        if raw is None:
            return None
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding unreadable state for %s", name)
            return None
        return value if isinstance(value, dict) else None

    async def clear_state(self, name: str) -> None:
        try:
            await self._redis.delete(self.state_key(name))
        except RedisError as e:
            logger.warning("Failed to clear state for %s: %s", name, e)

    async def incr(self, name: str, *, ttl: int | None = None) -> int:
        """Increment a named counter, optionally refreshing its TTL."""
        key = f"{COUNTER_KEY_PREFIX}{name}"
        try:
            value = int(await self._redis.incr(key))
            if ttl is not None:
                await self._redis.expire(key, ttl)
        except RedisError as e:
            raise LockError(f"Cannot increment {name}: {e}") from e
        return value
