"""Pytest configuration and fixtures."""

from __future__ import annotations

import fnmatch
import hashlib
from collections.abc import AsyncIterator
from typing import Any

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from escrow_reconciler.chain.client import LogHandler, RPCError
from escrow_reconciler.chain.models import Block, ChainLog
from escrow_reconciler.storage.database import DatabaseManager

ESCROW_A = "0x" + "a" * 40
ESCROW_B = "0x" + "b" * 40
CONTRACT = "0x" + "c" * 40
ZERO_HASH = "0x" + "0" * 64


def block_hash(number: int, fork: str = "") -> str:
    """Deterministic block hash; a different fork gives a different hash."""
    return "0x" + hashlib.sha256(f"{fork}block-{number}".encode()).hexdigest()


def make_block(number: int, *, fork: str = "", parent_hash: str | None = None) -> Block:
    return Block(
        number=number,
        hash=block_hash(number, fork),
        parent_hash=parent_hash if parent_hash is not None else (block_hash(number - 1) if number > 0 else ZERO_HASH),
        timestamp=1_700_000_000 + number * 2,
        transaction_count=1,
    )


def make_log(event_name: str, escrow_ref: str | None, block_number: int, log_index: int = 0, **args: Any) -> ChainLog:
    tx_hash = "0x" + hashlib.sha256(f"{event_name}-{escrow_ref}-{block_number}-{log_index}".encode()).hexdigest()
    payload = dict(args)
    if escrow_ref is not None:
        payload["escrowId"] = escrow_ref
    return ChainLog(
        event_name=event_name,
        contract_address=CONTRACT,
        tx_hash=tx_hash,
        log_index=log_index,
        block_number=block_number,
        block_hash=block_hash(block_number),
        args=payload,
    )


class FakeChain:
    """In-memory ChainClient with a linear chain of blocks up to head."""

    def __init__(self, head: int = 1_000) -> None:
        self.head = head
        self.logs: list[ChainLog] = []
        self.overrides: dict[int, Block] = {}
        self.missing: set[int] = set()
        self.failing_blocks: set[int] = set()
        self.fail_logs = False
        self.handlers: dict[str, list[LogHandler]] = {}
        self.log_queries = 0

    async def get_block(self, block_number: int) -> Block | None:
        if block_number in self.failing_blocks:
            raise RPCError(f"RPC call get_block failed for {block_number}")
        if block_number > self.head or block_number in self.missing:
            return None
        return self.overrides.get(block_number) or make_block(block_number)

    async def get_latest_block_number(self) -> int:
        return self.head

    async def get_latest_block(self) -> Block | None:
        return await self.get_block(self.head)

    async def query_logs(self, event_name: str, from_block: int, to_block: int) -> list[ChainLog]:
        self.log_queries += 1
        if self.fail_logs:
            raise RPCError("RPC call get_logs failed")
        return [
            log
            for log in self.logs
            if log.event_name == event_name and from_block <= log.block_number <= to_block
        ]

    async def subscribe(self, event_name: str, handler: LogHandler) -> None:
        self.handlers.setdefault(event_name, []).append(handler)

    async def unsubscribe_all(self) -> None:
        self.handlers.clear()

    async def emit(self, log: ChainLog) -> None:
        """Deliver a log to live subscribers."""
        for handler in self.handlers.get(log.event_name, []):
            await handler(log)


class FakeRedis:
    """The subset of redis.asyncio.Redis used by the job layer.

    Values are kept as str; TTLs are recorded but never expire on their own.
    """

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("redis unavailable")

    async def set(self, key: str, value: Any, *, nx: bool = False, ex: int | None = None) -> bool | None:
        self._check()
        if nx and key in self.data:
            return None
        self.data[key] = str(value)
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def get(self, key: str) -> str | None:
        self._check()
        return self.data.get(key)

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def exists(self, *keys: str) -> int:
        self._check()
        return sum(1 for key in keys if key in self.data)

    async def expire(self, key: str, seconds: int) -> bool:
        self._check()
        if key not in self.data:
            return False
        self.ttls[key] = seconds
        return True

    async def incr(self, key: str) -> int:
        self._check()
        value = int(self.data.get(key, "0")) + 1
        self.data[key] = str(value)
        return value

    async def scan_iter(self, match: str | None = None) -> AsyncIterator[str]:
        self._check()
        for key in list(self.data):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def aclose(self) -> None:
        return None


@pytest.fixture
def fake_chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
async def db(tmp_path) -> AsyncIterator[DatabaseManager]:
    """File-backed SQLite database with the schema created."""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'escrow.db'}")
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()
