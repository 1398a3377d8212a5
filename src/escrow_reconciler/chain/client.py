"""Read-only chain client for escrow contract events.

This module provides the ChainClient interface consumed by the sync
components and a web3.py implementation with:
- Rate limiting to respect provider limits
- Retry logic with exponential backoff
- Failover to secondary RPC URL
- Live event delivery by polling new blocks for contract logs

No method here signs or sends a transaction.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

from web3 import AsyncWeb3, Web3
from web3.exceptions import BlockNotFound, Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

from escrow_reconciler.chain.models import ESCROW_EVENTS_ABI, ESCROW_EVENT_NAMES, Block, ChainLog

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_POLL_INTERVAL_SECONDS = 5.0

# Integers wider than this are stored as strings in event payloads
_MAX_SAFE_JSON_INT = 2**53

LogHandler = Callable[[ChainLog], Awaitable[None]]


class ChainClientError(Exception):
    """Base exception for chain client errors."""


class RPCError(ChainClientError):
    """Raised when an RPC call fails after all retries and failover."""


class ChainClient(Protocol):
    """Read-only ledger access used by ingestion and validation."""

    async def get_block(self, block_number: int) -> Block | None: ...

    async def get_latest_block_number(self) -> int: ...

    async def get_latest_block(self) -> Block | None: ...

    async def query_logs(self, event_name: str, from_block: int, to_block: int) -> list[ChainLog]: ...

    async def subscribe(self, event_name: str, handler: LogHandler) -> None: ...

    async def unsubscribe_all(self) -> None: ...


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


def _to_hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return Web3.to_hex(bytes(value))
    return str(value)


def _normalize_arg(value: Any) -> Any:
    """Make a decoded event argument JSON-safe."""
    if isinstance(value, (bytes, bytearray)):
        return Web3.to_hex(bytes(value))
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value if abs(value) < _MAX_SAFE_JSON_INT else str(value)
    if isinstance(value, str) and value.startswith("0x"):
        return value.lower()
    return value


def event_topic(event_name: str) -> str:
    """Return the topic0 hash of an escrow event."""
    for item in ESCROW_EVENTS_ABI:
        if item["name"] == event_name:
            arg_types = ",".join(i["type"] for i in item["inputs"])
            return Web3.to_hex(Web3.keccak(text=f"{event_name}({arg_types})"))
    raise ValueError(f"Unknown escrow event: {event_name}")


def block_from_rpc(raw: Any) -> Block:
    """Build a Block from a web3 block AttributeDict."""
    txs = raw.get("transactions") or []
    return Block(
        number=int(raw["number"]),
        hash=_to_hex(raw.get("hash") or ""),
        parent_hash=_to_hex(raw.get("parentHash") or ""),
        timestamp=int(raw.get("timestamp") or 0),
        transaction_count=len(txs),
    )


class Web3ChainClient:
    """web3.py backed ChainClient bound to one escrow contract.

    Example:
        ```python
        client = Web3ChainClient(
            rpc_url="https://rpc.example.org",
            contract_address="0x...",
        )
        head = await client.get_latest_block_number()
        logs = await client.query_logs("FundsLocked", head - 100, head)
        await client.aclose()
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        *,
        fallback_rpc_url: str | None = None,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        """Initialize the chain client.

        Args:
            rpc_url: Primary RPC endpoint URL.
            contract_address: Escrow contract whose events are read.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            max_requests_per_second: Rate limit for RPC calls.
            max_retries: Maximum retry attempts per endpoint.
            retry_delay_seconds: Initial delay between retries.
            poll_interval_seconds: Interval between live log polls.
        """
        self._rpc_url = rpc_url
        self._fallback_rpc_url = fallback_rpc_url
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds
        self._poll_interval = poll_interval_seconds

        self._w3 = self._new_web3_client(rpc_url)
        self._w3_fallback: AsyncWeb3[AsyncHTTPProvider] | None = None
        if fallback_rpc_url:
            self._w3_fallback = self._new_web3_client(fallback_rpc_url)

        self._contract_address = AsyncWeb3.to_checksum_address(contract_address)
        self._contract = self._w3.eth.contract(address=self._contract_address, abi=ESCROW_EVENTS_ABI)

        self._rate_limiter = RateLimiter.create(max_requests_per_second)

        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = 60.0

        self._handlers: dict[str, list[LogHandler]] = {}
        self._poll_task: asyncio.Task[None] | None = None
        self._next_poll_block: int | None = None

    def _new_web3_client(self, rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
        client = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        try:
            client.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        except ValueError as e:
            logger.warning("Failed to inject PoA middleware (rpc=%s): %s", rpc_url, e)
        return client

    def _should_try_primary(self) -> bool:
        if self._primary_healthy:
            return True
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    async def _call(self, w3: AsyncWeb3[AsyncHTTPProvider], func_name: str, *args: Any) -> Any:
        attr = getattr(w3.eth, func_name)
        # Properties such as block_number resolve to an awaitable directly
        if callable(attr):
            return await attr(*args)
        return await attr

    async def _execute_with_retry(self, func_name: str, *args: Any) -> Any:
        """Execute an RPC call with retry and failover logic.

        Args:
            func_name: Name of the web3.eth method or property.
            *args: Positional arguments for the method.

        Returns:
            Result from the RPC call.

        Raises:
            BlockNotFound: Propagated unchanged, it is an answer not a failure.
            RPCError: If all retries and failover fail.
        """
        await self._rate_limiter.acquire()

        last_error: Exception | None = None
        endpoints: list[tuple[str, AsyncWeb3[AsyncHTTPProvider]]] = []
        if self._should_try_primary():
            endpoints.append(("Primary", self._w3))
        if self._w3_fallback is not None:
            endpoints.append(("Fallback", self._w3_fallback))

        for label, w3 in endpoints:
            delay = self._retry_delay
            for attempt in range(self._max_retries):
                try:
                    result = await self._call(w3, func_name, *args)
                    if w3 is self._w3:
                        self._primary_healthy = True
                    else:
                        logger.info("Fallback RPC succeeded for %s", func_name)
                    return result
                except BlockNotFound:
                    raise
                except (Web3Exception, OSError, asyncio.TimeoutError) as e:
                    last_error = e
                    logger.warning(
                        "%s RPC %s failed (attempt %d/%d): %s",
                        label,
                        func_name,
                        attempt + 1,
                        self._max_retries,
                        e,
                    )
                    if attempt < self._max_retries - 1:
                        await asyncio.sleep(delay)
                        delay *= 2
            if w3 is self._w3:
                self._primary_healthy = False
                self._last_primary_check = time.monotonic()

        raise RPCError(f"RPC call {func_name} failed after all retries: {last_error}")

    async def get_block(self, block_number: int) -> Block | None:
        """Get a block header by number, or None if the node has no such block."""
        if block_number < 0:
            raise ValueError("block_number must be >= 0")
        try:
            raw = await self._execute_with_retry("get_block", block_number)
        except BlockNotFound:
            return None
        if raw is None:
            return None
        return block_from_rpc(raw)

    async def get_latest_block_number(self) -> int:
        return int(await self._execute_with_retry("block_number"))

    async def get_latest_block(self) -> Block | None:
        try:
            raw = await self._execute_with_retry("get_block", "latest")
        except BlockNotFound:
            return None
        return block_from_rpc(raw) if raw is not None else None

    async def query_logs(self, event_name: str, from_block: int, to_block: int) -> list[ChainLog]:
        """Fetch and decode contract logs for one event over an inclusive range.

        Raises:
            ValueError: If the event name is not part of the escrow ABI.
            RPCError: If the RPC call fails after retries.
        """
        if from_block > to_block:
            return []
        topic = event_topic(event_name)
        raw_logs = await self._execute_with_retry(
            "get_logs",
            {
                "address": self._contract_address,
                "fromBlock": from_block,
                "toBlock": to_block,
                "topics": [topic],
            },
        )
        event = getattr(self._contract.events, event_name)()
        decoded: list[ChainLog] = []
        for raw in raw_logs:
            if raw.get("removed"):
                continue
            data = event.process_log(raw)
            decoded.append(
                ChainLog(
                    event_name=event_name,
                    contract_address=str(data["address"]).lower(),
                    tx_hash=_to_hex(data["transactionHash"]).lower(),
                    log_index=int(data["logIndex"]),
                    block_number=int(data["blockNumber"]),
                    block_hash=_to_hex(data["blockHash"]).lower(),
                    args={k: _normalize_arg(v) for k, v in dict(data["args"]).items()},
                )
            )
        return decoded

    async def subscribe(self, event_name: str, handler: LogHandler) -> None:
        """Register a live handler for an escrow event.

        Delivery starts from the block after the current head and is
        at-least-once; handlers must be idempotent.
        """
        if event_name not in ESCROW_EVENT_NAMES:
            raise ValueError(f"Unknown escrow event: {event_name}")
        self._handlers.setdefault(event_name, []).append(handler)
        if self._poll_task is None or self._poll_task.done():
            self._next_poll_block = await self.get_latest_block_number() + 1
            self._poll_task = asyncio.create_task(self._poll_loop())

    async def unsubscribe_all(self) -> None:
        self._handlers.clear()
        if self._poll_task is not None:
            self._poll_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._poll_task
            self._poll_task = None

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self._poll_once()
            except ChainClientError as e:
                # The scheduled backfill covers any range missed here.
                logger.warning("Live log poll failed: %s", e)
            await asyncio.sleep(self._poll_interval)

    async def _poll_once(self) -> None:
        head = await self.get_latest_block_number()
        start = self._next_poll_block if self._next_poll_block is not None else head
        if head < start:
            return
        for event_name, handlers in list(self._handlers.items()):
            for log in await self.query_logs(event_name, start, head):
                for handler in handlers:
                    await handler(log)
        self._next_poll_block = head + 1

    async def health_check(self) -> bool:
        """Check if the client can reach the RPC."""
        try:
            await self.get_latest_block_number()
            return True
        except RPCError:
            return False

    async def aclose(self) -> None:
        """Stop live polling and close provider sessions."""
        await self.unsubscribe_all()
        providers = [self._w3.provider]
        if self._w3_fallback is not None:
            providers.append(self._w3_fallback.provider)

        for provider in providers:
            disconnect = getattr(provider, "disconnect", None)
            if not callable(disconnect):
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Failed to close RPC provider session: %s", e)
