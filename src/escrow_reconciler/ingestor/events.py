"""Escrow event ingestion.

Persists contract logs as raw events, from a live subscription and from
historical backfills. Both paths de-duplicate on tx_id, so concurrent or
repeated delivery of the same log stores exactly one row. Nothing here
touches escrow or order status.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy.exc import SQLAlchemyError

from escrow_reconciler.chain.client import ChainClient
from escrow_reconciler.chain.models import ESCROW_EVENT_NAMES, ChainLog
from escrow_reconciler.storage.database import DatabaseManager
from escrow_reconciler.storage.repos import RawEventDTO, RawEventRepository

logger = logging.getLogger(__name__)


@dataclass
class IngestorStats:
    """Counters for the event ingestor."""

    received: int = 0
    stored: int = 0
    duplicates: int = 0
    failed: int = 0
    live: bool = False
    last_event_at: datetime | None = None


def raw_event_from_log(log: ChainLog) -> RawEventDTO:
    """Map a decoded chain log to an unprocessed raw event row."""
    return RawEventDTO(
        tx_id=log.tx_id,
        tx_hash=log.tx_hash.lower(),
        log_index=log.log_index,
        event_name=log.event_name,
        contract_address=log.contract_address.lower(),
        block_number=log.block_number,
        block_hash=log.block_hash,
        payload=dict(log.args),
        escrow_ref=log.escrow_ref,
    )


class EventIngestor:
    """Stores escrow contract logs idempotently.

    Example:
        ```python
        ingestor = EventIngestor(db, chain)
        await ingestor.ingest_live()
        new_events = await ingestor.backfill(1_000, 1_100)
        await ingestor.stop()
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        chain: ChainClient,
        *,
        event_names: Sequence[str] = ESCROW_EVENT_NAMES,
    ) -> None:
        self._db = db
        self._chain = chain
        self._event_names = tuple(event_names)
        self._stats = IngestorStats()

    @property
    def stats(self) -> IngestorStats:
        return self._stats

    @property
    def is_live(self) -> bool:
        return self._stats.live

    async def ingest_live(self) -> None:
        """Attach handle_event to every escrow event on the chain client."""
        if self._stats.live:
            return
        for name in self._event_names:
            await self._chain.subscribe(name, self.handle_event)
        self._stats.live = True
        logger.info("Live ingestion started for %d event types", len(self._event_names))

    async def stop(self) -> None:
        if not self._stats.live:
            return
        await self._chain.unsubscribe_all()
        self._stats.live = False
        logger.info("Live ingestion stopped")

    async def handle_event(self, log: ChainLog) -> bool:
        """Persist one log unless its tx_id is already stored.

        A storage failure is logged and swallowed so one bad row never stops
        the subscription; the next backfill picks the log up again.

        Returns:
            True if a new raw event was written.
        """
        stored = await self._store(log)
        return stored is not None

    async def backfill(self, from_block: int, to_block: int) -> list[RawEventDTO]:
        """Fetch every escrow event in [from_block, to_block] and store new ones.

        Raises:
            ChainClientError: If a log query fails; the caller decides on retry.

        Returns:
            Newly stored events in ledger order.
        """
        if from_block > to_block:
            return []

        logs: list[ChainLog] = []
        for name in self._event_names:
            logs.extend(await self._chain.query_logs(name, from_block, to_block))
        logs.sort(key=lambda log: (log.block_number, log.log_index))

        stored: list[RawEventDTO] = []
        for log in logs:
            dto = await self._store(log)
            if dto is not None:
                stored.append(dto)

        logger.info(
            "Backfilled blocks %d-%d: %d logs, %d new",
            from_block,
            to_block,
            len(logs),
            len(stored),
        )
        return stored

    async def _store(self, log: ChainLog) -> RawEventDTO | None:
        self._stats.received += 1
        dto = raw_event_from_log(log)
        try:
            async with self._db.get_async_session() as session:
                repo = RawEventRepository(session)
                if await repo.exists(dto.tx_id):
                    inserted = False
                else:
                    inserted = await repo.insert_if_absent(dto)
        except SQLAlchemyError as e:
            self._stats.failed += 1
            logger.error("Failed to persist event %s (%s): %s", dto.tx_id, dto.event_name, e)
            return None

        self._stats.last_event_at = datetime.now(UTC)
        if not inserted:
            self._stats.duplicates += 1
            logger.debug("Skipping already stored event %s", dto.tx_id)
            return None

        self._stats.stored += 1
        logger.debug("Stored %s for escrow %s at block %d", dto.event_name, dto.escrow_ref, dto.block_number)
        return dto
