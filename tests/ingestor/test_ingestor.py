"""Tests for the escrow event ingestor."""

from __future__ import annotations

import pytest

from conftest import ESCROW_A, ESCROW_B, FakeChain, make_log
from escrow_reconciler.chain.client import ChainClientError
from escrow_reconciler.ingestor.events import EventIngestor, raw_event_from_log
from escrow_reconciler.storage.database import DatabaseManager
from escrow_reconciler.storage.repos import RawEventRepository


@pytest.fixture
def ingestor(db: DatabaseManager, fake_chain: FakeChain) -> EventIngestor:
    return EventIngestor(db, fake_chain)


async def _count(db: DatabaseManager) -> int:
    async with db.get_async_session() as session:
        return await RawEventRepository(session).count()


class TestRawEventFromLog:
    def test_maps_identity_and_escrow(self) -> None:
        log = make_log("FundsLocked", ESCROW_A, 10, log_index=2, amount=5)
        dto = raw_event_from_log(log)
        assert dto.tx_id == f"{log.tx_hash}-2"
        assert dto.escrow_ref == ESCROW_A
        assert dto.payload["amount"] == 5
        assert dto.processed is False


class TestEventIngestor:
    """Tests for EventIngestor."""

    @pytest.mark.asyncio
    async def test_same_log_twice_stores_one_row(self, db: DatabaseManager, ingestor: EventIngestor) -> None:
        log = make_log("EscrowCreated", ESCROW_A, 10)
        assert await ingestor.handle_event(log) is True
        assert await ingestor.handle_event(log) is False

        assert await _count(db) == 1
        assert ingestor.stats.stored == 1
        assert ingestor.stats.duplicates == 1

    @pytest.mark.asyncio
    async def test_live_and_backfill_deliveries_deduplicate(
        self, db: DatabaseManager, fake_chain: FakeChain, ingestor: EventIngestor
    ) -> None:
        log = make_log("FundsLocked", ESCROW_A, 20)
        fake_chain.logs.append(log)

        await ingestor.ingest_live()
        assert ingestor.is_live
        await fake_chain.emit(log)
        stored = await ingestor.backfill(15, 25)

        assert stored == []
        assert await _count(db) == 1

    @pytest.mark.asyncio
    async def test_backfill_returns_new_events_in_ledger_order(
        self, fake_chain: FakeChain, ingestor: EventIngestor
    ) -> None:
        fake_chain.logs.extend(
            [
                make_log("FundsReleased", ESCROW_A, 12, log_index=0),
                make_log("EscrowCreated", ESCROW_A, 10, log_index=1),
                make_log("FundsLocked", ESCROW_A, 11, log_index=0),
                make_log("EscrowCreated", ESCROW_B, 10, log_index=0),
                make_log("FundsLocked", ESCROW_B, 40, log_index=0),
            ]
        )

        stored = await ingestor.backfill(10, 12)

        assert [(e.block_number, e.log_index) for e in stored] == [(10, 0), (10, 1), (11, 0), (12, 0)]
        assert all(not e.processed for e in stored)

    @pytest.mark.asyncio
    async def test_backfill_empty_range(self, fake_chain: FakeChain, ingestor: EventIngestor) -> None:
        assert await ingestor.backfill(20, 10) == []
        assert fake_chain.log_queries == 0

    @pytest.mark.asyncio
    async def test_backfill_propagates_chain_errors(self, fake_chain: FakeChain, ingestor: EventIngestor) -> None:
        fake_chain.fail_logs = True
        with pytest.raises(ChainClientError):
            await ingestor.backfill(1, 5)

    @pytest.mark.asyncio
    async def test_stop_unsubscribes(self, fake_chain: FakeChain, ingestor: EventIngestor) -> None:
        await ingestor.ingest_live()
        assert set(fake_chain.handlers) == {
            "EscrowCreated",
            "FundsLocked",
            "FundsReleased",
            "FundsRefunded",
            "DisputeOpened",
            "DisputeResolved",
        }
        await ingestor.stop()
        assert fake_chain.handlers == {}
        assert not ingestor.is_live
