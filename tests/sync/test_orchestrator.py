"""Tests for the sync orchestrator."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from conftest import ESCROW_A, ESCROW_B, FakeChain, FakeRedis, block_hash, make_block, make_log
from escrow_reconciler.ingestor.events import EventIngestor, raw_event_from_log
from escrow_reconciler.jobs.locks import LockStore
from escrow_reconciler.storage.database import DatabaseManager
from escrow_reconciler.storage.models import EscrowStatus, OrderStatus, SyncCheckpointModel, SyncStatus
from escrow_reconciler.storage.repos import (
    CheckpointRepository,
    EscrowRepository,
    OrderRepository,
    RawEventRepository,
)
from escrow_reconciler.sync.orchestrator import (
    RESYNC_JOB_NAME,
    BatchStatus,
    ResyncProgress,
    SyncError,
    SyncOrchestrator,
)
from escrow_reconciler.sync.reconciler import StateReconciler
from escrow_reconciler.sync.validator import BlockValidator

# ============================================================================
# Helpers
# ============================================================================


def build_orchestrator(
    db: DatabaseManager,
    chain: FakeChain,
    redis: FakeRedis | None = None,
    **kwargs,
) -> SyncOrchestrator:
    options = {
        "batch_size": 100,
        "confirmation_blocks": 0,
        "bootstrap_blocks": 100,
        "max_batch_retries": 2,
        "retry_delay_seconds": 0,
        "resync_pause_seconds": 0,
    }
    options.update(kwargs)
    return SyncOrchestrator(
        db,
        EventIngestor(db, chain),
        BlockValidator(chain),
        StateReconciler(db),
        state_store=LockStore(redis, instance_id="test-instance") if redis is not None else None,
        **options,
    )


async def seed_escrows(db: DatabaseManager) -> None:
    async with db.get_async_session() as session:
        orders = OrderRepository(session)
        escrows = EscrowRepository(session)
        await orders.create("order-1", status=OrderStatus.AWAITING_FUNDS.value)
        await orders.create("order-2", status=OrderStatus.AWAITING_FUNDS.value)
        await escrows.create(ESCROW_A, "order-1")
        await escrows.create(ESCROW_B, "order-2")


async def create_checkpoint(db: DatabaseManager, block: int) -> None:
    async with db.get_async_session() as session:
        await CheckpointRepository(session).get_or_create(start_block=block)


async def get_checkpoint(db: DatabaseManager):
    async with db.get_async_session() as session:
        return await CheckpointRepository(session).get()


async def snapshot(db: DatabaseManager) -> dict:
    """Everything the sync writes, for comparing two runs."""
    async with db.get_async_session() as session:
        escrows = {e.escrow_ref: e.status for e in await EscrowRepository(session).list_all()}
        orders = {
            ref: o.status for ref, o in (await OrderRepository(session).get_many(["order-1", "order-2"])).items()
        }
        events = RawEventRepository(session)
        checkpoint = await CheckpointRepository(session).get()
        return {
            "escrows": escrows,
            "orders": orders,
            "events": await events.count(),
            "unprocessed": await events.count(processed=False),
            "last_block": checkpoint.last_synced_block,
            "last_hash": checkpoint.last_synced_block_hash,
            "status": checkpoint.status,
            "total_events": checkpoint.total_events_processed,
        }


# ============================================================================
# Forward sync
# ============================================================================


class TestForwardSync:
    """Tests for batch sync and the checkpoint."""

    @pytest.mark.asyncio
    async def test_end_to_end_batch(self, db: DatabaseManager, fake_chain: FakeChain) -> None:
        fake_chain.head = 110
        fake_chain.logs.extend(
            [
                make_log("EscrowCreated", ESCROW_A, 100),
                make_log("FundsLocked", ESCROW_A, 101),
                make_log("FundsReleased", ESCROW_A, 102),
            ]
        )
        await seed_escrows(db)
        await create_checkpoint(db, 99)
        orchestrator = build_orchestrator(db, fake_chain)

        result = await orchestrator.run_scheduled_sync()

        assert result is not None
        assert result.status == BatchStatus.SYNCED
        assert (result.from_block, result.to_block) == (99, 110)
        assert result.events_ingested == 3

        state = await snapshot(db)
        assert state["escrows"][ESCROW_A] == EscrowStatus.RELEASED.value
        assert state["orders"]["order-1"] == OrderStatus.COMPLETED.value
        assert state["unprocessed"] == 0
        assert state["total_events"] == 3
        assert state["last_block"] == 110
        assert state["last_hash"] == block_hash(110)
        assert state["status"] == SyncStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_checkpoint_never_moves_backwards(self, db: DatabaseManager, fake_chain: FakeChain) -> None:
        fake_chain.head = 300
        await create_checkpoint(db, 200)
        orchestrator = build_orchestrator(db, fake_chain)
        await orchestrator.sync_from_block(200)

        result = await orchestrator.sync_from_block(50, to_block=60)

        assert result.status == BatchStatus.SYNCED
        checkpoint = await get_checkpoint(db)
        assert checkpoint.last_synced_block == 300
        assert checkpoint.last_synced_block_hash == block_hash(300)

    @pytest.mark.asyncio
    async def test_batch_bounded_by_batch_size_and_confirmations(
        self, db: DatabaseManager, fake_chain: FakeChain
    ) -> None:
        fake_chain.head = 1_000
        await create_checkpoint(db, 500)
        orchestrator = build_orchestrator(db, fake_chain, batch_size=50, confirmation_blocks=12)

        first = await orchestrator.sync_from_block(500)
        near_head = await orchestrator.sync_from_block(980)

        assert (first.from_block, first.to_block) == (500, 550)
        assert near_head.to_block == 988

    @pytest.mark.asyncio
    async def test_nothing_to_sync_at_head(self, db: DatabaseManager, fake_chain: FakeChain) -> None:
        fake_chain.head = 100
        await create_checkpoint(db, 100)
        orchestrator = build_orchestrator(db, fake_chain)

        result = await orchestrator.sync_from_block(100)

        assert result.status == BatchStatus.NOOP
        assert (await get_checkpoint(db)).last_sync_at is None

    @pytest.mark.asyncio
    async def test_validation_failure_keeps_checkpoint(self, db: DatabaseManager, fake_chain: FakeChain) -> None:
        fake_chain.head = 120
        fake_chain.overrides[105] = make_block(105, parent_hash="0x" + "e" * 64)
        fake_chain.logs.append(make_log("FundsLocked", ESCROW_A, 103))
        await seed_escrows(db)
        await create_checkpoint(db, 100)
        orchestrator = build_orchestrator(db, fake_chain)

        result = await orchestrator.sync_from_block(100)

        assert result.status == BatchStatus.INVALID
        assert len(result.validation_errors) == 1
        checkpoint = await get_checkpoint(db)
        assert checkpoint.last_synced_block == 100
        assert checkpoint.status == SyncStatus.ERROR
        assert checkpoint.total_errors == 1
        assert "Chain validation failed" in checkpoint.last_error
        async with db.get_async_session() as session:
            assert await RawEventRepository(session).count() == 0

    @pytest.mark.asyncio
    async def test_reorg_below_checkpoint_is_detected(self, db: DatabaseManager, fake_chain: FakeChain) -> None:
        fake_chain.head = 150
        await create_checkpoint(db, 100)
        async with db.get_async_session() as session:
            await session.execute(
                update(SyncCheckpointModel).values(last_synced_block_hash=block_hash(100, fork="stale"))
            )
        orchestrator = build_orchestrator(db, fake_chain)

        result = await orchestrator.run_scheduled_sync()

        assert result.status == BatchStatus.INVALID
        assert (await get_checkpoint(db)).status == SyncStatus.ERROR

    @pytest.mark.asyncio
    async def test_chain_errors_exhaust_retries(self, db: DatabaseManager, fake_chain: FakeChain) -> None:
        fake_chain.head = 150
        fake_chain.fail_logs = True
        await create_checkpoint(db, 100)
        orchestrator = build_orchestrator(db, fake_chain, max_batch_retries=3)

        with pytest.raises(SyncError):
            await orchestrator.sync_from_block(100)

        checkpoint = await get_checkpoint(db)
        assert checkpoint.status == SyncStatus.ERROR
        assert checkpoint.total_errors == 1
        assert checkpoint.last_synced_block == 100
        assert fake_chain.log_queries == 3

    @pytest.mark.asyncio
    async def test_unexpected_batch_failure_marks_error(
        self, db: DatabaseManager, fake_chain: FakeChain, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        fake_chain.head = 150
        await create_checkpoint(db, 100)
        orchestrator = build_orchestrator(db, fake_chain)

        async def broken_reconcile(**kwargs):
            raise SQLAlchemyError("events table unavailable")

        monkeypatch.setattr(orchestrator._reconciler, "reconcile_unprocessed_events", broken_reconcile)

        with pytest.raises(SQLAlchemyError):
            await orchestrator.sync_from_block(100)

        checkpoint = await get_checkpoint(db)
        assert checkpoint.status == SyncStatus.ERROR
        assert "events table unavailable" in checkpoint.last_error
        assert checkpoint.total_errors == 1
        assert checkpoint.last_synced_block == 100

    @pytest.mark.asyncio
    async def test_live_events_wait_for_confirmations(self, db: DatabaseManager, fake_chain: FakeChain) -> None:
        fake_chain.head = 110
        await seed_escrows(db)
        await create_checkpoint(db, 99)
        # Stored by the live listener before the block is confirmed.
        async with db.get_async_session() as session:
            await RawEventRepository(session).insert_if_absent(
                raw_event_from_log(make_log("FundsLocked", ESCROW_A, 108))
            )
        orchestrator = build_orchestrator(db, fake_chain, confirmation_blocks=5)

        first = await orchestrator.run_scheduled_sync()

        assert first.to_block == 105
        state = await snapshot(db)
        assert state["escrows"][ESCROW_A] == EscrowStatus.PENDING.value
        assert state["unprocessed"] == 1

        fake_chain.head = 120
        second = await orchestrator.run_scheduled_sync()

        assert second.to_block == 115
        state = await snapshot(db)
        assert state["escrows"][ESCROW_A] == EscrowStatus.LOCKED.value
        assert state["orders"]["order-1"] == OrderStatus.ONCHAIN_LOCKED.value
        assert state["unprocessed"] == 0

    @pytest.mark.asyncio
    async def test_start_sync_bootstraps_and_goes_live(self, db: DatabaseManager, fake_chain: FakeChain) -> None:
        fake_chain.head = 1_000
        orchestrator = build_orchestrator(db, fake_chain, batch_size=50, bootstrap_blocks=100)

        result = await orchestrator.start_sync()

        assert (result.from_block, result.to_block) == (900, 950)
        assert fake_chain.handlers
        assert (await get_checkpoint(db)).last_synced_block == 950

    @pytest.mark.asyncio
    async def test_stop_sync_pauses_scheduled_sync(self, db: DatabaseManager, fake_chain: FakeChain) -> None:
        fake_chain.head = 200
        await create_checkpoint(db, 100)
        orchestrator = build_orchestrator(db, fake_chain, batch_size=10)
        await orchestrator.start_sync()

        await orchestrator.stop_sync()

        assert (await get_checkpoint(db)).status == SyncStatus.PAUSED
        assert fake_chain.handlers == {}
        assert await orchestrator.run_scheduled_sync() is None
        assert await build_orchestrator(db, fake_chain).run_scheduled_sync() is None

        await orchestrator.start_sync()
        assert (await get_checkpoint(db)).status == SyncStatus.ACTIVE


# ============================================================================
# Resync
# ============================================================================


class TestResync:
    """Tests for resumable resync."""

    LOGS = (
        make_log("EscrowCreated", ESCROW_A, 110),
        make_log("EscrowCreated", ESCROW_B, 120),
        make_log("FundsLocked", ESCROW_A, 140),
        make_log("FundsReleased", ESCROW_A, 160),
        make_log("FundsLocked", ESCROW_B, 200),
    )

    @pytest.mark.asyncio
    async def test_resync_covers_range_and_saves_progress(
        self, db: DatabaseManager, fake_chain: FakeChain, fake_redis: FakeRedis
    ) -> None:
        fake_chain.head = 250
        fake_chain.logs.extend(self.LOGS)
        await seed_escrows(db)
        orchestrator = build_orchestrator(db, fake_chain, fake_redis, batch_size=25)

        result = await orchestrator.resync_from_block(100)

        assert result.completed
        assert result.batches == 6
        assert result.progress.events_ingested == 5
        progress = await orchestrator.load_resync_progress()
        assert progress is not None
        assert not progress.is_unfinished
        assert progress.percent == 100.0
        state = await snapshot(db)
        assert state["status"] == SyncStatus.ACTIVE
        assert state["last_block"] == 250
        assert state["escrows"] == {ESCROW_A: EscrowStatus.RELEASED.value, ESCROW_B: EscrowStatus.LOCKED.value}

    @pytest.mark.asyncio
    async def test_interrupted_resync_resumes_to_same_state(
        self, db: DatabaseManager, fake_chain: FakeChain, fake_redis: FakeRedis, tmp_path
    ) -> None:
        fake_chain.head = 250
        fake_chain.logs.extend(self.LOGS)

        reference_db = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'reference.db'}")
        await reference_db.init_schema_async()
        try:
            await seed_escrows(reference_db)
            await build_orchestrator(reference_db, fake_chain, FakeRedis(), batch_size=25).resync_from_block(100)
            expected = await snapshot(reference_db)
        finally:
            await reference_db.dispose_async()

        await seed_escrows(db)
        fake_chain.failing_blocks.add(160)
        interrupted = build_orchestrator(db, fake_chain, fake_redis, batch_size=25, max_batch_retries=1)
        with pytest.raises(SyncError):
            await interrupted.resync_from_block(100)

        saved = await interrupted.load_resync_progress()
        assert saved is not None
        assert saved.current_block == 150
        assert saved.from_block == 100
        assert saved.is_unfinished
        assert saved.error is not None
        assert (await get_checkpoint(db)).status == SyncStatus.ERROR

        fake_chain.failing_blocks.clear()
        resumed = build_orchestrator(db, fake_chain, fake_redis, batch_size=25)
        result = await resumed.resume_interrupted_resync()

        assert result is not None and result.completed
        assert result.progress.from_block == 100
        assert await snapshot(db) == expected

    @pytest.mark.asyncio
    async def test_resume_without_saved_progress(self, db: DatabaseManager, fake_chain: FakeChain, fake_redis: FakeRedis) -> None:
        orchestrator = build_orchestrator(db, fake_chain, fake_redis)
        assert await orchestrator.resume_interrupted_resync() is None

    @pytest.mark.asyncio
    async def test_resync_keeps_its_lock_alive(
        self, db: DatabaseManager, fake_chain: FakeChain, fake_redis: FakeRedis
    ) -> None:
        fake_chain.head = 200
        assert await LockStore(fake_redis, instance_id="test-instance").acquire(RESYNC_JOB_NAME, 30)
        orchestrator = build_orchestrator(db, fake_chain, fake_redis, batch_size=25, resync_lock_ttl_seconds=600)

        result = await orchestrator.resync_from_block(100)

        assert result.completed
        assert fake_redis.ttls[LockStore.lock_key(RESYNC_JOB_NAME)] == 600

    @pytest.mark.asyncio
    async def test_resync_stops_when_lock_taken_over(
        self, db: DatabaseManager, fake_chain: FakeChain, fake_redis: FakeRedis
    ) -> None:
        fake_chain.head = 200
        assert await LockStore(fake_redis, instance_id="other-instance").acquire(RESYNC_JOB_NAME, 30)
        orchestrator = build_orchestrator(db, fake_chain, fake_redis, batch_size=25)

        result = await orchestrator.resync_from_block(100)

        assert not result.completed
        assert result.message == "resync lock lost"
        assert result.batches == 1
        saved = await orchestrator.load_resync_progress()
        assert saved.is_unfinished
        assert saved.current_block == 125
        assert fake_redis.ttls[LockStore.lock_key(RESYNC_JOB_NAME)] == 30

    @pytest.mark.asyncio
    async def test_resync_stops_on_validation_failure(
        self, db: DatabaseManager, fake_chain: FakeChain, fake_redis: FakeRedis
    ) -> None:
        fake_chain.head = 200
        fake_chain.overrides[130] = make_block(130, parent_hash="0x" + "d" * 64)
        orchestrator = build_orchestrator(db, fake_chain, fake_redis, batch_size=25)

        result = await orchestrator.resync_from_block(100)

        assert not result.completed
        assert result.progress.current_block == 125
        saved = await orchestrator.load_resync_progress()
        assert saved.is_unfinished and saved.error

    @pytest.mark.asyncio
    async def test_malformed_progress_is_ignored(
        self, db: DatabaseManager, fake_chain: FakeChain, fake_redis: FakeRedis
    ) -> None:
        fake_redis.data[LockStore.state_key(RESYNC_JOB_NAME)] = '{"from_block": "x"}'
        orchestrator = build_orchestrator(db, fake_chain, fake_redis)
        assert await orchestrator.load_resync_progress() is None

    def test_progress_round_trip_and_percent(self) -> None:
        progress = ResyncProgress(from_block=100, to_block=300, current_block=150, events_ingested=4)
        assert ResyncProgress.from_dict(progress.to_dict()) == progress
        assert progress.percent == 25.0
        assert progress.is_unfinished


# ============================================================================
# Auto resync and status
# ============================================================================


class TestAutoResyncAndStatus:
    """Tests for auto_resync_if_needed and get_sync_status."""

    @pytest.mark.asyncio
    async def test_bootstraps_without_checkpoint(self, db: DatabaseManager, fake_chain: FakeChain) -> None:
        fake_chain.head = 500
        orchestrator = build_orchestrator(db, fake_chain, bootstrap_blocks=100)

        result = await orchestrator.auto_resync_if_needed()

        assert result is not None and result.completed
        assert result.progress.from_block == 400
        assert (await get_checkpoint(db)).last_synced_block == 500

    @pytest.mark.asyncio
    async def test_resyncs_after_error(self, db: DatabaseManager, fake_chain: FakeChain) -> None:
        fake_chain.head = 300
        await create_checkpoint(db, 200)
        async with db.get_async_session() as session:
            await CheckpointRepository(session).set_status(SyncStatus.ERROR, error="boom")
        orchestrator = build_orchestrator(db, fake_chain)

        result = await orchestrator.auto_resync_if_needed()

        assert result is not None
        assert result.progress.from_block == 200
        assert (await get_checkpoint(db)).status == SyncStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_resyncs_when_stale(self, db: DatabaseManager, fake_chain: FakeChain) -> None:
        fake_chain.head = 300
        await create_checkpoint(db, 250)
        async with db.get_async_session() as session:
            await session.execute(
                update(SyncCheckpointModel).values(last_sync_at=datetime.now(UTC) - timedelta(hours=2))
            )
        orchestrator = build_orchestrator(db, fake_chain, stale_after_seconds=3600)

        assert await orchestrator.auto_resync_if_needed() is not None

    @pytest.mark.asyncio
    async def test_leaves_fresh_and_paused_checkpoints_alone(self, db: DatabaseManager, fake_chain: FakeChain) -> None:
        fake_chain.head = 300
        await create_checkpoint(db, 250)
        orchestrator = build_orchestrator(db, fake_chain)
        await orchestrator.sync_from_block(250)

        assert await orchestrator.auto_resync_if_needed() is None

        async with db.get_async_session() as session:
            await CheckpointRepository(session).set_status(SyncStatus.PAUSED)
        assert await orchestrator.auto_resync_if_needed() is None

    @pytest.mark.asyncio
    async def test_get_sync_status(self, db: DatabaseManager, fake_chain: FakeChain, fake_redis: FakeRedis) -> None:
        fake_chain.head = 400
        await create_checkpoint(db, 300)
        orchestrator = build_orchestrator(db, fake_chain, fake_redis, confirmation_blocks=10)

        status = await orchestrator.get_sync_status()

        assert status.status == SyncStatus.ACTIVE
        assert status.latest_block == 400
        assert status.confirmed_head == 390
        assert status.blocks_behind == 90
        assert status.is_stale is True
        assert status.live_ingestion is False
        assert status.resync_progress is None

    @pytest.mark.asyncio
    async def test_get_sync_status_without_checkpoint(self, db: DatabaseManager, fake_chain: FakeChain) -> None:
        status = await build_orchestrator(db, fake_chain).get_sync_status()
        assert status.status is None
        assert status.blocks_behind is None
