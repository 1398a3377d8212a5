"""State reconciliation from raw escrow events.

Unprocessed raw events are applied to escrow (and linked order) status in
ledger order, (block_number, log_index). Escrow status only ever moves
forward by rank, so replaying, duplicating or reordering delivery cannot
move an escrow backwards, and re-running after a crash converges on the
same state because processed rows are skipped.
"""

from __future__ import annotations

import logging
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import UTC, datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_reconciler.chain.models import DisputeResolution, EscrowEvent
from escrow_reconciler.storage.database import DatabaseManager
from escrow_reconciler.storage.models import EscrowStatus, OrderStatus
from escrow_reconciler.storage.repos import (
    EscrowDTO,
    EscrowRepository,
    OrderRepository,
    RawEventDTO,
    RawEventRepository,
)

logger = logging.getLogger(__name__)

EVENT_TARGET_STATUS: dict[str, EscrowStatus] = {
    EscrowEvent.ESCROW_CREATED.value: EscrowStatus.PENDING,
    EscrowEvent.FUNDS_LOCKED.value: EscrowStatus.LOCKED,
    EscrowEvent.FUNDS_RELEASED.value: EscrowStatus.RELEASED,
    EscrowEvent.FUNDS_REFUNDED.value: EscrowStatus.REFUNDED,
    EscrowEvent.DISPUTE_OPENED.value: EscrowStatus.DISPUTED,
}

RESOLUTION_TARGET_STATUS: dict[DisputeResolution, EscrowStatus] = {
    DisputeResolution.RELEASE_TO_SELLER: EscrowStatus.RELEASED,
    DisputeResolution.REFUND_TO_BUYER: EscrowStatus.REFUNDED,
}

STATUS_RANK: dict[EscrowStatus, int] = {
    EscrowStatus.PENDING: 0,
    EscrowStatus.LOCKED: 1,
    EscrowStatus.DISPUTED: 2,
    EscrowStatus.RELEASED: 3,
    EscrowStatus.REFUNDED: 3,
}

TERMINAL_ESCROW_STATUSES = frozenset({EscrowStatus.RELEASED, EscrowStatus.REFUNDED})

ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.CREATED: frozenset({OrderStatus.AWAITING_FUNDS, OrderStatus.REFUNDED}),
    OrderStatus.AWAITING_FUNDS: frozenset({OrderStatus.ONCHAIN_LOCKED, OrderStatus.REFUNDED}),
    OrderStatus.ONCHAIN_LOCKED: frozenset({OrderStatus.COMPLETED, OrderStatus.REFUNDED, OrderStatus.DISPUTED}),
    OrderStatus.DISPUTED: frozenset({OrderStatus.COMPLETED, OrderStatus.REFUNDED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}

ESCROW_TO_ORDER_STATUS: dict[EscrowStatus, OrderStatus] = {
    EscrowStatus.LOCKED: OrderStatus.ONCHAIN_LOCKED,
    EscrowStatus.RELEASED: OrderStatus.COMPLETED,
    EscrowStatus.REFUNDED: OrderStatus.REFUNDED,
    EscrowStatus.DISPUTED: OrderStatus.DISPUTED,
}


class EventRejected(Exception):
    """An event that can never be applied; recorded and not retried."""


class EscrowMissing(Exception):
    """The escrow mapping is not there yet; the event stays retryable."""


def is_forward(current: EscrowStatus, target: EscrowStatus) -> bool:
    """True if moving from current to target advances the escrow."""
    return STATUS_RANK[target] > STATUS_RANK[current]


def order_path(current: OrderStatus, desired: OrderStatus) -> list[OrderStatus] | None:
    """Shortest chain of allowed order transitions from current to desired.

    The chain excludes current and ends with desired; it is empty when they
    are equal and None when desired cannot be reached.
    """
    previous: dict[OrderStatus, OrderStatus | None] = {current: None}
    queue = deque([current])
    while queue:
        status = queue.popleft()
        if status == desired:
            path: list[OrderStatus] = []
            while status != current:
                path.append(status)
                status = previous[status]  # type: ignore[assignment]
            return path[::-1]
        for nxt in sorted(ORDER_TRANSITIONS[status], key=lambda s: s.value):
            if nxt not in previous:
                previous[nxt] = status
                queue.append(nxt)
    return None


def target_status_for(event: RawEventDTO) -> EscrowStatus:
    """Map a raw event to the escrow status it implies.

    Raises:
        EventRejected: For unknown events or dispute resolution codes.
    """
    if event.event_name == EscrowEvent.DISPUTE_RESOLVED.value:
        raw = event.payload.get("resolution")
        try:
            resolution = DisputeResolution(int(raw))
        except (TypeError, ValueError):
            raise EventRejected(f"Unknown dispute resolution code: {raw!r}") from None
        return RESOLUTION_TARGET_STATUS[resolution]

    target = EVENT_TARGET_STATUS.get(event.event_name)
    if target is None:
        raise EventRejected(f"Unknown event type: {event.event_name}")
    return target


@dataclass
class EscrowReconcileResult:
    """Outcome of reconciling one escrow."""

    escrow_ref: str
    reconciled: bool
    changes: list[str] = field(default_factory=list)
    processed: int = 0
    errors: int = 0


@dataclass
class ReconcileSummary:
    """Counters for a reconcile_unprocessed_events pass."""

    total: int = 0
    processed: int = 0
    errors: int = 0


@dataclass
class ReconcileAllSummary:
    """Counters for a reconcile_all pass."""

    total: int = 0
    reconciled: int = 0
    errors: int = 0


class StateReconciler:
    """Applies raw escrow events to escrow and order status."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def reconcile_escrow(self, escrow_ref: str, *, up_to_block: int | None = None) -> EscrowReconcileResult:
        """Apply every unprocessed event of one escrow in ledger order.

        Failures are isolated per event: the failing row gets the error
        recorded and processing moves on to the next event.

        Args:
            escrow_ref: Escrow to reconcile.
            up_to_block: Leave events from later blocks unprocessed.
        """
        escrow_ref = escrow_ref.lower()
        try:
            async with self._db.get_async_session() as session:
                return await self._reconcile_in_session(session, escrow_ref, up_to_block)
        except SQLAlchemyError as e:
            logger.error("Error reconciling escrow %s: %s", escrow_ref, e)
            return EscrowReconcileResult(escrow_ref, False, [str(e)], errors=1)

    async def _reconcile_in_session(
        self,
        session: AsyncSession,
        escrow_ref: str,
        up_to_block: int | None,
    ) -> EscrowReconcileResult:
        events_repo = RawEventRepository(session)
        escrow_repo = EscrowRepository(session)
        order_repo = OrderRepository(session)

        result = EscrowReconcileResult(escrow_ref, True)
        events = await events_repo.list_for_escrow(escrow_ref, processed=False, up_to_block=up_to_block)
        escrow = await escrow_repo.get(escrow_ref)

        for event in events:
            if event.id is None:
                continue
            try:
                if escrow is None:
                    raise EscrowMissing(f"Escrow {escrow_ref} not found")
                change, note = await self._apply_event(escrow_repo, order_repo, escrow, event)
            except EscrowMissing as e:
                await events_repo.record_error(event.id, str(e), processed=False)
                result.errors += 1
                result.reconciled = False
                continue
            except EventRejected as e:
                logger.warning("Rejected event %s for escrow %s: %s", event.tx_id, escrow_ref, e)
                await events_repo.record_error(event.id, str(e), processed=True)
                result.errors += 1
                result.processed += 1
                continue

            await events_repo.mark_processed(event.id, note=note)
            result.processed += 1
            if change:
                result.changes.append(change)
                escrow = await escrow_repo.get(escrow_ref)

        if escrow is None:
            if not events:
                result.reconciled = False
                result.changes.append("Escrow not found")
            logger.warning("Escrow %s not found; %d event(s) left unprocessed", escrow_ref, len(events))
            return result

        mismatch = await self._order_mismatch(order_repo, escrow)
        if mismatch:
            result.changes.append(mismatch)

        if result.changes:
            logger.info("Reconciled escrow %s: %d change(s)", escrow_ref, len(result.changes))
        return result

    async def _apply_event(
        self,
        escrow_repo: EscrowRepository,
        order_repo: OrderRepository,
        escrow: EscrowDTO,
        event: RawEventDTO,
    ) -> tuple[str | None, str | None]:
        """Apply one event; returns (change, note) where note marks a skipped event."""
        target = target_status_for(event)
        current = EscrowStatus(escrow.status)

        while True:
            if current == target:
                return None, f"duplicate: escrow already {current.value}"
            if not is_forward(current, target):
                return None, f"stale: {event.event_name} ({target.value}) behind {current.value}"

            applied = await escrow_repo.update_status(
                escrow.escrow_ref,
                target.value,
                expected_status=current.value,
                release_tx_hash=event.tx_hash if target == EscrowStatus.RELEASED else None,
                refund_tx_hash=event.tx_hash if target == EscrowStatus.REFUNDED else None,
            )
            if applied:
                break

            # Another reconciliation moved the escrow after it was read.
            fresh = await escrow_repo.get(escrow.escrow_ref)
            if fresh is None:
                raise EscrowMissing(f"Escrow {escrow.escrow_ref} not found")
            logger.info(
                "Escrow %s moved to %s concurrently; re-checking %s",
                escrow.escrow_ref,
                fresh.status,
                event.tx_id,
            )
            current = EscrowStatus(fresh.status)

        change = f"Escrow {escrow.escrow_ref}: {current.value} -> {target.value} ({event.event_name} @ block {event.block_number})"

        order_note = await self._advance_order(order_repo, escrow.order_ref, target)
        if order_note:
            change = f"{change}; {order_note}"
        return change, None

    async def _advance_order(
        self,
        order_repo: OrderRepository,
        order_ref: str,
        escrow_status: EscrowStatus,
    ) -> str | None:
        """Move the linked order to the status matching the escrow.

        Statuses the escrow skipped (a release applied before its lock, say)
        are walked through along the allowed transitions.
        """
        desired = ESCROW_TO_ORDER_STATUS.get(escrow_status)
        if desired is None:
            return None

        for _ in range(len(OrderStatus)):
            order = await order_repo.get(order_ref)
            if order is None:
                return f"order {order_ref} not found"

            current = OrderStatus(order.status)
            path = order_path(current, desired)
            if path is None:
                logger.warning("Order %s cannot move %s -> %s", order_ref, current.value, desired.value)
                return f"order {order_ref} left at {current.value} (cannot move to {desired.value})"
            if not path:
                return None

            now = datetime.now(UTC)
            if await order_repo.update_status(
                order_ref,
                desired.value,
                expected_status=current.value,
                completed_at=now if desired == OrderStatus.COMPLETED else None,
                cancelled_at=now if desired == OrderStatus.REFUNDED else None,
            ):
                steps = " -> ".join(s.value for s in [current, *path])
                return f"order {order_ref}: {steps}"

        logger.warning("Order %s kept changing while moving to %s", order_ref, desired.value)
        return f"order {order_ref} not moved to {desired.value} (concurrent updates)"

    async def _order_mismatch(self, order_repo: OrderRepository, escrow: EscrowDTO) -> str | None:
        expected = ESCROW_TO_ORDER_STATUS.get(EscrowStatus(escrow.status))
        if expected is None:
            return None
        order = await order_repo.get(escrow.order_ref)
        if order is None or order.status == expected.value:
            return None
        return f"Validation: order {order.order_ref} is {order.status}, escrow is {escrow.status}"

    async def reconcile_unprocessed_events(self, *, up_to_block: int | None = None) -> ReconcileSummary:
        """Reconcile every unprocessed raw event, grouped by escrow.

        Groups are visited in order of their earliest unprocessed block.
        With up_to_block, events from later (unconfirmed) blocks are left
        for a later pass.
        """
        async with self._db.get_async_session() as session:
            events_repo = RawEventRepository(session)
            events = await events_repo.list_unprocessed(up_to_block=up_to_block)

            summary = ReconcileSummary(total=len(events))
            groups: OrderedDict[str, list[RawEventDTO]] = OrderedDict()
            for event in events:
                if event.id is None:
                    continue
                if not event.escrow_ref:
                    await events_repo.record_error(event.id, "Event has no escrow reference", processed=True)
                    summary.errors += 1
                    continue
                groups.setdefault(event.escrow_ref, []).append(event)

        for escrow_ref in groups:
            result = await self.reconcile_escrow(escrow_ref, up_to_block=up_to_block)
            summary.processed += result.processed
            summary.errors += result.errors

        if summary.total:
            logger.info(
                "Reconciled unprocessed events: total=%d processed=%d errors=%d",
                summary.total,
                summary.processed,
                summary.errors,
            )
        return summary

    async def reconcile_all(self, *, up_to_block: int | None = None) -> ReconcileAllSummary:
        """Reconcile every escrow that has not reached a terminal status."""
        pending = [s.value for s in EscrowStatus if s not in TERMINAL_ESCROW_STATUSES]
        async with self._db.get_async_session() as session:
            escrows = await EscrowRepository(session).list_by_status(pending)

        summary = ReconcileAllSummary(total=len(escrows))
        for escrow in escrows:
            result = await self.reconcile_escrow(escrow.escrow_ref, up_to_block=up_to_block)
            if result.reconciled:
                summary.reconciled += 1
            else:
                summary.errors += 1

        logger.info(
            "Reconciled %d/%d escrows. Errors: %d",
            summary.reconciled,
            summary.total,
            summary.errors,
        )
        return summary
