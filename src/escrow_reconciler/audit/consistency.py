"""Read-only consistency checks between orders, escrows and raw events.

Findings are reported, never corrected: fixes go through the normal
reconciliation path or manual intervention.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from escrow_reconciler.storage.database import DatabaseManager
from escrow_reconciler.storage.models import EscrowStatus, OrderStatus
from escrow_reconciler.storage.repos import EscrowRepository, OrderRepository, RawEventRepository
from escrow_reconciler.sync.reconciler import EventRejected, is_forward, target_status_for

if TYPE_CHECKING:
    from escrow_reconciler.jobs.locks import LockStore

logger = logging.getLogger(__name__)

CONSISTENCY_STATE_NAME = "consistency-check"
DEFAULT_REPORT_TTL_SECONDS = 7 * 24 * 3600
DEFAULT_STUCK_EVENT_LIMIT = 500

# Order statuses that say an escrow exists, and the escrow status each implies
ORDER_TO_ESCROW_STATUS: dict[OrderStatus, EscrowStatus] = {
    OrderStatus.ONCHAIN_LOCKED: EscrowStatus.LOCKED,
    OrderStatus.COMPLETED: EscrowStatus.RELEASED,
    OrderStatus.REFUNDED: EscrowStatus.REFUNDED,
}

# A refund can happen before any funds were escrowed
ESCROW_REQUIRED = frozenset({OrderStatus.ONCHAIN_LOCKED, OrderStatus.COMPLETED})


class DiscrepancyKind(str, Enum):
    """Kinds of consistency findings."""

    MISSING_ESCROW = "missing_escrow"
    STATUS_MISMATCH = "status_mismatch"
    MISSING_ORDER = "missing_order"
    STUCK_EVENT = "stuck_event"
    STATUS_BEHIND_EVENTS = "status_behind_events"


@dataclass
class Discrepancy:
    """One consistency finding."""

    kind: DiscrepancyKind
    message: str
    order_ref: str | None = None
    escrow_ref: str | None = None
    order_status: str | None = None
    escrow_status: str | None = None


@dataclass
class ConsistencyReport:
    """Result of one audit pass."""

    checked_at: datetime
    deep: bool
    orders_checked: int = 0
    escrows_checked: int = 0
    events_checked: int = 0
    discrepancies: list[Discrepancy] = field(default_factory=list)

    @property
    def is_consistent(self) -> bool:
        return not self.discrepancies

    def as_dict(self) -> dict[str, Any]:
        return {
            "checked_at": self.checked_at.isoformat(),
            "deep": self.deep,
            "orders_checked": self.orders_checked,
            "escrows_checked": self.escrows_checked,
            "events_checked": self.events_checked,
            "issues_found": len(self.discrepancies),
            "issues": [{**asdict(d), "kind": d.kind.value} for d in self.discrepancies],
        }


class ConsistencyAuditor:
    """Cross-checks order status against escrow status.

    The regular pass checks orders and escrows; the deep pass also looks at
    raw events stuck with errors and at escrows whose status lags behind
    their processed events.
    """

    def __init__(
        self,
        db: DatabaseManager,
        *,
        state_store: LockStore | None = None,
        report_ttl_seconds: int = DEFAULT_REPORT_TTL_SECONDS,
        stuck_event_limit: int = DEFAULT_STUCK_EVENT_LIMIT,
    ) -> None:
        self._db = db
        self._state_store = state_store
        self._report_ttl = report_ttl_seconds
        self._stuck_event_limit = stuck_event_limit

    async def run(self, *, deep: bool = False) -> ConsistencyReport:
        report = ConsistencyReport(checked_at=datetime.now(UTC), deep=deep)

        async with self._db.get_async_session() as session:
            escrow_repo = EscrowRepository(session)
            order_repo = OrderRepository(session)
            events_repo = RawEventRepository(session)

            escrows = await escrow_repo.list_all()
            escrows_by_order = {e.order_ref: e for e in escrows}

            orders = await order_repo.list_by_status(s.value for s in ORDER_TO_ESCROW_STATUS)
            report.orders_checked = len(orders)
            for order in orders:
                order_status = OrderStatus(order.status)
                escrow = escrows_by_order.get(order.order_ref)
                if escrow is None:
                    if order_status in ESCROW_REQUIRED:
                        report.discrepancies.append(
                            Discrepancy(
                                DiscrepancyKind.MISSING_ESCROW,
                                f"Order {order.order_ref} is {order.status} but has no escrow",
                                order_ref=order.order_ref,
                                order_status=order.status,
                            )
                        )
                    continue
                expected = ORDER_TO_ESCROW_STATUS[order_status]
                if escrow.status != expected.value:
                    report.discrepancies.append(
                        Discrepancy(
                            DiscrepancyKind.STATUS_MISMATCH,
                            f"Order {order.order_ref} is {order.status} but escrow {escrow.escrow_ref} "
                            f"is {escrow.status} (expected {expected.value})",
                            order_ref=order.order_ref,
                            escrow_ref=escrow.escrow_ref,
                            order_status=order.status,
                            escrow_status=escrow.status,
                        )
                    )

            report.escrows_checked = len(escrows)
            existing = await order_repo.get_many(e.order_ref for e in escrows)
            for escrow in escrows:
                if escrow.order_ref not in existing:
                    report.discrepancies.append(
                        Discrepancy(
                            DiscrepancyKind.MISSING_ORDER,
                            f"Escrow {escrow.escrow_ref}: order {escrow.order_ref} not found",
                            order_ref=escrow.order_ref,
                            escrow_ref=escrow.escrow_ref,
                            escrow_status=escrow.status,
                        )
                    )

            if deep:
                for event in await events_repo.list_stuck(limit=self._stuck_event_limit):
                    report.discrepancies.append(
                        Discrepancy(
                            DiscrepancyKind.STUCK_EVENT,
                            f"Event {event.tx_id} ({event.event_name}) unprocessed: {event.error_message}",
                            escrow_ref=event.escrow_ref,
                        )
                    )

                for escrow in escrows:
                    processed = await events_repo.list_for_escrow(escrow.escrow_ref, processed=True)
                    report.events_checked += len(processed)
                    derived: EscrowStatus | None = None
                    for event in processed:
                        try:
                            target = target_status_for(event)
                        except EventRejected:
                            continue
                        if derived is None or is_forward(derived, target):
                            derived = target
                    current = EscrowStatus(escrow.status)
                    if derived is not None and is_forward(current, derived):
                        report.discrepancies.append(
                            Discrepancy(
                                DiscrepancyKind.STATUS_BEHIND_EVENTS,
                                f"Escrow {escrow.escrow_ref} is {escrow.status} but its processed events "
                                f"imply {derived.value}",
                                order_ref=escrow.order_ref,
                                escrow_ref=escrow.escrow_ref,
                                escrow_status=escrow.status,
                            )
                        )

        if report.discrepancies:
            logger.warning("Consistency check found %d issue(s)", len(report.discrepancies))
            for d in report.discrepancies:
                logger.warning("  - %s", d.message)
        else:
            logger.info(
                "Consistency check clean: %d orders, %d escrows",
                report.orders_checked,
                report.escrows_checked,
            )

        if self._state_store is not None:
            await self._state_store.save_state(CONSISTENCY_STATE_NAME, report.as_dict(), ttl=self._report_ttl)
        return report
