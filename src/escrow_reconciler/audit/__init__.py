"""Audit layer - read-only order/escrow consistency checks."""

from escrow_reconciler.audit.consistency import (
    ConsistencyAuditor,
    ConsistencyReport,
    Discrepancy,
    DiscrepancyKind,
)

__all__ = [
    "ConsistencyAuditor",
    "ConsistencyReport",
    "Discrepancy",
    "DiscrepancyKind",
]
