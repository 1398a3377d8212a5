"""Sync layer - block validation, state reconciliation and sync orchestration."""

from escrow_reconciler.sync.orchestrator import (
    RESYNC_JOB_NAME,
    BatchResult,
    BatchStatus,
    ResyncProgress,
    ResyncResult,
    SyncError,
    SyncOrchestrator,
    SyncStatusReport,
)
from escrow_reconciler.sync.reconciler import (
    EscrowReconcileResult,
    ReconcileAllSummary,
    ReconcileSummary,
    StateReconciler,
)
from escrow_reconciler.sync.validator import BlockValidation, BlockValidator, ChainValidation

__all__ = [
    "RESYNC_JOB_NAME",
    "BatchResult",
    "BatchStatus",
    "BlockValidation",
    "BlockValidator",
    "ChainValidation",
    "EscrowReconcileResult",
    "ReconcileAllSummary",
    "ReconcileSummary",
    "ResyncProgress",
    "ResyncResult",
    "StateReconciler",
    "SyncError",
    "SyncOrchestrator",
    "SyncStatusReport",
]
