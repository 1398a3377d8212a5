"""Event ingestion layer - live and historical escrow event capture."""

from escrow_reconciler.ingestor.events import EventIngestor, IngestorStats, raw_event_from_log

__all__ = [
    "EventIngestor",
    "IngestorStats",
    "raw_event_from_log",
]
