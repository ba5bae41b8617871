"""Periodic reconciliation sweeps and retention cleanup."""

from .models import ExpirySweepSummary, RenewalSweepSummary, RetentionSummary
from .retention import (
    HistoryEntry,
    InMemoryRetentionStore,
    PostgresRetentionStore,
    RetentionStore,
    SessionRecord,
)
from .sweeper import DEFAULT_HISTORY_KEEP, DEFAULT_RETENTION, Sweeper

__all__ = [
    "DEFAULT_HISTORY_KEEP",
    "DEFAULT_RETENTION",
    "ExpirySweepSummary",
    "HistoryEntry",
    "InMemoryRetentionStore",
    "PostgresRetentionStore",
    "RenewalSweepSummary",
    "RetentionStore",
    "RetentionSummary",
    "SessionRecord",
    "Sweeper",
]
