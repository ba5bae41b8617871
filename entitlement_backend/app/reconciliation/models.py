"""Counters reported by reconciliation sweeps."""
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Dict


@dataclass
class ExpirySweepSummary:
    total: int = 0
    expired_count: int = 0
    error_count: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class RenewalSweepSummary:
    total: int = 0
    eligible_count: int = 0
    not_eligible_count: int = 0
    error_count: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class RetentionSummary:
    packages_deleted: int = 0
    history_pruned: int = 0
    sessions_deleted: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


__all__ = ["ExpirySweepSummary", "RenewalSweepSummary", "RetentionSummary"]
