"""Batch reconciliation over every active entitlement."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from ..clock import ensure_aware
from ..errors import PersistenceFailure
from ..packages.models import UserPackage
from ..packages.service import PackageService
from .models import ExpirySweepSummary, RenewalSweepSummary, RetentionSummary
from .retention import RetentionStore

logger = logging.getLogger(__name__)

DEFAULT_RETENTION = timedelta(days=365)
DEFAULT_HISTORY_KEEP = 10


@dataclass
class Sweeper:
    """Runs the periodic sweeps; each entitlement is handled independently."""

    service: PackageService
    retention_store: Optional[RetentionStore] = None
    retention: timedelta = DEFAULT_RETENTION
    history_keep_per_user: int = DEFAULT_HISTORY_KEEP

    def _now(self, now: Optional[datetime]) -> datetime:
        return ensure_aware(now) if now is not None else self.service.clock()

    def sweep_expiry(self, now: Optional[datetime] = None) -> ExpirySweepSummary:
        current_time = self._now(now)
        packages = self.service.repository.list_active_packages()
        summary = ExpirySweepSummary(total=len(packages))

        for entitlement in packages:
            try:
                result = self.service.reconcile_package(entitlement, now=current_time)
            except PersistenceFailure:
                summary.error_count += 1
                logger.exception("Expiry sweep failed for package", extra={"entitlement_id": entitlement.id})
                continue
            except Exception:
                logger.exception(
                    "Unreadable package during expiry sweep; deactivating",
                    extra={"entitlement_id": entitlement.id},
                )
                if self._force_expire(entitlement, current_time):
                    summary.expired_count += 1
                else:
                    summary.error_count += 1
                continue
            if result.changed:
                summary.expired_count += 1

        logger.info("Expiry sweep completed", extra=summary.as_dict())
        return summary

    def sweep_renewal_eligibility(self, now: Optional[datetime] = None) -> RenewalSweepSummary:
        current_time = self._now(now)
        packages = self.service.repository.list_active_packages()
        summary = RenewalSweepSummary(total=len(packages))

        for entitlement in packages:
            try:
                result = self.service.refresh_renewal_eligibility(entitlement, now=current_time)
            except Exception:
                summary.error_count += 1
                logger.exception(
                    "Renewal eligibility sweep failed for package",
                    extra={"entitlement_id": entitlement.id},
                )
                continue
            if result.entitlement.is_renewal_eligible:
                summary.eligible_count += 1
            else:
                summary.not_eligible_count += 1

        logger.info("Renewal eligibility sweep completed", extra=summary.as_dict())
        return summary

    def retention_cleanup(self, now: Optional[datetime] = None) -> RetentionSummary:
        if self.retention_store is None:
            raise RuntimeError("Retention cleanup requires a retention store")
        current_time = self._now(now)
        cutoff = current_time - self.retention
        summary = RetentionSummary(
            packages_deleted=self.retention_store.delete_inactive_packages_before(cutoff),
            history_pruned=self.retention_store.prune_questionnaire_history(self.history_keep_per_user),
            sessions_deleted=self.retention_store.delete_sessions_before(cutoff),
        )
        logger.info("Retention cleanup completed", extra={**summary.as_dict(), "cutoff": cutoff.isoformat()})
        return summary

    def _force_expire(self, entitlement: UserPackage, current_time: datetime) -> bool:
        try:
            self.service.expire_package(entitlement, now=current_time)
        except PersistenceFailure:
            logger.exception("Failed to deactivate package", extra={"entitlement_id": entitlement.id})
            return False
        return True


__all__ = ["DEFAULT_HISTORY_KEEP", "DEFAULT_RETENTION", "Sweeper"]
