"""Service coordinating entitlement persistence, owner pointers, and notifications."""
from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Protocol, Sequence

from ..clock import Clock, ensure_aware, system_clock
from ..errors import EntitlementNotFound, NotEligible, PersistenceFailure
from . import lifecycle
from .catalog import PlanCatalog
from .models import (
    PackageOwner,
    PackagePlan,
    PackageStatus,
    PaymentInfo,
    RenewalChain,
    RenewalEligibility,
    TransitionResult,
    UserPackage,
)

logger = logging.getLogger(__name__)


class PackageRepository(Protocol):
    """Persistence operations required by the package service."""

    def get_package(self, entitlement_id: str) -> Optional[UserPackage]:
        ...

    def save_package(self, entitlement: UserPackage) -> UserPackage:
        ...

    def mark_expired(self, entitlement_id: str, *, updated_at: datetime) -> Optional[UserPackage]:
        """Deactivate the record only while it is still active; ``None`` when nothing changed."""

    def set_renewal_eligibility(
        self,
        entitlement_id: str,
        *,
        is_renewal_eligible: bool,
        renewal_eligible_date: Optional[datetime],
        updated_at: datetime,
    ) -> Optional[UserPackage]:
        ...

    def mark_superseded(
        self,
        entitlement_id: str,
        *,
        renewed_to_id: str,
        updated_at: datetime,
    ) -> Optional[UserPackage]:
        ...

    def increment_uses(self, entitlement_id: str, *, updated_at: datetime) -> Optional[UserPackage]:
        ...

    def list_active_packages(self) -> Sequence[UserPackage]:
        ...

    def list_packages_for_user(self, user_id: str) -> Sequence[UserPackage]:
        ...

    def find_by_payment(self, user_id: str, payment_id: str) -> Optional[UserPackage]:
        ...

    def deactivate_active_packages(self, user_id: str, *, updated_at: datetime) -> int:
        ...

    def get_owner(self, user_id: str) -> Optional[PackageOwner]:
        ...

    def set_active_package(
        self,
        user_id: str,
        *,
        entitlement_id: str,
        package_type: str,
        updated_at: datetime,
    ) -> PackageOwner:
        ...

    def clear_active_package_if(
        self,
        user_id: str,
        *,
        expected_entitlement_id: str,
        updated_at: datetime,
    ) -> bool:
        """Clear the owner's pointer only while it still references ``expected_entitlement_id``."""


class PackageNotifier(Protocol):
    """Best-effort outbound notifications about entitlement changes."""

    def notify_renewal_eligible(self, user_id: str, entitlement: UserPackage) -> None:
        ...

    def notify_expired(self, user_id: str, entitlement: UserPackage) -> None:
        ...


class NullPackageNotifier:
    def notify_renewal_eligible(self, user_id: str, entitlement: UserPackage) -> None:
        return None

    def notify_expired(self, user_id: str, entitlement: UserPackage) -> None:
        return None


_dataclass_kwargs = {"slots": True} if sys.version_info >= (3, 10) else {}


@dataclass(**_dataclass_kwargs)
class PackageService:
    """Owns purchase, renewal, expiry, and usage of user entitlements."""

    repository: PackageRepository
    catalog: PlanCatalog
    notifier: PackageNotifier = field(default_factory=NullPackageNotifier)
    clock: Clock = system_clock

    def _now(self, now: Optional[datetime] = None) -> datetime:
        return ensure_aware(now) if now is not None else self.clock()

    def list_plans(self) -> List[PackagePlan]:
        return self.catalog.list_active_plans()

    def find_existing_purchase(self, user_id: str, payment_id: Optional[str]) -> Optional[UserPackage]:
        if not payment_id:
            return None
        return self.repository.find_by_payment(user_id, payment_id)

    def purchase(
        self,
        user_id: str,
        plan_id: str,
        payment: PaymentInfo,
        *,
        now: Optional[datetime] = None,
    ) -> UserPackage:
        """Provision a new entitlement after the payment collaborator confirms payment."""

        current_time = self._now(now)
        plan = lifecycle.validate_purchase(self.catalog.get_plan(plan_id), payment, plan_id=plan_id)

        existing = self.find_existing_purchase(user_id, payment.payment_id)
        if existing is not None:
            logger.info(
                "Payment already provisioned",
                extra={"user_id": user_id, "payment_id": payment.payment_id, "entitlement_id": existing.id},
            )
            return existing

        deactivated = self.repository.deactivate_active_packages(user_id, updated_at=current_time)
        if deactivated:
            logger.info(
                "Deactivated previous packages before purchase",
                extra={"user_id": user_id, "deactivated": deactivated},
            )

        entitlement = lifecycle.create_entitlement(user_id, plan, payment, current_time)
        stored = self.repository.save_package(entitlement)
        self.repository.set_active_package(
            user_id,
            entitlement_id=stored.id,
            package_type=stored.package_type.value,
            updated_at=current_time,
        )
        logger.info(
            "Package purchased",
            extra={
                "user_id": user_id,
                "entitlement_id": stored.id,
                "package_type": stored.package_type.value,
                "expiry_date": stored.expiry_date.isoformat() if stored.expiry_date else None,
            },
        )
        return stored

    def renew(
        self,
        user_id: str,
        plan_id: str,
        payment: PaymentInfo,
        *,
        now: Optional[datetime] = None,
    ) -> UserPackage:
        """Chain a successor onto the user's current entitlement."""

        current_time = self._now(now)
        owner = self.repository.get_owner(user_id)
        if owner is None or not owner.has_package:
            raise NotEligible(
                "No active package to renew. Please purchase a new package instead.",
                detail={"should_purchase_new": True},
            )

        current = self._require_package(owner.active_package_id)
        plan = lifecycle.validate_purchase(self.catalog.get_plan(plan_id), payment, plan_id=plan_id)

        refreshed = self._persist_eligibility(current, current_time)
        superseded, successor = lifecycle.renew(refreshed.entitlement, plan, payment, current_time)

        if self.repository.mark_superseded(superseded.id, renewed_to_id=successor.id, updated_at=current_time) is None:
            raise NotEligible(
                "Package is no longer active. Please purchase a new package instead.",
                detail={"entitlement_id": superseded.id, "should_purchase_new": True},
            )
        stored = self.repository.save_package(successor)
        self.repository.set_active_package(
            user_id,
            entitlement_id=stored.id,
            package_type=stored.package_type.value,
            updated_at=current_time,
        )
        logger.info(
            "Package renewed",
            extra={
                "user_id": user_id,
                "renewed_from_id": superseded.id,
                "entitlement_id": stored.id,
                "expiry_date": stored.expiry_date.isoformat() if stored.expiry_date else None,
            },
        )
        return stored

    def reconcile_package(
        self,
        entitlement: UserPackage,
        *,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """Apply the expiry transition and release the owner's pointer if it is still ours."""

        current_time = self._now(now)
        current = self.repository.get_package(entitlement.id)
        if current is None:
            return TransitionResult(changed=False, entitlement=entitlement)
        result = lifecycle.reconcile(current, current_time)
        if not result.changed:
            return result
        return self._store_expiry(current, current_time)

    def expire_package(
        self,
        entitlement: UserPackage,
        *,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """Deactivate unconditionally; used when a record cannot be evaluated."""

        current_time = self._now(now)
        if not entitlement.is_active:
            return TransitionResult(changed=False, entitlement=entitlement)
        return self._store_expiry(entitlement, current_time)

    def refresh_renewal_eligibility(
        self,
        entitlement: UserPackage,
        *,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        current = self.repository.get_package(entitlement.id)
        if current is None:
            return TransitionResult(changed=False, entitlement=entitlement)
        return self._persist_eligibility(current, self._now(now))

    def check_expiry_now(self, user_id: str, *, now: Optional[datetime] = None) -> PackageStatus:
        """Force an on-demand reconciliation before reporting the user's package status."""

        current_time = self._now(now)
        owner = self.repository.get_owner(user_id)
        if owner is None or not owner.has_package:
            return PackageStatus(entitlement=None, is_expired=True)

        entitlement = self.repository.get_package(owner.active_package_id)
        if entitlement is None:
            logger.warning(
                "Owner references a missing package",
                extra={"user_id": user_id, "entitlement_id": owner.active_package_id},
            )
            self.repository.clear_active_package_if(
                user_id,
                expected_entitlement_id=owner.active_package_id,
                updated_at=current_time,
            )
            return PackageStatus(entitlement=None, is_expired=True)

        reconciled = self.reconcile_package(entitlement, now=current_time).entitlement
        if not reconciled.is_active:
            return PackageStatus(entitlement=reconciled, is_expired=True)

        refreshed = self._persist_eligibility(reconciled, current_time).entitlement
        if not refreshed.is_active:
            return PackageStatus(entitlement=refreshed, is_expired=True)
        remaining = lifecycle.time_remaining(refreshed.expiry_date, current_time)
        return PackageStatus(
            entitlement=refreshed,
            is_expired=False,
            days_remaining=remaining.days,
            hours_remaining=remaining.hours,
            formatted_time_remaining=remaining.formatted,
            is_renewal_eligible=refreshed.is_renewal_eligible,
            renewal_eligible_date=refreshed.renewal_eligible_date,
        )

    def get_active_entitlement(self, user_id: str, *, now: Optional[datetime] = None) -> Optional[UserPackage]:
        status = self.check_expiry_now(user_id, now=now)
        if status.is_expired:
            return None
        return status.entitlement

    def get_renewal_eligibility(self, user_id: str, *, now: Optional[datetime] = None) -> RenewalEligibility:
        status = self.check_expiry_now(user_id, now=now)
        entitlement = status.entitlement
        if status.is_expired or entitlement is None:
            return RenewalEligibility(is_eligible=False, message="No active package", entitlement=entitlement)
        return RenewalEligibility(
            is_eligible=entitlement.is_renewal_eligible,
            message="Eligible for renewal" if entitlement.is_renewal_eligible else "Not yet eligible for renewal",
            entitlement=entitlement,
            renewal_eligible_date=entitlement.renewal_eligible_date,
            expiry_date=entitlement.expiry_date,
        )

    def record_use(
        self,
        entitlement_id: str,
        *,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> UserPackage:
        current_time = self._now(now)
        entitlement = self._require_package(entitlement_id)
        if user_id is not None and entitlement.user_id != user_id:
            raise EntitlementNotFound("Package not found", detail={"entitlement_id": entitlement_id})
        lifecycle.record_use(entitlement, current_time)
        stored = self.repository.increment_uses(entitlement.id, updated_at=current_time)
        if stored is None:
            # Changed since it was read; re-validate for the matching error.
            lifecycle.record_use(self._require_package(entitlement_id), current_time)
            raise PersistenceFailure("Failed to record package use", detail={"entitlement_id": entitlement_id})
        logger.info(
            "Package use recorded",
            extra={
                "entitlement_id": stored.id,
                "uses_consumed": stored.uses_consumed,
                "max_uses": stored.max_uses,
            },
        )
        return stored

    def get_renewal_history(self, user_id: str) -> List[RenewalChain]:
        return lifecycle.build_renewal_chains(self.repository.list_packages_for_user(user_id))

    def _require_package(self, entitlement_id: Optional[str]) -> UserPackage:
        entitlement = self.repository.get_package(entitlement_id) if entitlement_id else None
        if entitlement is None:
            raise EntitlementNotFound("Package not found", detail={"entitlement_id": entitlement_id})
        return entitlement

    def _store_expiry(self, entitlement: UserPackage, current_time: datetime) -> TransitionResult:
        expired = self.repository.mark_expired(entitlement.id, updated_at=current_time)
        if expired is None:
            return TransitionResult(changed=False, entitlement=self._latest(entitlement))
        cleared = self.repository.clear_active_package_if(
            expired.user_id,
            expected_entitlement_id=expired.id,
            updated_at=current_time,
        )
        logger.info(
            "Package expired",
            extra={"user_id": expired.user_id, "entitlement_id": expired.id, "owner_cleared": cleared},
        )
        if cleared:
            self._notify("expired", expired)
        return TransitionResult(changed=True, entitlement=expired, clear_owner_pointer=True)

    def _persist_eligibility(self, entitlement: UserPackage, current_time: datetime) -> TransitionResult:
        result = lifecycle.update_renewal_eligibility(entitlement, current_time)
        if not result.changed:
            return result
        stored = self.repository.set_renewal_eligibility(
            entitlement.id,
            is_renewal_eligible=result.entitlement.is_renewal_eligible,
            renewal_eligible_date=result.entitlement.renewal_eligible_date,
            updated_at=current_time,
        )
        if stored is None:
            return TransitionResult(changed=False, entitlement=self._latest(entitlement))
        if stored.is_renewal_eligible and not entitlement.is_renewal_eligible:
            self._notify("renewal_eligible", stored)
        return TransitionResult(changed=True, entitlement=stored)

    def _latest(self, entitlement: UserPackage) -> UserPackage:
        return self.repository.get_package(entitlement.id) or entitlement

    def _notify(self, kind: str, entitlement: UserPackage) -> None:
        try:
            if kind == "expired":
                self.notifier.notify_expired(entitlement.user_id, entitlement)
            else:
                self.notifier.notify_renewal_eligible(entitlement.user_id, entitlement)
        except Exception:
            logger.exception(
                "Package notification failed",
                extra={"kind": kind, "entitlement_id": entitlement.id},
            )


__all__ = [
    "NullPackageNotifier",
    "PackageNotifier",
    "PackageRepository",
    "PackageService",
]
