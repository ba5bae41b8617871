"""Tests for the package service orchestration over an in-memory repository."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from threading import Barrier, Thread
from typing import List, Tuple

import pytest

from entitlement_backend.app.clock import FrozenClock
from entitlement_backend.app.errors import EntitlementNotFound, InvalidPlan, NotEligible, UsageLimitReached
from entitlement_backend.app.packages import (
    DEFAULT_PLANS,
    InMemoryPackageRepository,
    PackagePlan,
    PackageService,
    PackageType,
    PaymentInfo,
    StaticPlanCatalog,
    UserPackage,
)
from entitlement_backend.app.packages.models import NO_PACKAGE

T0 = datetime(2025, 3, 1, 8, tzinfo=timezone.utc)


class RecordingNotifier:
    def __init__(self) -> None:
        self.renewal_eligible: List[Tuple[str, str]] = []
        self.expired: List[Tuple[str, str]] = []

    def notify_renewal_eligible(self, user_id: str, entitlement: UserPackage) -> None:
        self.renewal_eligible.append((user_id, entitlement.id))

    def notify_expired(self, user_id: str, entitlement: UserPackage) -> None:
        self.expired.append((user_id, entitlement.id))


class ExplodingNotifier:
    def notify_renewal_eligible(self, user_id: str, entitlement: UserPackage) -> None:
        raise RuntimeError("mailer offline")

    def notify_expired(self, user_id: str, entitlement: UserPackage) -> None:
        raise RuntimeError("mailer offline")


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(T0)


@pytest.fixture
def repository() -> InMemoryPackageRepository:
    return InMemoryPackageRepository()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def service(repository, notifier, clock) -> PackageService:
    plans = dict(DEFAULT_PLANS)
    plans["plan_sixty"] = PackagePlan(
        id="plan_sixty",
        name="Sixty Day Plan",
        type=PackageType.ENHANCED,
        price=80,
        duration_days=60,
        max_uses=10,
    )
    return PackageService(
        repository=repository,
        catalog=StaticPlanCatalog(plans),
        notifier=notifier,
        clock=clock,
    )


def test_list_plans_sorted_by_price(service: PackageService) -> None:
    prices = [plan.price for plan in service.list_plans()]
    assert prices == sorted(prices)
    assert service.list_plans()[0].id == "plan_single"


def test_purchase_sets_owner_pointer(service, repository) -> None:
    entitlement = service.purchase("user-1", "plan_enhanced", PaymentInfo(payment_id="pay_1"))

    owner = repository.get_owner("user-1")
    assert owner.active_package_id == entitlement.id
    assert owner.package_type == PackageType.ENHANCED.value
    assert entitlement.expiry_date == T0 + timedelta(days=30)


def test_purchase_is_idempotent_on_payment_id(service, repository) -> None:
    first = service.purchase("user-1", "plan_basic", PaymentInfo(payment_id="pay_1"))
    second = service.purchase("user-1", "plan_basic", PaymentInfo(payment_id="pay_1"))

    assert second.id == first.id
    assert len(repository.list_packages_for_user("user-1")) == 1


def test_new_purchase_deactivates_previous_package(service, repository, clock) -> None:
    first = service.purchase("user-1", "plan_basic", PaymentInfo(payment_id="pay_1"))
    clock.advance(timedelta(days=2))
    second = service.purchase("user-1", "plan_premium", PaymentInfo(payment_id="pay_2"))

    assert repository.get_package(first.id).is_active is False
    assert repository.get_owner("user-1").active_package_id == second.id
    assert [item.id for item in repository.list_active_packages()] == [second.id]


def test_purchase_unknown_plan(service) -> None:
    with pytest.raises(InvalidPlan):
        service.purchase("user-1", "plan_missing", PaymentInfo(payment_id="pay_1"))


def test_renew_without_current_package_requests_new_purchase(service) -> None:
    with pytest.raises(NotEligible) as excinfo:
        service.renew("user-1", "plan_basic", PaymentInfo(payment_id="pay_1"))

    assert excinfo.value.payload["should_purchase_new"] is True


def test_renew_chains_successor_and_moves_pointer(service, repository, clock) -> None:
    original = service.purchase("user-1", "plan_enhanced", PaymentInfo(payment_id="pay_1"))
    clock.set(T0 + timedelta(days=29))

    successor = service.renew("user-1", "plan_sixty", PaymentInfo(payment_id="pay_2"))

    assert successor.expiry_date == T0 + timedelta(days=90)
    assert successor.renewed_from_id == original.id
    stored_original = repository.get_package(original.id)
    assert stored_original.is_active is False
    assert stored_original.renewed_to_id == successor.id
    assert repository.get_owner("user-1").active_package_id == successor.id


def test_renew_too_early_leaves_state_untouched(service, repository, clock) -> None:
    original = service.purchase("user-1", "plan_enhanced", PaymentInfo(payment_id="pay_1"))
    clock.set(T0 + timedelta(days=5))

    with pytest.raises(NotEligible) as excinfo:
        service.renew("user-1", "plan_enhanced", PaymentInfo(payment_id="pay_2"))

    assert excinfo.value.payload["expiry_date"] == original.expiry_date
    assert repository.get_package(original.id).is_active is True
    assert repository.get_owner("user-1").active_package_id == original.id


def test_check_expiry_now_expires_and_notifies_once(service, repository, notifier, clock) -> None:
    entitlement = service.purchase("user-1", "plan_single", PaymentInfo(payment_id="pay_1"))
    clock.set(entitlement.expiry_date + timedelta(seconds=1))

    status = service.check_expiry_now("user-1")
    again = service.check_expiry_now("user-1")

    assert status.is_expired is True
    assert status.entitlement.is_active is False
    assert again.is_expired is True
    owner = repository.get_owner("user-1")
    assert owner.active_package_id is None
    assert owner.package_type == NO_PACKAGE
    assert notifier.expired == [("user-1", entitlement.id)]
    assert service.get_active_entitlement("user-1") is None


def test_check_expiry_now_reports_time_and_eligibility(service, notifier, clock) -> None:
    entitlement = service.purchase("user-1", "plan_enhanced", PaymentInfo(payment_id="pay_1"))
    clock.set(T0 + timedelta(days=29))

    status = service.check_expiry_now("user-1")
    service.check_expiry_now("user-1")

    assert status.is_expired is False
    assert status.days_remaining == 1
    assert status.hours_remaining == 0
    assert status.formatted_time_remaining == "1 day 0 hours 0 minutes"
    assert status.is_renewal_eligible is True
    assert status.renewal_eligible_date == T0 + timedelta(days=28, hours=12)
    assert notifier.renewal_eligible == [("user-1", entitlement.id)]

    eligibility = service.get_renewal_eligibility("user-1")
    assert eligibility.is_eligible is True
    assert eligibility.expiry_date == entitlement.expiry_date


def test_renewal_eligibility_without_package(service) -> None:
    eligibility = service.get_renewal_eligibility("user-unknown")

    assert eligibility.is_eligible is False
    assert eligibility.entitlement is None


def test_reconcile_does_not_clear_pointer_owned_by_newer_package(service, repository, notifier, clock) -> None:
    stale = service.purchase("user-1", "plan_single", PaymentInfo(payment_id="pay_1"))
    repository.set_active_package("user-1", entitlement_id="up_newer", package_type="basic", updated_at=T0)
    clock.set(stale.expiry_date + timedelta(hours=1))

    result = service.reconcile_package(stale)

    assert result.changed is True
    assert result.entitlement.is_active is False
    assert repository.get_owner("user-1").active_package_id == "up_newer"
    assert notifier.expired == []


def test_reconcile_with_outdated_copy_leaves_newer_records_untouched(service, repository, notifier, clock) -> None:
    stale = service.purchase("user-1", "plan_single", PaymentInfo(payment_id="pay_1"))
    clock.advance(timedelta(days=1))
    current = service.purchase("user-1", "plan_basic", PaymentInfo(payment_id="pay_2"))
    stored_stale = repository.get_package(stale.id)
    clock.set(stale.expiry_date + timedelta(hours=1))

    result = service.reconcile_package(stale)

    assert result.changed is False
    assert result.entitlement == stored_stale
    assert repository.get_package(stale.id) == stored_stale
    assert repository.get_package(current.id) == current
    assert [item.id for item in repository.list_active_packages()] == [current.id]
    assert repository.get_owner("user-1").active_package_id == current.id
    assert notifier.expired == []


def test_refresh_with_outdated_copy_keeps_recorded_uses(service, repository, clock) -> None:
    entitlement = service.purchase("user-1", "plan_enhanced", PaymentInfo(payment_id="pay_1"))
    clock.set(T0 + timedelta(days=29))
    service.record_use(entitlement.id)

    result = service.refresh_renewal_eligibility(entitlement)

    stored = repository.get_package(entitlement.id)
    assert result.changed is True
    assert stored.uses_consumed == 1
    assert stored.is_renewal_eligible is True


def test_concurrent_uses_never_exceed_limit(service, repository) -> None:
    entitlement = service.purchase("user-1", "plan_single", PaymentInfo(payment_id="pay_1"))
    barrier = Barrier(4)
    outcomes: List[str] = []

    def worker() -> None:
        barrier.wait()
        try:
            service.record_use(entitlement.id)
        except UsageLimitReached:
            outcomes.append("limited")
        else:
            outcomes.append("used")

    threads = [Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes) == ["limited", "limited", "used", "used"]
    assert repository.get_package(entitlement.id).uses_consumed == 2


def test_renew_after_expiry_before_sweep_starts_from_now(service, repository, clock) -> None:
    entitlement = service.purchase("user-1", "plan_single", PaymentInfo(payment_id="pay_1"))
    renewed_at = entitlement.expiry_date + timedelta(hours=2)
    clock.set(renewed_at)

    successor = service.renew("user-1", "plan_basic", PaymentInfo(payment_id="pay_2"))

    assert successor.expiry_date == renewed_at + timedelta(days=15)
    assert repository.get_package(entitlement.id).renewed_to_id == successor.id
    assert repository.get_owner("user-1").active_package_id == successor.id


def test_concurrent_reconcile_clears_pointer_exactly_once(service, repository, notifier, clock) -> None:
    entitlement = service.purchase("user-1", "plan_single", PaymentInfo(payment_id="pay_1"))
    clock.set(entitlement.expiry_date + timedelta(minutes=1))

    barrier = Barrier(2)
    results = []

    def worker() -> None:
        barrier.wait()
        results.append(service.reconcile_package(entitlement))

    threads = [Thread(target=worker) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(results) == 2
    assert all(result.entitlement.is_active is False for result in results)
    assert repository.get_owner("user-1").active_package_id is None
    assert notifier.expired == [("user-1", entitlement.id)]


def test_dangling_owner_pointer_is_cleared(service, repository) -> None:
    repository.set_active_package("user-1", entitlement_id="up_missing", package_type="basic", updated_at=T0)

    status = service.check_expiry_now("user-1")

    assert status.is_expired is True
    assert repository.get_owner("user-1").active_package_id is None


def test_expire_package_forces_deactivation(service, repository, notifier) -> None:
    entitlement = service.purchase("user-1", "plan_premium", PaymentInfo(payment_id="pay_1"))

    result = service.expire_package(entitlement)

    assert result.changed is True
    assert repository.get_package(entitlement.id).is_active is False
    assert repository.get_owner("user-1").active_package_id is None
    assert notifier.expired == [("user-1", entitlement.id)]
    assert service.expire_package(result.entitlement).changed is False


def test_notifier_failures_are_logged_not_raised(repository, clock, caplog) -> None:
    service = PackageService(
        repository=repository,
        catalog=StaticPlanCatalog(),
        notifier=ExplodingNotifier(),
        clock=clock,
    )
    entitlement = service.purchase("user-1", "plan_single", PaymentInfo(payment_id="pay_1"))
    clock.set(entitlement.expiry_date + timedelta(seconds=1))

    with caplog.at_level(logging.ERROR):
        status = service.check_expiry_now("user-1")

    assert status.is_expired is True
    assert "Package notification failed" in caplog.text


def test_record_use_persists_and_checks_owner(service, repository) -> None:
    entitlement = service.purchase("user-1", "plan_single", PaymentInfo(payment_id="pay_1"))

    updated = service.record_use(entitlement.id, user_id="user-1")

    assert updated.uses_consumed == 1
    assert repository.get_package(entitlement.id).uses_consumed == 1
    with pytest.raises(EntitlementNotFound):
        service.record_use(entitlement.id, user_id="someone-else")
    with pytest.raises(EntitlementNotFound):
        service.record_use("up_missing")


def test_renewal_history_follows_links(service, clock) -> None:
    original = service.purchase("user-1", "plan_enhanced", PaymentInfo(payment_id="pay_1"))
    clock.set(T0 + timedelta(days=29))
    successor = service.renew("user-1", "plan_enhanced", PaymentInfo(payment_id="pay_2"))

    chains = service.get_renewal_history("user-1")

    assert len(chains) == 1
    assert [item.id for item in chains[0].entitlements] == [original.id, successor.id]


def test_now_override_takes_precedence_over_clock(service) -> None:
    moment = T0 + timedelta(days=3)
    entitlement = service.purchase("user-1", "plan_basic", PaymentInfo(payment_id="pay_1"), now=moment)

    assert entitlement.purchase_date == moment
