"""Tests for the batch reconciliation sweeps."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Sequence

import pytest

from entitlement_backend.app.clock import FrozenClock
from entitlement_backend.app.errors import PersistenceFailure
from entitlement_backend.app.packages import (
    InMemoryPackageRepository,
    PackageService,
    PaymentInfo,
    StaticPlanCatalog,
    UserPackage,
)
from entitlement_backend.app.reconciliation import (
    HistoryEntry,
    InMemoryRetentionStore,
    SessionRecord,
    Sweeper,
)

T0 = datetime(2025, 2, 1, 6, tzinfo=timezone.utc)


class FlakyRepository(InMemoryPackageRepository):
    """Fails writes for the listed entitlement ids and can run a callback right after a sweep lists packages."""

    def __init__(self) -> None:
        super().__init__()
        self.failing_ids: List[str] = []
        self.after_listing: Optional[Callable[[], None]] = None

    def list_active_packages(self) -> Sequence[UserPackage]:
        packages = super().list_active_packages()
        callback, self.after_listing = self.after_listing, None
        if callback is not None:
            callback()
        return packages

    def mark_expired(self, entitlement_id: str, *, updated_at: datetime) -> Optional[UserPackage]:
        self._check(entitlement_id)
        return super().mark_expired(entitlement_id, updated_at=updated_at)

    def set_renewal_eligibility(self, entitlement_id: str, **kwargs) -> Optional[UserPackage]:
        self._check(entitlement_id)
        return super().set_renewal_eligibility(entitlement_id, **kwargs)

    def _check(self, entitlement_id: str) -> None:
        if entitlement_id in self.failing_ids:
            raise PersistenceFailure("write failed", detail={"entitlement_id": entitlement_id})


class RecordingNotifier:
    def __init__(self) -> None:
        self.expired: List[str] = []
        self.renewal_eligible: List[str] = []

    def notify_renewal_eligible(self, user_id: str, entitlement: UserPackage) -> None:
        self.renewal_eligible.append(entitlement.id)

    def notify_expired(self, user_id: str, entitlement: UserPackage) -> None:
        self.expired.append(entitlement.id)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(T0)


@pytest.fixture
def repository() -> FlakyRepository:
    return FlakyRepository()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def service(repository, notifier, clock) -> PackageService:
    return PackageService(repository=repository, catalog=StaticPlanCatalog(), notifier=notifier, clock=clock)


@pytest.fixture
def sweeper(service, repository) -> Sweeper:
    return Sweeper(service=service, retention_store=InMemoryRetentionStore(repository))


def _buy(service: PackageService, user_id: str, plan_id: str) -> UserPackage:
    return service.purchase(user_id, plan_id, PaymentInfo(payment_id=f"pay_{user_id}"))


def test_sweep_expiry_counts_expired_packages(service, sweeper, repository, notifier) -> None:
    short = _buy(service, "user-1", "plan_single")
    long = _buy(service, "user-2", "plan_premium")

    summary = sweeper.sweep_expiry(T0 + timedelta(days=4))

    assert summary.as_dict() == {"total": 2, "expired_count": 1, "error_count": 0}
    assert repository.get_package(short.id).is_active is False
    assert repository.get_package(long.id).is_active is True
    assert repository.get_owner("user-1").active_package_id is None
    assert notifier.expired == [short.id]


def test_sweep_expiry_is_idempotent(service, sweeper) -> None:
    _buy(service, "user-1", "plan_single")

    first = sweeper.sweep_expiry(T0 + timedelta(days=4))
    second = sweeper.sweep_expiry(T0 + timedelta(days=4))

    assert first.expired_count == 1
    assert second.total == 0
    assert second.expired_count == 0


def test_sweep_expiry_isolates_persistence_failures(service, sweeper, repository) -> None:
    failing = _buy(service, "user-1", "plan_single")
    healthy = _buy(service, "user-2", "plan_single")
    repository.failing_ids.append(failing.id)

    summary = sweeper.sweep_expiry(T0 + timedelta(days=4))

    assert summary.total == 2
    assert summary.expired_count == 1
    assert summary.error_count == 1
    assert repository.get_package(failing.id).is_active is True
    assert repository.get_package(healthy.id).is_active is False


def test_sweep_expiry_deactivates_records_missing_expiry(service, sweeper, repository) -> None:
    corrupt = _buy(service, "user-1", "plan_premium").model_copy(update={"expiry_date": None})
    repository.save_package(corrupt)

    summary = sweeper.sweep_expiry(T0 + timedelta(hours=1))

    assert summary.expired_count == 1
    assert repository.get_package(corrupt.id).is_active is False
    assert repository.get_owner("user-1").active_package_id is None


def test_sweep_expiry_forces_deactivation_on_logic_errors(service, sweeper, repository, monkeypatch) -> None:
    broken = _buy(service, "user-1", "plan_premium")
    original = service.reconcile_package

    def reconcile(self, entitlement, *, now=None):
        if entitlement.id == broken.id:
            raise ValueError("unreadable record")
        return original(entitlement, now=now)

    monkeypatch.setattr(PackageService, "reconcile_package", reconcile)

    summary = sweeper.sweep_expiry(T0 + timedelta(hours=1))

    assert summary.expired_count == 1
    assert summary.error_count == 0
    assert repository.get_package(broken.id).is_active is False


def test_sweep_renewal_eligibility_counts(service, sweeper, repository, notifier) -> None:
    ending = _buy(service, "user-1", "plan_single")
    fresh = _buy(service, "user-2", "plan_premium")

    summary = sweeper.sweep_renewal_eligibility(T0 + timedelta(days=2))

    assert summary.as_dict() == {
        "total": 2,
        "eligible_count": 1,
        "not_eligible_count": 1,
        "error_count": 0,
    }
    assert repository.get_package(ending.id).is_renewal_eligible is True
    assert repository.get_package(fresh.id).is_renewal_eligible is False
    assert notifier.renewal_eligible == [ending.id]

    again = sweeper.sweep_renewal_eligibility(T0 + timedelta(days=2, hours=1))
    assert again.eligible_count == 1
    assert notifier.renewal_eligible == [ending.id]


def test_sweep_renewal_eligibility_isolates_failures(service, sweeper, repository) -> None:
    failing = _buy(service, "user-1", "plan_single")
    _buy(service, "user-2", "plan_single")
    repository.failing_ids.append(failing.id)

    summary = sweeper.sweep_renewal_eligibility(T0 + timedelta(days=2))

    assert summary.error_count == 1
    assert summary.eligible_count == 1


def test_renewal_sweep_does_not_revive_package_replaced_mid_sweep(service, sweeper, repository, clock) -> None:
    original = _buy(service, "user-1", "plan_enhanced")
    clock.set(T0 + timedelta(days=29))
    replacements: List[UserPackage] = []
    repository.after_listing = lambda: replacements.append(
        service.purchase("user-1", "plan_basic", PaymentInfo(payment_id="pay_replacement"))
    )

    summary = sweeper.sweep_renewal_eligibility()

    assert summary.total == 1
    assert summary.eligible_count == 0
    assert repository.get_package(original.id).is_active is False
    assert [item.id for item in repository.list_active_packages()] == [replacements[0].id]
    assert repository.get_owner("user-1").active_package_id == replacements[0].id


def test_expiry_sweep_keeps_renewal_link_made_mid_sweep(service, sweeper, repository, notifier, clock) -> None:
    original = _buy(service, "user-1", "plan_single")
    clock.set(original.expiry_date + timedelta(seconds=1))
    successors: List[UserPackage] = []
    repository.after_listing = lambda: successors.append(
        service.renew("user-1", "plan_basic", PaymentInfo(payment_id="pay_renewal"))
    )

    summary = sweeper.sweep_expiry()

    successor = successors[0]
    assert summary.as_dict() == {"total": 1, "expired_count": 0, "error_count": 0}
    assert repository.get_package(original.id).renewed_to_id == successor.id
    assert repository.get_package(successor.id).is_active is True
    assert repository.get_owner("user-1").active_package_id == successor.id
    assert notifier.expired == []


def test_renewal_sweep_keeps_use_recorded_mid_sweep(service, sweeper, repository, clock) -> None:
    entitlement = _buy(service, "user-1", "plan_enhanced")
    clock.set(T0 + timedelta(days=29))
    repository.after_listing = lambda: service.record_use(entitlement.id)

    summary = sweeper.sweep_renewal_eligibility()

    stored = repository.get_package(entitlement.id)
    assert summary.eligible_count == 1
    assert stored.uses_consumed == 1
    assert stored.is_renewal_eligible is True


def test_retention_cleanup(service, repository, clock) -> None:
    store = InMemoryRetentionStore(repository)
    sweeper = Sweeper(service=service, retention_store=store, history_keep_per_user=2)

    old = _buy(service, "user-1", "plan_single")
    service.expire_package(old)
    clock.set(T0 + timedelta(days=400))
    recent = _buy(service, "user-2", "plan_single")
    service.expire_package(recent)

    for index in range(4):
        store.add_history(HistoryEntry(id=f"h{index}", user_id="user-1", created_at=T0 + timedelta(days=index)))
    store.add_session(SessionRecord(id="stale", created_at=T0))
    store.add_session(SessionRecord(id="live", created_at=T0 + timedelta(days=399)))

    summary = sweeper.retention_cleanup()

    assert summary.as_dict() == {"packages_deleted": 1, "history_pruned": 2, "sessions_deleted": 1}
    assert repository.get_package(old.id) is None
    assert repository.get_package(recent.id) is not None
    assert [entry.id for entry in store.history_for("user-1")] == ["h3", "h2"]
    assert store.session_ids() == ["live"]


def test_retention_cleanup_requires_store(service) -> None:
    with pytest.raises(RuntimeError):
        Sweeper(service=service).retention_cleanup(T0)
