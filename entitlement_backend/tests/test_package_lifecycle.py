from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from entitlement_backend.app.errors import InvalidPayment, InvalidPlan, NotEligible, UsageLimitReached
from entitlement_backend.app.packages import DEFAULT_PLANS, PackagePlan, PackageType, PaymentInfo, PaymentStatus
from entitlement_backend.app.packages import lifecycle
from entitlement_backend.app.packages.models import EntitlementState, UserPackage

T0 = datetime(2025, 1, 1, 12, tzinfo=timezone.utc)

SIXTY_DAY_PLAN = PackagePlan(
    id="plan_sixty",
    name="Sixty Day Plan",
    type=PackageType.ENHANCED,
    price=80,
    duration_days=60,
    max_uses=10,
)


def _payment(payment_id: str = "pay_1") -> PaymentInfo:
    return PaymentInfo(payment_id=payment_id)


def _entitlement(plan_id: str = "plan_enhanced", *, at: datetime = T0) -> UserPackage:
    return lifecycle.create_entitlement("user-1", DEFAULT_PLANS[plan_id], _payment(), at)


def test_create_entitlement_snapshots_plan() -> None:
    entitlement = _entitlement()

    assert entitlement.expiry_date == T0 + timedelta(days=30)
    assert entitlement.package_type == PackageType.ENHANCED
    assert entitlement.max_uses == 7
    assert entitlement.is_active is True
    assert entitlement.is_renewal_eligible is False
    assert entitlement.created_at == entitlement.updated_at == T0


def test_is_expired_is_strictly_after_expiry() -> None:
    entitlement = _entitlement()
    expiry = entitlement.expiry_date

    assert lifecycle.is_expired(entitlement, expiry - timedelta(seconds=1)) is False
    assert lifecycle.is_expired(entitlement, expiry) is False
    assert lifecycle.is_expired(entitlement, expiry + timedelta(seconds=1)) is True


def test_missing_expiry_counts_as_expired() -> None:
    entitlement = _entitlement().model_copy(update={"expiry_date": None})

    assert lifecycle.is_expired(entitlement, T0) is True
    result = lifecycle.reconcile(entitlement, T0)
    assert result.changed is True
    assert result.entitlement.is_active is False


def test_renewal_eligibility_flips_thirty_six_hours_before_expiry() -> None:
    entitlement = _entitlement()
    eligible_from = T0 + timedelta(days=28, hours=12)

    assert lifecycle.renewal_eligible_at(entitlement) == eligible_from
    assert lifecycle.compute_renewal_eligibility(entitlement, eligible_from - timedelta(seconds=1)) is False
    assert lifecycle.compute_renewal_eligibility(entitlement, eligible_from) is True


def test_renewal_eligibility_is_monotonic_while_active() -> None:
    entitlement = _entitlement()
    eligible_from = lifecycle.renewal_eligible_at(entitlement)

    checkpoint = eligible_from
    while checkpoint <= entitlement.expiry_date:
        assert lifecycle.compute_renewal_eligibility(entitlement, checkpoint) is True
        checkpoint += timedelta(hours=3)


def test_inactive_entitlement_is_never_eligible() -> None:
    entitlement = _entitlement().model_copy(update={"is_active": False})

    assert lifecycle.compute_renewal_eligibility(entitlement, T0 + timedelta(days=29)) is False


def test_update_renewal_eligibility_reports_change_once() -> None:
    entitlement = _entitlement()
    now = T0 + timedelta(days=29)

    first = lifecycle.update_renewal_eligibility(entitlement, now)
    second = lifecycle.update_renewal_eligibility(first.entitlement, now + timedelta(minutes=5))

    assert first.changed is True
    assert first.entitlement.is_renewal_eligible is True
    assert first.entitlement.renewal_eligible_date == T0 + timedelta(days=28, hours=12)
    assert first.entitlement.updated_at == now
    assert second.changed is False
    assert second.entitlement == first.entitlement


def test_reconcile_deactivates_after_expiry_and_is_idempotent() -> None:
    entitlement = _entitlement()
    at_expiry = lifecycle.reconcile(entitlement, T0 + timedelta(days=30))
    assert at_expiry.changed is False

    after = T0 + timedelta(days=30, seconds=1)
    first = lifecycle.reconcile(entitlement, after)
    second = lifecycle.reconcile(first.entitlement, after + timedelta(hours=1))

    assert first.changed is True
    assert first.clear_owner_pointer is True
    assert first.entitlement.is_active is False
    assert first.entitlement.updated_at == after
    assert first.entitlement.state == EntitlementState.INACTIVE
    assert second.changed is False
    assert second.clear_owner_pointer is False
    assert second.entitlement == first.entitlement


def test_renew_extends_from_remaining_time() -> None:
    entitlement = _entitlement()
    renewed_at = T0 + timedelta(days=29)

    superseded, successor = lifecycle.renew(entitlement, SIXTY_DAY_PLAN, _payment("pay_2"), renewed_at)

    assert successor.expiry_date == T0 + timedelta(days=90)
    assert successor.purchase_date == renewed_at
    assert successor.renewed_from_id == entitlement.id
    assert successor.is_active is True
    assert superseded.renewed_to_id == successor.id
    assert superseded.is_active is False
    assert superseded.state == EntitlementState.SUPERSEDED


def test_renew_after_expiry_starts_successor_from_now() -> None:
    entitlement = _entitlement()
    renewed_at = entitlement.expiry_date + timedelta(hours=6)
    assert entitlement.is_active is True

    superseded, successor = lifecycle.renew(entitlement, SIXTY_DAY_PLAN, _payment("pay_2"), renewed_at)

    assert successor.purchase_date == renewed_at
    assert successor.expiry_date == renewed_at + timedelta(days=60)
    assert lifecycle.renewal_expiry_date(entitlement, SIXTY_DAY_PLAN, renewed_at) == successor.expiry_date
    assert superseded.renewed_to_id == successor.id


def test_renew_before_window_reports_dates() -> None:
    entitlement = _entitlement()

    with pytest.raises(NotEligible) as excinfo:
        lifecycle.renew(entitlement, SIXTY_DAY_PLAN, _payment("pay_2"), T0 + timedelta(days=10))

    payload = excinfo.value.payload
    assert payload["renewal_eligible_date"] == T0 + timedelta(days=28, hours=12)
    assert payload["expiry_date"] == T0 + timedelta(days=30)


def test_validate_purchase_rejects_unknown_plan_and_incomplete_payment() -> None:
    with pytest.raises(InvalidPlan):
        lifecycle.validate_purchase(None, _payment(), plan_id="plan_missing")

    with pytest.raises(InvalidPayment):
        lifecycle.validate_purchase(DEFAULT_PLANS["plan_basic"], PaymentInfo(payment_id="  "), plan_id="plan_basic")

    with pytest.raises(InvalidPayment):
        lifecycle.validate_purchase(
            DEFAULT_PLANS["plan_basic"],
            PaymentInfo(payment_id="pay_1", status=PaymentStatus.PENDING),
            plan_id="plan_basic",
        )


def test_record_use_enforces_limit() -> None:
    entitlement = _entitlement("plan_single")

    once = lifecycle.record_use(entitlement, T0 + timedelta(hours=1))
    twice = lifecycle.record_use(once, T0 + timedelta(hours=2))

    assert twice.uses_consumed == 2
    assert twice.remaining_uses == 0
    with pytest.raises(UsageLimitReached):
        lifecycle.record_use(twice, T0 + timedelta(hours=3))


def test_record_use_unlimited_and_inactive() -> None:
    premium = _entitlement("plan_premium")
    for hour in range(1, 20):
        premium = lifecycle.record_use(premium, T0 + timedelta(hours=hour))
    assert premium.uses_consumed == 19
    assert premium.remaining_uses is None

    with pytest.raises(NotEligible):
        lifecycle.record_use(premium.model_copy(update={"is_active": False}), T0 + timedelta(days=1))

    with pytest.raises(NotEligible):
        lifecycle.record_use(premium, T0 + timedelta(days=31))


def test_time_remaining_formats_parts() -> None:
    now = T0
    remaining = lifecycle.time_remaining(now + timedelta(days=2, hours=3, minutes=15), now)

    assert remaining.expired is False
    assert (remaining.days, remaining.hours, remaining.minutes) == (2, 3, 15)
    assert remaining.formatted == "2 days 3 hours 15 minutes"

    assert lifecycle.time_remaining(now + timedelta(minutes=1), now).formatted == "1 minute"
    assert lifecycle.time_remaining(now - timedelta(seconds=1), now).formatted == "Expired"
    assert lifecycle.time_remaining(None, now).expired is True


def test_build_renewal_chains_groups_links_newest_first() -> None:
    first = _entitlement()
    superseded, successor = lifecycle.renew(first, SIXTY_DAY_PLAN, _payment("pay_2"), T0 + timedelta(days=29))
    older = _entitlement("plan_basic", at=T0 - timedelta(days=100))

    chains = lifecycle.build_renewal_chains([older, superseded, successor])

    assert [[item.id for item in chain.entitlements] for chain in chains] == [
        [superseded.id, successor.id],
        [older.id],
    ]
    assert chains[0].head.id == successor.id
