"""Pure state transitions for user entitlements.

Every function here takes the record and ``now`` explicitly and returns new
immutable records; persistence and owner-pointer updates are left to
:mod:`.service`. Applying any transition twice yields the same state.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

from ..errors import InvalidPayment, InvalidPlan, NotEligible, UsageLimitReached
from .models import (
    PackagePlan,
    PaymentInfo,
    PaymentMethod,
    RenewalChain,
    TimeRemaining,
    TransitionResult,
    UserPackage,
)

RENEWAL_WINDOW = timedelta(hours=36)


def new_entitlement_id() -> str:
    return f"up_{uuid4().hex}"


def is_expired(entitlement: UserPackage, now: datetime) -> bool:
    """Return ``True`` once ``now`` is strictly past the expiry date.

    A record without an expiry date is considered expired.
    """

    if entitlement.expiry_date is None:
        return True
    return now > entitlement.expiry_date


def renewal_eligible_at(entitlement: UserPackage) -> Optional[datetime]:
    if entitlement.expiry_date is None:
        return None
    return entitlement.expiry_date - RENEWAL_WINDOW


def compute_renewal_eligibility(entitlement: UserPackage, now: datetime) -> bool:
    eligible_from = renewal_eligible_at(entitlement)
    if not entitlement.is_active or eligible_from is None:
        return False
    return now >= eligible_from


def reconcile(entitlement: UserPackage, now: datetime) -> TransitionResult:
    """Deactivate an entitlement whose expiry has passed."""

    if not entitlement.is_active:
        return TransitionResult(changed=False, entitlement=entitlement)
    if not is_expired(entitlement, now):
        return TransitionResult(changed=False, entitlement=entitlement)

    expired = entitlement.model_copy(
        update={"is_active": False, "is_renewal_eligible": False, "updated_at": now}
    )
    return TransitionResult(changed=True, entitlement=expired, clear_owner_pointer=True)


def update_renewal_eligibility(entitlement: UserPackage, now: datetime) -> TransitionResult:
    """Recompute the eligibility flag, reporting a change only when a write is needed."""

    eligible = compute_renewal_eligibility(entitlement, now)
    eligible_from = renewal_eligible_at(entitlement)
    if (
        eligible == entitlement.is_renewal_eligible
        and eligible_from == entitlement.renewal_eligible_date
    ):
        return TransitionResult(changed=False, entitlement=entitlement)

    updated = entitlement.model_copy(
        update={
            "is_renewal_eligible": eligible,
            "renewal_eligible_date": eligible_from,
            "updated_at": now,
        }
    )
    return TransitionResult(changed=True, entitlement=updated)


def validate_purchase(plan: Optional[PackagePlan], payment: PaymentInfo, *, plan_id: str) -> PackagePlan:
    if plan is None:
        raise InvalidPlan(f"Unknown plan: {plan_id}", detail={"plan_id": plan_id})
    if not plan.active:
        raise InvalidPlan(f"Plan {plan_id} is not available for purchase", detail={"plan_id": plan_id})
    if not payment.is_complete:
        raise InvalidPayment(
            "Payment confirmation is incomplete",
            detail={"payment_id": payment.payment_id, "payment_status": payment.status.value},
        )
    return plan


def create_entitlement(
    user_id: str,
    plan: PackagePlan,
    payment: PaymentInfo,
    now: datetime,
    *,
    expiry_date: Optional[datetime] = None,
    renewed_from_id: Optional[str] = None,
    entitlement_id: Optional[str] = None,
) -> UserPackage:
    """Build a fresh active entitlement for ``plan`` starting at ``now``."""

    return UserPackage(
        id=entitlement_id or new_entitlement_id(),
        user_id=user_id,
        plan_id=plan.id,
        package_type=plan.type,
        purchase_date=now,
        expiry_date=expiry_date or now + timedelta(days=plan.duration_days),
        is_active=True,
        max_uses=plan.max_uses,
        price=plan.price if payment.amount is None else payment.amount,
        currency=payment.currency,
        payment_method=payment.method,
        payment_id=payment.payment_id,
        payment_status=payment.status,
        is_gift=payment.voucher_code is not None or payment.method == PaymentMethod.GIFT_CODE,
        gift_code=payment.voucher_code,
        is_renewal_eligible=False,
        renewed_from_id=renewed_from_id,
        created_at=now,
        updated_at=now,
    )


def renewal_expiry_date(entitlement: UserPackage, plan: PackagePlan, now: datetime) -> datetime:
    """Extend the unused remainder of ``entitlement`` by the plan duration."""

    current_expiry = entitlement.expiry_date or now
    return max(current_expiry, now) + timedelta(days=plan.duration_days)


def renew(
    entitlement: UserPackage,
    plan: PackagePlan,
    payment: PaymentInfo,
    now: datetime,
    *,
    successor_id: Optional[str] = None,
) -> Tuple[UserPackage, UserPackage]:
    """Return ``(superseded, successor)`` for a renewal performed at ``now``."""

    if not compute_renewal_eligibility(entitlement, now):
        raise NotEligible(
            "Package is not eligible for renewal yet",
            detail={
                "renewal_eligible_date": renewal_eligible_at(entitlement),
                "expiry_date": entitlement.expiry_date,
            },
        )

    successor = create_entitlement(
        entitlement.user_id,
        plan,
        payment,
        now,
        expiry_date=renewal_expiry_date(entitlement, plan, now),
        renewed_from_id=entitlement.id,
        entitlement_id=successor_id,
    )
    superseded = entitlement.model_copy(
        update={
            "is_active": False,
            "is_renewal_eligible": False,
            "renewed_to_id": successor.id,
            "updated_at": now,
        }
    )
    return superseded, successor


def record_use(entitlement: UserPackage, now: datetime) -> UserPackage:
    """Consume one use of the entitlement."""

    if not entitlement.is_active or is_expired(entitlement, now):
        raise NotEligible(
            "Package is not active",
            detail={"entitlement_id": entitlement.id, "expiry_date": entitlement.expiry_date},
        )
    if not entitlement.is_unlimited and entitlement.uses_consumed + 1 > entitlement.max_uses:
        raise UsageLimitReached(
            "Usage limit reached for this package",
            detail={
                "entitlement_id": entitlement.id,
                "uses_consumed": entitlement.uses_consumed,
                "max_uses": entitlement.max_uses,
            },
        )
    return entitlement.model_copy(
        update={"uses_consumed": entitlement.uses_consumed + 1, "updated_at": now}
    )


def time_remaining(expiry_date: Optional[datetime], now: datetime) -> TimeRemaining:
    if expiry_date is None or now > expiry_date:
        return TimeRemaining(expired=True)

    total_minutes = int((expiry_date - now).total_seconds() // 60)
    days, remainder = divmod(total_minutes, 24 * 60)
    hours, minutes = divmod(remainder, 60)

    parts: List[str] = []
    if days > 0:
        parts.append(f"{days} day{'s' if days != 1 else ''}")
    if hours > 0 or days > 0:
        parts.append(f"{hours} hour{'s' if hours != 1 else ''}")
    parts.append(f"{minutes} minute{'s' if minutes != 1 else ''}")

    return TimeRemaining(
        expired=False,
        days=days,
        hours=hours,
        minutes=minutes,
        formatted=" ".join(parts),
    )


def build_renewal_chains(entitlements: Iterable[UserPackage]) -> List[RenewalChain]:
    """Group entitlements into chains linked by renewal, newest chain first."""

    ordered = sorted(entitlements, key=lambda item: item.created_at, reverse=True)
    by_id: Dict[str, UserPackage] = {item.id: item for item in ordered}
    processed: set[str] = set()
    chains: List[RenewalChain] = []

    for entitlement in ordered:
        if entitlement.id in processed:
            continue
        chain = [entitlement]
        processed.add(entitlement.id)

        current = entitlement
        while current.renewed_from_id:
            previous = by_id.get(current.renewed_from_id)
            if previous is None or previous.id in processed:
                break
            chain.insert(0, previous)
            processed.add(previous.id)
            current = previous

        current = entitlement
        while current.renewed_to_id:
            following = by_id.get(current.renewed_to_id)
            if following is None or following.id in processed:
                break
            chain.append(following)
            processed.add(following.id)
            current = following

        chains.append(RenewalChain(entitlements=chain))
    return chains


__all__ = [
    "RENEWAL_WINDOW",
    "build_renewal_chains",
    "compute_renewal_eligibility",
    "create_entitlement",
    "is_expired",
    "new_entitlement_id",
    "reconcile",
    "record_use",
    "renew",
    "renewal_eligible_at",
    "renewal_expiry_date",
    "time_remaining",
    "update_renewal_eligibility",
    "validate_purchase",
]
