"""Pure balance and status rules for vouchers."""
from __future__ import annotations

import random
import secrets
import string
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional, Tuple

from ..errors import (
    CodeSpaceExhausted,
    InsufficientBalance,
    InvalidPayment,
    VoucherExhausted,
    VoucherExpired,
)
from .models import Voucher, VoucherPolicy, VoucherStatus, VoucherView

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 6
DEFAULT_CODE_ATTEMPTS = 10

_ZERO = Decimal("0")


def generate_code(rng: Optional[random.Random] = None) -> str:
    chooser = rng or secrets.SystemRandom()
    return "".join(chooser.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


def issue_unique_code(
    is_taken: Callable[[str], bool],
    *,
    attempts: int = DEFAULT_CODE_ATTEMPTS,
    generator: Callable[[], str] = generate_code,
) -> str:
    """Draw codes until one is free, giving up after ``attempts`` collisions."""

    for _ in range(max(attempts, 1)):
        candidate = generator()
        if not is_taken(candidate):
            return candidate
    raise CodeSpaceExhausted(
        "Could not generate a unique voucher code",
        detail={"attempts": attempts},
    )


def normalize_code(code: str) -> str:
    return code.strip().upper()


def is_expired(voucher: Voucher, now: datetime) -> bool:
    return now > voucher.expiry_date


def remaining_balance(voucher: Voucher) -> Decimal:
    return max(voucher.amount - voucher.amount_used, _ZERO)


def status(voucher: Voucher, now: datetime) -> VoucherStatus:
    if is_expired(voucher, now):
        return VoucherStatus.EXPIRED
    if voucher.amount_used >= voucher.amount:
        return VoucherStatus.EXHAUSTED
    return VoucherStatus.ACTIVE


def to_view(voucher: Voucher, now: datetime) -> VoucherView:
    return VoucherView(
        code=voucher.code,
        amount=voucher.amount,
        amount_used=voucher.amount_used,
        remaining_balance=remaining_balance(voucher),
        currency=voucher.currency,
        status=status(voucher, now),
        expiry_date=voucher.expiry_date,
        is_redeemed=voucher.is_redeemed,
        recipient=voucher.recipient,
        message=voucher.message,
        buyer_id=voucher.buyer_id,
        redeemed_at=voucher.redeemed_at,
        redeemed_by=voucher.redeemed_by,
        created_at=voucher.created_at,
    )


def ensure_redeemable(voucher: Voucher, now: datetime) -> None:
    """Raise unless the voucher still has spendable balance."""

    if is_expired(voucher, now):
        raise VoucherExpired(
            "This voucher has expired",
            detail={"code": voucher.code, "expiry_date": voucher.expiry_date},
        )
    if voucher.is_redeemed or remaining_balance(voucher) <= _ZERO:
        raise VoucherExhausted(
            "This voucher has already been fully used",
            detail={"code": voucher.code, "remaining_balance": str(remaining_balance(voucher))},
        )


def apply(
    voucher: Voucher,
    consume_amount: Decimal,
    now: datetime,
    *,
    redeemed_by: Optional[str] = None,
) -> Voucher:
    """Consume ``consume_amount`` from the voucher balance.

    On failure an error is raised and the given record is left untouched.
    """

    amount = Decimal(consume_amount)
    if amount <= _ZERO:
        raise InvalidPayment(
            "Voucher amount to apply must be positive",
            detail={"code": voucher.code, "amount": str(amount)},
        )
    ensure_redeemable(voucher, now)

    balance = remaining_balance(voucher)
    if amount > balance:
        raise InsufficientBalance(
            "Voucher balance is lower than the requested amount",
            detail={
                "code": voucher.code,
                "remaining_balance": str(balance),
                "requested": str(amount),
            },
        )

    used = voucher.amount_used + amount
    update = {"amount_used": used, "updated_at": now}
    if used >= voucher.amount:
        update.update({"is_redeemed": True, "redeemed_at": now, "redeemed_by": redeemed_by})
    return voucher.model_copy(update=update)


def amount_to_apply(
    voucher: Voucher,
    price: Decimal,
    policy: VoucherPolicy,
    requested: Optional[Decimal] = None,
) -> Tuple[Decimal, Decimal]:
    """Return ``(applied, due)`` for a purchase of ``price`` under ``policy``.

    ``requested`` caps the voucher contribution; by default as much of the
    balance as the price allows is used.
    """

    price = Decimal(price)
    balance = remaining_balance(voucher)
    if policy == VoucherPolicy.FULL_COST_ONLY:
        if balance < price:
            raise InsufficientBalance(
                "Voucher balance does not cover the full price",
                detail={"code": voucher.code, "remaining_balance": str(balance), "price": str(price)},
            )
        return price, _ZERO

    applied = min(balance, price)
    if requested is not None:
        requested = Decimal(requested)
        if requested > price:
            raise InvalidPayment(
                "Voucher amount cannot exceed the purchase price",
                detail={"code": voucher.code, "requested": str(requested), "price": str(price)},
            )
        applied = requested
    return applied, price - applied


__all__ = [
    "CODE_ALPHABET",
    "CODE_LENGTH",
    "DEFAULT_CODE_ATTEMPTS",
    "amount_to_apply",
    "apply",
    "ensure_redeemable",
    "generate_code",
    "is_expired",
    "issue_unique_code",
    "normalize_code",
    "remaining_balance",
    "status",
    "to_view",
]
