"""Domain models for prepaid gift vouchers."""
from __future__ import annotations

import re
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..packages.models import Currency

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MESSAGE_MAX_LENGTH = 200


class VoucherStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"


class VoucherPolicy(str, Enum):
    """How a voucher may be applied toward a purchase price."""

    PARTIAL = "partial"
    FULL_COST_ONLY = "full_cost_only"


class Recipient(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    email: str

    model_config = ConfigDict(frozen=True)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("Recipient name is required")
        return stripped

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not EMAIL_PATTERN.match(normalized):
            raise ValueError("Please provide a valid email address")
        return normalized


class Voucher(BaseModel):
    """A prepaid balance redeemable by code."""

    id: str
    code: str = Field(min_length=6, max_length=6, pattern=r"^[A-Z0-9]{6}$")
    amount: Decimal = Field(gt=0)
    currency: Currency = Currency.GBP
    buyer_id: str
    recipient: Recipient
    message: Optional[str] = Field(default=None, max_length=MESSAGE_MAX_LENGTH)
    payment_reference: str
    expiry_date: datetime
    amount_used: Decimal = Field(default=Decimal("0"), ge=0)
    is_redeemed: bool = False
    redeemed_at: Optional[datetime] = None
    redeemed_by: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)

    @field_validator("message")
    @classmethod
    def _strip_message(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        stripped = value.strip()
        return stripped or None

    @model_validator(mode="after")
    def _check_balance(self) -> "Voucher":
        if self.amount_used > self.amount:
            raise ValueError("amount_used cannot exceed the voucher amount")
        return self


class VoucherView(BaseModel):
    """Read model returned to status displays."""

    code: str
    amount: Decimal
    amount_used: Decimal
    remaining_balance: Decimal
    currency: Currency
    status: VoucherStatus
    expiry_date: datetime
    is_redeemed: bool
    recipient: Recipient
    message: Optional[str] = None
    buyer_id: str
    redeemed_at: Optional[datetime] = None
    redeemed_by: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(frozen=True)


class VoucherApplication(BaseModel):
    """Result of applying a voucher toward a purchase price."""

    voucher: VoucherView
    amount_applied: Decimal
    amount_due: Decimal

    model_config = ConfigDict(frozen=True)


__all__ = [
    "Recipient",
    "Voucher",
    "VoucherApplication",
    "VoucherPolicy",
    "VoucherStatus",
    "VoucherView",
]
