"""Domain models for purchasable plans and user entitlements."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PackageType(str, Enum):
    """Tiers a plan (and therefore an entitlement) can belong to."""

    SINGLE = "single"
    BASIC = "basic"
    ENHANCED = "enhanced"
    PREMIUM = "premium"


class Currency(str, Enum):
    """Currencies accepted for purchases and vouchers."""

    GBP = "GBP"
    USD = "USD"
    EUR = "EUR"
    CAD = "CAD"
    AUD = "AUD"
    JPY = "JPY"
    INR = "INR"


class PaymentMethod(str, Enum):
    CREDIT_CARD = "credit_card"
    PAYPAL = "paypal"
    BANK_TRANSFER = "bank_transfer"
    GIFT_CODE = "gift_code"
    OTHER = "other"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class EntitlementState(str, Enum):
    """Observable lifecycle state derived from the stored flags."""

    ACTIVE = "active"
    ACTIVE_RENEWAL_ELIGIBLE = "active_renewal_eligible"
    INACTIVE = "inactive"
    SUPERSEDED = "superseded"


NO_PACKAGE = "none"


class PackagePlan(BaseModel):
    """Catalog definition an entitlement is purchased against."""

    id: str
    name: str
    type: PackageType
    price: Decimal = Field(ge=0)
    duration_days: int = Field(ge=1)
    max_uses: int = Field(default=0, ge=0)
    description: str = ""
    features: List[str] = Field(default_factory=list)
    active: bool = True

    model_config = ConfigDict(frozen=True)

    @property
    def is_unlimited(self) -> bool:
        return self.max_uses == 0


class PaymentInfo(BaseModel):
    """Confirmation details reported by the payment collaborator."""

    method: PaymentMethod = PaymentMethod.CREDIT_CARD
    payment_id: Optional[str] = None
    status: PaymentStatus = PaymentStatus.COMPLETED
    currency: Currency = Currency.GBP
    amount: Optional[Decimal] = Field(default=None, ge=0)
    voucher_code: Optional[str] = None
    voucher_amount: Decimal = Field(default=Decimal("0"), ge=0)

    model_config = ConfigDict(frozen=True)

    @field_validator("payment_id", "voucher_code")
    @classmethod
    def _strip(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        stripped = value.strip()
        return stripped or None

    @property
    def is_complete(self) -> bool:
        return bool(self.payment_id) and self.status == PaymentStatus.COMPLETED


class UserPackage(BaseModel):
    """A time-boxed entitlement owned by a single user."""

    id: str
    user_id: str
    plan_id: str
    package_type: PackageType
    purchase_date: datetime
    expiry_date: Optional[datetime]
    is_active: bool = True
    uses_consumed: int = Field(default=0, ge=0)
    max_uses: int = Field(default=0, ge=0)
    price: Decimal = Field(default=Decimal("0"), ge=0)
    currency: Currency = Currency.GBP
    payment_method: PaymentMethod = PaymentMethod.CREDIT_CARD
    payment_id: Optional[str] = None
    payment_status: PaymentStatus = PaymentStatus.COMPLETED
    is_gift: bool = False
    gift_code: Optional[str] = None
    renewal_eligible_date: Optional[datetime] = None
    is_renewal_eligible: bool = False
    renewed_from_id: Optional[str] = None
    renewed_to_id: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)

    @property
    def is_unlimited(self) -> bool:
        return self.max_uses == 0

    @property
    def remaining_uses(self) -> Optional[int]:
        if self.is_unlimited:
            return None
        return max(self.max_uses - self.uses_consumed, 0)

    @property
    def state(self) -> EntitlementState:
        if not self.is_active:
            if self.renewed_to_id:
                return EntitlementState.SUPERSEDED
            return EntitlementState.INACTIVE
        if self.is_renewal_eligible:
            return EntitlementState.ACTIVE_RENEWAL_ELIGIBLE
        return EntitlementState.ACTIVE


class PackageOwner(BaseModel):
    """The owning user's pointer to their current entitlement."""

    user_id: str
    active_package_id: Optional[str] = None
    package_type: str = NO_PACKAGE
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)

    @property
    def has_package(self) -> bool:
        return self.active_package_id is not None


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of applying a lifecycle transition to an entitlement."""

    changed: bool
    entitlement: UserPackage
    clear_owner_pointer: bool = False


@dataclass(frozen=True)
class TimeRemaining:
    expired: bool
    days: int = 0
    hours: int = 0
    minutes: int = 0
    formatted: str = "Expired"


class PackageStatus(BaseModel):
    """Read model combining an entitlement with its computed timing."""

    entitlement: Optional[UserPackage]
    is_expired: bool
    days_remaining: int = 0
    hours_remaining: int = 0
    formatted_time_remaining: str = ""
    is_renewal_eligible: bool = False
    renewal_eligible_date: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)


class RenewalEligibility(BaseModel):
    is_eligible: bool
    message: str
    entitlement: Optional[UserPackage] = None
    renewal_eligible_date: Optional[datetime] = None
    expiry_date: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)


class RenewalChain(BaseModel):
    """Ordered run of entitlements linked by renewal."""

    entitlements: List[UserPackage]

    model_config = ConfigDict(frozen=True)

    @property
    def head(self) -> UserPackage:
        return self.entitlements[-1]


__all__ = [
    "Currency",
    "EntitlementState",
    "NO_PACKAGE",
    "PackageOwner",
    "PackagePlan",
    "PackageStatus",
    "PackageType",
    "PaymentInfo",
    "PaymentMethod",
    "PaymentStatus",
    "RenewalChain",
    "RenewalEligibility",
    "TimeRemaining",
    "TransitionResult",
    "UserPackage",
]
