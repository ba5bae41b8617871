"""API schemas for package endpoints."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..packages import (
    Currency,
    EntitlementState,
    PackagePlan,
    PackageStatus,
    PackageType,
    PaymentInfo,
    PaymentMethod,
    PaymentStatus,
    RenewalChain,
    RenewalEligibility,
    UserPackage,
)


class PlanResponse(BaseModel):
    id: str
    name: str
    type: PackageType
    price: Decimal
    duration_days: int = Field(alias="durationDays")
    max_uses: int = Field(alias="maxUses")
    is_unlimited: bool = Field(alias="isUnlimited")
    description: str = ""
    features: List[str] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_plan(cls, plan: PackagePlan) -> "PlanResponse":
        return cls(
            id=plan.id,
            name=plan.name,
            type=plan.type,
            price=plan.price,
            duration_days=plan.duration_days,
            max_uses=plan.max_uses,
            is_unlimited=plan.is_unlimited,
            description=plan.description,
            features=list(plan.features),
        )


class PlanListResponse(BaseModel):
    plans: List[PlanResponse]


class UserPackageResponse(BaseModel):
    id: str
    plan_id: str = Field(alias="planId")
    package_type: PackageType = Field(alias="packageType")
    state: EntitlementState
    purchase_date: datetime = Field(alias="purchaseDate")
    expiry_date: Optional[datetime] = Field(alias="expiryDate", default=None)
    is_active: bool = Field(alias="isActive")
    uses_consumed: int = Field(alias="usesConsumed")
    max_uses: int = Field(alias="maxUses")
    remaining_uses: Optional[int] = Field(alias="remainingUses", default=None)
    price: Decimal
    currency: Currency
    is_gift: bool = Field(alias="isGift")
    is_renewal_eligible: bool = Field(alias="isRenewalEligible")
    renewal_eligible_date: Optional[datetime] = Field(alias="renewalEligibleDate", default=None)
    renewed_from_id: Optional[str] = Field(alias="renewedFromId", default=None)
    renewed_to_id: Optional[str] = Field(alias="renewedToId", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_package(cls, entitlement: UserPackage) -> "UserPackageResponse":
        return cls(
            id=entitlement.id,
            plan_id=entitlement.plan_id,
            package_type=entitlement.package_type,
            state=entitlement.state,
            purchase_date=entitlement.purchase_date,
            expiry_date=entitlement.expiry_date,
            is_active=entitlement.is_active,
            uses_consumed=entitlement.uses_consumed,
            max_uses=entitlement.max_uses,
            remaining_uses=entitlement.remaining_uses,
            price=entitlement.price,
            currency=entitlement.currency,
            is_gift=entitlement.is_gift,
            is_renewal_eligible=entitlement.is_renewal_eligible,
            renewal_eligible_date=entitlement.renewal_eligible_date,
            renewed_from_id=entitlement.renewed_from_id,
            renewed_to_id=entitlement.renewed_to_id,
        )


class PackageStatusResponse(BaseModel):
    has_active_package: bool = Field(alias="hasActivePackage")
    is_expired: bool = Field(alias="isExpired")
    package: Optional[UserPackageResponse] = None
    days_remaining: int = Field(alias="daysRemaining", default=0)
    hours_remaining: int = Field(alias="hoursRemaining", default=0)
    time_remaining: str = Field(alias="timeRemaining", default="")
    is_renewal_eligible: bool = Field(alias="isRenewalEligible", default=False)
    renewal_eligible_date: Optional[datetime] = Field(alias="renewalEligibleDate", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_status(cls, status: PackageStatus) -> "PackageStatusResponse":
        return cls(
            has_active_package=not status.is_expired and status.entitlement is not None,
            is_expired=status.is_expired,
            package=UserPackageResponse.from_package(status.entitlement) if status.entitlement else None,
            days_remaining=status.days_remaining,
            hours_remaining=status.hours_remaining,
            time_remaining=status.formatted_time_remaining,
            is_renewal_eligible=status.is_renewal_eligible,
            renewal_eligible_date=status.renewal_eligible_date,
        )


class RenewalEligibilityResponse(BaseModel):
    is_eligible: bool = Field(alias="isEligible")
    message: str
    package: Optional[UserPackageResponse] = None
    renewal_eligible_date: Optional[datetime] = Field(alias="renewalEligibleDate", default=None)
    expiry_date: Optional[datetime] = Field(alias="expiryDate", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_eligibility(cls, eligibility: RenewalEligibility) -> "RenewalEligibilityResponse":
        return cls(
            is_eligible=eligibility.is_eligible,
            message=eligibility.message,
            package=UserPackageResponse.from_package(eligibility.entitlement) if eligibility.entitlement else None,
            renewal_eligible_date=eligibility.renewal_eligible_date,
            expiry_date=eligibility.expiry_date,
        )


class PaymentPayload(BaseModel):
    method: PaymentMethod = PaymentMethod.CREDIT_CARD
    payment_id: str = Field(alias="paymentId", min_length=1)
    status: PaymentStatus = PaymentStatus.COMPLETED
    currency: Currency = Currency.GBP
    amount: Optional[Decimal] = Field(default=None, ge=0)
    voucher_code: Optional[str] = Field(alias="voucherCode", default=None)
    voucher_amount: Optional[Decimal] = Field(alias="voucherAmount", default=None, gt=0)

    model_config = ConfigDict(populate_by_name=True)

    def to_payment_info(self) -> PaymentInfo:
        return PaymentInfo(
            method=self.method,
            payment_id=self.payment_id,
            status=self.status,
            currency=self.currency,
            amount=self.amount,
            voucher_code=self.voucher_code,
        )


class ConfirmPurchaseRequest(BaseModel):
    plan_id: str = Field(alias="planId", min_length=1)
    payment: PaymentPayload

    model_config = ConfigDict(populate_by_name=True)


class RenewRequest(ConfirmPurchaseRequest):
    pass


class PurchaseResponse(BaseModel):
    package: UserPackageResponse
    already_provisioned: bool = Field(alias="alreadyProvisioned", default=False)
    voucher_amount_applied: Optional[Decimal] = Field(alias="voucherAmountApplied", default=None)
    amount_due: Optional[Decimal] = Field(alias="amountDue", default=None)

    model_config = ConfigDict(populate_by_name=True)


class RenewalChainResponse(BaseModel):
    packages: List[UserPackageResponse]

    @classmethod
    def from_chain(cls, chain: RenewalChain) -> "RenewalChainResponse":
        return cls(packages=[UserPackageResponse.from_package(item) for item in chain.entitlements])


class RenewalHistoryResponse(BaseModel):
    chains: List[RenewalChainResponse]


__all__ = [
    "ConfirmPurchaseRequest",
    "PackageStatusResponse",
    "PaymentPayload",
    "PlanListResponse",
    "PlanResponse",
    "PurchaseResponse",
    "RenewRequest",
    "RenewalChainResponse",
    "RenewalEligibilityResponse",
    "RenewalHistoryResponse",
    "UserPackageResponse",
]
