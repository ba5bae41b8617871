"""API schemas for voucher endpoints."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..packages import Currency
from ..vouchers import Recipient, VoucherStatus, VoucherView
from ..vouchers.models import MESSAGE_MAX_LENGTH
from .packages import PaymentPayload, UserPackageResponse


class RecipientPayload(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    email: str

    def to_recipient(self) -> Recipient:
        return Recipient(name=self.name, email=self.email)


class VoucherPurchaseRequest(BaseModel):
    amount: Decimal = Field(gt=0)
    currency: Currency = Currency.GBP
    recipient: RecipientPayload
    message: Optional[str] = Field(default=None, max_length=MESSAGE_MAX_LENGTH)
    payment: PaymentPayload

    model_config = ConfigDict(populate_by_name=True)


class VoucherResponse(BaseModel):
    code: str
    amount: Decimal
    amount_used: Decimal = Field(alias="amountUsed")
    remaining_balance: Decimal = Field(alias="remainingBalance")
    currency: Currency
    status: VoucherStatus
    expiry_date: datetime = Field(alias="expiryDate")
    is_redeemed: bool = Field(alias="isRedeemed")
    recipient_name: str = Field(alias="recipientName")
    recipient_email: str = Field(alias="recipientEmail")
    message: Optional[str] = None
    redeemed_at: Optional[datetime] = Field(alias="redeemedAt", default=None)
    created_at: datetime = Field(alias="createdAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_view(cls, view: VoucherView) -> "VoucherResponse":
        return cls(
            code=view.code,
            amount=view.amount,
            amount_used=view.amount_used,
            remaining_balance=view.remaining_balance,
            currency=view.currency,
            status=view.status,
            expiry_date=view.expiry_date,
            is_redeemed=view.is_redeemed,
            recipient_name=view.recipient.name,
            recipient_email=view.recipient.email,
            message=view.message,
            redeemed_at=view.redeemed_at,
            created_at=view.created_at,
        )


class VoucherListResponse(BaseModel):
    vouchers: List[VoucherResponse]


class RedeemVoucherRequest(BaseModel):
    code: str = Field(min_length=1)
    plan_id: str = Field(alias="planId", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class RedeemVoucherResponse(BaseModel):
    package: UserPackageResponse
    voucher: VoucherResponse
    amount_applied: Decimal = Field(alias="amountApplied")

    model_config = ConfigDict(populate_by_name=True)


__all__ = [
    "RecipientPayload",
    "RedeemVoucherRequest",
    "RedeemVoucherResponse",
    "VoucherListResponse",
    "VoucherPurchaseRequest",
    "VoucherResponse",
]
