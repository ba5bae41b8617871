"""Purchase flows that combine voucher redemption with package provisioning."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from functools import lru_cache
from typing import Optional
from uuid import uuid4

from ..clock import ensure_aware
from ..errors import InsufficientBalance, InvalidPlan
from ..packages import PackageService, PaymentInfo, PaymentMethod, PaymentStatus, UserPackage
from ..packages import lifecycle
from ..vouchers import VoucherApplication, VoucherService
from ..vouchers import ledger
from .packages import get_package_service, get_voucher_service

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PurchaseOutcome:
    entitlement: UserPackage
    voucher: Optional[VoucherApplication] = None
    already_provisioned: bool = False


@dataclass
class PurchaseCoordinator:
    """Provision packages for confirmed payments, spending voucher balance first."""

    packages: PackageService
    vouchers: VoucherService

    def confirm_purchase(
        self,
        user_id: str,
        plan_id: str,
        payment: PaymentInfo,
        *,
        voucher_amount: Optional[Decimal] = None,
        now: Optional[datetime] = None,
    ) -> PurchaseOutcome:
        current_time = ensure_aware(now) if now is not None else self.packages.clock()
        plan = lifecycle.validate_purchase(self.packages.catalog.get_plan(plan_id), payment, plan_id=plan_id)

        existing = self.packages.find_existing_purchase(user_id, payment.payment_id)
        if existing is not None:
            return PurchaseOutcome(entitlement=existing, already_provisioned=True)

        application: Optional[VoucherApplication] = None
        if payment.voucher_code:
            application = self.vouchers.apply_to_purchase(
                payment.voucher_code,
                plan.price,
                user_id=user_id,
                requested=voucher_amount,
                now=current_time,
            )
            payment = payment.model_copy(
                update={
                    "voucher_code": application.voucher.code,
                    "voucher_amount": application.amount_applied,
                }
            )

        try:
            entitlement = self.packages.purchase(user_id, plan_id, payment, now=current_time)
        except Exception:
            if application is not None:
                logger.exception(
                    "Voucher applied but package provisioning failed",
                    extra={
                        "user_id": user_id,
                        "code": application.voucher.code,
                        "amount_applied": str(application.amount_applied),
                    },
                )
            raise
        return PurchaseOutcome(entitlement=entitlement, voucher=application)

    def redeem_voucher(
        self,
        user_id: str,
        code: str,
        plan_id: str,
        *,
        now: Optional[datetime] = None,
    ) -> PurchaseOutcome:
        """Provision a plan paid for entirely from a voucher balance."""

        current_time = ensure_aware(now) if now is not None else self.packages.clock()
        plan = self.packages.catalog.get_plan(plan_id)
        if plan is None:
            raise InvalidPlan(f"Unknown plan: {plan_id}", detail={"plan_id": plan_id})
        view = self.vouchers.check_redeemable(code, now=current_time)
        price = plan.price
        if view.remaining_balance < price:
            raise InsufficientBalance(
                "Voucher balance does not cover this plan",
                detail={"code": view.code, "remaining_balance": str(view.remaining_balance), "price": str(price)},
            )

        payment = PaymentInfo(
            method=PaymentMethod.GIFT_CODE,
            payment_id=f"gift_{view.code}_{uuid4().hex[:12]}",
            status=PaymentStatus.COMPLETED,
            currency=view.currency,
            voucher_code=ledger.normalize_code(code),
        )
        return self.confirm_purchase(user_id, plan_id, payment, voucher_amount=price, now=current_time)


@lru_cache(maxsize=1)
def get_purchase_coordinator() -> PurchaseCoordinator:
    return PurchaseCoordinator(packages=get_package_service(), vouchers=get_voucher_service())


__all__ = ["PurchaseCoordinator", "PurchaseOutcome", "get_purchase_coordinator"]
