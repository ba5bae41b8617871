"""Service coordinating voucher issuance, lookup, and redemption."""
from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional, Protocol, Sequence
from uuid import uuid4

from ..clock import Clock, ensure_aware, system_clock
from ..errors import InvalidPayment, PersistenceFailure, VoucherNotFound
from ..packages.models import Currency, PaymentInfo
from . import ledger
from .models import Recipient, Voucher, VoucherApplication, VoucherPolicy, VoucherView

logger = logging.getLogger(__name__)

DEFAULT_VOUCHER_EXPIRY = timedelta(days=30)


class VoucherRepository(Protocol):
    def get_by_code(self, code: str) -> Optional[Voucher]:
        ...

    def code_exists(self, code: str) -> bool:
        ...

    def find_by_payment_reference(self, payment_reference: str) -> Optional[Voucher]:
        ...

    def insert_voucher(self, voucher: Voucher) -> Voucher:
        ...

    def consume_balance(
        self,
        code: str,
        amount: Decimal,
        *,
        redeemed_by: Optional[str],
        updated_at: datetime,
    ) -> Optional[Voucher]:
        """Add ``amount`` to the stored usage unless it would exceed the voucher amount."""

    def list_by_buyer(self, buyer_id: str) -> Sequence[Voucher]:
        ...

    def list_by_recipient_email(self, email: str) -> Sequence[Voucher]:
        ...


_dataclass_kwargs = {"slots": True} if sys.version_info >= (3, 10) else {}


@dataclass(**_dataclass_kwargs)
class VoucherService:
    """Owns the voucher ledger: issuance, status, and balance consumption."""

    repository: VoucherRepository
    clock: Clock = system_clock
    expiry: timedelta = DEFAULT_VOUCHER_EXPIRY
    code_attempts: int = ledger.DEFAULT_CODE_ATTEMPTS
    policy: VoucherPolicy = VoucherPolicy.PARTIAL
    code_generator: Callable[[], str] = ledger.generate_code

    def _now(self, now: Optional[datetime] = None) -> datetime:
        return ensure_aware(now) if now is not None else self.clock()

    def confirm_voucher_purchase(
        self,
        buyer_id: str,
        recipient: Recipient,
        amount: Decimal,
        currency: Currency,
        payment: PaymentInfo,
        *,
        message: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Voucher:
        """Issue a voucher once the payment collaborator confirms the charge."""

        if not payment.is_complete:
            raise InvalidPayment(
                "Payment confirmation is incomplete",
                detail={"payment_id": payment.payment_id, "payment_status": payment.status.value},
            )

        existing = self.repository.find_by_payment_reference(payment.payment_id)
        if existing is not None:
            logger.info(
                "Voucher payment already provisioned",
                extra={"payment_id": payment.payment_id, "code": existing.code},
            )
            return existing

        current_time = self._now(now)
        code = ledger.issue_unique_code(
            self.repository.code_exists,
            attempts=self.code_attempts,
            generator=self.code_generator,
        )
        voucher = Voucher(
            id=f"gc_{uuid4().hex}",
            code=code,
            amount=amount,
            currency=currency,
            buyer_id=buyer_id,
            recipient=recipient,
            message=message,
            payment_reference=payment.payment_id,
            expiry_date=current_time + self.expiry,
            created_at=current_time,
            updated_at=current_time,
        )
        stored = self.repository.insert_voucher(voucher)
        logger.info(
            "Voucher issued",
            extra={
                "buyer_id": buyer_id,
                "code": stored.code,
                "amount": str(stored.amount),
                "currency": stored.currency.value,
            },
        )
        return stored

    def get_voucher(self, code: str) -> Voucher:
        normalized = ledger.normalize_code(code)
        voucher = self.repository.get_by_code(normalized)
        if voucher is None:
            raise VoucherNotFound("Voucher not found", detail={"code": normalized})
        return voucher

    def get_voucher_status(self, code: str, *, now: Optional[datetime] = None) -> VoucherView:
        return ledger.to_view(self.get_voucher(code), self._now(now))

    def check_redeemable(self, code: str, *, now: Optional[datetime] = None) -> VoucherView:
        current_time = self._now(now)
        voucher = self.get_voucher(code)
        ledger.ensure_redeemable(voucher, current_time)
        return ledger.to_view(voucher, current_time)

    def apply_voucher(
        self,
        code: str,
        consume_amount: Decimal,
        *,
        redeemed_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Voucher:
        """Consume part of the balance; errors leave the stored voucher unchanged."""

        current_time = self._now(now)
        voucher = self.get_voucher(code)
        ledger.apply(voucher, consume_amount, current_time, redeemed_by=redeemed_by)
        stored = self.repository.consume_balance(
            voucher.code,
            Decimal(consume_amount),
            redeemed_by=redeemed_by,
            updated_at=current_time,
        )
        if stored is None:
            # Balance moved since it was read; re-check for the matching error.
            ledger.apply(self.get_voucher(voucher.code), consume_amount, current_time)
            raise PersistenceFailure("Failed to apply voucher", detail={"code": voucher.code})
        logger.info(
            "Voucher applied",
            extra={
                "code": stored.code,
                "amount_applied": str(consume_amount),
                "remaining_balance": str(ledger.remaining_balance(stored)),
                "is_redeemed": stored.is_redeemed,
            },
        )
        return stored

    def apply_to_purchase(
        self,
        code: str,
        price: Decimal,
        *,
        user_id: str,
        requested: Optional[Decimal] = None,
        now: Optional[datetime] = None,
    ) -> VoucherApplication:
        """Apply a voucher toward ``price`` under the configured redemption policy."""

        current_time = self._now(now)
        voucher = self.get_voucher(code)
        ledger.ensure_redeemable(voucher, current_time)
        applied, due = ledger.amount_to_apply(voucher, price, self.policy, requested)
        stored = self.apply_voucher(voucher.code, applied, redeemed_by=user_id, now=current_time)
        return VoucherApplication(
            voucher=ledger.to_view(stored, current_time),
            amount_applied=applied,
            amount_due=due,
        )

    def list_purchased(self, buyer_id: str, *, now: Optional[datetime] = None) -> List[VoucherView]:
        current_time = self._now(now)
        return [ledger.to_view(item, current_time) for item in self.repository.list_by_buyer(buyer_id)]

    def list_received(self, email: str, *, now: Optional[datetime] = None) -> List[VoucherView]:
        current_time = self._now(now)
        normalized = email.strip().lower()
        return [
            ledger.to_view(item, current_time)
            for item in self.repository.list_by_recipient_email(normalized)
        ]


__all__ = ["DEFAULT_VOUCHER_EXPIRY", "VoucherRepository", "VoucherService"]
