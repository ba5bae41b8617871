"""Prepaid gift voucher ledger."""

from .ledger import CODE_ALPHABET, CODE_LENGTH, generate_code, remaining_balance, status
from .models import Recipient, Voucher, VoucherApplication, VoucherPolicy, VoucherStatus, VoucherView
from .repository import InMemoryVoucherRepository, PostgresVoucherRepository
from .service import DEFAULT_VOUCHER_EXPIRY, VoucherRepository, VoucherService

__all__ = [
    "CODE_ALPHABET",
    "CODE_LENGTH",
    "DEFAULT_VOUCHER_EXPIRY",
    "InMemoryVoucherRepository",
    "PostgresVoucherRepository",
    "Recipient",
    "Voucher",
    "VoucherApplication",
    "VoucherPolicy",
    "VoucherRepository",
    "VoucherService",
    "VoucherStatus",
    "VoucherView",
    "generate_code",
    "remaining_balance",
    "status",
]
