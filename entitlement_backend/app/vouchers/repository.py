"""Persistence adapters for vouchers."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from threading import RLock
from typing import Dict, Iterator, Optional, Sequence

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ..errors import PersistenceFailure
from ..packages.models import Currency
from ..packages.repository import managed_connection
from .models import Recipient, Voucher


class InMemoryVoucherRepository:
    """Thread-safe voucher store keyed by code."""

    def __init__(self) -> None:
        self._vouchers: Dict[str, Voucher] = {}
        self._lock = RLock()

    def get_by_code(self, code: str) -> Optional[Voucher]:
        with self._lock:
            return self._vouchers.get(code)

    def code_exists(self, code: str) -> bool:
        with self._lock:
            return code in self._vouchers

    def find_by_payment_reference(self, payment_reference: str) -> Optional[Voucher]:
        with self._lock:
            for voucher in self._vouchers.values():
                if voucher.payment_reference == payment_reference:
                    return voucher
        return None

    def insert_voucher(self, voucher: Voucher) -> Voucher:
        with self._lock:
            if voucher.code in self._vouchers:
                raise PersistenceFailure("Voucher code already exists", detail={"code": voucher.code})
            self._vouchers[voucher.code] = voucher
            return voucher

    def consume_balance(
        self,
        code: str,
        amount: Decimal,
        *,
        redeemed_by: Optional[str],
        updated_at: datetime,
    ) -> Optional[Voucher]:
        with self._lock:
            current = self._vouchers.get(code)
            if current is None:
                return None
            used = current.amount_used + amount
            if used > current.amount:
                return None
            update = {"amount_used": used, "updated_at": updated_at}
            if used >= current.amount:
                update.update({"is_redeemed": True, "redeemed_at": updated_at, "redeemed_by": redeemed_by})
            stored = current.model_copy(update=update)
            self._vouchers[code] = stored
            return stored

    def list_by_buyer(self, buyer_id: str) -> Sequence[Voucher]:
        with self._lock:
            matching = [item for item in self._vouchers.values() if item.buyer_id == buyer_id]
        return sorted(matching, key=lambda item: item.created_at, reverse=True)

    def list_by_recipient_email(self, email: str) -> Sequence[Voucher]:
        with self._lock:
            matching = [item for item in self._vouchers.values() if item.recipient.email == email]
        return sorted(matching, key=lambda item: item.created_at, reverse=True)


def _row_to_voucher(row: dict) -> Voucher:
    return Voucher(
        id=row["id"],
        code=row["code"],
        amount=Decimal(str(row["amount"])),
        currency=Currency(row.get("currency") or Currency.GBP.value),
        buyer_id=row["buyer_id"],
        recipient=Recipient(name=row["recipient_name"], email=row["recipient_email"]),
        message=row.get("message"),
        payment_reference=row["payment_reference"],
        expiry_date=row["expiry_date"],
        amount_used=Decimal(str(row.get("amount_used") or 0)),
        is_redeemed=bool(row.get("is_redeemed")),
        redeemed_at=row.get("redeemed_at"),
        redeemed_by=row.get("redeemed_by"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _voucher_params(voucher: Voucher) -> dict:
    return {
        "id": voucher.id,
        "code": voucher.code,
        "amount": voucher.amount,
        "currency": voucher.currency.value,
        "buyer_id": voucher.buyer_id,
        "recipient_name": voucher.recipient.name,
        "recipient_email": voucher.recipient.email,
        "message": voucher.message,
        "payment_reference": voucher.payment_reference,
        "expiry_date": voucher.expiry_date,
        "amount_used": voucher.amount_used,
        "is_redeemed": voucher.is_redeemed,
        "redeemed_at": voucher.redeemed_at,
        "redeemed_by": voucher.redeemed_by,
        "created_at": voucher.created_at,
        "updated_at": voucher.updated_at,
    }


class PostgresVoucherRepository:
    """Voucher storage in the ``gift_vouchers`` table."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterator[PgCursor]:
        try:
            with managed_connection(self._conn) as (connection, _managed):
                cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
                try:
                    yield cursor
                finally:
                    cursor.close()
        except psycopg2.Error as exc:
            raise PersistenceFailure(
                "Voucher storage is unavailable",
                detail={"reason": type(exc).__name__},
            ) from exc

    def get_by_code(self, code: str) -> Optional[Voucher]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM gift_vouchers WHERE code = %s LIMIT 1", (code,))
            row = cursor.fetchone()
            return _row_to_voucher(row) if row else None

    def code_exists(self, code: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute("SELECT 1 FROM gift_vouchers WHERE code = %s LIMIT 1", (code,))
            return cursor.fetchone() is not None

    def find_by_payment_reference(self, payment_reference: str) -> Optional[Voucher]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM gift_vouchers WHERE payment_reference = %s LIMIT 1",
                (payment_reference,),
            )
            row = cursor.fetchone()
            return _row_to_voucher(row) if row else None

    def insert_voucher(self, voucher: Voucher) -> Voucher:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO gift_vouchers (
                    id, code, amount, currency, buyer_id, recipient_name, recipient_email,
                    message, payment_reference, expiry_date, amount_used, is_redeemed,
                    redeemed_at, redeemed_by, created_at, updated_at
                )
                VALUES (%(id)s, %(code)s, %(amount)s, %(currency)s, %(buyer_id)s,
                        %(recipient_name)s, %(recipient_email)s, %(message)s,
                        %(payment_reference)s, %(expiry_date)s, %(amount_used)s,
                        %(is_redeemed)s, %(redeemed_at)s, %(redeemed_by)s,
                        %(created_at)s, %(updated_at)s)
                RETURNING *
                """,
                _voucher_params(voucher),
            )
            return _row_to_voucher(cursor.fetchone())

    def consume_balance(
        self,
        code: str,
        amount: Decimal,
        *,
        redeemed_by: Optional[str],
        updated_at: datetime,
    ) -> Optional[Voucher]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE gift_vouchers
                SET amount_used = amount_used + %(amount)s,
                    is_redeemed = is_redeemed OR amount_used + %(amount)s >= amount,
                    redeemed_at = CASE WHEN amount_used + %(amount)s >= amount
                                       THEN %(updated_at)s ELSE redeemed_at END,
                    redeemed_by = CASE WHEN amount_used + %(amount)s >= amount
                                       THEN %(redeemed_by)s ELSE redeemed_by END,
                    updated_at = %(updated_at)s
                WHERE code = %(code)s AND amount_used + %(amount)s <= amount
                RETURNING *
                """,
                {"code": code, "amount": amount, "redeemed_by": redeemed_by, "updated_at": updated_at},
            )
            row = cursor.fetchone()
            return _row_to_voucher(row) if row else None

    def list_by_buyer(self, buyer_id: str) -> Sequence[Voucher]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM gift_vouchers WHERE buyer_id = %s ORDER BY created_at DESC",
                (buyer_id,),
            )
            return [_row_to_voucher(row) for row in cursor.fetchall()]

    def list_by_recipient_email(self, email: str) -> Sequence[Voucher]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM gift_vouchers WHERE recipient_email = %s ORDER BY created_at DESC",
                (email,),
            )
            return [_row_to_voucher(row) for row in cursor.fetchall()]


__all__ = ["InMemoryVoucherRepository", "PostgresVoucherRepository"]
