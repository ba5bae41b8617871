"""Persistence adapters for entitlements and their owners."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from threading import RLock
from typing import Dict, Iterator, List, Optional, Sequence

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ..errors import PersistenceFailure
from .models import (
    NO_PACKAGE,
    Currency,
    PackageOwner,
    PackageType,
    PaymentMethod,
    PaymentStatus,
    UserPackage,
)

try:  # pragma: no cover - resolve connection helper when imported from FastAPI app
    from entitlement_backend.app_context import get_conn
except ModuleNotFoundError as exc:  # pragma: no cover
    if exc.name != "entitlement_backend":
        raise
    from ...app_context import get_conn  # type: ignore[no-redef]


class InMemoryPackageRepository:
    """Thread-safe in-memory repository suitable for tests and local development."""

    def __init__(self) -> None:
        self._packages: Dict[str, UserPackage] = {}
        self._owners: Dict[str, PackageOwner] = {}
        self._lock = RLock()

    def get_package(self, entitlement_id: str) -> Optional[UserPackage]:
        with self._lock:
            return self._packages.get(entitlement_id)

    def save_package(self, entitlement: UserPackage) -> UserPackage:
        with self._lock:
            self._packages[entitlement.id] = entitlement
            return entitlement

    def mark_expired(self, entitlement_id: str, *, updated_at: datetime) -> Optional[UserPackage]:
        return self._update_active(
            entitlement_id,
            {"is_active": False, "is_renewal_eligible": False, "updated_at": updated_at},
        )

    def set_renewal_eligibility(
        self,
        entitlement_id: str,
        *,
        is_renewal_eligible: bool,
        renewal_eligible_date: Optional[datetime],
        updated_at: datetime,
    ) -> Optional[UserPackage]:
        return self._update_active(
            entitlement_id,
            {
                "is_renewal_eligible": is_renewal_eligible,
                "renewal_eligible_date": renewal_eligible_date,
                "updated_at": updated_at,
            },
        )

    def mark_superseded(
        self,
        entitlement_id: str,
        *,
        renewed_to_id: str,
        updated_at: datetime,
    ) -> Optional[UserPackage]:
        with self._lock:
            current = self._packages.get(entitlement_id)
            if current is None or current.renewed_to_id is not None:
                return None
            return self._update_active(
                entitlement_id,
                {
                    "is_active": False,
                    "is_renewal_eligible": False,
                    "renewed_to_id": renewed_to_id,
                    "updated_at": updated_at,
                },
            )

    def increment_uses(self, entitlement_id: str, *, updated_at: datetime) -> Optional[UserPackage]:
        with self._lock:
            current = self._packages.get(entitlement_id)
            if current is None or not current.is_active:
                return None
            if not current.is_unlimited and current.uses_consumed >= current.max_uses:
                return None
            return self._update_active(
                entitlement_id,
                {"uses_consumed": current.uses_consumed + 1, "updated_at": updated_at},
            )

    def _update_active(self, entitlement_id: str, update: dict) -> Optional[UserPackage]:
        with self._lock:
            current = self._packages.get(entitlement_id)
            if current is None or not current.is_active:
                return None
            stored = current.model_copy(update=update)
            self._packages[entitlement_id] = stored
            return stored

    def list_active_packages(self) -> Sequence[UserPackage]:
        with self._lock:
            return [item for item in self._packages.values() if item.is_active]

    def list_packages_for_user(self, user_id: str) -> Sequence[UserPackage]:
        with self._lock:
            matching = [item for item in self._packages.values() if item.user_id == user_id]
        return sorted(matching, key=lambda item: item.created_at, reverse=True)

    def find_by_payment(self, user_id: str, payment_id: str) -> Optional[UserPackage]:
        with self._lock:
            for item in self._packages.values():
                if item.user_id == user_id and item.payment_id == payment_id:
                    return item
        return None

    def deactivate_active_packages(self, user_id: str, *, updated_at: datetime) -> int:
        count = 0
        with self._lock:
            for key, item in list(self._packages.items()):
                if item.user_id == user_id and item.is_active:
                    self._packages[key] = item.model_copy(
                        update={"is_active": False, "is_renewal_eligible": False, "updated_at": updated_at}
                    )
                    count += 1
        return count

    def delete_inactive_before(self, cutoff: datetime) -> int:
        with self._lock:
            stale = [
                key
                for key, item in self._packages.items()
                if not item.is_active and item.updated_at < cutoff
            ]
            for key in stale:
                self._packages.pop(key, None)
        return len(stale)

    def get_owner(self, user_id: str) -> Optional[PackageOwner]:
        with self._lock:
            return self._owners.get(user_id)

    def add_owner(self, user_id: str) -> PackageOwner:
        with self._lock:
            owner = self._owners.setdefault(user_id, PackageOwner(user_id=user_id))
            return owner

    def set_active_package(
        self,
        user_id: str,
        *,
        entitlement_id: str,
        package_type: str,
        updated_at: datetime,
    ) -> PackageOwner:
        owner = PackageOwner(
            user_id=user_id,
            active_package_id=entitlement_id,
            package_type=package_type,
            updated_at=updated_at,
        )
        with self._lock:
            self._owners[user_id] = owner
        return owner

    def clear_active_package_if(
        self,
        user_id: str,
        *,
        expected_entitlement_id: str,
        updated_at: datetime,
    ) -> bool:
        with self._lock:
            owner = self._owners.get(user_id)
            if owner is None or owner.active_package_id != expected_entitlement_id:
                return False
            self._owners[user_id] = owner.model_copy(
                update={"active_package_id": None, "package_type": NO_PACKAGE, "updated_at": updated_at}
            )
            return True


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _row_to_user_package(row: dict) -> UserPackage:
    return UserPackage(
        id=row["id"],
        user_id=row["user_id"],
        plan_id=row["plan_id"],
        package_type=PackageType(row["package_type"]),
        purchase_date=row["purchase_date"],
        expiry_date=row.get("expiry_date"),
        is_active=bool(row["is_active"]),
        uses_consumed=int(row.get("uses_consumed") or 0),
        max_uses=int(row.get("max_uses") or 0),
        price=Decimal(str(row.get("price") or 0)),
        currency=Currency(row.get("currency") or Currency.GBP.value),
        payment_method=PaymentMethod(row.get("payment_method") or PaymentMethod.CREDIT_CARD.value),
        payment_id=row.get("payment_id"),
        payment_status=PaymentStatus(row.get("payment_status") or PaymentStatus.COMPLETED.value),
        is_gift=bool(row.get("is_gift")),
        gift_code=row.get("gift_code"),
        renewal_eligible_date=row.get("renewal_eligible_date"),
        is_renewal_eligible=bool(row.get("is_renewal_eligible")),
        renewed_from_id=row.get("renewed_from_id"),
        renewed_to_id=row.get("renewed_to_id"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_owner(row: dict) -> PackageOwner:
    return PackageOwner(
        user_id=row["user_id"],
        active_package_id=row.get("active_package_id"),
        package_type=row.get("package_type") or NO_PACKAGE,
        updated_at=row["updated_at"],
    )


def _package_params(entitlement: UserPackage) -> dict:
    return {
        "id": entitlement.id,
        "user_id": entitlement.user_id,
        "plan_id": entitlement.plan_id,
        "package_type": entitlement.package_type.value,
        "purchase_date": entitlement.purchase_date,
        "expiry_date": entitlement.expiry_date,
        "is_active": entitlement.is_active,
        "uses_consumed": entitlement.uses_consumed,
        "max_uses": entitlement.max_uses,
        "price": entitlement.price,
        "currency": entitlement.currency.value,
        "payment_method": entitlement.payment_method.value,
        "payment_id": entitlement.payment_id,
        "payment_status": entitlement.payment_status.value,
        "is_gift": entitlement.is_gift,
        "gift_code": entitlement.gift_code,
        "renewal_eligible_date": entitlement.renewal_eligible_date,
        "is_renewal_eligible": entitlement.is_renewal_eligible,
        "renewed_from_id": entitlement.renewed_from_id,
        "renewed_to_id": entitlement.renewed_to_id,
        "created_at": entitlement.created_at,
        "updated_at": entitlement.updated_at,
    }


class PostgresPackageRepository:
    """Concrete repository persisting entitlements in PostgreSQL."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterator[PgCursor]:
        try:
            with managed_connection(self._conn) as (connection, managed):
                cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
                try:
                    yield cursor
                    if managed:
                        connection.commit()
                except Exception:
                    if managed:
                        connection.rollback()
                    raise
                finally:
                    cursor.close()
        except psycopg2.Error as exc:
            raise PersistenceFailure(
                "Package storage is unavailable",
                detail={"reason": type(exc).__name__},
            ) from exc

    def get_package(self, entitlement_id: str) -> Optional[UserPackage]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM user_packages WHERE id = %s LIMIT 1", (entitlement_id,))
            row = cursor.fetchone()
            return _row_to_user_package(row) if row else None

    def save_package(self, entitlement: UserPackage) -> UserPackage:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO user_packages (
                    id, user_id, plan_id, package_type, purchase_date, expiry_date,
                    is_active, uses_consumed, max_uses, price, currency,
                    payment_method, payment_id, payment_status, is_gift, gift_code,
                    renewal_eligible_date, is_renewal_eligible,
                    renewed_from_id, renewed_to_id, created_at, updated_at
                )
                VALUES (%(id)s, %(user_id)s, %(plan_id)s, %(package_type)s, %(purchase_date)s,
                        %(expiry_date)s, %(is_active)s, %(uses_consumed)s, %(max_uses)s,
                        %(price)s, %(currency)s, %(payment_method)s, %(payment_id)s,
                        %(payment_status)s, %(is_gift)s, %(gift_code)s,
                        %(renewal_eligible_date)s, %(is_renewal_eligible)s,
                        %(renewed_from_id)s, %(renewed_to_id)s, %(created_at)s, %(updated_at)s)
                ON CONFLICT (id) DO UPDATE SET
                    expiry_date = EXCLUDED.expiry_date,
                    is_active = EXCLUDED.is_active,
                    uses_consumed = EXCLUDED.uses_consumed,
                    payment_status = EXCLUDED.payment_status,
                    renewal_eligible_date = EXCLUDED.renewal_eligible_date,
                    is_renewal_eligible = EXCLUDED.is_renewal_eligible,
                    renewed_to_id = EXCLUDED.renewed_to_id,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                _package_params(entitlement),
            )
            row = cursor.fetchone()
            if not row:
                raise PersistenceFailure("Failed to persist package", detail={"entitlement_id": entitlement.id})
            return _row_to_user_package(row)

    def mark_expired(self, entitlement_id: str, *, updated_at: datetime) -> Optional[UserPackage]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE user_packages
                SET is_active = FALSE, is_renewal_eligible = FALSE, updated_at = %s
                WHERE id = %s AND is_active = TRUE
                RETURNING *
                """,
                (updated_at, entitlement_id),
            )
            row = cursor.fetchone()
            return _row_to_user_package(row) if row else None

    def set_renewal_eligibility(
        self,
        entitlement_id: str,
        *,
        is_renewal_eligible: bool,
        renewal_eligible_date: Optional[datetime],
        updated_at: datetime,
    ) -> Optional[UserPackage]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE user_packages
                SET is_renewal_eligible = %s, renewal_eligible_date = %s, updated_at = %s
                WHERE id = %s AND is_active = TRUE
                RETURNING *
                """,
                (is_renewal_eligible, renewal_eligible_date, updated_at, entitlement_id),
            )
            row = cursor.fetchone()
            return _row_to_user_package(row) if row else None

    def mark_superseded(
        self,
        entitlement_id: str,
        *,
        renewed_to_id: str,
        updated_at: datetime,
    ) -> Optional[UserPackage]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE user_packages
                SET is_active = FALSE, is_renewal_eligible = FALSE, renewed_to_id = %s, updated_at = %s
                WHERE id = %s AND is_active = TRUE AND renewed_to_id IS NULL
                RETURNING *
                """,
                (renewed_to_id, updated_at, entitlement_id),
            )
            row = cursor.fetchone()
            return _row_to_user_package(row) if row else None

    def increment_uses(self, entitlement_id: str, *, updated_at: datetime) -> Optional[UserPackage]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE user_packages
                SET uses_consumed = uses_consumed + 1, updated_at = %s
                WHERE id = %s
                  AND is_active = TRUE
                  AND (max_uses = 0 OR uses_consumed < max_uses)
                RETURNING *
                """,
                (updated_at, entitlement_id),
            )
            row = cursor.fetchone()
            return _row_to_user_package(row) if row else None

    def list_active_packages(self) -> Sequence[UserPackage]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM user_packages WHERE is_active = TRUE ORDER BY expiry_date ASC")
            return [_row_to_user_package(row) for row in cursor.fetchall()]

    def list_packages_for_user(self, user_id: str) -> Sequence[UserPackage]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM user_packages WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            )
            return [_row_to_user_package(row) for row in cursor.fetchall()]

    def find_by_payment(self, user_id: str, payment_id: str) -> Optional[UserPackage]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM user_packages
                WHERE user_id = %s AND payment_id = %s
                LIMIT 1
                """,
                (user_id, payment_id),
            )
            row = cursor.fetchone()
            return _row_to_user_package(row) if row else None

    def deactivate_active_packages(self, user_id: str, *, updated_at: datetime) -> int:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE user_packages
                SET is_active = FALSE, is_renewal_eligible = FALSE, updated_at = %s
                WHERE user_id = %s AND is_active = TRUE
                """,
                (updated_at, user_id),
            )
            return cursor.rowcount

    def delete_inactive_before(self, cutoff: datetime) -> int:
        with self._cursor() as cursor:
            cursor.execute(
                "DELETE FROM user_packages WHERE is_active = FALSE AND updated_at < %s",
                (cutoff,),
            )
            return cursor.rowcount

    def get_owner(self, user_id: str) -> Optional[PackageOwner]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM package_owners WHERE user_id = %s LIMIT 1", (user_id,))
            row = cursor.fetchone()
            return _row_to_owner(row) if row else None

    def set_active_package(
        self,
        user_id: str,
        *,
        entitlement_id: str,
        package_type: str,
        updated_at: datetime,
    ) -> PackageOwner:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO package_owners (user_id, active_package_id, package_type, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (user_id) DO UPDATE SET
                    active_package_id = EXCLUDED.active_package_id,
                    package_type = EXCLUDED.package_type,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                (user_id, entitlement_id, package_type, updated_at),
            )
            return _row_to_owner(cursor.fetchone())

    def clear_active_package_if(
        self,
        user_id: str,
        *,
        expected_entitlement_id: str,
        updated_at: datetime,
    ) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE package_owners
                SET active_package_id = NULL, package_type = %s, updated_at = %s
                WHERE user_id = %s AND active_package_id = %s
                """,
                (NO_PACKAGE, updated_at, user_id, expected_entitlement_id),
            )
            return cursor.rowcount == 1


__all__ = [
    "InMemoryPackageRepository",
    "PostgresPackageRepository",
    "managed_connection",
]
