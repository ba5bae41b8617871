"""Domain errors raised by the package lifecycle and voucher ledger."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass
class PackageEngineError(Exception):
    """Represents an actionable failure surfaced to callers of the core."""

    message: str
    detail: Optional[Mapping[str, Any]] = None

    code: ClassVar[str] = "package_error"
    status_code: ClassVar[int] = status.HTTP_400_BAD_REQUEST

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(status_code=self.status_code, detail=_jsonable(self.payload))


class InvalidPlan(PackageEngineError):
    code = "invalid_plan"
    status_code = status.HTTP_404_NOT_FOUND


class InvalidPayment(PackageEngineError):
    code = "invalid_payment"


class NotEligible(PackageEngineError):
    """Renewal or consumption attempted outside the permitted window."""

    code = "not_eligible"
    status_code = status.HTTP_409_CONFLICT


class UsageLimitReached(PackageEngineError):
    code = "usage_limit_reached"
    status_code = status.HTTP_403_FORBIDDEN


class EntitlementNotFound(PackageEngineError):
    code = "entitlement_not_found"
    status_code = status.HTTP_404_NOT_FOUND


class VoucherNotFound(PackageEngineError):
    code = "voucher_not_found"
    status_code = status.HTTP_404_NOT_FOUND


class VoucherExpired(PackageEngineError):
    code = "voucher_expired"
    status_code = status.HTTP_410_GONE


class VoucherExhausted(PackageEngineError):
    code = "voucher_exhausted"
    status_code = status.HTTP_409_CONFLICT


class InsufficientBalance(PackageEngineError):
    code = "insufficient_balance"
    status_code = status.HTTP_402_PAYMENT_REQUIRED


class CodeSpaceExhausted(PackageEngineError):
    code = "code_space_exhausted"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class PersistenceFailure(PackageEngineError):
    """Transient storage failure affecting a single record."""

    code = "persistence_failure"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


def _jsonable(payload: Mapping[str, Any]) -> Dict[str, Any]:
    rendered: Dict[str, Any] = {}
    for key, value in payload.items():
        rendered[key] = value.isoformat() if hasattr(value, "isoformat") else value
    return rendered


__all__ = [
    "CodeSpaceExhausted",
    "EntitlementNotFound",
    "InsufficientBalance",
    "InvalidPayment",
    "InvalidPlan",
    "NotEligible",
    "PackageEngineError",
    "PersistenceFailure",
    "UsageLimitReached",
    "VoucherExhausted",
    "VoucherExpired",
    "VoucherNotFound",
]
