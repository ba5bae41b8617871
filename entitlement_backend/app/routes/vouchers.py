"""API routes exposing the voucher ledger."""
from __future__ import annotations

import os
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, HTTPException, status

from ..errors import PackageEngineError
from ..schemas.packages import UserPackageResponse
from ..schemas.vouchers import (
    RedeemVoucherRequest,
    RedeemVoucherResponse,
    VoucherListResponse,
    VoucherPurchaseRequest,
    VoucherResponse,
)
from ..services.packages import get_voucher_service
from ..services.purchases import get_purchase_coordinator
from ..vouchers import ledger

try:  # pragma: no cover - resolve context when imported from FastAPI app
    from entitlement_backend import app_context
except ModuleNotFoundError as exc:  # pragma: no cover
    if exc.name != "entitlement_backend":
        raise
    from ... import app_context  # type: ignore[no-redef]


_SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")


def _get_current_user(
    session_token: Optional[str] = Cookie(None, alias=_SESSION_COOKIE_NAME),
):
    return app_context.get_current_user(session_token=session_token)


router = APIRouter(prefix="/api/vouchers", tags=["vouchers"])


@router.post("/confirm-purchase", response_model=VoucherResponse, status_code=status.HTTP_201_CREATED)
def confirm_voucher_purchase(
    payload: VoucherPurchaseRequest,
    *,
    current_user=Depends(_get_current_user),
) -> VoucherResponse:
    service = get_voucher_service()
    try:
        voucher = service.confirm_voucher_purchase(
            str(current_user.id),
            payload.recipient.to_recipient(),
            payload.amount,
            payload.currency,
            payload.payment.to_payment_info(),
            message=payload.message,
        )
    except PackageEngineError as exc:
        raise exc.to_http_exception() from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return VoucherResponse.from_view(ledger.to_view(voucher, service.clock()))


@router.get("/purchased", response_model=VoucherListResponse)
def list_purchased_vouchers(*, current_user=Depends(_get_current_user)) -> VoucherListResponse:
    service = get_voucher_service()
    views = service.list_purchased(str(current_user.id))
    return VoucherListResponse(vouchers=[VoucherResponse.from_view(view) for view in views])


@router.get("/received", response_model=VoucherListResponse)
def list_received_vouchers(*, current_user=Depends(_get_current_user)) -> VoucherListResponse:
    email = getattr(current_user, "email", None)
    if not email:
        return VoucherListResponse(vouchers=[])
    service = get_voucher_service()
    views = service.list_received(email)
    return VoucherListResponse(vouchers=[VoucherResponse.from_view(view) for view in views])


@router.get("/{code}", response_model=VoucherResponse)
def get_voucher_status(code: str) -> VoucherResponse:
    service = get_voucher_service()
    try:
        view = service.get_voucher_status(code)
    except PackageEngineError as exc:
        raise exc.to_http_exception() from exc
    return VoucherResponse.from_view(view)


@router.post("/redeem", response_model=RedeemVoucherResponse, status_code=status.HTTP_201_CREATED)
def redeem_voucher(
    payload: RedeemVoucherRequest,
    *,
    current_user=Depends(_get_current_user),
) -> RedeemVoucherResponse:
    coordinator = get_purchase_coordinator()
    try:
        outcome = coordinator.redeem_voucher(str(current_user.id), payload.code, payload.plan_id)
    except PackageEngineError as exc:
        raise exc.to_http_exception() from exc
    return RedeemVoucherResponse(
        package=UserPackageResponse.from_package(outcome.entitlement),
        voucher=VoucherResponse.from_view(outcome.voucher.voucher),
        amount_applied=outcome.voucher.amount_applied,
    )
