"""API routes exposing the package lifecycle."""
from __future__ import annotations

import os
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, status

from ..errors import PackageEngineError
from ..schemas.packages import (
    ConfirmPurchaseRequest,
    PackageStatusResponse,
    PlanListResponse,
    PlanResponse,
    PurchaseResponse,
    RenewalChainResponse,
    RenewalEligibilityResponse,
    RenewalHistoryResponse,
    RenewRequest,
    UserPackageResponse,
)
from ..services.packages import get_package_service
from ..services.purchases import get_purchase_coordinator

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


router = APIRouter(prefix="/api/packages", tags=["packages"])


@router.get("/plans", response_model=PlanListResponse)
def list_plans() -> PlanListResponse:
    service = get_package_service()
    return PlanListResponse(plans=[PlanResponse.from_plan(plan) for plan in service.list_plans()])


@router.get("/active", response_model=PackageStatusResponse)
def get_active_package(*, current_user=Depends(_get_current_user)) -> PackageStatusResponse:
    service = get_package_service()
    try:
        package_status = service.check_expiry_now(str(current_user.id))
    except PackageEngineError as exc:
        raise exc.to_http_exception() from exc
    return PackageStatusResponse.from_status(package_status)


@router.post("/check-expiry", response_model=PackageStatusResponse)
def check_expiry(*, current_user=Depends(_get_current_user)) -> PackageStatusResponse:
    service = get_package_service()
    try:
        package_status = service.check_expiry_now(str(current_user.id))
    except PackageEngineError as exc:
        raise exc.to_http_exception() from exc
    return PackageStatusResponse.from_status(package_status)


@router.get("/renewal", response_model=RenewalEligibilityResponse)
def get_renewal_eligibility(*, current_user=Depends(_get_current_user)) -> RenewalEligibilityResponse:
    service = get_package_service()
    try:
        eligibility = service.get_renewal_eligibility(str(current_user.id))
    except PackageEngineError as exc:
        raise exc.to_http_exception() from exc
    return RenewalEligibilityResponse.from_eligibility(eligibility)


@router.post("/renew", response_model=PurchaseResponse, status_code=status.HTTP_201_CREATED)
def renew_package(
    payload: RenewRequest,
    *,
    current_user=Depends(_get_current_user),
) -> PurchaseResponse:
    service = get_package_service()
    try:
        renewed = service.renew(str(current_user.id), payload.plan_id, payload.payment.to_payment_info())
    except PackageEngineError as exc:
        raise exc.to_http_exception() from exc
    return PurchaseResponse(package=UserPackageResponse.from_package(renewed))


@router.get("/history", response_model=RenewalHistoryResponse)
def get_renewal_history(*, current_user=Depends(_get_current_user)) -> RenewalHistoryResponse:
    service = get_package_service()
    chains = service.get_renewal_history(str(current_user.id))
    return RenewalHistoryResponse(chains=[RenewalChainResponse.from_chain(chain) for chain in chains])


@router.post("/confirm-purchase", response_model=PurchaseResponse, status_code=status.HTTP_201_CREATED)
def confirm_purchase(
    payload: ConfirmPurchaseRequest,
    *,
    current_user=Depends(_get_current_user),
) -> PurchaseResponse:
    coordinator = get_purchase_coordinator()
    try:
        outcome = coordinator.confirm_purchase(
            str(current_user.id),
            payload.plan_id,
            payload.payment.to_payment_info(),
            voucher_amount=payload.payment.voucher_amount,
        )
    except PackageEngineError as exc:
        raise exc.to_http_exception() from exc
    return PurchaseResponse(
        package=UserPackageResponse.from_package(outcome.entitlement),
        already_provisioned=outcome.already_provisioned,
        voucher_amount_applied=outcome.voucher.amount_applied if outcome.voucher else None,
        amount_due=outcome.voucher.amount_due if outcome.voucher else None,
    )


@router.post("/{entitlement_id}/uses", response_model=UserPackageResponse)
def record_package_use(
    entitlement_id: str,
    *,
    current_user=Depends(_get_current_user),
) -> UserPackageResponse:
    service = get_package_service()
    try:
        updated = service.record_use(entitlement_id, user_id=str(current_user.id))
    except PackageEngineError as exc:
        raise exc.to_http_exception() from exc
    return UserPackageResponse.from_package(updated)

