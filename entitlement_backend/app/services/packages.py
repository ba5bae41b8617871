"""Application wiring for the package, voucher, and sweep services."""
from __future__ import annotations

import logging
from datetime import timedelta
from functools import lru_cache

from ..packages import (
    PackageService,
    PostgresPackageRepository,
    UserPackage,
    get_default_catalog,
)
from ..reconciliation import PostgresRetentionStore, Sweeper
from ..vouchers import PostgresVoucherRepository, VoucherService

try:  # pragma: no cover - resolve config when imported from FastAPI app
    from entitlement_backend.config import EngineConfig, load_engine_config
except ModuleNotFoundError as exc:  # pragma: no cover
    if exc.name != "entitlement_backend":
        raise
    from ...config import EngineConfig, load_engine_config  # type: ignore[no-redef]


logger = logging.getLogger("packages")


class LoggingPackageNotifier:
    """Notifier that records package notifications to the application logger."""

    def notify_renewal_eligible(self, user_id: str, entitlement: UserPackage) -> None:
        logger.info(
            "User %s is eligible to renew their %s package (expires %s)",
            user_id,
            entitlement.package_type.value,
            entitlement.expiry_date.isoformat() if entitlement.expiry_date else "unknown",
        )

    def notify_expired(self, user_id: str, entitlement: UserPackage) -> None:
        logger.info(
            "Package %s for user %s has expired",
            entitlement.id,
            user_id,
        )


@lru_cache(maxsize=1)
def get_engine_config() -> EngineConfig:
    return load_engine_config()


@lru_cache(maxsize=1)
def get_package_repository() -> PostgresPackageRepository:
    return PostgresPackageRepository()


@lru_cache(maxsize=1)
def get_package_service() -> PackageService:
    return PackageService(
        repository=get_package_repository(),
        catalog=get_default_catalog(),
        notifier=LoggingPackageNotifier(),
    )


@lru_cache(maxsize=1)
def get_voucher_service() -> VoucherService:
    config = get_engine_config()
    return VoucherService(
        repository=PostgresVoucherRepository(),
        expiry=timedelta(days=config.voucher_expiry_days),
        code_attempts=config.voucher_code_attempts,
        policy=config.voucher_policy,
    )


@lru_cache(maxsize=1)
def get_sweeper() -> Sweeper:
    config = get_engine_config()
    return Sweeper(
        service=get_package_service(),
        retention_store=PostgresRetentionStore(get_package_repository()),
        retention=timedelta(days=config.retention_days),
        history_keep_per_user=config.history_keep_per_user,
    )


__all__ = [
    "LoggingPackageNotifier",
    "get_engine_config",
    "get_package_service",
    "get_sweeper",
    "get_voucher_service",
]
