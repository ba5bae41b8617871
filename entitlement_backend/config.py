"""Engine configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional
import os

from .app.vouchers.models import VoucherPolicy


@dataclass(frozen=True)
class EngineConfig:
    """Runtime settings for persistence, vouchers, and sweeps."""

    db_host: str
    db_port: int
    db_name: str
    db_user: str
    db_password: str
    db_connect_timeout: int
    voucher_expiry_days: int
    voucher_code_attempts: int
    voucher_policy: VoucherPolicy
    retention_days: int
    history_keep_per_user: int
    sweep_scheduler_enabled: bool

    def db_settings(self) -> Dict[str, Any]:
        return {
            "host": self.db_host,
            "port": self.db_port,
            "dbname": self.db_name,
            "user": self.db_user,
            "password": self.db_password,
            "connect_timeout": self.db_connect_timeout,
        }


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_policy(value: Optional[str]) -> VoucherPolicy:
    if value is None or not value.strip():
        return VoucherPolicy.PARTIAL
    try:
        return VoucherPolicy(value.strip().lower())
    except ValueError as exc:
        allowed = ", ".join(item.value for item in VoucherPolicy)
        raise ValueError(f"VOUCHER_POLICY must be one of: {allowed}") from exc


def load_engine_config(env: Optional[Mapping[str, str]] = None) -> EngineConfig:
    """Load :class:`EngineConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    return EngineConfig(
        db_host=env_mapping.get("DB_HOST", "localhost"),
        db_port=_to_int(env_mapping.get("DB_PORT"), default=5432),
        db_name=env_mapping.get("DB_NAME", "entitlements"),
        db_user=env_mapping.get("DB_USER", "postgres"),
        db_password=env_mapping.get("DB_PASSWORD", ""),
        db_connect_timeout=max(1, _to_int(env_mapping.get("DB_CONNECT_TIMEOUT"), default=5)),
        voucher_expiry_days=max(1, _to_int(env_mapping.get("VOUCHER_EXPIRY_DAYS"), default=30)),
        voucher_code_attempts=max(1, _to_int(env_mapping.get("VOUCHER_CODE_ATTEMPTS"), default=10)),
        voucher_policy=_to_policy(env_mapping.get("VOUCHER_POLICY")),
        retention_days=max(1, _to_int(env_mapping.get("RETENTION_DAYS"), default=365)),
        history_keep_per_user=max(0, _to_int(env_mapping.get("HISTORY_KEEP_PER_USER"), default=10)),
        sweep_scheduler_enabled=_to_bool(env_mapping.get("SWEEP_SCHEDULER_ENABLED"), default=True),
    )


__all__ = ["EngineConfig", "load_engine_config"]
