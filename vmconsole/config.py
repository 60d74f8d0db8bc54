"""Configuration helpers for the billing engine and its batch jobs."""
from __future__ import annotations

import math
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

GATEWAY_STRIPE = "stripe"
GATEWAY_SANDBOX = "sandbox"
GATEWAY_NONE = "none"
SUPPORTED_GATEWAYS = frozenset({GATEWAY_STRIPE, GATEWAY_SANDBOX, GATEWAY_NONE})


@dataclass(frozen=True)
class DatabaseConfig:
    """Connection settings for the PostgreSQL billing store."""

    host: str = "127.0.0.1"
    port: int = 5432
    dbname: str = "vmconsole"
    user: str = "vmconsole"
    password: str = "vmconsole"
    connect_timeout: int = 5

    def as_connect_kwargs(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "dbname": self.dbname,
            "user": self.user,
            "password": self.password,
            "connect_timeout": self.connect_timeout,
        }


@dataclass(frozen=True)
class BillingConfig:
    """Runtime settings for metering, invoicing and subscription charging."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    gateway_name: str = GATEWAY_SANDBOX
    stripe_secret_key: Optional[str] = None
    gateway_timeout_seconds: float = 20.0
    gateway_max_attempts: int = 3
    gateway_retry_backoff: float = 1.0
    past_due_grace_days: int = 3
    cancel_after_days: int = 30
    currency: str = "USD"
    invoice_due_days: int = 30
    max_batch_errors: int = 50
    use_advisory_locks: bool = True

    @property
    def gateway_configured(self) -> bool:
        if self.gateway_name == GATEWAY_NONE:
            return False
        if self.gateway_name == GATEWAY_STRIPE:
            return bool(self.stripe_secret_key)
        return True


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


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def _parse_connect_timeout(raw_value: Optional[str]) -> int:
    timeout = _to_float(raw_value, default=5.0)
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))


def load_database_config(env: Optional[Mapping[str, str]] = None) -> DatabaseConfig:
    """Load :class:`DatabaseConfig` from environment variables."""

    env_mapping = os.environ if env is None else env
    return DatabaseConfig(
        host=env_mapping.get("DB_HOST", "127.0.0.1"),
        port=_to_int(env_mapping.get("DB_PORT"), default=5432),
        dbname=env_mapping.get("DB_NAME", "vmconsole"),
        user=env_mapping.get("DB_USER", "vmconsole"),
        password=env_mapping.get("DB_PASSWORD", "vmconsole"),
        connect_timeout=_parse_connect_timeout(env_mapping.get("DB_CONNECT_TIMEOUT")),
    )


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingConfig:
    """Load :class:`BillingConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    gateway_name = (env_mapping.get("BILLING_GATEWAY") or GATEWAY_SANDBOX).strip().lower()
    if gateway_name not in SUPPORTED_GATEWAYS:
        raise ValueError(
            f"BILLING_GATEWAY must be one of {sorted(SUPPORTED_GATEWAYS)}, got {gateway_name!r}"
        )

    currency = (env_mapping.get("BILLING_CURRENCY") or "USD").strip().upper()
    if len(currency) != 3:
        raise ValueError(f"BILLING_CURRENCY must be a 3-letter code, got {currency!r}")

    timeout = _to_float(env_mapping.get("BILLING_GATEWAY_TIMEOUT"), default=20.0)
    if timeout <= 0:
        raise ValueError("BILLING_GATEWAY_TIMEOUT must be positive")

    return BillingConfig(
        database=load_database_config(env_mapping),
        gateway_name=gateway_name,
        stripe_secret_key=env_mapping.get("STRIPE_SECRET_KEY") or None,
        gateway_timeout_seconds=timeout,
        gateway_max_attempts=max(1, _to_int(env_mapping.get("BILLING_GATEWAY_MAX_ATTEMPTS"), default=3)),
        gateway_retry_backoff=max(0.0, _to_float(env_mapping.get("BILLING_GATEWAY_RETRY_BACKOFF"), default=1.0)),
        past_due_grace_days=max(0, _to_int(env_mapping.get("BILLING_PAST_DUE_GRACE_DAYS"), default=3)),
        cancel_after_days=max(1, _to_int(env_mapping.get("BILLING_CANCEL_AFTER_DAYS"), default=30)),
        currency=currency,
        invoice_due_days=max(0, _to_int(env_mapping.get("BILLING_INVOICE_DUE_DAYS"), default=30)),
        max_batch_errors=max(1, _to_int(env_mapping.get("BILLING_MAX_BATCH_ERRORS"), default=50)),
        use_advisory_locks=_to_bool(env_mapping.get("BILLING_USE_ADVISORY_LOCKS"), default=True),
    )


__all__ = [
    "BillingConfig",
    "DatabaseConfig",
    "GATEWAY_NONE",
    "GATEWAY_SANDBOX",
    "GATEWAY_STRIPE",
    "load_billing_config",
    "load_database_config",
]
