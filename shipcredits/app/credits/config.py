"""Configuration helpers for the credit ledger."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional
import os


@dataclass(frozen=True)
class CreditConfig:
    """Settings for payment processing and credit lifecycles."""

    provider_name: str
    stripe_secret_key: Optional[str]
    stripe_webhook_secret: Optional[str]
    sandbox_webhook_secret: str
    currency: str
    app_base_url: str
    provider_max_attempts: int
    provider_retry_backoff: float
    confirm_timeout_seconds: float
    confirm_poll_interval: float
    auto_recharge_expiry_months: int
    purchase_fallback_expiry_days: int


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


def load_credit_config(env: Optional[Mapping[str, str]] = None) -> CreditConfig:
    """Load :class:`CreditConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    provider_name = (env_mapping.get("PAYMENT_PROVIDER") or "sandbox").strip().lower() or "sandbox"
    stripe_secret_key = env_mapping.get("STRIPE_SECRET_KEY") or None
    stripe_webhook_secret = env_mapping.get("STRIPE_WEBHOOK_SECRET") or None
    if provider_name == "stripe" and not (stripe_secret_key and stripe_webhook_secret):
        raise ValueError("STRIPE_SECRET_KEY and STRIPE_WEBHOOK_SECRET are required for the stripe provider")

    currency = (env_mapping.get("CREDITS_CURRENCY") or "brl").strip().lower()
    app_base_url = env_mapping.get("APP_BASE_URL", "http://localhost:5173")

    return CreditConfig(
        provider_name=provider_name,
        stripe_secret_key=stripe_secret_key,
        stripe_webhook_secret=stripe_webhook_secret,
        sandbox_webhook_secret=env_mapping.get("SANDBOX_WEBHOOK_SECRET", "whsec_sandbox"),
        currency=currency,
        app_base_url=app_base_url.rstrip("/"),
        # At most one automatic retry.
        provider_max_attempts=min(2, max(1, _to_int(env_mapping.get("PROVIDER_MAX_ATTEMPTS"), default=2))),
        provider_retry_backoff=max(0.0, _to_float(env_mapping.get("PROVIDER_RETRY_BACKOFF"), default=0.5)),
        confirm_timeout_seconds=max(0.0, _to_float(env_mapping.get("CREDIT_CONFIRM_TIMEOUT"), default=10.0)),
        confirm_poll_interval=max(0.05, _to_float(env_mapping.get("CREDIT_CONFIRM_POLL_INTERVAL"), default=1.0)),
        auto_recharge_expiry_months=max(1, _to_int(env_mapping.get("AUTO_RECHARGE_EXPIRY_MONTHS"), default=6)),
        purchase_fallback_expiry_days=max(1, _to_int(env_mapping.get("PURCHASE_FALLBACK_EXPIRY_DAYS"), default=30)),
    )


__all__ = ["CreditConfig", "load_credit_config"]
