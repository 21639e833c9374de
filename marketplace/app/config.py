"""Configuration helpers for the payment gateway and subscription lifecycle."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional
import os

_PRODUCTION_CHECKOUT_URL = "https://checkout.paycom.uz"
_PRODUCTION_API_URL = "https://api.paycom.uz"
_TEST_CHECKOUT_URL = "https://checkout.test.paycom.uz"
_TEST_API_URL = "https://test.paycom.uz/api"


@dataclass(frozen=True)
class PaymentConfig:
    """Credentials and endpoints for the third-party payment gateway."""

    merchant_id: Optional[str]
    secret_key: Optional[str]
    callback_url: Optional[str]
    test_mode: bool
    checkout_base_url: str
    api_url: str
    request_timeout: float
    signature_header: str
    frontend_url: str
    payment_description: str


@dataclass(frozen=True)
class SubscriptionConfig:
    """Pricing and lifecycle windows for the single monthly plan."""

    duration_days: int
    grace_period_days: int
    price_uzs: int
    price_usd: int
    initiation_ttl_minutes: int
    expiry_hour_utc: int
    expiry_enabled: bool


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


def load_payment_config(env: Optional[Mapping[str, str]] = None) -> PaymentConfig:
    """Load :class:`PaymentConfig` from environment variables.

    Missing merchant credentials are not an error here; the gateway client
    raises :class:`~marketplace.app.exceptions.ConfigurationError` when an
    operation actually needs them.
    """

    env_mapping = os.environ if env is None else env

    test_mode = _to_bool(env_mapping.get("PAYMENT_GATEWAY_TEST_MODE"), default=False)
    checkout_default = _TEST_CHECKOUT_URL if test_mode else _PRODUCTION_CHECKOUT_URL
    api_default = _TEST_API_URL if test_mode else _PRODUCTION_API_URL

    checkout_base_url = env_mapping.get("PAYMENT_GATEWAY_CHECKOUT_URL") or checkout_default
    api_url = env_mapping.get("PAYMENT_GATEWAY_API_URL") or api_default

    return PaymentConfig(
        merchant_id=(env_mapping.get("PAYMENT_GATEWAY_MERCHANT_ID") or "").strip() or None,
        secret_key=env_mapping.get("PAYMENT_GATEWAY_SECRET_KEY") or None,
        callback_url=env_mapping.get("PAYMENT_GATEWAY_CALLBACK_URL") or None,
        test_mode=test_mode,
        checkout_base_url=checkout_base_url.rstrip("/"),
        api_url=api_url,
        request_timeout=max(1.0, _to_float(env_mapping.get("PAYMENT_GATEWAY_TIMEOUT"), default=10.0)),
        signature_header=env_mapping.get("PAYMENT_GATEWAY_SIGNATURE_HEADER", "X-Gateway-Signature"),
        frontend_url=env_mapping.get("FRONTEND_URL", "http://localhost:5173").rstrip("/"),
        payment_description=env_mapping.get(
            "PAYMENT_DESCRIPTION", "Marketplace Monthly Subscription"
        ),
    )


def load_subscription_config(env: Optional[Mapping[str, str]] = None) -> SubscriptionConfig:
    """Load :class:`SubscriptionConfig` from environment variables.

    Prices are expressed in minor currency units (tiyin for UZS, cents for
    USD).
    """

    env_mapping = os.environ if env is None else env

    duration_days = _to_int(env_mapping.get("SUBSCRIPTION_DURATION_DAYS"), default=30)
    grace_period_days = _to_int(env_mapping.get("GRACE_PERIOD_DAYS"), default=3)
    if duration_days < 1:
        raise ValueError("SUBSCRIPTION_DURATION_DAYS must be >= 1")
    if grace_period_days < 0:
        raise ValueError("GRACE_PERIOD_DAYS must be non-negative")

    expiry_hour = _to_int(env_mapping.get("SUBSCRIPTION_EXPIRY_HOUR_UTC"), default=0)
    if not 0 <= expiry_hour <= 23:
        raise ValueError("SUBSCRIPTION_EXPIRY_HOUR_UTC must be between 0 and 23")

    return SubscriptionConfig(
        duration_days=duration_days,
        grace_period_days=grace_period_days,
        price_uzs=max(1, _to_int(env_mapping.get("SUBSCRIPTION_PRICE_UZS"), default=1_200_000)),
        price_usd=max(1, _to_int(env_mapping.get("SUBSCRIPTION_PRICE_USD"), default=100)),
        initiation_ttl_minutes=max(
            1, _to_int(env_mapping.get("PAYMENT_INITIATION_TTL_MINUTES"), default=15)
        ),
        expiry_hour_utc=expiry_hour,
        expiry_enabled=_to_bool(env_mapping.get("SUBSCRIPTION_EXPIRY_ENABLED"), default=True),
    )


__all__ = [
    "PaymentConfig",
    "SubscriptionConfig",
    "load_payment_config",
    "load_subscription_config",
]
