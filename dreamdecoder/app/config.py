"""Billing and payment-provider configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional
import os

from .billing.models import PaymentFailurePolicy
from .billing.stripe_provider import DEFAULT_STRIPE_API_VERSION, DEFAULT_WEBHOOK_TOLERANCE_SECONDS
from .entitlements.models import DEFAULT_FEATURE_KEY, DEFAULT_TRIAL_LIMIT, PlanKey


@dataclass(frozen=True)
class BillingConfig:
    """Configuration for entitlement checks and the Stripe integration."""

    stripe_secret_key: Optional[str]
    stripe_webhook_secret: Optional[str]
    stripe_api_version: str
    webhook_tolerance_seconds: int
    plan_prices: Dict[PlanKey, str] = field(default_factory=dict)
    default_feature_key: str = DEFAULT_FEATURE_KEY
    trial_limit: int = DEFAULT_TRIAL_LIMIT
    payment_failure_policy: PaymentFailurePolicy = PaymentFailurePolicy.GRACE_PERIOD
    always_refetch_subscriptions: bool = True
    app_base_url: str = "http://localhost:8081"


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None or not value.strip():
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Expected boolean value, got {value!r}")


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_policy(value: Optional[str]) -> PaymentFailurePolicy:
    if value is None or not value.strip():
        return PaymentFailurePolicy.GRACE_PERIOD
    try:
        return PaymentFailurePolicy(value.strip().lower())
    except ValueError as exc:
        raise ValueError(f"Unknown payment failure policy {value!r}") from exc


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingConfig:
    """Load :class:`BillingConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    plan_prices: Dict[PlanKey, str] = {}
    for plan_key in PlanKey:
        price_id = (env_mapping.get(f"STRIPE_PRICE_{plan_key.value.upper()}") or "").strip()
        if price_id:
            plan_prices[plan_key] = price_id

    trial_limit = _to_int(env_mapping.get("BILLING_TRIAL_LIMIT"), default=DEFAULT_TRIAL_LIMIT)
    if trial_limit < 0:
        raise ValueError("BILLING_TRIAL_LIMIT cannot be negative")

    tolerance = _to_int(
        env_mapping.get("STRIPE_WEBHOOK_TOLERANCE_SECONDS"),
        default=DEFAULT_WEBHOOK_TOLERANCE_SECONDS,
    )
    if tolerance <= 0:
        raise ValueError("STRIPE_WEBHOOK_TOLERANCE_SECONDS must be positive")

    app_base_url = env_mapping.get("APP_BASE_URL", "http://localhost:8081")

    return BillingConfig(
        stripe_secret_key=env_mapping.get("STRIPE_SECRET_KEY") or None,
        stripe_webhook_secret=env_mapping.get("STRIPE_WEBHOOK_SECRET") or None,
        stripe_api_version=env_mapping.get("STRIPE_API_VERSION") or DEFAULT_STRIPE_API_VERSION,
        webhook_tolerance_seconds=tolerance,
        plan_prices=plan_prices,
        default_feature_key=(env_mapping.get("BILLING_DEFAULT_FEATURE_KEY") or DEFAULT_FEATURE_KEY).strip(),
        trial_limit=trial_limit,
        payment_failure_policy=_to_policy(env_mapping.get("BILLING_PAYMENT_FAILURE_POLICY")),
        always_refetch_subscriptions=_to_bool(
            env_mapping.get("BILLING_ALWAYS_REFETCH_SUBSCRIPTIONS"),
            default=True,
        ),
        app_base_url=app_base_url.rstrip("/"),
    )


__all__ = ["BillingConfig", "load_billing_config"]
