"""Application wiring for the billing and entitlement services."""
from __future__ import annotations

import logging
from functools import lru_cache

from ..billing import BillingAuditEvent, BillingEventLogger, BillingService
from ..billing.repository import PostgresBillingRepository
from ..billing.stripe_provider import StripePaymentProvider
from ..config import BillingConfig, load_billing_config
from ..entitlements import AccessEvaluator, TrialMeter
from ..entitlements.repository import PostgresEntitlementRepository
from ..feature_gates import MeteredFeatureGate


logger = logging.getLogger("billing")


class LoggingBillingEventLogger(BillingEventLogger):
    """Simple event logger forwarding billing audit events to logging."""

    def log(self, event: BillingAuditEvent) -> None:
        logger.info(
            "Billing event %s user=%s subscription=%s metadata=%s",
            event.event_type.value,
            event.user_id,
            event.subscription_id,
            event.metadata,
        )


@lru_cache(maxsize=1)
def get_billing_config() -> BillingConfig:
    return load_billing_config()


@lru_cache(maxsize=1)
def get_billing_service() -> BillingService:
    config = get_billing_config()
    provider = StripePaymentProvider(config.stripe_secret_key, api_version=config.stripe_api_version)
    return BillingService(
        repository=PostgresBillingRepository(),
        provider=provider,
        event_logger=LoggingBillingEventLogger(),
        payment_failure_policy=config.payment_failure_policy,
        always_refetch_subscriptions=config.always_refetch_subscriptions,
        default_feature_key=config.default_feature_key,
        plan_prices=dict(config.plan_prices),
        app_base_url=config.app_base_url,
    )


@lru_cache(maxsize=1)
def get_access_evaluator() -> AccessEvaluator:
    config = get_billing_config()
    repository = PostgresEntitlementRepository()
    return AccessEvaluator(
        repository,
        repository,
        default_trial_limit=config.trial_limit,
        default_feature_key=config.default_feature_key,
    )


@lru_cache(maxsize=1)
def get_trial_meter() -> TrialMeter:
    return TrialMeter(PostgresEntitlementRepository())


@lru_cache(maxsize=1)
def get_feature_gate() -> MeteredFeatureGate:
    return MeteredFeatureGate(get_access_evaluator(), get_trial_meter())


__all__ = [
    "LoggingBillingEventLogger",
    "get_access_evaluator",
    "get_billing_config",
    "get_billing_service",
    "get_feature_gate",
    "get_trial_meter",
]
