"""Exceptions raised by the billing subsystem."""
from __future__ import annotations

from ..entitlements.exceptions import BillingError


class WebhookSignatureError(Exception):
    """The webhook payload is unsigned or its signature does not verify."""


class BillingConfigurationError(Exception):
    """Required billing configuration (credentials, plan prices) is missing."""


class CustomerNotFoundError(LookupError):
    """The user has no payment-provider customer on record."""


__all__ = [
    "BillingConfigurationError",
    "BillingError",
    "CustomerNotFoundError",
    "WebhookSignatureError",
]
