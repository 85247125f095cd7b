"""Billing domain package reconciling provider events into entitlements."""

from .exceptions import (
    BillingConfigurationError,
    BillingError,
    CustomerNotFoundError,
    WebhookSignatureError,
)
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    BillingWebhookEvent,
    BillingWebhookEventType,
    CheckoutSession,
    PaymentFailurePolicy,
    PortalSession,
    PurchaseRecord,
    Subscription,
    SubscriptionStatus,
    WebhookOutcome,
)
from .service import (
    BillingEventLogger,
    BillingRepository,
    BillingService,
    PaymentProvider,
)

__all__ = [
    "BillingAuditEvent",
    "BillingAuditEventType",
    "BillingConfigurationError",
    "BillingError",
    "BillingEventLogger",
    "BillingRepository",
    "BillingService",
    "BillingWebhookEvent",
    "BillingWebhookEventType",
    "CheckoutSession",
    "CustomerNotFoundError",
    "PaymentFailurePolicy",
    "PaymentProvider",
    "PortalSession",
    "PurchaseRecord",
    "Subscription",
    "SubscriptionStatus",
    "WebhookOutcome",
    "WebhookSignatureError",
]
