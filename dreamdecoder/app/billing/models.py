"""Domain models for the billing system."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..entitlements.models import PlanKey


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states as reported by the payment provider."""

    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    PAUSED = "paused"


ENTITLING_STATUSES: FrozenSet[SubscriptionStatus] = frozenset(
    {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING}
)
PROVISIONAL_STATUSES: FrozenSet[SubscriptionStatus] = frozenset(
    {SubscriptionStatus.INCOMPLETE, SubscriptionStatus.INCOMPLETE_EXPIRED}
)


class BillingWebhookEventType(str, Enum):
    """Webhook event types that the application reacts to."""

    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    CHECKOUT_SESSION_ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


class PaymentFailurePolicy(str, Enum):
    """How a failed renewal payment affects the entitlement."""

    GRACE_PERIOD = "grace_period"
    DEACTIVATE = "deactivate"


class PurchaseStatus(str, Enum):
    """Status of a one-time purchase receipt."""

    SUCCEEDED = "succeeded"


class WebhookOutcome(str, Enum):
    """Result of applying one webhook event."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    NO_CHANGE = "no_change"
    IGNORED = "ignored"
    INCONSISTENT = "inconsistent"
    STALE = "stale"


class Subscription(BaseModel):
    """Local mirror of the provider's subscription, kept for audit and lookups."""

    user_id: str
    stripe_subscription_id: str
    stripe_customer_id: Optional[str] = None
    status: SubscriptionStatus
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    plan_key: Optional[PlanKey] = None
    plan_interval: Optional[str] = None
    stripe_price_id: Optional[str] = None
    stripe_product_id: Optional[str] = None
    amount_cents: Optional[int] = None
    currency: Optional[str] = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: Optional[str]) -> Optional[str]:
        return value.upper() if value else value

    @property
    def is_entitling(self) -> bool:
        return self.status in ENTITLING_STATUSES


class PurchaseRecord(BaseModel):
    """Immutable receipt of a one-time purchase keyed by checkout session."""

    stripe_checkout_session_id: str
    user_id: str
    plan_key: PlanKey
    stripe_payment_intent_id: Optional[str] = None
    status: PurchaseStatus = PurchaseStatus.SUCCEEDED
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class BillingWebhookEvent(BaseModel):
    """Verified provider event reduced to the fields the reconciler reads."""

    event_id: str
    event_type: str
    data_object: Dict[str, Any] = Field(default_factory=dict)
    livemode: bool = False
    created_at: Optional[datetime] = None
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def known_type(self) -> Optional[BillingWebhookEventType]:
        try:
            return BillingWebhookEventType(self.event_type)
        except ValueError:
            return None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "BillingWebhookEvent":
        """Build an event from a decoded provider payload."""

        if not isinstance(payload, dict):
            raise ValueError("webhook payload must be a JSON object")
        event_id = payload.get("id")
        event_type = payload.get("type")
        if not event_id or not event_type:
            raise ValueError("webhook payload is missing id or type")
        data = payload.get("data")
        data_object = data.get("object") if isinstance(data, dict) else None
        return cls(
            event_id=str(event_id),
            event_type=str(event_type),
            data_object=data_object if isinstance(data_object, dict) else {},
            livemode=bool(payload.get("livemode", False)),
            created_at=_event_created_at(payload.get("created")),
        )


def _event_created_at(value: object) -> Optional[datetime]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


class BillingAuditEventType(str, Enum):
    """Audit event categories emitted by the billing subsystem."""

    LIFETIME_PURCHASED = "lifetime_purchased"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    PAYMENT_FAILED = "payment_failed"
    ENTITLEMENT_DEACTIVATED = "entitlement_deactivated"


class BillingAuditEvent(BaseModel):
    """Structured audit event for analytics and manual follow-up."""

    event_type: BillingAuditEventType
    user_id: Optional[str] = None
    subscription_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CheckoutSession(BaseModel):
    """Return value of a checkout session creation request."""

    session_id: str
    url: str
    plan_key: PlanKey

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class PortalSession(BaseModel):
    """Return value of a billing portal session request."""

    url: str

    model_config = ConfigDict(populate_by_name=True, frozen=True)
