"""Core service reconciling billing provider events into local entitlements."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from ..entitlements.catalog import get_plan_definition, parse_plan_key
from ..entitlements.models import (
    DEFAULT_FEATURE_KEY,
    AccessTier,
    CheckoutMode,
    EntitlementRecord,
    PlanKey,
)
from .exceptions import BillingConfigurationError, BillingError, CustomerNotFoundError
from .models import (
    PROVISIONAL_STATUSES,
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

logger = logging.getLogger("billing")

_PAID_CHECKOUT_STATUSES = frozenset({"paid", "no_payment_required"})


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PaymentProvider(Protocol):
    """External payment processor integration."""

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """Fetch the authoritative subscription object."""

    def create_customer(self, *, user_id: str, email: Optional[str]) -> str:
        """Create a provider customer and return its id."""

    def create_checkout_session(
        self,
        *,
        customer_id: str,
        price_id: str,
        mode: CheckoutMode,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
    ) -> Dict[str, Any]:
        """Create a provider checkout session."""

    def create_billing_portal_session(self, *, customer_id: str, return_url: str) -> Dict[str, Any]:
        """Create a provider managed billing portal session."""


class BillingEventLogger(Protocol):
    """Captures structured billing audit events."""

    def log(self, event: BillingAuditEvent) -> None:
        ...


class BillingRepository(Protocol):
    """Persistence operations required by the billing service."""

    def has_processed_event(self, event_id: str) -> bool:
        ...

    def record_webhook_event(self, event: BillingWebhookEvent) -> bool:
        ...

    def record_lifetime_purchase(self, purchase: PurchaseRecord, entitlement: EntitlementRecord) -> bool:
        ...

    def get_subscription_by_provider_id(self, stripe_subscription_id: str) -> Optional[Subscription]:
        ...

    def get_subscription_for_user(self, user_id: str) -> Optional[Subscription]:
        ...

    def apply_subscription_state(
        self,
        subscription: Subscription,
        entitlement: Optional[EntitlementRecord],
    ) -> Subscription:
        ...

    def cancel_subscription(self, stripe_subscription_id: str, entitlement: EntitlementRecord) -> bool:
        ...

    def mark_subscription_past_due(
        self,
        stripe_subscription_id: str,
        entitlement: Optional[EntitlementRecord],
    ) -> Optional[Subscription]:
        ...

    def get_customer_id(self, user_id: str) -> Optional[str]:
        ...

    def save_customer_id(self, user_id: str, stripe_customer_id: str) -> str:
        ...


@dataclass
class BillingService:
    """Applies provider events to entitlements and starts checkout flows.

    This is the only writer of entitlement and subscription rows. Each event's
    writes go through a single repository call, so a failed refetch or store
    error leaves the previous state in place and the provider's redelivery
    can apply it later.
    """

    repository: BillingRepository
    provider: PaymentProvider
    event_logger: BillingEventLogger
    payment_failure_policy: PaymentFailurePolicy = PaymentFailurePolicy.GRACE_PERIOD
    always_refetch_subscriptions: bool = True
    default_feature_key: str = DEFAULT_FEATURE_KEY
    plan_prices: Mapping[PlanKey, str] = field(default_factory=dict)
    app_base_url: str = "http://localhost:8081"
    clock: Callable[[], datetime] = _utc_now

    def handle_webhook(self, event: BillingWebhookEvent) -> WebhookOutcome:
        """Apply one verified event; store and provider faults surface as :class:`BillingError`."""

        try:
            return self._apply_webhook(event)
        except (BillingError, BillingConfigurationError):
            raise
        except Exception as exc:
            raise BillingError(f"Failed to apply billing event {event.event_id}") from exc

    def _apply_webhook(self, event: BillingWebhookEvent) -> WebhookOutcome:
        if self.repository.has_processed_event(event.event_id):
            logger.info("Skipping already processed billing event %s (%s)", event.event_id, event.event_type)
            return WebhookOutcome.DUPLICATE

        handlers: Dict[BillingWebhookEventType, Callable[[BillingWebhookEvent], WebhookOutcome]] = {
            BillingWebhookEventType.CHECKOUT_SESSION_COMPLETED: self._handle_checkout_completed,
            BillingWebhookEventType.CHECKOUT_SESSION_ASYNC_PAYMENT_SUCCEEDED: self._handle_checkout_completed,
            BillingWebhookEventType.SUBSCRIPTION_CREATED: self._handle_subscription_change,
            BillingWebhookEventType.SUBSCRIPTION_UPDATED: self._handle_subscription_change,
            BillingWebhookEventType.SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
            BillingWebhookEventType.INVOICE_PAYMENT_FAILED: self._handle_payment_failed,
        }
        handler = handlers.get(event.known_type) if event.known_type else None
        if handler is None:
            logger.info("Ignoring unhandled billing event type %s (%s)", event.event_type, event.event_id)
            outcome = WebhookOutcome.IGNORED
        else:
            outcome = handler(event)

        self.repository.record_webhook_event(event)
        logger.info("Billing event %s (%s) -> %s", event.event_id, event.event_type, outcome.value)
        return outcome

    def create_checkout_session(
        self,
        *,
        user_id: str,
        email: Optional[str],
        plan_key: PlanKey,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> CheckoutSession:
        plan = get_plan_definition(plan_key)
        price_id = self.plan_prices.get(plan_key)
        if not price_id:
            raise BillingConfigurationError(f"No provider price configured for plan {plan_key.value}")

        customer_id = self.repository.get_customer_id(user_id)
        if not customer_id:
            created = self.provider.create_customer(user_id=user_id, email=email)
            customer_id = self.repository.save_customer_id(user_id, created)

        session = self.provider.create_checkout_session(
            customer_id=customer_id,
            price_id=price_id,
            mode=plan.mode,
            success_url=success_url or f"{self.app_base_url}/billing?success=true",
            cancel_url=cancel_url or f"{self.app_base_url}/billing?canceled=true",
            metadata={
                "user_id": user_id,
                "plan_key": plan.key.value,
                "feature_key": self.default_feature_key,
            },
        )
        logger.info("Created checkout session %s for user %s plan=%s", session.get("id"), user_id, plan.key.value)
        return CheckoutSession(session_id=str(session["id"]), url=str(session["url"]), plan_key=plan.key)

    def create_portal_session(self, *, user_id: str, return_url: Optional[str] = None) -> PortalSession:
        customer_id = self.repository.get_customer_id(user_id)
        if not customer_id:
            raise CustomerNotFoundError("No billing account found. Please subscribe first.")
        session = self.provider.create_billing_portal_session(
            customer_id=customer_id,
            return_url=return_url or f"{self.app_base_url}/billing",
        )
        return PortalSession(url=str(session["url"]))

    def _handle_checkout_completed(self, event: BillingWebhookEvent) -> WebhookOutcome:
        session = event.data_object
        metadata = _safe_metadata(session.get("metadata"))
        user_id = metadata.get("user_id")
        if not user_id:
            logger.error("Checkout session %s has no user_id in metadata", session.get("id"))
            return WebhookOutcome.IGNORED

        plan_key = parse_plan_key(metadata.get("plan_key"))
        plan = get_plan_definition(plan_key) if plan_key is not None else None
        if plan is None or plan.grants != AccessTier.LIFETIME or session.get("mode") != plan.mode.value:
            # Subscription grants come from the subscription lifecycle events.
            logger.info(
                "Checkout completed for user %s plan=%s mode=%s; no entitlement change",
                user_id,
                metadata.get("plan_key"),
                session.get("mode"),
            )
            return WebhookOutcome.NO_CHANGE

        payment_status = session.get("payment_status")
        if payment_status is not None and payment_status not in _PAID_CHECKOUT_STATUSES:
            logger.info("Checkout session %s awaiting payment (status=%s)", session.get("id"), payment_status)
            return WebhookOutcome.NO_CHANGE

        session_id = session.get("id")
        if not session_id:
            logger.error("Lifetime checkout for user %s is missing a session id", user_id)
            return WebhookOutcome.IGNORED

        feature_key = metadata.get("feature_key") or self.default_feature_key
        purchase = PurchaseRecord(
            stripe_checkout_session_id=str(session_id),
            user_id=user_id,
            plan_key=plan.key,
            stripe_payment_intent_id=_object_id(session.get("payment_intent")),
        )
        created = self.repository.record_lifetime_purchase(
            purchase,
            EntitlementRecord.lifetime(user_id, feature_key),
        )
        if not created:
            logger.info("Lifetime purchase for session %s already recorded", session_id)
            return WebhookOutcome.DUPLICATE

        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.LIFETIME_PURCHASED,
                user_id=user_id,
                metadata={"checkout_session_id": str(session_id), "feature_key": feature_key},
            )
        )
        return WebhookOutcome.APPLIED

    def _handle_subscription_change(self, event: BillingWebhookEvent) -> WebhookOutcome:
        payload = event.data_object
        subscription_id = payload.get("id")
        if not subscription_id:
            logger.error("Subscription event %s has no subscription id", event.event_id)
            return WebhookOutcome.IGNORED

        data = payload
        period_end = _extract_period_end(payload)
        if self.always_refetch_subscriptions or period_end is None:
            data = self.provider.retrieve_subscription(str(subscription_id))
            period_end = _extract_period_end(data)

        metadata = {**_safe_metadata(payload.get("metadata")), **_safe_metadata(data.get("metadata"))}
        user_id = metadata.get("user_id")
        if not user_id:
            logger.error("Subscription %s has no user_id in metadata", subscription_id)
            return WebhookOutcome.IGNORED

        try:
            status = SubscriptionStatus(str(data.get("status")))
        except ValueError:
            logger.error("Subscription %s has unknown status %r", subscription_id, data.get("status"))
            return WebhookOutcome.IGNORED

        subscription = _subscription_from_payload(data, user_id=user_id, status=status, period_end=period_end)
        feature_key = metadata.get("feature_key") or self.default_feature_key

        is_active = subscription.is_entitling
        if not is_active:
            current = self.repository.get_subscription_for_user(user_id)
            if (
                current is not None
                and current.stripe_subscription_id != subscription.stripe_subscription_id
                and current.is_entitling
            ):
                logger.info(
                    "Ignoring %s for subscription %s; user %s is on subscription %s",
                    status.value,
                    subscription_id,
                    user_id,
                    current.stripe_subscription_id,
                )
                return WebhookOutcome.STALE

        if status in PROVISIONAL_STATUSES:
            self.repository.apply_subscription_state(subscription, None)
            logger.info("Subscription %s is %s; entitlement unchanged", subscription_id, status.value)
            return WebhookOutcome.NO_CHANGE

        if is_active and period_end is None:
            logger.error(
                "Active subscription %s for user %s has no resolvable current_period_end; "
                "entitlement left unchanged",
                subscription_id,
                user_id,
            )
            return WebhookOutcome.INCONSISTENT

        if is_active and period_end <= self.clock():
            logger.warning(
                "Subscription %s for user %s is %s but its period ended at %s; writing it inactive",
                subscription_id,
                user_id,
                status.value,
                period_end.isoformat(),
            )
            is_active = False

        entitlement = EntitlementRecord.subscription(
            user_id,
            feature_key,
            is_active=is_active,
            expires_at=period_end,
        )
        persisted = self.repository.apply_subscription_state(subscription, entitlement)
        self.event_logger.log(
            BillingAuditEvent(
                event_type=(
                    BillingAuditEventType.SUBSCRIPTION_ACTIVATED
                    if is_active
                    else BillingAuditEventType.SUBSCRIPTION_UPDATED
                ),
                user_id=user_id,
                subscription_id=persisted.stripe_subscription_id,
                metadata={"status": status.value},
            )
        )
        return WebhookOutcome.APPLIED

    def _handle_subscription_deleted(self, event: BillingWebhookEvent) -> WebhookOutcome:
        payload = event.data_object
        subscription_id = payload.get("id")
        if not subscription_id:
            logger.error("Subscription deletion %s has no subscription id", event.event_id)
            return WebhookOutcome.IGNORED

        metadata = _safe_metadata(payload.get("metadata"))
        user_id = metadata.get("user_id")
        if not user_id:
            existing = self.repository.get_subscription_by_provider_id(str(subscription_id))
            user_id = existing.user_id if existing else None
        if not user_id:
            logger.error("Deleted subscription %s cannot be matched to a user", subscription_id)
            return WebhookOutcome.IGNORED

        feature_key = metadata.get("feature_key") or self.default_feature_key
        written = self.repository.cancel_subscription(
            str(subscription_id),
            EntitlementRecord.free(user_id, feature_key),
        )
        if not written:
            logger.info("Subscription %s deleted; user %s entitlement kept", subscription_id, user_id)
            return WebhookOutcome.STALE

        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.SUBSCRIPTION_CANCELED,
                user_id=user_id,
                subscription_id=str(subscription_id),
            )
        )
        return WebhookOutcome.APPLIED

    def _handle_payment_failed(self, event: BillingWebhookEvent) -> WebhookOutcome:
        invoice = event.data_object
        subscription_id = _invoice_subscription_id(invoice)
        if not subscription_id:
            logger.info("Payment failure %s is not tied to a subscription", invoice.get("id"))
            return WebhookOutcome.IGNORED

        existing = self.repository.get_subscription_by_provider_id(subscription_id)
        if existing is None:
            logger.error("Could not find subscription %s for payment failure", subscription_id)
            return WebhookOutcome.IGNORED

        entitlement: Optional[EntitlementRecord] = None
        if self.payment_failure_policy == PaymentFailurePolicy.DEACTIVATE:
            feature_key = _invoice_metadata(invoice).get("feature_key") or self.default_feature_key
            entitlement = EntitlementRecord.subscription(
                existing.user_id,
                feature_key,
                is_active=False,
                expires_at=None,
            )

        updated = self.repository.mark_subscription_past_due(subscription_id, entitlement)
        if updated is None:
            raise BillingError(f"Subscription {subscription_id} disappeared while marking past_due")

        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.PAYMENT_FAILED,
                user_id=existing.user_id,
                subscription_id=subscription_id,
                metadata={"invoice_id": str(invoice.get("id") or ""), "policy": self.payment_failure_policy.value},
            )
        )
        if entitlement is not None:
            self.event_logger.log(
                BillingAuditEvent(
                    event_type=BillingAuditEventType.ENTITLEMENT_DEACTIVATED,
                    user_id=existing.user_id,
                    subscription_id=subscription_id,
                )
            )
        return WebhookOutcome.APPLIED


def _subscription_from_payload(
    payload: Dict[str, Any],
    *,
    user_id: str,
    status: SubscriptionStatus,
    period_end: Optional[datetime],
) -> Subscription:
    metadata = _safe_metadata(payload.get("metadata"))
    price = _first_item(payload).get("price")
    price = price if isinstance(price, dict) else {}
    recurring = price.get("recurring") if isinstance(price.get("recurring"), dict) else {}
    amount = price.get("unit_amount")
    return Subscription(
        user_id=user_id,
        stripe_subscription_id=str(payload["id"]),
        stripe_customer_id=_object_id(payload.get("customer")),
        status=status,
        current_period_end=period_end,
        cancel_at_period_end=bool(payload.get("cancel_at_period_end", False)),
        plan_key=parse_plan_key(metadata.get("plan_key")),
        plan_interval=recurring.get("interval"),
        stripe_price_id=price.get("id"),
        stripe_product_id=_object_id(price.get("product")),
        amount_cents=int(amount) if isinstance(amount, (int, float)) else None,
        currency=price.get("currency"),
    )


def _first_item(payload: Dict[str, Any]) -> Dict[str, Any]:
    items = payload.get("items")
    data = items.get("data") if isinstance(items, dict) else None
    if isinstance(data, list) and data and isinstance(data[0], dict):
        return data[0]
    return {}


def _extract_period_end(payload: Dict[str, Any]) -> Optional[datetime]:
    """Read ``current_period_end`` from the subscription or, on newer API versions, its first item."""

    period_end = _parse_timestamp(payload.get("current_period_end"))
    if period_end is None:
        period_end = _parse_timestamp(_first_item(payload).get("current_period_end"))
    return period_end


def _parse_timestamp(value: object) -> Optional[datetime]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return _from_epoch(value)
    if isinstance(value, str) and value.strip():
        try:
            seconds = float(value)
        except ValueError:
            pass
        else:
            return _from_epoch(seconds)
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Unparseable billing timestamp %r", value)
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _from_epoch(seconds: float) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        logger.warning("Billing timestamp %r is out of range", seconds)
        return None


def _object_id(value: object) -> Optional[str]:
    if isinstance(value, dict):
        value = value.get("id")
    return str(value) if value else None


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    subscription_id = _object_id(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    parent = invoice.get("parent")
    details = parent.get("subscription_details") if isinstance(parent, dict) else None
    if isinstance(details, dict):
        return _object_id(details.get("subscription"))
    return None


def _invoice_metadata(invoice: Dict[str, Any]) -> Dict[str, str]:
    details = invoice.get("subscription_details")
    if isinstance(details, dict):
        return _safe_metadata(details.get("metadata"))
    return {}


def _safe_metadata(value: object) -> Dict[str, str]:
    if isinstance(value, dict):
        return {str(k): str(v) for k, v in value.items() if v is not None}
    return {}


__all__ = [
    "BillingEventLogger",
    "BillingRepository",
    "BillingService",
    "PaymentProvider",
]
