"""Unit tests for webhook reconciliation and checkout flows."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

import pytest

from dreamdecoder.app.billing import (
    BillingAuditEventType,
    BillingConfigurationError,
    BillingError,
    BillingService,
    BillingWebhookEvent,
    CustomerNotFoundError,
    PaymentFailurePolicy,
    Subscription,
    SubscriptionStatus,
    WebhookOutcome,
)
from dreamdecoder.app.entitlements import AccessTier, CheckoutMode, EntitlementRecord, PlanKey

PERIOD_END = 1_800_000_000
PERIOD_END_AT = datetime.fromtimestamp(PERIOD_END, tz=timezone.utc)
FEATURE = "dream_decoder"


def _event(event_type: str, data_object: Dict[str, Any], *, event_id: str = "evt_1") -> BillingWebhookEvent:
    return BillingWebhookEvent.from_payload(
        {"id": event_id, "type": event_type, "data": {"object": data_object}, "livemode": False}
    )


def _lifetime_checkout(session_id: str = "cs_life", user_id: str = "user-1") -> Dict[str, Any]:
    return {
        "id": session_id,
        "object": "checkout.session",
        "mode": "payment",
        "payment_status": "paid",
        "payment_intent": "pi_123",
        "metadata": {"user_id": user_id, "plan_key": "lifetime", "feature_key": FEATURE},
    }


def _stripe_subscription(
    subscription_id: str = "sub_1",
    *,
    user_id: str = "user-1",
    status: str = "active",
    period_end: Any = PERIOD_END,
    item_period_end: Optional[int] = None,
) -> Dict[str, Any]:
    item: Dict[str, Any] = {
        "id": "si_1",
        "price": {
            "id": "price_monthly",
            "product": "prod_dream",
            "unit_amount": 499,
            "currency": "usd",
            "recurring": {"interval": "month"},
        },
    }
    if item_period_end is not None:
        item["current_period_end"] = item_period_end
    payload: Dict[str, Any] = {
        "id": subscription_id,
        "object": "subscription",
        "customer": "cus_1",
        "status": status,
        "cancel_at_period_end": False,
        "metadata": {"user_id": user_id, "plan_key": "monthly", "feature_key": FEATURE},
        "items": {"data": [item]},
    }
    if period_end is not None:
        payload["current_period_end"] = period_end
    return payload


def _mirror(subscription_id: str, *, user_id: str = "user-1", status: SubscriptionStatus) -> Subscription:
    return Subscription(
        user_id=user_id,
        stripe_subscription_id=subscription_id,
        stripe_customer_id="cus_1",
        status=status,
        current_period_end=PERIOD_END_AT,
    )


def test_lifetime_checkout_grants_lifetime_entitlement(billing_components):
    store, _, event_logger, service = billing_components

    outcome = service.handle_webhook(_event("checkout.session.completed", _lifetime_checkout()))

    assert outcome == WebhookOutcome.APPLIED
    entitlement = store.entitlements[("user-1", FEATURE)]
    assert entitlement.access == AccessTier.LIFETIME
    assert entitlement.is_active is True
    assert entitlement.expires_at is None
    assert store.purchases["cs_life"].stripe_payment_intent_id == "pi_123"
    assert event_logger.events[-1].event_type == BillingAuditEventType.LIFETIME_PURCHASED


def test_lifetime_checkout_replay_writes_once(billing_components):
    store, _, _, service = billing_components
    session = _lifetime_checkout()

    first = service.handle_webhook(_event("checkout.session.completed", session, event_id="evt_a"))
    second = service.handle_webhook(_event("checkout.session.completed", session, event_id="evt_b"))

    assert first == WebhookOutcome.APPLIED
    assert second == WebhookOutcome.DUPLICATE
    assert len(store.purchases) == 1
    assert store.entitlement_writes == 1


def test_redelivered_event_is_not_reapplied(billing_components):
    store, _, _, service = billing_components
    event = _event("checkout.session.completed", _lifetime_checkout())

    service.handle_webhook(event)
    store.entitlements.clear()
    outcome = service.handle_webhook(event)

    assert outcome == WebhookOutcome.DUPLICATE
    assert store.entitlements == {}


def test_subscription_checkout_does_not_touch_entitlements(billing_components):
    store, _, _, service = billing_components
    session = {
        "id": "cs_sub",
        "mode": "subscription",
        "payment_status": "paid",
        "subscription": "sub_1",
        "metadata": {"user_id": "user-1", "plan_key": "monthly"},
    }

    outcome = service.handle_webhook(_event("checkout.session.completed", session))

    assert outcome == WebhookOutcome.NO_CHANGE
    assert store.entitlement_writes == 0
    assert store.purchases == {}


@pytest.mark.parametrize(
    "mode, plan_key",
    [("payment", "monthly"), ("subscription", "lifetime"), ("payment", "weekly")],
)
def test_checkout_grants_lifetime_only_for_catalog_lifetime_plan(billing_components, mode, plan_key):
    store, _, _, service = billing_components
    session = _lifetime_checkout()
    session["mode"] = mode
    session["metadata"]["plan_key"] = plan_key

    outcome = service.handle_webhook(_event("checkout.session.completed", session))

    assert outcome == WebhookOutcome.NO_CHANGE
    assert store.entitlement_writes == 0
    assert store.purchases == {}


def test_unpaid_async_lifetime_checkout_waits_for_payment(billing_components):
    store, _, _, service = billing_components
    session = _lifetime_checkout()
    session["payment_status"] = "unpaid"

    outcome = service.handle_webhook(_event("checkout.session.completed", session))

    assert outcome == WebhookOutcome.NO_CHANGE
    assert store.entitlements == {}


def test_async_payment_success_grants_lifetime(billing_components):
    store, _, _, service = billing_components

    outcome = service.handle_webhook(
        _event("checkout.session.async_payment_succeeded", _lifetime_checkout("cs_async"))
    )

    assert outcome == WebhookOutcome.APPLIED
    assert store.entitlements[("user-1", FEATURE)].access == AccessTier.LIFETIME


def test_checkout_without_user_id_is_acknowledged_without_writes(billing_components):
    store, _, _, service = billing_components
    session = _lifetime_checkout()
    session["metadata"] = {"plan_key": "lifetime"}

    outcome = service.handle_webhook(_event("checkout.session.completed", session))

    assert outcome == WebhookOutcome.IGNORED
    assert store.entitlement_writes == 0
    assert "evt_1" in store.processed_events


def test_subscription_created_refetches_and_activates(billing_components):
    store, provider, event_logger, service = billing_components
    provider.subscriptions["sub_1"] = _stripe_subscription()
    stale_payload = _stripe_subscription(status="incomplete")

    outcome = service.handle_webhook(_event("customer.subscription.created", stale_payload))

    assert outcome == WebhookOutcome.APPLIED
    assert provider.retrieved == ["sub_1"]
    entitlement = store.entitlements[("user-1", FEATURE)]
    assert entitlement.access == AccessTier.SUBSCRIPTION
    assert entitlement.is_active is True
    assert entitlement.expires_at == PERIOD_END_AT
    mirror = store.subscriptions["user-1"]
    assert mirror.status == SubscriptionStatus.ACTIVE
    assert mirror.plan_key == PlanKey.MONTHLY
    assert mirror.plan_interval == "month"
    assert mirror.amount_cents == 499
    assert mirror.currency == "USD"
    assert event_logger.events[-1].event_type == BillingAuditEventType.SUBSCRIPTION_ACTIVATED


def test_period_end_falls_back_to_first_item(billing_components):
    store, provider, _, service = billing_components
    provider.subscriptions["sub_1"] = _stripe_subscription(period_end=None, item_period_end=PERIOD_END)

    outcome = service.handle_webhook(_event("customer.subscription.updated", _stripe_subscription()))

    assert outcome == WebhookOutcome.APPLIED
    assert store.entitlements[("user-1", FEATURE)].expires_at == PERIOD_END_AT


def test_payload_is_used_when_refetch_disabled(billing_components):
    store, provider, event_logger, default_service = billing_components
    service = BillingService(
        repository=store,
        provider=provider,
        event_logger=event_logger,
        clock=default_service.clock,
        always_refetch_subscriptions=False,
    )

    outcome = service.handle_webhook(_event("customer.subscription.updated", _stripe_subscription()))

    assert outcome == WebhookOutcome.APPLIED
    assert provider.retrieved == []


def test_missing_period_end_forces_refetch_when_refetch_disabled(billing_components):
    store, provider, event_logger, default_service = billing_components
    provider.subscriptions["sub_1"] = _stripe_subscription()
    service = BillingService(
        repository=store,
        provider=provider,
        event_logger=event_logger,
        clock=default_service.clock,
        always_refetch_subscriptions=False,
    )

    service.handle_webhook(_event("customer.subscription.updated", _stripe_subscription(period_end=None)))

    assert provider.retrieved == ["sub_1"]
    assert store.entitlements[("user-1", FEATURE)].expires_at == PERIOD_END_AT


def test_active_subscription_without_period_end_writes_nothing(billing_components):
    store, provider, _, service = billing_components
    existing = EntitlementRecord.free("user-1", FEATURE)
    store.entitlements[("user-1", FEATURE)] = existing
    provider.subscriptions["sub_1"] = _stripe_subscription(period_end=None)

    outcome = service.handle_webhook(_event("customer.subscription.updated", _stripe_subscription(period_end=None)))

    assert outcome == WebhookOutcome.INCONSISTENT
    assert store.entitlements[("user-1", FEATURE)] == existing
    assert store.entitlement_writes == 0
    assert store.subscriptions == {}


def test_active_subscription_with_past_period_end_is_written_inactive(billing_components):
    store, provider, event_logger, service = billing_components
    provider.subscriptions["sub_1"] = _stripe_subscription(period_end=1_000_000_000)

    outcome = service.handle_webhook(_event("customer.subscription.updated", _stripe_subscription()))

    entitlement = store.entitlements[("user-1", FEATURE)]
    assert outcome == WebhookOutcome.APPLIED
    assert entitlement.access == AccessTier.SUBSCRIPTION
    assert entitlement.is_active is False
    assert entitlement.expires_at == datetime.fromtimestamp(1_000_000_000, tz=timezone.utc)
    assert store.subscriptions["user-1"].status == SubscriptionStatus.ACTIVE
    assert event_logger.events[-1].event_type == BillingAuditEventType.SUBSCRIPTION_UPDATED


@pytest.mark.parametrize("period_end", [10**20, "1e300", float("inf")])
def test_out_of_range_period_end_is_acknowledged_without_writes(billing_components, period_end):
    store, provider, _, service = billing_components
    provider.subscriptions["sub_1"] = _stripe_subscription(period_end=period_end)

    outcome = service.handle_webhook(_event("customer.subscription.updated", _stripe_subscription()))

    assert outcome == WebhookOutcome.INCONSISTENT
    assert store.entitlement_writes == 0
    assert store.subscriptions == {}
    assert "evt_1" in store.processed_events


def test_out_of_range_event_created_is_dropped():
    event = BillingWebhookEvent.from_payload(
        {"id": "evt_far", "type": "customer.created", "created": 10**20, "data": {"object": {}}}
    )

    assert event.created_at is None


def test_incomplete_subscription_updates_mirror_only(billing_components):
    store, provider, _, service = billing_components
    provider.subscriptions["sub_1"] = _stripe_subscription(status="incomplete")

    outcome = service.handle_webhook(_event("customer.subscription.created", _stripe_subscription(status="incomplete")))

    assert outcome == WebhookOutcome.NO_CHANGE
    assert store.subscriptions["user-1"].status == SubscriptionStatus.INCOMPLETE
    assert store.entitlements == {}


def test_past_due_update_deactivates_subscription_entitlement(billing_components):
    store, provider, event_logger, service = billing_components
    provider.subscriptions["sub_1"] = _stripe_subscription()
    service.handle_webhook(_event("customer.subscription.created", _stripe_subscription(), event_id="evt_a"))
    provider.subscriptions["sub_1"] = _stripe_subscription(status="past_due")

    outcome = service.handle_webhook(
        _event("customer.subscription.updated", _stripe_subscription(status="past_due"), event_id="evt_b")
    )

    assert outcome == WebhookOutcome.APPLIED
    entitlement = store.entitlements[("user-1", FEATURE)]
    assert entitlement.is_active is False
    assert entitlement.expires_at is None
    assert event_logger.events[-1].event_type == BillingAuditEventType.SUBSCRIPTION_UPDATED


def test_subscription_events_never_downgrade_lifetime(billing_components):
    store, provider, _, service = billing_components
    service.handle_webhook(_event("checkout.session.completed", _lifetime_checkout(), event_id="evt_life"))
    provider.subscriptions["sub_1"] = _stripe_subscription()

    service.handle_webhook(_event("customer.subscription.created", _stripe_subscription(), event_id="evt_sub"))
    service.handle_webhook(_event("customer.subscription.deleted", _stripe_subscription(), event_id="evt_del"))

    entitlement = store.entitlements[("user-1", FEATURE)]
    assert entitlement.access == AccessTier.LIFETIME
    assert entitlement.is_active is True
    assert entitlement.expires_at is None


def test_stale_inactive_state_for_superseded_subscription_is_skipped(billing_components):
    store, provider, _, service = billing_components
    store.subscriptions["user-1"] = _mirror("sub_new", status=SubscriptionStatus.ACTIVE)
    store.entitlements[("user-1", FEATURE)] = EntitlementRecord.subscription(
        "user-1", FEATURE, is_active=True, expires_at=PERIOD_END_AT
    )
    provider.subscriptions["sub_old"] = _stripe_subscription("sub_old", status="past_due")

    outcome = service.handle_webhook(
        _event("customer.subscription.updated", _stripe_subscription("sub_old", status="past_due"))
    )

    assert outcome == WebhookOutcome.STALE
    assert store.entitlements[("user-1", FEATURE)].is_active is True
    assert store.subscriptions["user-1"].stripe_subscription_id == "sub_new"


def test_subscription_deleted_reverts_to_free(billing_components):
    store, _, event_logger, service = billing_components
    store.subscriptions["user-1"] = _mirror("sub_1", status=SubscriptionStatus.ACTIVE)
    store.entitlements[("user-1", FEATURE)] = EntitlementRecord.subscription(
        "user-1", FEATURE, is_active=True, expires_at=PERIOD_END_AT
    )

    outcome = service.handle_webhook(_event("customer.subscription.deleted", _stripe_subscription(status="canceled")))

    assert outcome == WebhookOutcome.APPLIED
    entitlement = store.entitlements[("user-1", FEATURE)]
    assert entitlement.access == AccessTier.FREE
    assert entitlement.is_active is False
    assert entitlement.expires_at is None
    assert store.subscriptions["user-1"].status == SubscriptionStatus.CANCELED
    assert event_logger.events[-1].event_type == BillingAuditEventType.SUBSCRIPTION_CANCELED


def test_subscription_deleted_resolves_user_from_mirror(billing_components):
    store, _, _, service = billing_components
    store.subscriptions["user-9"] = _mirror("sub_9", user_id="user-9", status=SubscriptionStatus.ACTIVE)
    payload = _stripe_subscription("sub_9", status="canceled")
    payload["metadata"] = {}

    outcome = service.handle_webhook(_event("customer.subscription.deleted", payload))

    assert outcome == WebhookOutcome.APPLIED
    assert store.entitlements[("user-9", FEATURE)].access == AccessTier.FREE


def test_deleting_replaced_subscription_keeps_current_access(billing_components):
    store, _, _, service = billing_components
    store.subscriptions["user-1"] = _mirror("sub_new", status=SubscriptionStatus.ACTIVE)
    current = EntitlementRecord.subscription("user-1", FEATURE, is_active=True, expires_at=PERIOD_END_AT)
    store.entitlements[("user-1", FEATURE)] = current

    outcome = service.handle_webhook(
        _event("customer.subscription.deleted", _stripe_subscription("sub_old", status="canceled"))
    )

    assert outcome == WebhookOutcome.STALE
    assert store.entitlements[("user-1", FEATURE)] == current


def test_payment_failure_grace_period_keeps_entitlement(billing_components):
    store, _, event_logger, service = billing_components
    store.subscriptions["user-1"] = _mirror("sub_1", status=SubscriptionStatus.ACTIVE)
    current = EntitlementRecord.subscription("user-1", FEATURE, is_active=True, expires_at=PERIOD_END_AT)
    store.entitlements[("user-1", FEATURE)] = current

    outcome = service.handle_webhook(
        _event("invoice.payment_failed", {"id": "in_1", "subscription": "sub_1", "amount_due": 499})
    )

    assert outcome == WebhookOutcome.APPLIED
    assert store.subscriptions["user-1"].status == SubscriptionStatus.PAST_DUE
    assert store.entitlements[("user-1", FEATURE)] == current
    assert event_logger.events[-1].event_type == BillingAuditEventType.PAYMENT_FAILED


def test_payment_failure_deactivate_policy_revokes_access(billing_components):
    store, provider, event_logger, default_service = billing_components
    service = BillingService(
        repository=store,
        provider=provider,
        event_logger=event_logger,
        clock=default_service.clock,
        payment_failure_policy=PaymentFailurePolicy.DEACTIVATE,
    )
    store.subscriptions["user-1"] = _mirror("sub_1", status=SubscriptionStatus.ACTIVE)
    store.entitlements[("user-1", FEATURE)] = EntitlementRecord.subscription(
        "user-1", FEATURE, is_active=True, expires_at=PERIOD_END_AT
    )
    invoice = {
        "id": "in_2",
        "parent": {"subscription_details": {"subscription": "sub_1"}},
    }

    service.handle_webhook(_event("invoice.payment_failed", invoice))

    entitlement = store.entitlements[("user-1", FEATURE)]
    assert entitlement.is_active is False
    assert entitlement.expires_at is None
    assert event_logger.events[-1].event_type == BillingAuditEventType.ENTITLEMENT_DEACTIVATED


def test_payment_failure_for_unknown_subscription_is_ignored(billing_components):
    store, _, _, service = billing_components

    outcome = service.handle_webhook(_event("invoice.payment_failed", {"id": "in_3", "subscription": "sub_x"}))

    assert outcome == WebhookOutcome.IGNORED
    assert store.entitlement_writes == 0


def test_unknown_event_type_is_acknowledged(billing_components):
    store, _, _, service = billing_components

    outcome = service.handle_webhook(_event("customer.created", {"id": "cus_1"}))

    assert outcome == WebhookOutcome.IGNORED
    assert "evt_1" in store.processed_events
    assert store.entitlement_writes == 0


def test_refetch_failure_propagates_without_writes(billing_components):
    store, provider, _, service = billing_components
    provider.retrieve_error = BillingError("provider unavailable")

    with pytest.raises(BillingError):
        service.handle_webhook(_event("customer.subscription.updated", _stripe_subscription()))

    assert store.entitlement_writes == 0
    assert store.subscriptions == {}
    assert store.processed_events == set()


def test_lifetime_never_carries_expiry_after_any_sequence(billing_components):
    store, provider, _, service = billing_components
    provider.subscriptions["sub_1"] = _stripe_subscription()
    events = [
        _event("customer.subscription.created", _stripe_subscription(), event_id="e1"),
        _event("checkout.session.completed", _lifetime_checkout(), event_id="e2"),
        _event("customer.subscription.updated", _stripe_subscription(), event_id="e3"),
        _event("invoice.payment_failed", {"id": "in_1", "subscription": "sub_1"}, event_id="e4"),
        _event("customer.subscription.deleted", _stripe_subscription(status="canceled"), event_id="e5"),
        _event("checkout.session.completed", _lifetime_checkout(), event_id="e6"),
    ]

    for event in events:
        service.handle_webhook(event)
        entitlement = store.entitlements.get(("user-1", FEATURE))
        if entitlement is not None and entitlement.access == AccessTier.LIFETIME:
            assert entitlement.expires_at is None

    assert store.entitlements[("user-1", FEATURE)].access == AccessTier.LIFETIME


def test_create_checkout_session_creates_customer_once(billing_components):
    store, provider, _, service = billing_components

    first = service.create_checkout_session(
        user_id="user-1",
        email="dreamer@example.com",
        plan_key=PlanKey.LIFETIME,
    )
    service.create_checkout_session(user_id="user-1", email="dreamer@example.com", plan_key=PlanKey.MONTHLY)

    assert len(provider.customers) == 1
    assert store.customers["user-1"] == "cus_1"
    assert first.session_id == "cs_1"
    assert first.url == "https://checkout.stripe.test/cs_1"
    lifetime_session, monthly_session = provider.checkout_sessions
    assert lifetime_session["mode"] == CheckoutMode.PAYMENT
    assert lifetime_session["price"] == "price_lifetime"
    assert lifetime_session["metadata"] == {
        "user_id": "user-1",
        "plan_key": "lifetime",
        "feature_key": FEATURE,
    }
    assert lifetime_session["success_url"] == "https://dreams.test/billing?success=true"
    assert monthly_session["mode"] == CheckoutMode.SUBSCRIPTION


def test_create_checkout_session_requires_configured_price(billing_components):
    store, provider, event_logger, _ = billing_components
    service = BillingService(repository=store, provider=provider, event_logger=event_logger)

    with pytest.raises(BillingConfigurationError):
        service.create_checkout_session(user_id="user-1", email=None, plan_key=PlanKey.YEARLY)

    assert provider.customers == []


def test_portal_session_requires_customer(billing_components):
    store, provider, _, service = billing_components

    with pytest.raises(CustomerNotFoundError):
        service.create_portal_session(user_id="user-1")

    store.customers["user-1"] = "cus_7"
    session = service.create_portal_session(user_id="user-1", return_url="https://dreams.test/profile")

    assert session.url == "https://billing.stripe.test/cus_7"
    assert provider.portal_sessions[0]["return_url"] == "https://dreams.test/profile"
