from __future__ import annotations

import pathlib
import sys
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest

ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dreamdecoder.app.billing import (
    BillingAuditEvent,
    BillingService,
    BillingWebhookEvent,
    PurchaseRecord,
    Subscription,
    SubscriptionStatus,
)
from dreamdecoder.app.billing.service import BillingEventLogger, BillingRepository, PaymentProvider
from dreamdecoder.app.entitlements import (
    AccessEvaluator,
    AccessTier,
    CheckoutMode,
    EntitlementRecord,
    PlanKey,
    TrialMeter,
    TrialRecord,
)
from dreamdecoder.app.feature_gates import MeteredFeatureGate


class InMemoryBillingStore(BillingRepository):
    """Single store backing entitlements, trials and billing rows.

    Each public method holds the lock for its whole body, which gives the
    same all-or-nothing behaviour as one database transaction.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.entitlements: Dict[Tuple[str, str], EntitlementRecord] = {}
        self.trials: Dict[str, TrialRecord] = {}
        self.subscriptions: Dict[str, Subscription] = {}
        self.purchases: Dict[str, PurchaseRecord] = {}
        self.customers: Dict[str, str] = {}
        self.processed_events: Set[str] = set()
        self.entitlement_writes = 0
        self.fail_with: Optional[Exception] = None
        self.trial_inserts = 0

    def _maybe_fail(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def _write_entitlement(self, entitlement: EntitlementRecord) -> bool:
        key = (entitlement.user_id, entitlement.feature_key)
        current = self.entitlements.get(key)
        if current is not None and current.access == AccessTier.LIFETIME and entitlement.access != AccessTier.LIFETIME:
            return False
        self.entitlements[key] = entitlement
        self.entitlement_writes += 1
        return True

    # Entitlement reads and trial counters

    def get_entitlement(self, user_id: str, feature_key: str) -> Optional[EntitlementRecord]:
        self._maybe_fail()
        return self.entitlements.get((user_id, feature_key))

    def get_or_create_trial(self, user_id: str, *, trial_limit: int) -> TrialRecord:
        self._maybe_fail()
        with self._lock:
            trial = self.trials.get(user_id)
            if trial is None:
                trial = TrialRecord(user_id=user_id, trial_limit=trial_limit, trial_used=0)
                self.trials[user_id] = trial
                self.trial_inserts += 1
            return trial

    def consume_trial(self, user_id: str) -> Optional[TrialRecord]:
        self._maybe_fail()
        with self._lock:
            trial = self.trials.get(user_id)
            if trial is None:
                raise LookupError(user_id)
            if trial.trial_used >= trial.trial_limit:
                return None
            updated = trial.model_copy(update={"trial_used": trial.trial_used + 1})
            self.trials[user_id] = updated
            return updated

    # Billing repository

    def has_processed_event(self, event_id: str) -> bool:
        return event_id in self.processed_events

    def record_webhook_event(self, event: BillingWebhookEvent) -> bool:
        with self._lock:
            if event.event_id in self.processed_events:
                return False
            self.processed_events.add(event.event_id)
            return True

    def record_lifetime_purchase(self, purchase: PurchaseRecord, entitlement: EntitlementRecord) -> bool:
        self._maybe_fail()
        with self._lock:
            if purchase.stripe_checkout_session_id in self.purchases:
                return False
            self.purchases[purchase.stripe_checkout_session_id] = purchase
            self._write_entitlement(entitlement)
            return True

    def get_subscription_by_provider_id(self, stripe_subscription_id: str) -> Optional[Subscription]:
        for subscription in self.subscriptions.values():
            if subscription.stripe_subscription_id == stripe_subscription_id:
                return subscription
        return None

    def get_subscription_for_user(self, user_id: str) -> Optional[Subscription]:
        return self.subscriptions.get(user_id)

    def apply_subscription_state(
        self,
        subscription: Subscription,
        entitlement: Optional[EntitlementRecord],
    ) -> Subscription:
        self._maybe_fail()
        with self._lock:
            self.subscriptions[subscription.user_id] = subscription
            if entitlement is not None:
                self._write_entitlement(entitlement)
            return subscription

    def cancel_subscription(self, stripe_subscription_id: str, entitlement: EntitlementRecord) -> bool:
        self._maybe_fail()
        with self._lock:
            for user_id, subscription in list(self.subscriptions.items()):
                if subscription.stripe_subscription_id == stripe_subscription_id:
                    self.subscriptions[user_id] = subscription.model_copy(
                        update={"status": SubscriptionStatus.CANCELED}
                    )
            current = self.subscriptions.get(entitlement.user_id)
            if current is not None and current.stripe_subscription_id != stripe_subscription_id:
                return False
            return self._write_entitlement(entitlement)

    def mark_subscription_past_due(
        self,
        stripe_subscription_id: str,
        entitlement: Optional[EntitlementRecord],
    ) -> Optional[Subscription]:
        self._maybe_fail()
        with self._lock:
            for user_id, subscription in self.subscriptions.items():
                if subscription.stripe_subscription_id == stripe_subscription_id:
                    updated = subscription.model_copy(update={"status": SubscriptionStatus.PAST_DUE})
                    self.subscriptions[user_id] = updated
                    if entitlement is not None:
                        self._write_entitlement(entitlement)
                    return updated
            return None

    def get_customer_id(self, user_id: str) -> Optional[str]:
        return self.customers.get(user_id)

    def save_customer_id(self, user_id: str, stripe_customer_id: str) -> str:
        with self._lock:
            return self.customers.setdefault(user_id, stripe_customer_id)


class FakePaymentProvider(PaymentProvider):
    def __init__(self) -> None:
        self.subscriptions: Dict[str, Dict[str, Any]] = {}
        self.retrieved: List[str] = []
        self.customers: List[Dict[str, Optional[str]]] = []
        self.checkout_sessions: List[Dict[str, Any]] = []
        self.portal_sessions: List[Dict[str, Any]] = []
        self.retrieve_error: Optional[Exception] = None

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        self.retrieved.append(subscription_id)
        if self.retrieve_error is not None:
            raise self.retrieve_error
        return self.subscriptions[subscription_id]

    def create_customer(self, *, user_id: str, email: Optional[str]) -> str:
        customer_id = f"cus_{len(self.customers) + 1}"
        self.customers.append({"id": customer_id, "user_id": user_id, "email": email})
        return customer_id

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
        session_id = f"cs_{len(self.checkout_sessions) + 1}"
        payload = {
            "id": session_id,
            "url": f"https://checkout.stripe.test/{session_id}",
            "customer": customer_id,
            "price": price_id,
            "mode": mode,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
        }
        self.checkout_sessions.append(payload)
        return payload

    def create_billing_portal_session(self, *, customer_id: str, return_url: str) -> Dict[str, Any]:
        payload = {
            "id": f"bps_{len(self.portal_sessions) + 1}",
            "url": f"https://billing.stripe.test/{customer_id}",
            "return_url": return_url,
        }
        self.portal_sessions.append(payload)
        return payload


class FakeEventLogger(BillingEventLogger):
    def __init__(self) -> None:
        self.events: List[BillingAuditEvent] = []

    def log(self, event: BillingAuditEvent) -> None:
        self.events.append(event)


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def store() -> InMemoryBillingStore:
    return InMemoryBillingStore()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def billing_components(store: InMemoryBillingStore, clock: FrozenClock):
    provider = FakePaymentProvider()
    event_logger = FakeEventLogger()
    service = BillingService(
        repository=store,
        provider=provider,
        event_logger=event_logger,
        plan_prices={
            PlanKey.MONTHLY: "price_monthly",
            PlanKey.YEARLY: "price_yearly",
            PlanKey.LIFETIME: "price_lifetime",
        },
        app_base_url="https://dreams.test",
        clock=clock,
    )
    return store, provider, event_logger, service


@pytest.fixture
def access_components(store: InMemoryBillingStore, clock: FrozenClock):
    evaluator = AccessEvaluator(store, store, clock=clock)
    meter = TrialMeter(store)
    gate = MeteredFeatureGate(evaluator, meter)
    return store, evaluator, meter, gate
