"""Stripe integration: webhook authentication and provider API calls."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import stripe

from ..entitlements.models import CheckoutMode
from .exceptions import BillingConfigurationError, BillingError, WebhookSignatureError
from .models import BillingWebhookEvent

logger = logging.getLogger(__name__)

DEFAULT_STRIPE_API_VERSION = "2023-10-16"
DEFAULT_WEBHOOK_TOLERANCE_SECONDS = 300


def construct_webhook_event(
    payload: bytes,
    signature: Optional[str],
    *,
    secret: Optional[str],
    tolerance: int = DEFAULT_WEBHOOK_TOLERANCE_SECONDS,
) -> BillingWebhookEvent:
    """Verify the ``Stripe-Signature`` header and only then decode the payload.

    Raises :class:`WebhookSignatureError` for a missing or mismatched signature
    and :class:`ValueError` for a correctly signed but malformed body.
    """

    if not secret:
        raise BillingConfigurationError("STRIPE_WEBHOOK_SECRET is not configured")
    if not signature:
        raise WebhookSignatureError("Missing Stripe-Signature header")

    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise WebhookSignatureError("Webhook payload is not valid UTF-8") from exc

    try:
        stripe.WebhookSignature.verify_header(body, signature, secret, tolerance)
    except stripe.SignatureVerificationError as exc:
        raise WebhookSignatureError(str(exc)) from exc

    try:
        decoded = json.loads(body)
    except json.JSONDecodeError as exc:
        raise ValueError("Webhook payload is not valid JSON") from exc
    return BillingWebhookEvent.from_payload(decoded)


class StripePaymentProvider:
    """Payment provider backed by the Stripe API."""

    def __init__(self, api_key: Optional[str], *, api_version: str = DEFAULT_STRIPE_API_VERSION) -> None:
        if not api_key:
            raise BillingConfigurationError("STRIPE_SECRET_KEY is not configured")
        self._api_key = api_key
        self._api_version = api_version

    def _options(self) -> Dict[str, Any]:
        return {"api_key": self._api_key, "stripe_version": self._api_version}

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        try:
            subscription = stripe.Subscription.retrieve(subscription_id, **self._options())
        except stripe.StripeError as exc:
            logger.error("Failed to retrieve Stripe subscription %s: %s", subscription_id, exc)
            raise BillingError(f"Could not retrieve subscription {subscription_id}") from exc
        return subscription.to_dict()

    def create_customer(self, *, user_id: str, email: Optional[str]) -> str:
        try:
            customer = stripe.Customer.create(
                email=email,
                metadata={"supabase_user_id": user_id},
                **self._options(),
            )
        except stripe.StripeError as exc:
            raise BillingError("Could not create Stripe customer") from exc
        return customer.id

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
        params: Dict[str, Any] = {
            "customer": customer_id,
            "mode": mode.value,
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
        }
        # Copy metadata onto the object the later lifecycle events carry.
        if mode == CheckoutMode.SUBSCRIPTION:
            params["subscription_data"] = {"metadata": metadata}
        else:
            params["payment_intent_data"] = {"metadata": metadata}

        try:
            session = stripe.checkout.Session.create(**params, **self._options())
        except stripe.StripeError as exc:
            raise BillingError("Could not create Stripe checkout session") from exc
        return {"id": session.id, "url": session.url}

    def create_billing_portal_session(self, *, customer_id: str, return_url: str) -> Dict[str, Any]:
        try:
            session = stripe.billing_portal.Session.create(
                customer=customer_id,
                return_url=return_url,
                **self._options(),
            )
        except stripe.StripeError as exc:
            raise BillingError("Could not create Stripe billing portal session") from exc
        return {"id": session.id, "url": session.url}


__all__ = [
    "DEFAULT_STRIPE_API_VERSION",
    "DEFAULT_WEBHOOK_TOLERANCE_SECONDS",
    "StripePaymentProvider",
    "construct_webhook_event",
]
