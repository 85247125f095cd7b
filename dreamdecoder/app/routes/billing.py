"""API routes exposing billing functionality."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.concurrency import run_in_threadpool

from ..billing import (
    BillingConfigurationError,
    BillingError,
    CustomerNotFoundError,
    WebhookSignatureError,
)
from ..billing.stripe_provider import construct_webhook_event
from ..entitlements import parse_plan_key
from ..feature_gates import FeatureGateError
from ..schemas.billing import (
    AccessStatusResponse,
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    PortalSessionRequest,
    PortalSessionResponse,
    WebhookAck,
)
from ..services.billing import get_access_evaluator, get_billing_config, get_billing_service
from .dependencies import get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/billing", tags=["billing"])


@router.post("/webhook", response_model=WebhookAck)
async def receive_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
) -> WebhookAck:
    payload = await request.body()
    config = get_billing_config()
    try:
        event = construct_webhook_event(
            payload,
            stripe_signature,
            secret=config.stripe_webhook_secret,
            tolerance=config.webhook_tolerance_seconds,
        )
    except WebhookSignatureError as exc:
        logger.warning("Rejected billing webhook: %s", exc)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature") from exc
    except BillingConfigurationError as exc:
        logger.error("Billing webhook received but not configured: %s", exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    try:
        service = get_billing_service()
        await run_in_threadpool(service.handle_webhook, event)
    except (BillingError, BillingConfigurationError) as exc:
        logger.exception("Failed to process billing event %s (%s)", event.event_id, event.event_type)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from exc
    return WebhookAck(received=True)


@router.post("/checkout-session", response_model=CheckoutSessionResponse)
def create_checkout_session(
    payload: CheckoutSessionRequest,
    *,
    current_user=Depends(get_current_user),
) -> CheckoutSessionResponse:
    plan_key = parse_plan_key(payload.plan_key)
    if plan_key is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid plan_key. Must be monthly, yearly, or lifetime",
        )

    try:
        service = get_billing_service()
        session = service.create_checkout_session(
            user_id=str(current_user.id),
            email=getattr(current_user, "email", None),
            plan_key=plan_key,
            success_url=payload.success_url,
            cancel_url=payload.cancel_url,
        )
    except BillingConfigurationError as exc:
        logger.error("Checkout unavailable: %s", exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    except BillingError as exc:
        logger.exception("Checkout session creation failed for user %s", current_user.id)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return CheckoutSessionResponse.from_checkout(session)


@router.post("/portal-session", response_model=PortalSessionResponse)
def create_portal_session(
    payload: PortalSessionRequest,
    *,
    current_user=Depends(get_current_user),
) -> PortalSessionResponse:
    try:
        service = get_billing_service()
        session = service.create_portal_session(user_id=str(current_user.id), return_url=payload.return_url)
    except CustomerNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except BillingConfigurationError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    except BillingError as exc:
        logger.exception("Portal session creation failed for user %s", current_user.id)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return PortalSessionResponse(url=session.url)


@router.get("/access", response_model=AccessStatusResponse)
def get_access_status(
    feature_key: Optional[str] = Query(default=None),
    *,
    current_user=Depends(get_current_user),
) -> AccessStatusResponse:
    try:
        verdict = get_access_evaluator().evaluate(str(current_user.id), feature_key)
    except BillingError as exc:
        logger.exception("Access status lookup failed for user %s", current_user.id)
        raise FeatureGateError.billing_error() from exc
    return AccessStatusResponse.from_verdict(verdict)
