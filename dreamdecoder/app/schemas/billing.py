"""API schemas for billing endpoints."""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing import CheckoutSession
from ..entitlements import AccessType, AccessVerdict, DenialReason


class CheckoutSessionRequest(BaseModel):
    plan_key: str = Field(alias="planKey")
    success_url: Optional[str] = Field(alias="successUrl", default=None)
    cancel_url: Optional[str] = Field(alias="cancelUrl", default=None)

    model_config = ConfigDict(populate_by_name=True)


class CheckoutSessionResponse(BaseModel):
    url: str
    session_id: str

    @classmethod
    def from_checkout(cls, session: CheckoutSession) -> "CheckoutSessionResponse":
        return cls(url=session.url, session_id=session.session_id)


class PortalSessionRequest(BaseModel):
    return_url: Optional[str] = Field(alias="returnUrl", default=None)

    model_config = ConfigDict(populate_by_name=True)


class PortalSessionResponse(BaseModel):
    url: str


class AccessStatusResponse(BaseModel):
    allowed: bool
    access_type: AccessType
    trial_remaining: Optional[int] = None
    reason: Optional[DenialReason] = None

    @classmethod
    def from_verdict(cls, verdict: AccessVerdict) -> "AccessStatusResponse":
        return cls(
            allowed=verdict.allowed,
            access_type=verdict.access_type,
            trial_remaining=verdict.trial_remaining,
            reason=verdict.reason,
        )


class WebhookAck(BaseModel):
    received: bool = True
