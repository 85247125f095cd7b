"""Custom exceptions used for feature gating enforcement."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status
from fastapi.responses import JSONResponse

from ..entitlements.models import DenialReason


@dataclass
class FeatureGateError(Exception):
    """Represents an actionable gating failure surfaced to API callers."""

    code: str
    message: str
    status_code: int = status.HTTP_402_PAYMENT_REQUIRED
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(status_code=self.status_code, detail=dict(self.payload))

    def to_response(self) -> JSONResponse:
        """Render the flat JSON body clients read ``error`` and ``suggested_action`` from."""

        return JSONResponse(status_code=self.status_code, content=dict(self.payload))

    @classmethod
    def trial_exhausted(cls) -> "FeatureGateError":
        return cls(
            code="subscription_required",
            message="You've used all your free dream analyses. Subscribe to keep decoding.",
            detail={
                "reason": DenialReason.TRIAL_EXHAUSTED.value,
                "trial_remaining": 0,
                "suggested_action": "subscribe",
            },
        )

    @classmethod
    def subscription_required(cls) -> "FeatureGateError":
        return cls(
            code="subscription_required",
            message="A subscription is required to use this feature.",
            detail={"trial_remaining": 0, "suggested_action": "subscribe"},
        )

    @classmethod
    def billing_error(cls) -> "FeatureGateError":
        return cls(
            code=DenialReason.BILLING_ERROR.value,
            message="We couldn't verify your access right now. Please try again.",
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"suggested_action": "retry"},
        )
