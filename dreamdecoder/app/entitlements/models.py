"""Domain models for entitlements and trial metering."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

DEFAULT_FEATURE_KEY = "dream_decoder"
DEFAULT_TRIAL_LIMIT = 3


class AccessTier(str, Enum):
    """Durable access tier stored on an entitlement."""

    FREE = "free"
    SUBSCRIPTION = "subscription"
    LIFETIME = "lifetime"


class AccessType(str, Enum):
    """Access path reported by an access verdict."""

    LIFETIME = "lifetime"
    SUBSCRIPTION = "subscription"
    FREE = "free"
    NONE = "none"


class DenialReason(str, Enum):
    """Why a metered request was refused."""

    TRIAL_EXHAUSTED = "trial_exhausted"
    SUBSCRIPTION_REQUIRED = "subscription_required"
    BILLING_ERROR = "billing_error"


class PlanKey(str, Enum):
    """Canonical identifiers for purchasable plans."""

    MONTHLY = "monthly"
    YEARLY = "yearly"
    LIFETIME = "lifetime"


class CheckoutMode(str, Enum):
    """Checkout modes understood by the payment provider."""

    SUBSCRIPTION = "subscription"
    PAYMENT = "payment"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntitlementRecord(BaseModel):
    """A user's durable access grant for a feature.

    The tier decides which fields are meaningful: only subscriptions carry an
    expiry, lifetime grants never expire and free rows are never active.
    Validation rejects any combination outside those rules, so a record that
    exists is a record that is consistent.
    """

    user_id: str
    feature_key: str = DEFAULT_FEATURE_KEY
    access: AccessTier
    is_active: bool
    expires_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _check_tier_invariants(self) -> "EntitlementRecord":
        if self.access == AccessTier.LIFETIME and self.expires_at is not None:
            raise ValueError("lifetime entitlements cannot carry expires_at")
        if self.access == AccessTier.FREE and self.is_active:
            raise ValueError("free entitlements cannot be active")
        if self.access == AccessTier.SUBSCRIPTION and self.is_active and self.expires_at is None:
            raise ValueError("active subscription entitlements require expires_at")
        return self

    @classmethod
    def lifetime(cls, user_id: str, feature_key: str = DEFAULT_FEATURE_KEY) -> "EntitlementRecord":
        return cls(user_id=user_id, feature_key=feature_key, access=AccessTier.LIFETIME, is_active=True)

    @classmethod
    def subscription(
        cls,
        user_id: str,
        feature_key: str = DEFAULT_FEATURE_KEY,
        *,
        is_active: bool,
        expires_at: Optional[datetime],
    ) -> "EntitlementRecord":
        return cls(
            user_id=user_id,
            feature_key=feature_key,
            access=AccessTier.SUBSCRIPTION,
            is_active=is_active,
            expires_at=expires_at if is_active else None,
        )

    @classmethod
    def free(cls, user_id: str, feature_key: str = DEFAULT_FEATURE_KEY) -> "EntitlementRecord":
        return cls(user_id=user_id, feature_key=feature_key, access=AccessTier.FREE, is_active=False)

    def paid_access(self, now: datetime) -> Optional[AccessType]:
        """Return the paid access path this record grants at ``now``, if any."""

        if not self.is_active:
            return None
        if self.access == AccessTier.LIFETIME:
            return AccessType.LIFETIME
        if self.access == AccessTier.SUBSCRIPTION and self.expires_at and self.expires_at > now:
            return AccessType.SUBSCRIPTION
        return None


class TrialRecord(BaseModel):
    """Per-user trial allowance and usage."""

    user_id: str
    trial_limit: int = Field(default=DEFAULT_TRIAL_LIMIT, ge=0)
    trial_used: int = Field(default=0, ge=0)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _check_usage(self) -> "TrialRecord":
        if self.trial_used > self.trial_limit:
            raise ValueError("trial_used cannot exceed trial_limit")
        return self

    @property
    def remaining(self) -> int:
        return self.trial_limit - self.trial_used


class AccessVerdict(BaseModel):
    """Outcome of an access check. Never persisted."""

    allowed: bool
    access_type: AccessType
    trial_remaining: Optional[int] = None
    reason: Optional[DenialReason] = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def paid(cls, access_type: AccessType) -> "AccessVerdict":
        return cls(allowed=True, access_type=access_type)

    @classmethod
    def trial(cls, remaining: int) -> "AccessVerdict":
        return cls(allowed=True, access_type=AccessType.FREE, trial_remaining=remaining)

    @classmethod
    def trial_exhausted(cls) -> "AccessVerdict":
        return cls(
            allowed=False,
            access_type=AccessType.NONE,
            trial_remaining=0,
            reason=DenialReason.TRIAL_EXHAUSTED,
        )


class TrialConsumption(BaseModel):
    """Result of a single trial consume attempt."""

    success: bool
    trial_used: Optional[int] = None
    trial_limit: Optional[int] = None

    model_config = ConfigDict(frozen=True)

    @property
    def remaining(self) -> int:
        if self.trial_used is None or self.trial_limit is None:
            return 0
        return max(self.trial_limit - self.trial_used, 0)
