"""Helpers for enforcing entitlement checks on API and service layers."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from ..entitlements import AccessEvaluator, AccessType, AccessVerdict, BillingError, DenialReason, TrialMeter
from .exceptions import FeatureGateError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GateDecision:
    """Admission granted for one metered request."""

    access_type: AccessType
    trial_remaining: Optional[int] = None


def denial_for(verdict: AccessVerdict) -> FeatureGateError:
    """Map a denied verdict onto the structured error returned to clients."""

    if verdict.reason == DenialReason.TRIAL_EXHAUSTED:
        return FeatureGateError.trial_exhausted()
    if verdict.reason == DenialReason.BILLING_ERROR:
        return FeatureGateError.billing_error()
    return FeatureGateError.subscription_required()


class MeteredFeatureGate:
    """Evaluates access for a request and consumes a trial unit when needed.

    Paid access never touches the trial counter. Free access consumes exactly
    one unit through the store's conditional update, and a consume that loses
    a race after a positive verdict is reported as an exhausted trial. Any
    billing fault denies the request.
    """

    def __init__(self, evaluator: AccessEvaluator, meter: TrialMeter) -> None:
        self._evaluator = evaluator
        self._meter = meter

    def admit(self, user_id: str, feature_key: Optional[str] = None) -> GateDecision:
        try:
            verdict = self._evaluator.evaluate(user_id, feature_key)
        except BillingError:
            logger.exception("Access evaluation failed for user %s", user_id)
            raise FeatureGateError.billing_error()

        if not verdict.allowed:
            logger.info("Access denied for user %s: %s", user_id, verdict.reason)
            raise denial_for(verdict)

        if verdict.access_type != AccessType.FREE:
            return GateDecision(access_type=verdict.access_type)

        try:
            consumption = self._meter.consume(user_id)
        except BillingError:
            logger.exception("Trial consumption failed for user %s", user_id)
            raise FeatureGateError.billing_error()

        if not consumption.success:
            raise FeatureGateError.trial_exhausted()
        return GateDecision(access_type=AccessType.FREE, trial_remaining=consumption.remaining)


__all__ = ["GateDecision", "MeteredFeatureGate", "denial_for"]
