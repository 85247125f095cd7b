"""Access evaluation and trial metering for gated features."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from .exceptions import BillingError
from .models import (
    DEFAULT_FEATURE_KEY,
    DEFAULT_TRIAL_LIMIT,
    AccessVerdict,
    EntitlementRecord,
    TrialConsumption,
    TrialRecord,
)

logger = logging.getLogger(__name__)


class EntitlementReader(Protocol):
    """Read access to entitlement rows."""

    def get_entitlement(self, user_id: str, feature_key: str) -> Optional[EntitlementRecord]:
        ...


class TrialStore(Protocol):
    """Durable trial counters with store-level atomic primitives."""

    def get_or_create_trial(self, user_id: str, *, trial_limit: int) -> TrialRecord:
        """Return the user's trial row, inserting one with ``trial_limit`` if absent.

        Concurrent first-time callers must all observe the same single row.
        """

    def consume_trial(self, user_id: str) -> Optional[TrialRecord]:
        """Increment ``trial_used`` by one only where ``trial_used < trial_limit``.

        Returns the post-update row, or ``None`` when the limit is already
        reached. Raises :class:`LookupError` when the user has no trial row.
        """


class AccessEvaluator:
    """Decides whether a user may use a gated feature right now."""

    def __init__(
        self,
        entitlements: EntitlementReader,
        trials: TrialStore,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        default_trial_limit: int = DEFAULT_TRIAL_LIMIT,
        default_feature_key: str = DEFAULT_FEATURE_KEY,
    ) -> None:
        if default_trial_limit < 0:
            raise ValueError("default_trial_limit must be >= 0")
        self._entitlements = entitlements
        self._trials = trials
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._default_trial_limit = default_trial_limit
        self._default_feature_key = default_feature_key

    def evaluate(self, user_id: str, feature_key: Optional[str] = None) -> AccessVerdict:
        """Return the access verdict for ``user_id`` on ``feature_key``.

        Paid entitlements are checked first. Subscription freshness is
        recomputed against the clock on every call, so a stale ``is_active``
        flag past its expiry falls through to the trial path.
        """

        feature = feature_key or self._default_feature_key
        try:
            entitlement = self._entitlements.get_entitlement(user_id, feature)
        except BillingError:
            raise
        except Exception as exc:
            raise BillingError(f"Failed to read entitlement for user {user_id}") from exc

        if entitlement is not None:
            paid_access = entitlement.paid_access(self._clock())
            if paid_access is not None:
                return AccessVerdict.paid(paid_access)

        try:
            trial = self._trials.get_or_create_trial(user_id, trial_limit=self._default_trial_limit)
        except BillingError:
            raise
        except Exception as exc:
            raise BillingError(f"Failed to load trial record for user {user_id}") from exc

        if trial.remaining > 0:
            return AccessVerdict.trial(trial.remaining)
        return AccessVerdict.trial_exhausted()


class TrialMeter:
    """Consumes trial units through the store's conditional update."""

    def __init__(self, trials: TrialStore) -> None:
        self._trials = trials

    def consume(self, user_id: str) -> TrialConsumption:
        try:
            updated = self._trials.consume_trial(user_id)
        except BillingError:
            raise
        except LookupError as exc:
            raise BillingError(f"No trial record exists for user {user_id}") from exc
        except Exception as exc:
            raise BillingError(f"Failed to consume trial for user {user_id}") from exc

        if updated is None:
            logger.info("Trial limit reached for user %s", user_id)
            return TrialConsumption(success=False)

        return TrialConsumption(
            success=True,
            trial_used=updated.trial_used,
            trial_limit=updated.trial_limit,
        )


__all__ = ["AccessEvaluator", "EntitlementReader", "TrialMeter", "TrialStore"]
