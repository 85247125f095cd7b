"""Entitlements domain models, access evaluation, and trial metering."""

from .catalog import PLAN_CATALOG, PlanDefinition, get_plan_definition, parse_plan_key
from .exceptions import BillingError
from .models import (
    DEFAULT_FEATURE_KEY,
    DEFAULT_TRIAL_LIMIT,
    AccessTier,
    AccessType,
    AccessVerdict,
    CheckoutMode,
    DenialReason,
    EntitlementRecord,
    PlanKey,
    TrialConsumption,
    TrialRecord,
)
from .service import AccessEvaluator, EntitlementReader, TrialMeter, TrialStore

__all__ = [
    "PLAN_CATALOG",
    "PlanDefinition",
    "get_plan_definition",
    "parse_plan_key",
    "BillingError",
    "DEFAULT_FEATURE_KEY",
    "DEFAULT_TRIAL_LIMIT",
    "AccessTier",
    "AccessType",
    "AccessVerdict",
    "CheckoutMode",
    "DenialReason",
    "EntitlementRecord",
    "PlanKey",
    "TrialConsumption",
    "TrialRecord",
    "AccessEvaluator",
    "EntitlementReader",
    "TrialMeter",
    "TrialStore",
]
