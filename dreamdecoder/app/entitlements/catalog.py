"""Static catalog definitions for purchasable plans."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from .models import AccessTier, CheckoutMode, PlanKey


@dataclass(frozen=True)
class PlanDefinition:
    """Describes a plan and the entitlement tier it grants."""

    key: PlanKey
    mode: CheckoutMode
    grants: AccessTier


PLAN_CATALOG: Dict[PlanKey, PlanDefinition] = {
    PlanKey.MONTHLY: PlanDefinition(
        key=PlanKey.MONTHLY,
        mode=CheckoutMode.SUBSCRIPTION,
        grants=AccessTier.SUBSCRIPTION,
    ),
    PlanKey.YEARLY: PlanDefinition(
        key=PlanKey.YEARLY,
        mode=CheckoutMode.SUBSCRIPTION,
        grants=AccessTier.SUBSCRIPTION,
    ),
    PlanKey.LIFETIME: PlanDefinition(
        key=PlanKey.LIFETIME,
        mode=CheckoutMode.PAYMENT,
        grants=AccessTier.LIFETIME,
    ),
}


def get_plan_definition(plan_key: PlanKey) -> PlanDefinition:
    """Return a plan definition, raising if unsupported."""

    try:
        return PLAN_CATALOG[plan_key]
    except KeyError as exc:  # pragma: no cover - guarded by static catalog
        raise KeyError(f"Unknown plan key: {plan_key}") from exc


def parse_plan_key(value: object) -> Optional[PlanKey]:
    """Map a raw metadata value onto a catalog plan key, ignoring unknown values."""

    if value is None:
        return None
    try:
        return PlanKey(str(value))
    except ValueError:
        return None
