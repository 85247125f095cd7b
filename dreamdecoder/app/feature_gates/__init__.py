"""Feature gating utilities coordinating entitlement enforcement."""
from .enforcement import GateDecision, MeteredFeatureGate, denial_for
from .exceptions import FeatureGateError

__all__ = [
    "FeatureGateError",
    "GateDecision",
    "MeteredFeatureGate",
    "denial_for",
]
