"""Exceptions raised by the entitlement and metering layer."""
from __future__ import annotations


class BillingError(RuntimeError):
    """Transient infrastructure fault while reading or mutating billing state.

    Callers on monetized paths must deny the request when they see this error.
    Expected denials such as an exhausted trial are return values, not errors.
    """
