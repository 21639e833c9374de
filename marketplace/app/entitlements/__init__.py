"""Entitlement snapshot and access evaluation for paid features."""

from .gate import SUBSCRIPTION_REQUIRED, evaluate_access
from .models import AccessDecision, EntitlementSnapshot, EntitlementStatus, GraceWarning

__all__ = [
    "AccessDecision",
    "EntitlementSnapshot",
    "EntitlementStatus",
    "GraceWarning",
    "SUBSCRIPTION_REQUIRED",
    "evaluate_access",
]
