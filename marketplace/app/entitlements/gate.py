"""Access decisions derived from the entitlement snapshot."""
from __future__ import annotations

from datetime import datetime

from .models import AccessDecision, EntitlementSnapshot, EntitlementStatus, GraceWarning

SUBSCRIPTION_REQUIRED = "SUBSCRIPTION_REQUIRED"


def evaluate_access(snapshot: EntitlementSnapshot, now: datetime) -> AccessDecision:
    """Decide whether a user may create content.

    Access is granted while the subscription is active and unexpired, and
    during an unexpired grace period (with a warning attached). Expiry
    instants are exclusive: a snapshot that expires exactly at ``now`` is
    denied.
    """

    if snapshot.has_active_subscription(now):
        return AccessDecision(
            allowed=True,
            status=EntitlementStatus.ACTIVE,
            expires_at=snapshot.subscription_expires_at,
        )

    if snapshot.is_in_grace_period(now):
        return AccessDecision(
            allowed=True,
            status=EntitlementStatus.GRACE_PERIOD,
            expires_at=snapshot.subscription_expires_at,
            grace_warning=GraceWarning(ends_at=snapshot.grace_period_ends_at),
        )

    return AccessDecision(
        allowed=False,
        status=snapshot.subscription_status,
        reason=SUBSCRIPTION_REQUIRED,
        expires_at=snapshot.subscription_expires_at,
    )


__all__ = ["SUBSCRIPTION_REQUIRED", "evaluate_access"]
