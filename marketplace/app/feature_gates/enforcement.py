"""Helpers for enforcing subscription checks on API and service layers."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from ..entitlements import AccessDecision, EntitlementSnapshot, evaluate_access
from .exceptions import KycRequiredError, SubscriptionRequiredError

KYC_VERIFIED = "verified"


def require_kyc_verified(user: Any) -> None:
    """Ensure the identity verification gate has passed for ``user``.

    Identity verification lives outside this service; the only contract is a
    ``kyc_status`` attribute on the authenticated user.
    """

    if getattr(user, "kyc_status", None) != KYC_VERIFIED:
        raise KycRequiredError()


def require_active_subscription(snapshot: EntitlementSnapshot, now: datetime) -> AccessDecision:
    """Return the access decision, raising when access is denied.

    Parameters
    ----------
    snapshot:
        Entitlement snapshot loaded from the user record.
    now:
        Evaluation instant. Callers pass an explicit clock so the decision
        can be reproduced in tests.
    """

    decision = evaluate_access(snapshot, now)
    if not decision.allowed:
        raise SubscriptionRequiredError(
            subscription_status=decision.status.value,
            expires_at=_isoformat(decision.expires_at),
        )
    return decision


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


__all__ = ["KYC_VERIFIED", "require_active_subscription", "require_kyc_verified"]
