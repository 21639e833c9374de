"""Request-level gate protecting content creation endpoints."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Response

from ..dependencies import get_session_user
from ..entitlements import AccessDecision
from ..services.billing import get_subscription_manager
from .enforcement import require_active_subscription, require_kyc_verified
from .exceptions import FeatureGateError

GRACE_WARNING_HEADER = "X-Grace-Period-Warning"
GRACE_ENDS_HEADER = "X-Grace-Period-Ends"


@dataclass(frozen=True)
class ContentCreationContext:
    """Facade describing why the current user may create content."""

    user_id: str
    decision: AccessDecision

    @property
    def in_grace_period(self) -> bool:
        return self.decision.grace_warning is not None

    @property
    def grace_period_ends_at(self) -> Optional[str]:
        warning = self.decision.grace_warning
        return warning.ends_at.isoformat() if warning else None


def content_creation_gate(
    response: Response,
    current_user=Depends(get_session_user),
) -> ContentCreationContext:
    """Dependency for endpoints that publish marketplace content.

    Identity verification is checked first, then the subscription snapshot.
    During a grace period the request proceeds and warning headers are added
    to the response.
    """

    manager = get_subscription_manager()
    user_id = str(current_user.id)
    try:
        require_kyc_verified(current_user)
        decision = require_active_subscription(manager.get_snapshot(user_id), manager.now())
    except FeatureGateError as exc:
        raise exc.to_http_exception() from exc

    context = ContentCreationContext(user_id=user_id, decision=decision)
    if context.in_grace_period:
        response.headers[GRACE_WARNING_HEADER] = "true"
        response.headers[GRACE_ENDS_HEADER] = context.grace_period_ends_at or ""
    return context


__all__ = [
    "ContentCreationContext",
    "GRACE_ENDS_HEADER",
    "GRACE_WARNING_HEADER",
    "content_creation_gate",
]
