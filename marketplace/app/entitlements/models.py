"""Entitlement snapshot stored on the user record and access decisions."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class EntitlementStatus(str, Enum):
    """Denormalized subscription status kept on the user record."""

    NONE = "none"
    ACTIVE = "active"
    GRACE_PERIOD = "grace_period"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class EntitlementSnapshot(BaseModel):
    """Fast-path copy of the user's current subscription state.

    The snapshot is read on every protected request so the access check does
    not need to join the subscriptions table. It is written exclusively by
    :class:`~marketplace.app.subscriptions.service.SubscriptionManager`.
    """

    user_id: str
    subscription_status: EntitlementStatus = EntitlementStatus.NONE
    current_subscription_id: Optional[str] = None
    subscription_expires_at: Optional[datetime] = None
    grace_period_ends_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def has_active_subscription(self, now: datetime) -> bool:
        return (
            self.subscription_status == EntitlementStatus.ACTIVE
            and self.subscription_expires_at is not None
            and self.subscription_expires_at > now
        )

    def is_in_grace_period(self, now: datetime) -> bool:
        return (
            self.subscription_status == EntitlementStatus.GRACE_PERIOD
            and self.grace_period_ends_at is not None
            and self.grace_period_ends_at > now
        )


class GraceWarning(BaseModel):
    ends_at: datetime

    model_config = ConfigDict(frozen=True)


class AccessDecision(BaseModel):
    """Outcome of evaluating a snapshot against the current time."""

    allowed: bool
    status: EntitlementStatus
    reason: Optional[str] = None
    expires_at: Optional[datetime] = None
    grace_warning: Optional[GraceWarning] = None

    model_config = ConfigDict(frozen=True)
