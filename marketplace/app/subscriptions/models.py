"""Domain models for subscriptions and their audit trail."""
from __future__ import annotations

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..entitlements.models import EntitlementSnapshot
from ..payments.models import RevenueSummary


class SubscriptionStatus(str, Enum):
    """Status of a single subscription period."""

    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class SubscriptionPlan(str, Enum):
    """The marketplace sells a single monthly plan."""

    MONTHLY = "monthly"


class Subscription(BaseModel):
    """A paid (or admin granted) entitlement window for one user."""

    subscription_id: str
    user_id: str
    status: SubscriptionStatus = SubscriptionStatus.PENDING
    start_date: datetime
    end_date: datetime
    auto_renew: bool = True
    plan: SubscriptionPlan = SubscriptionPlan.MONTHLY
    last_payment_id: Optional[str] = None
    grace_period_started: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    granted_by: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @model_validator(mode="after")
    def _validate_window(self) -> "Subscription":
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self

    def days_remaining(self, now: Optional[datetime] = None) -> int:
        """Whole days left in the period, rounded up. Never negative."""

        current = now or datetime.now(timezone.utc)
        seconds = (self.end_date - current).total_seconds()
        if seconds <= 0:
            return 0
        return math.ceil(seconds / 86400)

    def is_active(self, now: Optional[datetime] = None) -> bool:
        current = now or datetime.now(timezone.utc)
        return self.status == SubscriptionStatus.ACTIVE and self.end_date > current


class SubscriptionAuditEventType(str, Enum):
    """Lifecycle events recorded for auditing."""

    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_GRANTED = "subscription_granted"
    SUBSCRIPTION_EXTENDED = "subscription_extended"
    SUBSCRIPTION_REVOKED = "subscription_revoked"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    GRACE_PERIOD_EXPIRED = "grace_period_expired"
    AUTO_RENEW_CANCELLED = "auto_renew_cancelled"
    TRANSACTION_REFUNDED = "transaction_refunded"
    ACTIVATION_FAILED = "activation_failed"


class SubscriptionAuditEvent(BaseModel):
    """Structured audit log entry for subscription changes."""

    event_type: SubscriptionAuditEventType
    user_id: Optional[str] = None
    subscription_id: Optional[str] = None
    transaction_id: Optional[str] = None
    actor_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)


class SubscriptionOverview(BaseModel):
    """Snapshot plus derived flags returned by the status endpoint."""

    snapshot: EntitlementSnapshot
    has_active_subscription: bool
    is_in_grace_period: bool
    subscription: Optional[Subscription] = None
    days_remaining: Optional[int] = None

    model_config = ConfigDict(frozen=True)


class SubscriptionGrant(BaseModel):
    """Result of an admin grant. ``extended`` is set when an existing period was lengthened."""

    subscription: Subscription
    extended: bool = False

    model_config = ConfigDict(frozen=True)


class SubscriptionFilters(BaseModel):
    """Admin listing filters."""

    status: Optional[SubscriptionStatus] = None
    user_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class SubscriptionPage(BaseModel):
    """A page of subscriptions with the total row count."""

    items: List[Subscription] = Field(default_factory=list)
    total: int = 0
    status_counts: Dict[SubscriptionStatus, int] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class SubscriptionStatistics(BaseModel):
    """Aggregate numbers shown on the admin dashboard."""

    active: int = 0
    expired: int = 0
    grace_period: int = 0
    new: int = 0
    churned: int = 0
    revenue: List[RevenueSummary] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True)
