"""Subscription domain package: models and persistence contract."""

from .models import (
    Subscription,
    SubscriptionAuditEvent,
    SubscriptionAuditEventType,
    SubscriptionFilters,
    SubscriptionGrant,
    SubscriptionOverview,
    SubscriptionPage,
    SubscriptionPlan,
    SubscriptionStatistics,
    SubscriptionStatus,
)
from .repository import SubscriptionStore

__all__ = [
    "Subscription",
    "SubscriptionAuditEvent",
    "SubscriptionAuditEventType",
    "SubscriptionFilters",
    "SubscriptionGrant",
    "SubscriptionOverview",
    "SubscriptionPage",
    "SubscriptionPlan",
    "SubscriptionStatistics",
    "SubscriptionStatus",
    "SubscriptionStore",
]
