"""API schemas for administrative subscription endpoints."""
from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..subscriptions import SubscriptionGrant, SubscriptionStatistics
from .payments import Pagination, RevenueResponse
from .subscriptions import SubscriptionResponse


class GrantSubscriptionRequest(BaseModel):
    user_id: str = Field(alias="userId", min_length=1)
    duration_days: Optional[int] = Field(alias="durationDays", default=None, ge=1, le=3650)

    model_config = ConfigDict(populate_by_name=True)


class GrantSubscriptionResponse(BaseModel):
    subscription: SubscriptionResponse
    extended: bool

    @classmethod
    def from_grant(cls, grant: SubscriptionGrant) -> "GrantSubscriptionResponse":
        return cls(
            subscription=SubscriptionResponse.from_subscription(grant.subscription),
            extended=grant.extended,
        )


class RevokeSubscriptionRequest(BaseModel):
    reason: str = Field(default="Revoked by administrator", min_length=1, max_length=500)


class AdminSubscriptionListResponse(BaseModel):
    subscriptions: List[SubscriptionResponse]
    stats: Dict[str, int]
    pagination: Pagination


class SubscriptionStatsResponse(BaseModel):
    active: int
    expired: int
    grace_period: int = Field(alias="gracePeriod")
    new: int
    churned: int
    revenue: List[RevenueResponse]

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_statistics(cls, stats: SubscriptionStatistics) -> "SubscriptionStatsResponse":
        return cls(
            active=stats.active,
            expired=stats.expired,
            grace_period=stats.grace_period,
            new=stats.new,
            churned=stats.churned,
            revenue=[RevenueResponse.from_summary(item) for item in stats.revenue],
        )


class ExpiryRunResponse(BaseModel):
    started: bool
    summary: Optional[Dict[str, object]] = None
