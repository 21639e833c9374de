"""API schemas for subscription endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..entitlements import EntitlementStatus
from ..subscriptions import (
    Subscription,
    SubscriptionOverview,
    SubscriptionPlan,
    SubscriptionStatus,
)
from .payments import Pagination


class SubscriptionResponse(BaseModel):
    subscription_id: str = Field(alias="subscriptionId")
    user_id: str = Field(alias="userId")
    status: SubscriptionStatus
    plan: SubscriptionPlan
    start_date: datetime = Field(alias="startDate")
    end_date: datetime = Field(alias="endDate")
    auto_renew: bool = Field(alias="autoRenew")
    last_payment_id: Optional[str] = Field(alias="lastPaymentId", default=None)
    cancelled_at: Optional[datetime] = Field(alias="cancelledAt", default=None)
    cancel_reason: Optional[str] = Field(alias="cancelReason", default=None)
    granted_by: Optional[str] = Field(alias="grantedBy", default=None)
    created_at: datetime = Field(alias="createdAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_subscription(cls, subscription: Subscription) -> "SubscriptionResponse":
        return cls(
            subscription_id=subscription.subscription_id,
            user_id=subscription.user_id,
            status=subscription.status,
            plan=subscription.plan,
            start_date=subscription.start_date,
            end_date=subscription.end_date,
            auto_renew=subscription.auto_renew,
            last_payment_id=subscription.last_payment_id,
            cancelled_at=subscription.cancelled_at,
            cancel_reason=subscription.cancel_reason,
            granted_by=subscription.granted_by,
            created_at=subscription.created_at,
        )


class CurrentSubscription(BaseModel):
    subscription_id: str = Field(alias="subscriptionId")
    plan: SubscriptionPlan
    status: SubscriptionStatus
    start_date: datetime = Field(alias="startDate")
    end_date: datetime = Field(alias="endDate")
    auto_renew: bool = Field(alias="autoRenew")
    days_remaining: int = Field(alias="daysRemaining")

    model_config = ConfigDict(populate_by_name=True)


class SubscriptionStatusResponse(BaseModel):
    subscription_status: EntitlementStatus = Field(alias="subscriptionStatus")
    has_active_subscription: bool = Field(alias="hasActiveSubscription")
    is_in_grace_period: bool = Field(alias="isInGracePeriod")
    subscription_expires_at: Optional[datetime] = Field(alias="subscriptionExpiresAt", default=None)
    grace_period_ends_at: Optional[datetime] = Field(alias="gracePeriodEndsAt", default=None)
    subscription: Optional[CurrentSubscription] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_overview(cls, overview: SubscriptionOverview) -> "SubscriptionStatusResponse":
        current = overview.subscription
        return cls(
            subscription_status=overview.snapshot.subscription_status,
            has_active_subscription=overview.has_active_subscription,
            is_in_grace_period=overview.is_in_grace_period,
            subscription_expires_at=overview.snapshot.subscription_expires_at,
            grace_period_ends_at=overview.snapshot.grace_period_ends_at,
            subscription=CurrentSubscription(
                subscription_id=current.subscription_id,
                plan=current.plan,
                status=current.status,
                start_date=current.start_date,
                end_date=current.end_date,
                auto_renew=current.auto_renew,
                days_remaining=overview.days_remaining or 0,
            )
            if current
            else None,
        )


class SubscriptionHistoryResponse(BaseModel):
    subscriptions: List[SubscriptionResponse]
    pagination: Pagination


class CancelAutoRenewRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class CancelAutoRenewResponse(BaseModel):
    subscription_id: str = Field(alias="subscriptionId")
    auto_renew: bool = Field(alias="autoRenew")
    cancelled_at: Optional[datetime] = Field(alias="cancelledAt", default=None)
    end_date: datetime = Field(alias="endDate")
    message: str

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_subscription(cls, subscription: Subscription) -> "CancelAutoRenewResponse":
        return cls(
            subscription_id=subscription.subscription_id,
            auto_renew=subscription.auto_renew,
            cancelled_at=subscription.cancelled_at,
            end_date=subscription.end_date,
            message=f"Auto-renewal cancelled. Subscription will expire on {subscription.end_date.isoformat()}",
        )
