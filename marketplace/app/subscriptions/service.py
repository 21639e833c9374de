"""Subscription lifecycle: activation, grants, revocation and expiry."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Protocol
from uuid import uuid4

from ..config import SubscriptionConfig
from ..db import page_bounds
from ..entitlements.models import EntitlementSnapshot, EntitlementStatus
from ..exceptions import (
    ActivationSideEffectError,
    InvalidRequestError,
    NotFoundError,
    StateConflictError,
)
from ..payments.models import TransactionStatus
from ..unit_of_work import UnitOfWork, UnitOfWorkFactory
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

logger = logging.getLogger(__name__)

_CHURN_WINDOW = timedelta(days=30)


class AuditLogger(Protocol):
    """Captures structured subscription audit events."""

    def log(self, event: SubscriptionAuditEvent) -> None:
        ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionManager:
    """Owns every write to subscriptions and to the entitlement snapshot.

    Each public mutation runs inside one unit of work, so a subscription row
    and the snapshot that points at it are always committed together.
    """

    def __init__(
        self,
        *,
        unit_of_work: UnitOfWorkFactory,
        audit_logger: AuditLogger,
        config: SubscriptionConfig,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._unit_of_work = unit_of_work
        self._audit_logger = audit_logger
        self._config = config
        self._clock = clock or _now

    @property
    def config(self) -> SubscriptionConfig:
        return self._config

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Activation and admin overrides
    # ------------------------------------------------------------------
    def activate_from_completed_transaction(self, transaction_id: str) -> Optional[Subscription]:
        """Create the subscription paid for by ``transaction_id``.

        Returns ``None`` without side effects when the transaction is not
        completed or already linked to a subscription. Any failure rolls back
        the subscription, the transaction link and the snapshot together and
        surfaces as :class:`ActivationSideEffectError`.
        """

        now = self.now()
        try:
            with self._unit_of_work() as uow:
                transaction = uow.transactions.get(transaction_id, for_update=True)
                if transaction is None:
                    raise NotFoundError("Transaction not found", detail={"transactionId": transaction_id})
                if transaction.status != TransactionStatus.COMPLETED or transaction.subscription_id:
                    return None

                subscription = uow.subscriptions.create(
                    Subscription(
                        subscription_id=f"sub_{uuid4().hex}",
                        user_id=transaction.user_id,
                        status=SubscriptionStatus.ACTIVE,
                        start_date=now,
                        end_date=now + timedelta(days=self._config.duration_days),
                        auto_renew=False,
                        plan=SubscriptionPlan.MONTHLY,
                        last_payment_id=transaction.transaction_id,
                        created_at=now,
                        updated_at=now,
                    )
                )
                linked = uow.transactions.link_subscription(transaction_id, subscription.subscription_id)
                if linked is None:
                    raise StateConflictError("Transaction was linked to another subscription")
                self._point_snapshot_at(uow, subscription)
        except ActivationSideEffectError:
            raise
        except Exception as exc:
            raise ActivationSideEffectError(
                f"Subscription activation failed: {exc}",
                transaction_id=transaction_id,
            ) from exc

        logger.info(
            "Activated subscription %s for user %s",
            subscription.subscription_id,
            subscription.user_id,
            extra={"transaction_id": transaction_id, "end_date": subscription.end_date.isoformat()},
        )
        self._audit(
            SubscriptionAuditEventType.SUBSCRIPTION_ACTIVATED,
            subscription,
            transaction_id=transaction_id,
            metadata={"end_date": subscription.end_date.isoformat()},
        )
        return subscription

    def grant(
        self,
        user_id: str,
        *,
        granted_by: str,
        duration_days: Optional[int] = None,
    ) -> SubscriptionGrant:
        """Give ``user_id`` a free period, extending a live subscription if one exists."""

        days = duration_days if duration_days is not None else self._config.duration_days
        if days < 1:
            raise InvalidRequestError("durationDays must be >= 1")

        now = self.now()
        with self._unit_of_work() as uow:
            snapshot = uow.subscriptions.get_snapshot(user_id, for_update=True)
            if snapshot is None:
                raise NotFoundError("User not found", detail={"userId": user_id})

            current = None
            if snapshot.current_subscription_id:
                current = uow.subscriptions.get(snapshot.current_subscription_id, for_update=True)

            extended = current is not None and current.is_active(now)
            if extended:
                subscription = uow.subscriptions.update(
                    current.subscription_id,
                    expected=[SubscriptionStatus.ACTIVE],
                    changes={"end_date": current.end_date + timedelta(days=days)},
                )
                if subscription is None:
                    raise StateConflictError("Subscription changed while granting")
            else:
                subscription = uow.subscriptions.create(
                    Subscription(
                        subscription_id=f"sub_{uuid4().hex}",
                        user_id=user_id,
                        status=SubscriptionStatus.ACTIVE,
                        start_date=now,
                        end_date=now + timedelta(days=days),
                        auto_renew=False,
                        plan=SubscriptionPlan.MONTHLY,
                        granted_by=granted_by,
                        created_at=now,
                        updated_at=now,
                    )
                )
            self._point_snapshot_at(uow, subscription)

        event_type = (
            SubscriptionAuditEventType.SUBSCRIPTION_EXTENDED
            if extended
            else SubscriptionAuditEventType.SUBSCRIPTION_GRANTED
        )
        self._audit(
            event_type,
            subscription,
            actor_id=granted_by,
            metadata={"duration_days": days, "end_date": subscription.end_date.isoformat()},
        )
        return SubscriptionGrant(subscription=subscription, extended=extended)

    def revoke(self, subscription_id: str, *, reason: str, revoked_by: Optional[str] = None) -> Subscription:
        with self._unit_of_work() as uow:
            subscription = self.revoke_in(uow, subscription_id, reason=reason)
        self._audit(
            SubscriptionAuditEventType.SUBSCRIPTION_REVOKED,
            subscription,
            actor_id=revoked_by,
            metadata={"reason": reason},
        )
        return subscription

    def revoke_in(self, uow: UnitOfWork, subscription_id: str, *, reason: str) -> Subscription:
        """Cancel a subscription inside an existing unit of work.

        Used directly by refunds so the refund and the revocation commit
        together. Callers are responsible for audit logging.
        """

        now = self.now()
        existing = uow.subscriptions.get(subscription_id, for_update=True)
        if existing is None:
            raise NotFoundError("Subscription not found", detail={"subscriptionId": subscription_id})
        if existing.status == SubscriptionStatus.CANCELLED:
            raise StateConflictError("Subscription is already cancelled")

        subscription = uow.subscriptions.update(
            subscription_id,
            expected=[SubscriptionStatus.ACTIVE, SubscriptionStatus.EXPIRED],
            changes={
                "status": SubscriptionStatus.CANCELLED,
                "auto_renew": False,
                "cancelled_at": now,
                "cancel_reason": reason,
            },
        )
        if subscription is None:
            raise StateConflictError(
                f"Cannot revoke a {existing.status.value} subscription",
                detail={"subscriptionId": subscription_id},
            )

        snapshot = uow.subscriptions.get_snapshot(subscription.user_id, for_update=True)
        if snapshot is not None and snapshot.current_subscription_id == subscription_id:
            uow.subscriptions.save_snapshot(
                snapshot.model_copy(
                    update={
                        "subscription_status": EntitlementStatus.EXPIRED,
                        "grace_period_ends_at": None,
                    }
                )
            )
        return subscription

    # ------------------------------------------------------------------
    # User-facing auto-renew cancellation
    # ------------------------------------------------------------------
    def cancel_auto_renew(
        self,
        subscription_id: str,
        *,
        reason: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Subscription:
        """Stop renewal while keeping the paid period intact."""

        now = self.now()
        cancel_reason = reason or "User requested cancellation"
        with self._unit_of_work() as uow:
            existing = uow.subscriptions.get(subscription_id, for_update=True)
            if existing is None:
                raise NotFoundError("Subscription not found", detail={"subscriptionId": subscription_id})
            if not existing.auto_renew:
                raise StateConflictError("Auto-renewal is already disabled")
            subscription = uow.subscriptions.update(
                subscription_id,
                expected=[existing.status],
                changes={"auto_renew": False, "cancelled_at": now, "cancel_reason": cancel_reason},
            )
            if subscription is None:
                raise StateConflictError("Subscription changed while cancelling auto-renewal")

        self._audit(
            SubscriptionAuditEventType.AUTO_RENEW_CANCELLED,
            subscription,
            actor_id=actor_id,
            metadata={"reason": cancel_reason},
        )
        return subscription

    def cancel_current_auto_renew(self, user_id: str, *, reason: Optional[str] = None) -> Subscription:
        snapshot = self.get_snapshot(user_id)
        if not snapshot.current_subscription_id:
            raise NotFoundError("No active subscription found")
        return self.cancel_auto_renew(snapshot.current_subscription_id, reason=reason, actor_id=user_id)

    # ------------------------------------------------------------------
    # Expiry steps driven by the scheduler
    # ------------------------------------------------------------------
    def list_due_for_expiry(
        self, now: datetime, *, after: Optional[str] = None, limit: int = 500
    ) -> List[Subscription]:
        with self._unit_of_work() as uow:
            return uow.subscriptions.list_due_for_expiry(now, after=after, limit=limit)

    def list_grace_expired_users(self, now: datetime, *, after: Optional[str] = None, limit: int = 500) -> List[str]:
        with self._unit_of_work() as uow:
            return uow.subscriptions.list_grace_expired_users(now, after=after, limit=limit)

    def expire_subscription(self, subscription_id: str, now: datetime) -> Optional[Subscription]:
        """Move an ended subscription to ``expired`` and open the grace period.

        Returns ``None`` when another writer already changed the row.
        """

        grace_ends_at = now + timedelta(days=self._config.grace_period_days)
        with self._unit_of_work() as uow:
            subscription = uow.subscriptions.update(
                subscription_id,
                expected=[SubscriptionStatus.ACTIVE],
                changes={"status": SubscriptionStatus.EXPIRED, "grace_period_started": now},
                ends_at_or_before=now,
            )
            if subscription is None:
                return None
            snapshot = uow.subscriptions.get_snapshot(subscription.user_id, for_update=True)
            if snapshot is not None and snapshot.current_subscription_id == subscription_id:
                uow.subscriptions.save_snapshot(
                    snapshot.model_copy(
                        update={
                            "subscription_status": EntitlementStatus.GRACE_PERIOD,
                            "grace_period_ends_at": grace_ends_at,
                        }
                    )
                )

        self._audit(
            SubscriptionAuditEventType.SUBSCRIPTION_EXPIRED,
            subscription,
            metadata={"grace_period_ends_at": grace_ends_at.isoformat()},
        )
        return subscription

    def expire_grace_period(self, user_id: str, now: datetime) -> Optional[EntitlementSnapshot]:
        with self._unit_of_work() as uow:
            snapshot = uow.subscriptions.expire_grace_snapshot(user_id, now)
        if snapshot is not None:
            self._audit_event(
                SubscriptionAuditEvent(
                    event_type=SubscriptionAuditEventType.GRACE_PERIOD_EXPIRED,
                    user_id=user_id,
                    subscription_id=snapshot.current_subscription_id,
                )
            )
        return snapshot

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_snapshot(self, user_id: str) -> EntitlementSnapshot:
        with self._unit_of_work() as uow:
            snapshot = uow.subscriptions.get_snapshot(user_id)
        return snapshot or EntitlementSnapshot(user_id=user_id)

    def get_subscription(self, subscription_id: str) -> Subscription:
        with self._unit_of_work() as uow:
            subscription = uow.subscriptions.get(subscription_id)
        if subscription is None:
            raise NotFoundError("Subscription not found", detail={"subscriptionId": subscription_id})
        return subscription

    def get_status(self, user_id: str, *, now: Optional[datetime] = None) -> SubscriptionOverview:
        current_time = now or self.now()
        with self._unit_of_work() as uow:
            snapshot = uow.subscriptions.get_snapshot(user_id) or EntitlementSnapshot(user_id=user_id)
            subscription = None
            if snapshot.current_subscription_id:
                subscription = uow.subscriptions.get(snapshot.current_subscription_id)

        return SubscriptionOverview(
            snapshot=snapshot,
            has_active_subscription=snapshot.has_active_subscription(current_time),
            is_in_grace_period=snapshot.is_in_grace_period(current_time),
            subscription=subscription,
            days_remaining=subscription.days_remaining(current_time) if subscription else None,
        )

    def list_history(self, user_id: str, *, page: int = 1, limit: int = 10) -> SubscriptionPage:
        offset, size = page_bounds(page, limit)
        with self._unit_of_work() as uow:
            items, total = uow.subscriptions.list_for_user(user_id, offset=offset, limit=size)
        return SubscriptionPage(items=items, total=total)

    def list_subscriptions(
        self,
        filters: Optional[SubscriptionFilters] = None,
        *,
        page: int = 1,
        limit: int = 20,
    ) -> SubscriptionPage:
        offset, size = page_bounds(page, limit)
        with self._unit_of_work() as uow:
            items, total = uow.subscriptions.list_all(filters or SubscriptionFilters(), offset=offset, limit=size)
            counts = uow.subscriptions.count_by_status()
        return SubscriptionPage(items=items, total=total, status_counts=counts)

    def get_statistics(
        self,
        *,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> SubscriptionStatistics:
        current_time = now or self.now()
        with self._unit_of_work() as uow:
            subscriptions = uow.subscriptions
            return SubscriptionStatistics(
                active=subscriptions.count(status=SubscriptionStatus.ACTIVE, ends_after=current_time),
                expired=subscriptions.count(status=SubscriptionStatus.EXPIRED),
                grace_period=subscriptions.count_snapshots(EntitlementStatus.GRACE_PERIOD),
                new=subscriptions.count(created_since=since, created_until=until),
                churned=subscriptions.count(
                    status=SubscriptionStatus.EXPIRED,
                    updated_since=current_time - _CHURN_WINDOW,
                ),
                revenue=uow.transactions.revenue_by_currency(since=since, until=until),
            )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _point_snapshot_at(self, uow: UnitOfWork, subscription: Subscription) -> EntitlementSnapshot:
        return uow.subscriptions.save_snapshot(
            EntitlementSnapshot(
                user_id=subscription.user_id,
                subscription_status=EntitlementStatus.ACTIVE,
                current_subscription_id=subscription.subscription_id,
                subscription_expires_at=subscription.end_date,
                grace_period_ends_at=None,
            )
        )

    def _audit(
        self,
        event_type: SubscriptionAuditEventType,
        subscription: Subscription,
        *,
        transaction_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> None:
        self._audit_event(
            SubscriptionAuditEvent(
                event_type=event_type,
                user_id=subscription.user_id,
                subscription_id=subscription.subscription_id,
                transaction_id=transaction_id,
                actor_id=actor_id,
                metadata=metadata or {},
                occurred_at=self.now(),
            )
        )

    def _audit_event(self, event: SubscriptionAuditEvent) -> None:
        self._audit_logger.log(event)


__all__ = ["AuditLogger", "SubscriptionManager"]
