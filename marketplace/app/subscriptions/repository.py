"""Persistence layer for subscriptions and the user entitlement snapshot."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from ..db import PostgresRepository
from ..entitlements.models import EntitlementSnapshot, EntitlementStatus
from ..exceptions import NotFoundError
from .models import (
    Subscription,
    SubscriptionFilters,
    SubscriptionPlan,
    SubscriptionStatus,
)

MUTABLE_COLUMNS = frozenset(
    {
        "status",
        "end_date",
        "auto_renew",
        "grace_period_started",
        "cancelled_at",
        "cancel_reason",
    }
)


class SubscriptionStore(Protocol):
    """Persistence operations required by :class:`SubscriptionManager`."""

    def create(self, subscription: Subscription) -> Subscription:
        ...

    def get(self, subscription_id: str, *, for_update: bool = False) -> Optional[Subscription]:
        ...

    def update(
        self,
        subscription_id: str,
        *,
        expected: Sequence[SubscriptionStatus],
        changes: Dict[str, Any],
        ends_at_or_before: Optional[datetime] = None,
    ) -> Optional[Subscription]:
        ...

    def list_for_user(self, user_id: str, *, offset: int = 0, limit: int = 10) -> Tuple[List[Subscription], int]:
        ...

    def list_all(
        self,
        filters: SubscriptionFilters,
        *,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Subscription], int]:
        ...

    def count_by_status(self) -> Dict[SubscriptionStatus, int]:
        ...

    def count(
        self,
        *,
        status: Optional[SubscriptionStatus] = None,
        ends_after: Optional[datetime] = None,
        created_since: Optional[datetime] = None,
        created_until: Optional[datetime] = None,
        updated_since: Optional[datetime] = None,
    ) -> int:
        ...

    def list_due_for_expiry(
        self, now: datetime, *, after: Optional[str] = None, limit: int = 500
    ) -> List[Subscription]:
        ...

    def get_snapshot(self, user_id: str, *, for_update: bool = False) -> Optional[EntitlementSnapshot]:
        ...

    def save_snapshot(self, snapshot: EntitlementSnapshot) -> EntitlementSnapshot:
        ...

    def expire_grace_snapshot(self, user_id: str, now: datetime) -> Optional[EntitlementSnapshot]:
        ...

    def list_grace_expired_users(self, now: datetime, *, after: Optional[str] = None, limit: int = 500) -> List[str]:
        ...

    def count_snapshots(self, status: EntitlementStatus) -> int:
        ...


def _row_to_subscription(row: dict) -> Subscription:
    return Subscription(
        subscription_id=row["subscription_id"],
        user_id=row["user_id"],
        status=SubscriptionStatus(row["status"]),
        start_date=row["start_date"],
        end_date=row["end_date"],
        auto_renew=bool(row["auto_renew"]),
        plan=SubscriptionPlan(row["plan"]),
        last_payment_id=row.get("last_payment_id"),
        grace_period_started=row.get("grace_period_started"),
        cancelled_at=row.get("cancelled_at"),
        cancel_reason=row.get("cancel_reason"),
        granted_by=row.get("granted_by"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_snapshot(row: dict) -> EntitlementSnapshot:
    return EntitlementSnapshot(
        user_id=row["id"],
        subscription_status=EntitlementStatus(row.get("subscription_status") or EntitlementStatus.NONE.value),
        current_subscription_id=row.get("current_subscription_id"),
        subscription_expires_at=row.get("subscription_expires_at"),
        grace_period_ends_at=row.get("grace_period_ends_at"),
    )


def _where(filters: SubscriptionFilters) -> Tuple[str, List[Any]]:
    clauses: List[str] = []
    params: List[Any] = []
    if filters.status is not None:
        clauses.append("status = %s")
        params.append(filters.status.value)
    if filters.user_id:
        clauses.append("user_id = %s")
        params.append(filters.user_id)
    sql = ("WHERE " + " AND ".join(clauses)) if clauses else ""
    return sql, params


def _adapt(value: Any) -> Any:
    if isinstance(value, SubscriptionStatus):
        return value.value
    return value


class PostgresSubscriptionRepository(PostgresRepository):
    """Concrete repository persisting subscriptions and snapshots in PostgreSQL."""

    def create(self, subscription: Subscription) -> Subscription:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO subscriptions (
                    subscription_id,
                    user_id,
                    status,
                    start_date,
                    end_date,
                    auto_renew,
                    plan,
                    last_payment_id,
                    granted_by,
                    created_at,
                    updated_at
                )
                VALUES (%(subscription_id)s, %(user_id)s, %(status)s, %(start_date)s,
                        %(end_date)s, %(auto_renew)s, %(plan)s, %(last_payment_id)s,
                        %(granted_by)s, %(created_at)s, %(updated_at)s)
                RETURNING *
                """,
                {
                    "subscription_id": subscription.subscription_id,
                    "user_id": subscription.user_id,
                    "status": subscription.status.value,
                    "start_date": subscription.start_date,
                    "end_date": subscription.end_date,
                    "auto_renew": subscription.auto_renew,
                    "plan": subscription.plan.value,
                    "last_payment_id": subscription.last_payment_id,
                    "granted_by": subscription.granted_by,
                    "created_at": subscription.created_at,
                    "updated_at": subscription.updated_at,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist subscription")
            return _row_to_subscription(row)

    def get(self, subscription_id: str, *, for_update: bool = False) -> Optional[Subscription]:
        lock = " FOR UPDATE" if for_update else ""
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM subscriptions WHERE subscription_id = %s LIMIT 1" + lock,
                (subscription_id,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def update(
        self,
        subscription_id: str,
        *,
        expected: Sequence[SubscriptionStatus],
        changes: Dict[str, Any],
        ends_at_or_before: Optional[datetime] = None,
    ) -> Optional[Subscription]:
        unknown = set(changes) - MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"Unsupported subscription columns: {sorted(unknown)}")

        assignments = ["updated_at = NOW()"]
        params: List[Any] = []
        for column, value in sorted(changes.items()):
            assignments.append(f"{column} = %s")
            params.append(_adapt(value))

        conditions = ["subscription_id = %s", "status = ANY(%s)"]
        params.extend([subscription_id, [status.value for status in expected]])
        if ends_at_or_before is not None:
            conditions.append("end_date <= %s")
            params.append(ends_at_or_before)

        with self._cursor() as cursor:
            cursor.execute(
                f"""
                UPDATE subscriptions
                SET {", ".join(assignments)}
                WHERE {" AND ".join(conditions)}
                RETURNING *
                """,
                params,
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def list_for_user(self, user_id: str, *, offset: int = 0, limit: int = 10) -> Tuple[List[Subscription], int]:
        return self.list_all(SubscriptionFilters(user_id=user_id), offset=offset, limit=limit)

    def list_all(
        self,
        filters: SubscriptionFilters,
        *,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Subscription], int]:
        where, params = _where(filters)
        with self._cursor() as cursor:
            cursor.execute(f"SELECT COUNT(*) AS total_count FROM subscriptions {where}", params)
            total = int((cursor.fetchone() or {"total_count": 0})["total_count"])
            cursor.execute(
                f"""
                SELECT *
                FROM subscriptions
                {where}
                ORDER BY created_at DESC
                OFFSET %s LIMIT %s
                """,
                [*params, offset, limit],
            )
            rows = cursor.fetchall() or []
            return [_row_to_subscription(row) for row in rows], total

    def count_by_status(self) -> Dict[SubscriptionStatus, int]:
        with self._cursor() as cursor:
            cursor.execute("SELECT status, COUNT(*) AS count FROM subscriptions GROUP BY status")
            rows = cursor.fetchall() or []
            return {SubscriptionStatus(row["status"]): int(row["count"]) for row in rows}

    def count(
        self,
        *,
        status: Optional[SubscriptionStatus] = None,
        ends_after: Optional[datetime] = None,
        created_since: Optional[datetime] = None,
        created_until: Optional[datetime] = None,
        updated_since: Optional[datetime] = None,
    ) -> int:
        clauses: List[str] = []
        params: List[Any] = []
        if status is not None:
            clauses.append("status = %s")
            params.append(status.value)
        if ends_after is not None:
            clauses.append("end_date > %s")
            params.append(ends_after)
        if created_since is not None:
            clauses.append("created_at >= %s")
            params.append(created_since)
        if created_until is not None:
            clauses.append("created_at <= %s")
            params.append(created_until)
        if updated_since is not None:
            clauses.append("updated_at >= %s")
            params.append(updated_since)
        where = ("WHERE " + " AND ".join(clauses)) if clauses else ""
        with self._cursor() as cursor:
            cursor.execute(f"SELECT COUNT(*) AS count FROM subscriptions {where}", params)
            row = cursor.fetchone() or {"count": 0}
            return int(row["count"])

    def list_due_for_expiry(
        self, now: datetime, *, after: Optional[str] = None, limit: int = 500
    ) -> List[Subscription]:
        """Ended active subscriptions ordered by id, starting after the ``after`` id."""

        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM subscriptions
                WHERE status = %s AND end_date <= %s
                  AND (%s::text IS NULL OR subscription_id > %s)
                ORDER BY subscription_id
                LIMIT %s
                """,
                (SubscriptionStatus.ACTIVE.value, now, after, after, limit),
            )
            rows = cursor.fetchall() or []
            return [_row_to_subscription(row) for row in rows]

    def get_snapshot(self, user_id: str, *, for_update: bool = False) -> Optional[EntitlementSnapshot]:
        lock = " FOR UPDATE" if for_update else ""
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT id, subscription_status, current_subscription_id,
                       subscription_expires_at, grace_period_ends_at
                FROM users
                WHERE id = %s
                LIMIT 1
                """
                + lock,
                (user_id,),
            )
            row = cursor.fetchone()
            return _row_to_snapshot(row) if row else None

    def save_snapshot(self, snapshot: EntitlementSnapshot) -> EntitlementSnapshot:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE users
                SET subscription_status = %s,
                    current_subscription_id = %s,
                    subscription_expires_at = %s,
                    grace_period_ends_at = %s
                WHERE id = %s
                RETURNING id, subscription_status, current_subscription_id,
                          subscription_expires_at, grace_period_ends_at
                """,
                (
                    snapshot.subscription_status.value,
                    snapshot.current_subscription_id,
                    snapshot.subscription_expires_at,
                    snapshot.grace_period_ends_at,
                    snapshot.user_id,
                ),
            )
            row = cursor.fetchone()
            if not row:
                raise NotFoundError("User not found", detail={"userId": snapshot.user_id})
            return _row_to_snapshot(row)

    def expire_grace_snapshot(self, user_id: str, now: datetime) -> Optional[EntitlementSnapshot]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE users
                SET subscription_status = %s,
                    grace_period_ends_at = NULL
                WHERE id = %s
                  AND subscription_status = %s
                  AND grace_period_ends_at <= %s
                RETURNING id, subscription_status, current_subscription_id,
                          subscription_expires_at, grace_period_ends_at
                """,
                (
                    EntitlementStatus.EXPIRED.value,
                    user_id,
                    EntitlementStatus.GRACE_PERIOD.value,
                    now,
                ),
            )
            row = cursor.fetchone()
            return _row_to_snapshot(row) if row else None

    def list_grace_expired_users(self, now: datetime, *, after: Optional[str] = None, limit: int = 500) -> List[str]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT id
                FROM users
                WHERE subscription_status = %s AND grace_period_ends_at <= %s
                  AND (%s::text IS NULL OR id > %s)
                ORDER BY id
                LIMIT %s
                """,
                (EntitlementStatus.GRACE_PERIOD.value, now, after, after, limit),
            )
            rows = cursor.fetchall() or []
            return [row["id"] for row in rows]

    def count_snapshots(self, status: EntitlementStatus) -> int:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT COUNT(*) AS count FROM users WHERE subscription_status = %s",
                (status.value,),
            )
            row = cursor.fetchone() or {"count": 0}
            return int(row["count"])


__all__ = ["MUTABLE_COLUMNS", "PostgresSubscriptionRepository", "SubscriptionStore"]
