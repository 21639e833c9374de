"""Persistence layer for payment transactions."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

import psycopg2
import psycopg2.extras

from ..db import PostgresRepository
from ..exceptions import PaymentInProgressError, StateConflictError
from .models import (
    ALLOWED_TRANSITIONS,
    Currency,
    GatewayPaymentRecord,
    RevenueSummary,
    Transaction,
    TransactionFilters,
    TransactionStatus,
)

# Columns a status transition is allowed to touch besides ``status``.
MUTABLE_COLUMNS = frozenset(
    {
        "performed_at",
        "cancelled_at",
        "cancel_reason",
        "error_message",
        "error_code",
        "refunded_at",
        "refund_reason",
        "refunded_by",
        "gateway_payment",
    }
)

_OPEN_TRANSACTION_INDEX = "transactions_one_open_per_user"
_EXTERNAL_ID_INDEX = "transactions_external_transaction_id_key"


def check_transition(expected: Iterable[TransactionStatus], status: TransactionStatus) -> None:
    """Reject a compare-and-set whose target is not reachable from every expected state."""

    illegal = sorted(item.value for item in expected if status not in ALLOWED_TRANSITIONS[item])
    if illegal:
        raise StateConflictError(
            f"Transaction cannot move from {', '.join(illegal)} to {status.value}",
            detail={"fromStatuses": illegal, "toStatus": status.value},
        )


class TransactionStore(Protocol):
    """Persistence operations required by the payment flows.

    Every mutation is a compare-and-set: it applies only when the row is
    still in one of the ``expected`` states and returns ``None`` otherwise.
    """

    def create(self, transaction: Transaction) -> Transaction:
        ...

    def get(self, transaction_id: str, *, for_update: bool = False) -> Optional[Transaction]:
        ...

    def get_by_external_id(self, external_id: str, *, for_update: bool = False) -> Optional[Transaction]:
        ...

    def bind_external_id(
        self,
        transaction_id: str,
        external_id: str,
        *,
        received_at: datetime,
    ) -> Optional[Transaction]:
        ...

    def transition(
        self,
        transaction_id: str,
        *,
        expected: Sequence[TransactionStatus],
        status: TransactionStatus,
        changes: Optional[Dict[str, Any]] = None,
    ) -> Optional[Transaction]:
        ...

    def link_subscription(self, transaction_id: str, subscription_id: str) -> Optional[Transaction]:
        ...

    def find_open_for_user(self, user_id: str) -> Optional[Transaction]:
        ...

    def list_for_user(
        self,
        user_id: str,
        *,
        status: Optional[TransactionStatus] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Transaction], int]:
        ...

    def list_all(
        self,
        filters: TransactionFilters,
        *,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Transaction], int]:
        ...

    def revenue_by_currency(
        self,
        *,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[RevenueSummary]:
        ...

    def list_stale_pending(
        self, cutoff: datetime, *, after: Optional[str] = None, limit: int = 500
    ) -> List[Transaction]:
        ...


def _row_to_transaction(row: dict) -> Transaction:
    gateway_payment = row.get("gateway_payment")
    return Transaction(
        transaction_id=row["transaction_id"],
        user_id=row["user_id"],
        amount=int(row["amount"]),
        currency=Currency(row["currency"]),
        status=TransactionStatus(row["status"]),
        subscription_id=row.get("subscription_id"),
        external_transaction_id=row.get("external_transaction_id"),
        webhook_received=bool(row.get("webhook_received")),
        webhook_received_at=row.get("webhook_received_at"),
        performed_at=row.get("performed_at"),
        cancelled_at=row.get("cancelled_at"),
        cancel_reason=row.get("cancel_reason"),
        error_message=row.get("error_message"),
        error_code=row.get("error_code"),
        refunded_at=row.get("refunded_at"),
        refund_reason=row.get("refund_reason"),
        refunded_by=row.get("refunded_by"),
        gateway_payment=GatewayPaymentRecord(**gateway_payment) if gateway_payment else None,
        ip_address=row.get("ip_address"),
        user_agent=row.get("user_agent"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _adapt(column: str, value: Any) -> Any:
    if column == "gateway_payment" and value is not None:
        if isinstance(value, GatewayPaymentRecord):
            value = value.model_dump(mode="json")
        return psycopg2.extras.Json(value)
    return value


def _where(filters: TransactionFilters) -> Tuple[str, List[Any]]:
    clauses: List[str] = []
    params: List[Any] = []
    if filters.status is not None:
        clauses.append("status = %s")
        params.append(filters.status.value)
    if filters.user_id:
        clauses.append("user_id = %s")
        params.append(filters.user_id)
    if filters.currency is not None:
        clauses.append("currency = %s")
        params.append(filters.currency.value)
    sql = ("WHERE " + " AND ".join(clauses)) if clauses else ""
    return sql, params


def _statuses(values: Iterable[TransactionStatus]) -> List[str]:
    return [value.value for value in values]


class PostgresTransactionRepository(PostgresRepository):
    """Concrete repository persisting transactions in PostgreSQL."""

    def create(self, transaction: Transaction) -> Transaction:
        try:
            with self._cursor() as cursor:
                cursor.execute(
                    """
                    INSERT INTO transactions (
                        transaction_id,
                        user_id,
                        amount,
                        currency,
                        status,
                        ip_address,
                        user_agent,
                        created_at,
                        updated_at
                    )
                    VALUES (%(transaction_id)s, %(user_id)s, %(amount)s, %(currency)s,
                            %(status)s, %(ip_address)s, %(user_agent)s,
                            %(created_at)s, %(updated_at)s)
                    RETURNING *
                    """,
                    {
                        "transaction_id": transaction.transaction_id,
                        "user_id": transaction.user_id,
                        "amount": transaction.amount,
                        "currency": transaction.currency.value,
                        "status": transaction.status.value,
                        "ip_address": transaction.ip_address,
                        "user_agent": transaction.user_agent,
                        "created_at": transaction.created_at,
                        "updated_at": transaction.updated_at,
                    },
                )
                row = cursor.fetchone()
        except psycopg2.IntegrityError as exc:
            if _OPEN_TRANSACTION_INDEX in str(exc):
                raise PaymentInProgressError() from exc
            raise
        if not row:
            raise RuntimeError("Failed to persist transaction")
        return _row_to_transaction(row)

    def get(self, transaction_id: str, *, for_update: bool = False) -> Optional[Transaction]:
        lock = " FOR UPDATE" if for_update else ""
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM transactions WHERE transaction_id = %s LIMIT 1" + lock,
                (transaction_id,),
            )
            row = cursor.fetchone()
            return _row_to_transaction(row) if row else None

    def get_by_external_id(self, external_id: str, *, for_update: bool = False) -> Optional[Transaction]:
        lock = " FOR UPDATE" if for_update else ""
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM transactions WHERE external_transaction_id = %s LIMIT 1" + lock,
                (external_id,),
            )
            row = cursor.fetchone()
            return _row_to_transaction(row) if row else None

    def bind_external_id(
        self,
        transaction_id: str,
        external_id: str,
        *,
        received_at: datetime,
    ) -> Optional[Transaction]:
        try:
            with self._cursor() as cursor:
                cursor.execute(
                    """
                    UPDATE transactions
                    SET external_transaction_id = %s,
                        status = %s,
                        webhook_received = TRUE,
                        webhook_received_at = %s,
                        updated_at = NOW()
                    WHERE transaction_id = %s
                      AND status = %s
                      AND external_transaction_id IS NULL
                    RETURNING *
                    """,
                    (
                        external_id,
                        TransactionStatus.PROCESSING.value,
                        received_at,
                        transaction_id,
                        TransactionStatus.PENDING.value,
                    ),
                )
                row = cursor.fetchone()
        except psycopg2.IntegrityError as exc:
            if _EXTERNAL_ID_INDEX in str(exc):
                raise StateConflictError(
                    "Gateway transaction is already bound to another payment"
                ) from exc
            raise
        return _row_to_transaction(row) if row else None

    def transition(
        self,
        transaction_id: str,
        *,
        expected: Sequence[TransactionStatus],
        status: TransactionStatus,
        changes: Optional[Dict[str, Any]] = None,
    ) -> Optional[Transaction]:
        updates = dict(changes or {})
        unknown = set(updates) - MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"Unsupported transaction columns: {sorted(unknown)}")
        check_transition(expected, status)

        assignments = ["status = %s", "updated_at = NOW()"]
        params: List[Any] = [status.value]
        for column, value in sorted(updates.items()):
            assignments.append(f"{column} = %s")
            params.append(_adapt(column, value))
        params.extend([transaction_id, _statuses(expected)])

        with self._cursor() as cursor:
            cursor.execute(
                f"""
                UPDATE transactions
                SET {", ".join(assignments)}
                WHERE transaction_id = %s AND status = ANY(%s)
                RETURNING *
                """,
                params,
            )
            row = cursor.fetchone()
            return _row_to_transaction(row) if row else None

    def link_subscription(self, transaction_id: str, subscription_id: str) -> Optional[Transaction]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE transactions
                SET subscription_id = %s, updated_at = NOW()
                WHERE transaction_id = %s
                  AND status = %s
                  AND subscription_id IS NULL
                RETURNING *
                """,
                (subscription_id, transaction_id, TransactionStatus.COMPLETED.value),
            )
            row = cursor.fetchone()
            return _row_to_transaction(row) if row else None

    def find_open_for_user(self, user_id: str) -> Optional[Transaction]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM transactions
                WHERE user_id = %s AND status = ANY(%s)
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (user_id, _statuses([TransactionStatus.PENDING, TransactionStatus.PROCESSING])),
            )
            row = cursor.fetchone()
            return _row_to_transaction(row) if row else None

    def list_for_user(
        self,
        user_id: str,
        *,
        status: Optional[TransactionStatus] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Transaction], int]:
        return self.list_all(TransactionFilters(user_id=user_id, status=status), offset=offset, limit=limit)

    def list_all(
        self,
        filters: TransactionFilters,
        *,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Transaction], int]:
        where, params = _where(filters)
        with self._cursor() as cursor:
            cursor.execute(f"SELECT COUNT(*) AS total_count FROM transactions {where}", params)
            total = int((cursor.fetchone() or {"total_count": 0})["total_count"])
            cursor.execute(
                f"""
                SELECT *
                FROM transactions
                {where}
                ORDER BY created_at DESC
                OFFSET %s LIMIT %s
                """,
                [*params, offset, limit],
            )
            rows = cursor.fetchall() or []
            return [_row_to_transaction(row) for row in rows], total

    def revenue_by_currency(
        self,
        *,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[RevenueSummary]:
        clauses = ["status = %s"]
        params: List[Any] = [TransactionStatus.COMPLETED.value]
        if since is not None:
            clauses.append("created_at >= %s")
            params.append(since)
        if until is not None:
            clauses.append("created_at <= %s")
            params.append(until)
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                SELECT currency, COALESCE(SUM(amount), 0) AS total_amount, COUNT(*) AS count
                FROM transactions
                WHERE {" AND ".join(clauses)}
                GROUP BY currency
                ORDER BY currency
                """,
                params,
            )
            rows = cursor.fetchall() or []
            return [
                RevenueSummary(
                    currency=Currency(row["currency"]),
                    total_amount=int(row["total_amount"]),
                    count=int(row["count"]),
                )
                for row in rows
            ]

    def list_stale_pending(
        self, cutoff: datetime, *, after: Optional[str] = None, limit: int = 500
    ) -> List[Transaction]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM transactions
                WHERE status = %s
                  AND external_transaction_id IS NULL
                  AND created_at < %s
                  AND (%s::text IS NULL OR transaction_id > %s)
                ORDER BY transaction_id
                LIMIT %s
                """,
                (TransactionStatus.PENDING.value, cutoff, after, after, limit),
            )
            rows = cursor.fetchall() or []
            return [_row_to_transaction(row) for row in rows]


__all__ = ["MUTABLE_COLUMNS", "PostgresTransactionRepository", "TransactionStore", "check_transition"]
