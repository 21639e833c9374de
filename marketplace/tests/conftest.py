"""Shared in-memory stores and fixtures for the payment and subscription tests."""
from __future__ import annotations

import json
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import pytest

from marketplace.app.config import load_payment_config, load_subscription_config
from marketplace.app.entitlements import EntitlementSnapshot, EntitlementStatus
from marketplace.app.exceptions import (
    NotFoundError,
    PaymentInProgressError,
    StateConflictError,
)
from marketplace.app.payments import (
    RevenueSummary,
    Transaction,
    TransactionFilters,
    TransactionStatus,
)
from marketplace.app.payments import repository as payment_repository
from marketplace.app.payments.gateway import PaymentGatewayClient
from marketplace.app.payments.service import PaymentService
from marketplace.app.payments.webhook import WebhookProcessor
from marketplace.app.subscriptions import (
    Subscription,
    SubscriptionAuditEvent,
    SubscriptionFilters,
    SubscriptionStatus,
)
from marketplace.app.subscriptions import repository as subscription_repository
from marketplace.app.subscriptions.service import SubscriptionManager
from marketplace.app.unit_of_work import UnitOfWork

START = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
SECRET = "test-secret"


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class InMemoryDatabase:
    """Dict-backed storage with all-or-nothing units of work.

    A unit of work holds a re-entrant lock for its whole duration, which
    plays the part of row locks taken with ``SELECT ... FOR UPDATE``.
    """

    def __init__(self, clock: FixedClock) -> None:
        self.clock = clock
        self.lock = threading.RLock()
        self.transactions: Dict[str, Transaction] = {}
        self.subscriptions: Dict[str, Subscription] = {}
        self.users: Dict[str, EntitlementSnapshot] = {}
        self.failures: Dict[str, Exception] = {}
        self.commits = 0

    def add_user(self, user_id: str, **snapshot: Any) -> str:
        self.users[user_id] = EntitlementSnapshot(user_id=user_id, **snapshot)
        return user_id

    def fail(self, operation: str, error: Exception) -> None:
        self.failures[operation] = error

    def check(self, operation: str) -> None:
        error = self.failures.get(operation)
        if error is not None:
            raise error

    @contextmanager
    def unit_of_work(self) -> Iterator[UnitOfWork]:
        with self.lock:
            saved = (dict(self.transactions), dict(self.subscriptions), dict(self.users))
            try:
                yield UnitOfWork(
                    transactions=InMemoryTransactionStore(self),
                    subscriptions=InMemorySubscriptionStore(self),
                )
            except BaseException:
                for target, snapshot in zip((self.transactions, self.subscriptions, self.users), saved):
                    target.clear()
                    target.update(snapshot)
                raise
            self.commits += 1


class InMemoryTransactionStore:
    def __init__(self, db: InMemoryDatabase) -> None:
        self._db = db

    def _save(self, transaction: Transaction, **changes: Any) -> Transaction:
        updated = transaction.model_copy(update={**changes, "updated_at": self._db.clock()})
        self._db.transactions[updated.transaction_id] = updated
        return updated

    def create(self, transaction: Transaction) -> Transaction:
        self._db.check("transactions.create")
        if transaction.status.is_open and self.find_open_for_user(transaction.user_id) is not None:
            raise PaymentInProgressError()
        self._db.transactions[transaction.transaction_id] = transaction
        return transaction

    def get(self, transaction_id: str, *, for_update: bool = False) -> Optional[Transaction]:
        self._db.check("transactions.get")
        return self._db.transactions.get(transaction_id)

    def get_by_external_id(self, external_id: str, *, for_update: bool = False) -> Optional[Transaction]:
        for transaction in self._db.transactions.values():
            if transaction.external_transaction_id == external_id:
                return transaction
        return None

    def bind_external_id(
        self,
        transaction_id: str,
        external_id: str,
        *,
        received_at: datetime,
    ) -> Optional[Transaction]:
        owner = self.get_by_external_id(external_id)
        if owner is not None and owner.transaction_id != transaction_id:
            raise StateConflictError("Gateway transaction is already bound to another payment")
        transaction = self.get(transaction_id)
        if (
            transaction is None
            or transaction.status != TransactionStatus.PENDING
            or transaction.external_transaction_id is not None
        ):
            return None
        return self._save(
            transaction,
            external_transaction_id=external_id,
            status=TransactionStatus.PROCESSING,
            webhook_received=True,
            webhook_received_at=received_at,
        )

    def transition(
        self,
        transaction_id: str,
        *,
        expected: Sequence[TransactionStatus],
        status: TransactionStatus,
        changes: Optional[Dict[str, Any]] = None,
    ) -> Optional[Transaction]:
        updates = dict(changes or {})
        unknown = set(updates) - payment_repository.MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"Unsupported transaction columns: {sorted(unknown)}")
        payment_repository.check_transition(expected, status)
        transaction = self.get(transaction_id)
        if transaction is None or transaction.status not in expected:
            return None
        return self._save(transaction, status=status, **updates)

    def link_subscription(self, transaction_id: str, subscription_id: str) -> Optional[Transaction]:
        self._db.check("transactions.link_subscription")
        transaction = self.get(transaction_id)
        if (
            transaction is None
            or transaction.status != TransactionStatus.COMPLETED
            or transaction.subscription_id is not None
        ):
            return None
        return self._save(transaction, subscription_id=subscription_id)

    def find_open_for_user(self, user_id: str) -> Optional[Transaction]:
        open_transactions = [
            item
            for item in self._db.transactions.values()
            if item.user_id == user_id and item.status.is_open
        ]
        open_transactions.sort(key=lambda item: item.created_at, reverse=True)
        return open_transactions[0] if open_transactions else None

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
        matching = [
            item
            for item in self._db.transactions.values()
            if (filters.status is None or item.status == filters.status)
            and (not filters.user_id or item.user_id == filters.user_id)
            and (filters.currency is None or item.currency == filters.currency)
        ]
        matching.sort(key=lambda item: item.created_at, reverse=True)
        return matching[offset : offset + limit], len(matching)

    def revenue_by_currency(
        self,
        *,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[RevenueSummary]:
        totals: Dict[Any, List[int]] = {}
        for item in self._db.transactions.values():
            if item.status != TransactionStatus.COMPLETED:
                continue
            if since is not None and item.created_at < since:
                continue
            if until is not None and item.created_at > until:
                continue
            bucket = totals.setdefault(item.currency, [0, 0])
            bucket[0] += item.amount
            bucket[1] += 1
        return [
            RevenueSummary(currency=currency, total_amount=amount, count=count)
            for currency, (amount, count) in sorted(totals.items(), key=lambda pair: pair[0].value)
        ]

    def list_stale_pending(
        self, cutoff: datetime, *, after: Optional[str] = None, limit: int = 500
    ) -> List[Transaction]:
        stale = [
            item
            for item in self._db.transactions.values()
            if item.status == TransactionStatus.PENDING
            and item.external_transaction_id is None
            and item.created_at < cutoff
            and (after is None or item.transaction_id > after)
        ]
        stale.sort(key=lambda item: item.transaction_id)
        return stale[:limit]


class InMemorySubscriptionStore:
    def __init__(self, db: InMemoryDatabase) -> None:
        self._db = db

    def create(self, subscription: Subscription) -> Subscription:
        self._db.check("subscriptions.create")
        self._db.subscriptions[subscription.subscription_id] = subscription
        return subscription

    def get(self, subscription_id: str, *, for_update: bool = False) -> Optional[Subscription]:
        return self._db.subscriptions.get(subscription_id)

    def update(
        self,
        subscription_id: str,
        *,
        expected: Sequence[SubscriptionStatus],
        changes: Dict[str, Any],
        ends_at_or_before: Optional[datetime] = None,
    ) -> Optional[Subscription]:
        self._db.check("subscriptions.update")
        unknown = set(changes) - subscription_repository.MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"Unsupported subscription columns: {sorted(unknown)}")
        subscription = self.get(subscription_id)
        if subscription is None or subscription.status not in expected:
            return None
        if ends_at_or_before is not None and subscription.end_date > ends_at_or_before:
            return None
        updated = subscription.model_copy(update={**changes, "updated_at": self._db.clock()})
        self._db.subscriptions[subscription_id] = updated
        return updated

    def list_for_user(self, user_id: str, *, offset: int = 0, limit: int = 10) -> Tuple[List[Subscription], int]:
        return self.list_all(SubscriptionFilters(user_id=user_id), offset=offset, limit=limit)

    def list_all(
        self,
        filters: SubscriptionFilters,
        *,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Subscription], int]:
        matching = [
            item
            for item in self._db.subscriptions.values()
            if (filters.status is None or item.status == filters.status)
            and (not filters.user_id or item.user_id == filters.user_id)
        ]
        matching.sort(key=lambda item: item.created_at, reverse=True)
        return matching[offset : offset + limit], len(matching)

    def count_by_status(self) -> Dict[SubscriptionStatus, int]:
        counts: Dict[SubscriptionStatus, int] = {}
        for item in self._db.subscriptions.values():
            counts[item.status] = counts.get(item.status, 0) + 1
        return counts

    def count(
        self,
        *,
        status: Optional[SubscriptionStatus] = None,
        ends_after: Optional[datetime] = None,
        created_since: Optional[datetime] = None,
        created_until: Optional[datetime] = None,
        updated_since: Optional[datetime] = None,
    ) -> int:
        return sum(
            1
            for item in self._db.subscriptions.values()
            if (status is None or item.status == status)
            and (ends_after is None or item.end_date > ends_after)
            and (created_since is None or item.created_at >= created_since)
            and (created_until is None or item.created_at <= created_until)
            and (updated_since is None or item.updated_at >= updated_since)
        )

    def list_due_for_expiry(
        self, now: datetime, *, after: Optional[str] = None, limit: int = 500
    ) -> List[Subscription]:
        due = [
            item
            for item in self._db.subscriptions.values()
            if item.status == SubscriptionStatus.ACTIVE
            and item.end_date <= now
            and (after is None or item.subscription_id > after)
        ]
        due.sort(key=lambda item: item.subscription_id)
        return due[:limit]

    def get_snapshot(self, user_id: str, *, for_update: bool = False) -> Optional[EntitlementSnapshot]:
        return self._db.users.get(user_id)

    def save_snapshot(self, snapshot: EntitlementSnapshot) -> EntitlementSnapshot:
        self._db.check("subscriptions.save_snapshot")
        if snapshot.user_id not in self._db.users:
            raise NotFoundError("User not found", detail={"userId": snapshot.user_id})
        self._db.users[snapshot.user_id] = snapshot
        return snapshot

    def expire_grace_snapshot(self, user_id: str, now: datetime) -> Optional[EntitlementSnapshot]:
        snapshot = self._db.users.get(user_id)
        if (
            snapshot is None
            or snapshot.subscription_status != EntitlementStatus.GRACE_PERIOD
            or snapshot.grace_period_ends_at is None
            or snapshot.grace_period_ends_at > now
        ):
            return None
        updated = snapshot.model_copy(
            update={"subscription_status": EntitlementStatus.EXPIRED, "grace_period_ends_at": None}
        )
        self._db.users[user_id] = updated
        return updated

    def list_grace_expired_users(
        self, now: datetime, *, after: Optional[str] = None, limit: int = 500
    ) -> List[str]:
        expired = [
            snapshot
            for snapshot in self._db.users.values()
            if snapshot.subscription_status == EntitlementStatus.GRACE_PERIOD
            and snapshot.grace_period_ends_at is not None
            and snapshot.grace_period_ends_at <= now
            and (after is None or snapshot.user_id > after)
        ]
        expired.sort(key=lambda snapshot: snapshot.user_id)
        return [snapshot.user_id for snapshot in expired[:limit]]

    def count_snapshots(self, status: EntitlementStatus) -> int:
        return sum(1 for snapshot in self._db.users.values() if snapshot.subscription_status == status)


class RecordingAuditLogger:
    def __init__(self) -> None:
        self.events: List[SubscriptionAuditEvent] = []

    def log(self, event: SubscriptionAuditEvent) -> None:
        self.events.append(event)

    def types(self) -> List[str]:
        return [event.event_type.value for event in self.events]


class RecordingAlerter:
    def __init__(self) -> None:
        self.errors: List[Exception] = []

    def activation_failed(self, error: Exception) -> None:
        self.errors.append(error)


class FakeGatewayResponse:
    def __init__(self, body: bytes) -> None:
        self._body = body

    def read(self) -> bytes:
        return self._body

    def __enter__(self) -> "FakeGatewayResponse":
        return self

    def __exit__(self, *exc_info: Any) -> bool:
        return False


class FakeOpener:
    """Stands in for ``urllib.request.urlopen`` and records outbound calls."""

    def __init__(self) -> None:
        self.requests: List[Any] = []
        self.timeouts: List[Optional[float]] = []
        self.payload: Any = {"jsonrpc": "2.0", "id": "1", "result": {}}
        self.error: Optional[Exception] = None

    def __call__(self, request: Any, timeout: Optional[float] = None) -> FakeGatewayResponse:
        self.requests.append(request)
        self.timeouts.append(timeout)
        if self.error is not None:
            raise self.error
        body = self.payload if isinstance(self.payload, bytes) else json.dumps(self.payload).encode("utf-8")
        return FakeGatewayResponse(body)

    def sent_json(self, index: int = -1) -> Dict[str, Any]:
        return json.loads(self.requests[index].data.decode("utf-8"))


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(START)


@pytest.fixture
def database(clock: FixedClock) -> InMemoryDatabase:
    return InMemoryDatabase(clock)


@pytest.fixture
def user_id(database: InMemoryDatabase) -> str:
    return database.add_user("user-1")


@pytest.fixture
def audit_log() -> RecordingAuditLogger:
    return RecordingAuditLogger()


@pytest.fixture
def alerter() -> RecordingAlerter:
    return RecordingAlerter()


@pytest.fixture
def subscription_config():
    return load_subscription_config({})


@pytest.fixture
def payment_config():
    return load_payment_config(
        {
            "PAYMENT_GATEWAY_MERCHANT_ID": "merchant-1",
            "PAYMENT_GATEWAY_SECRET_KEY": SECRET,
            "PAYMENT_GATEWAY_CALLBACK_URL": "https://market.example/api/payments/gateway/callback",
            "PAYMENT_GATEWAY_TEST_MODE": "true",
            "FRONTEND_URL": "https://market.example",
        }
    )


@pytest.fixture
def opener() -> FakeOpener:
    return FakeOpener()


@pytest.fixture
def gateway(payment_config, opener: FakeOpener) -> PaymentGatewayClient:
    return PaymentGatewayClient(payment_config, opener=opener)


@pytest.fixture
def manager(database, audit_log, subscription_config, clock) -> SubscriptionManager:
    return SubscriptionManager(
        unit_of_work=database.unit_of_work,
        audit_logger=audit_log,
        config=subscription_config,
        clock=clock,
    )


@pytest.fixture
def payment_service(database, gateway, manager, audit_log, subscription_config, clock) -> PaymentService:
    return PaymentService(
        unit_of_work=database.unit_of_work,
        gateway=gateway,
        subscriptions=manager,
        audit_logger=audit_log,
        config=subscription_config,
        clock=clock,
    )


@pytest.fixture
def processor(database, payment_config, manager, alerter, clock) -> WebhookProcessor:
    return WebhookProcessor(
        config=payment_config,
        unit_of_work=database.unit_of_work,
        activator=manager,
        alerter=alerter,
        initiation_ttl=timedelta(minutes=15),
        clock=clock,
    )


@pytest.fixture
def pending_transaction(database, user_id, clock) -> Transaction:
    transaction = Transaction(
        transaction_id="txn-1",
        user_id=user_id,
        amount=1_200_000,
        currency="UZS",
        status=TransactionStatus.PENDING,
        created_at=clock(),
        updated_at=clock(),
    )
    database.transactions[transaction.transaction_id] = transaction
    return transaction
