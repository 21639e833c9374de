"""Payment initiation, history and administrative operations."""
from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple
from uuid import uuid4

from ..config import SubscriptionConfig
from ..db import page_bounds
from ..exceptions import (
    InvalidRequestError,
    NotFoundError,
    PaymentInProgressError,
    StateConflictError,
)
from ..subscriptions.models import (
    SubscriptionAuditEvent,
    SubscriptionAuditEventType,
    SubscriptionStatus,
)
from ..subscriptions.service import AuditLogger, SubscriptionManager
from ..unit_of_work import UnitOfWork, UnitOfWorkFactory
from .gateway import PaymentGatewayClient
from .models import (
    CallbackOutcome,
    Currency,
    GatewayTransactionState,
    InitiatedPayment,
    RevenueSummary,
    Transaction,
    TransactionFilters,
    TransactionStatus,
)

logger = logging.getLogger(__name__)

INITIATION_EXPIRED = "INITIATION_EXPIRED"
PAYMENT_URL_GENERATION_FAILED = "PAYMENT_URL_GENERATION_FAILED"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TransactionPage:
    items: List[Transaction]
    total: int
    revenue: List[RevenueSummary] = field(default_factory=list)


@dataclass
class StaleReapResult:
    reaped: int = 0
    failures: int = 0


@dataclass
class PaymentService:
    """Coordinates transactions with the gateway and the subscription manager."""

    unit_of_work: UnitOfWorkFactory
    gateway: PaymentGatewayClient
    subscriptions: SubscriptionManager
    audit_logger: AuditLogger
    config: SubscriptionConfig
    clock: Callable[[], datetime] = _now

    @property
    def initiation_ttl(self) -> timedelta:
        return timedelta(minutes=self.config.initiation_ttl_minutes)

    def price_for(self, currency: Currency) -> int:
        return self.config.price_usd if currency == Currency.USD else self.config.price_uzs

    # ------------------------------------------------------------------
    # User flows
    # ------------------------------------------------------------------
    def initiate_payment(
        self,
        user_id: str,
        currency: str = Currency.UZS.value,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> InitiatedPayment:
        """Open a pending transaction and return the gateway checkout URL.

        A user may hold only one open transaction. A pending transaction the
        gateway never picked up stops blocking once the initiation window has
        passed and is failed here.
        """

        try:
            selected = Currency(currency)
        except ValueError as exc:
            raise InvalidRequestError("Invalid currency. Use USD or UZS") from exc

        now = self.clock()
        with self.unit_of_work() as uow:
            open_transaction = uow.transactions.find_open_for_user(user_id)
            if open_transaction is not None:
                if not self._is_stale(open_transaction, now):
                    raise PaymentInProgressError()
                self._expire_initiation(uow, open_transaction, now)

            transaction = uow.transactions.create(
                Transaction(
                    transaction_id=f"txn_{uuid4().hex}",
                    user_id=user_id,
                    amount=self.price_for(selected),
                    currency=selected,
                    status=TransactionStatus.PENDING,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    created_at=now,
                    updated_at=now,
                )
            )

        try:
            payment_url = self.gateway.generate_payment_url(
                user_id=user_id,
                amount=transaction.amount,
                currency=transaction.currency,
                transaction_id=transaction.transaction_id,
            )
        except Exception as exc:
            logger.error(
                "Failed to generate payment URL for transaction %s",
                transaction.transaction_id,
                extra={"user_id": user_id, "error": str(exc)},
            )
            with self.unit_of_work() as uow:
                uow.transactions.transition(
                    transaction.transaction_id,
                    expected=[TransactionStatus.PENDING],
                    status=TransactionStatus.FAILED,
                    changes={
                        "error_message": str(exc),
                        "error_code": PAYMENT_URL_GENERATION_FAILED,
                    },
                )
            raise

        logger.info(
            "Initiated payment %s for user %s",
            transaction.transaction_id,
            user_id,
            extra={"amount": transaction.amount, "currency": transaction.currency.value},
        )
        return InitiatedPayment(
            transaction=transaction,
            payment_url=payment_url,
            expires_in=int(self.initiation_ttl.total_seconds()),
        )

    def resolve_callback(self, account_blob: Optional[str]) -> Tuple[CallbackOutcome, Optional[Transaction]]:
        """Map the gateway's browser redirect to a landing outcome."""

        try:
            decoded = base64.b64decode(account_blob or "", validate=True)
            account = json.loads(decoded.decode("utf-8"))
            user_id = str(account["user_id"])
            transaction_id = str(account["transaction_id"])
        except (binascii.Error, ValueError, UnicodeDecodeError, KeyError, TypeError) as exc:
            logger.warning("Failed to parse callback account data: %s", exc)
            return CallbackOutcome.INVALID_CALLBACK, None

        with self.unit_of_work() as uow:
            transaction = uow.transactions.get(transaction_id)
        if transaction is None:
            return CallbackOutcome.TRANSACTION_NOT_FOUND, None
        if transaction.user_id != user_id:
            logger.warning(
                "Callback user mismatch for transaction %s",
                transaction_id,
                extra={"callback_user_id": user_id},
            )
            return CallbackOutcome.INVALID_CALLBACK, None

        if transaction.status == TransactionStatus.COMPLETED:
            return CallbackOutcome.SUCCESS, transaction
        if transaction.status in {TransactionStatus.FAILED, TransactionStatus.CANCELLED}:
            return CallbackOutcome.PAYMENT_FAILED, transaction
        return CallbackOutcome.PENDING, transaction

    def list_transactions(
        self,
        user_id: str,
        *,
        status: Optional[TransactionStatus] = None,
        page: int = 1,
        limit: int = 10,
    ) -> TransactionPage:
        offset, size = page_bounds(page, limit)
        with self.unit_of_work() as uow:
            items, total = uow.transactions.list_for_user(user_id, status=status, offset=offset, limit=size)
        return TransactionPage(items=items, total=total)

    def get_transaction(self, user_id: str, transaction_id: str) -> Transaction:
        with self.unit_of_work() as uow:
            transaction = uow.transactions.get(transaction_id)
        if transaction is None or transaction.user_id != user_id:
            raise NotFoundError("Transaction not found")
        return transaction

    # ------------------------------------------------------------------
    # Admin flows
    # ------------------------------------------------------------------
    def list_all_transactions(
        self,
        filters: Optional[TransactionFilters] = None,
        *,
        page: int = 1,
        limit: int = 20,
    ) -> TransactionPage:
        offset, size = page_bounds(page, limit)
        with self.unit_of_work() as uow:
            items, total = uow.transactions.list_all(filters or TransactionFilters(), offset=offset, limit=size)
            revenue = uow.transactions.revenue_by_currency()
        return TransactionPage(items=items, total=total, revenue=revenue)

    def refund(self, transaction_id: str, *, reason: str, refunded_by: str) -> Transaction:
        """Mark a completed payment refunded and revoke what it paid for.

        Money movement happens in the gateway's merchant dashboard; this
        records the outcome. The refund and the revocation commit together.
        """

        now = self.clock()
        with self.unit_of_work() as uow:
            existing = uow.transactions.get(transaction_id, for_update=True)
            if existing is None:
                raise NotFoundError("Transaction not found")
            if existing.status != TransactionStatus.COMPLETED:
                raise StateConflictError(
                    f"Only completed transactions can be refunded (current: {existing.status.value})"
                )
            refunded = uow.transactions.transition(
                transaction_id,
                expected=[TransactionStatus.COMPLETED],
                status=TransactionStatus.REFUNDED,
                changes={"refunded_at": now, "refund_reason": reason, "refunded_by": refunded_by},
            )
            if refunded is None:
                raise StateConflictError("Transaction changed while refunding")
            revoked = None
            if refunded.subscription_id:
                subscription = uow.subscriptions.get(refunded.subscription_id)
                if subscription is not None and subscription.status != SubscriptionStatus.CANCELLED:
                    revoked = self.subscriptions.revoke_in(
                        uow,
                        refunded.subscription_id,
                        reason=f"Refunded: {reason}",
                    )

        self.audit_logger.log(
            SubscriptionAuditEvent(
                event_type=SubscriptionAuditEventType.TRANSACTION_REFUNDED,
                user_id=refunded.user_id,
                subscription_id=refunded.subscription_id,
                transaction_id=transaction_id,
                actor_id=refunded_by,
                metadata={"reason": reason, "amount": refunded.amount, "currency": refunded.currency.value},
                occurred_at=now,
            )
        )
        if revoked is not None:
            self.audit_logger.log(
                SubscriptionAuditEvent(
                    event_type=SubscriptionAuditEventType.SUBSCRIPTION_REVOKED,
                    user_id=revoked.user_id,
                    subscription_id=revoked.subscription_id,
                    transaction_id=transaction_id,
                    actor_id=refunded_by,
                    metadata={"reason": revoked.cancel_reason},
                    occurred_at=now,
                )
            )
        return refunded

    def check_gateway_status(self, transaction_id: str) -> GatewayTransactionState:
        transaction = self._require_bound(transaction_id)
        return self.gateway.check_status(transaction.external_transaction_id)

    def cancel_at_gateway(self, transaction_id: str, *, reason: int = 1) -> GatewayTransactionState:
        transaction = self._require_bound(transaction_id)
        if transaction.status in {TransactionStatus.COMPLETED, TransactionStatus.REFUNDED}:
            raise StateConflictError("Cannot cancel completed transaction, use refund")
        return self.gateway.cancel(transaction.external_transaction_id, reason=reason)

    # ------------------------------------------------------------------
    # Stale initiation handling
    # ------------------------------------------------------------------
    def reap_stale_transactions(self, now: datetime, *, batch_size: int = 500) -> StaleReapResult:
        """Fail pending transactions the gateway never bound within the initiation window.

        Every stale row is visited, one page of ``batch_size`` ids at a time.
        A row that fails is logged and skipped.
        """

        cutoff = now - self.initiation_ttl
        result = StaleReapResult()
        after: Optional[str] = None
        while True:
            with self.unit_of_work() as uow:
                batch = uow.transactions.list_stale_pending(cutoff, after=after, limit=batch_size)
            for transaction in batch:
                try:
                    with self.unit_of_work() as uow:
                        if self._expire_initiation(uow, transaction, now) is not None:
                            result.reaped += 1
                except Exception:
                    result.failures += 1
                    logger.exception(
                        "Failed to expire stale transaction %s",
                        transaction.transaction_id,
                        extra={"user_id": transaction.user_id},
                    )
            if len(batch) < batch_size:
                return result
            after = batch[-1].transaction_id

    def _is_stale(self, transaction: Transaction, now: datetime) -> bool:
        return (
            transaction.status == TransactionStatus.PENDING
            and transaction.external_transaction_id is None
            and now - transaction.created_at > self.initiation_ttl
        )

    def _expire_initiation(self, uow: UnitOfWork, transaction: Transaction, now: datetime) -> Optional[Transaction]:
        expired = uow.transactions.transition(
            transaction.transaction_id,
            expected=[TransactionStatus.PENDING],
            status=TransactionStatus.FAILED,
            changes={
                "error_message": "Payment was not started within the initiation window",
                "error_code": INITIATION_EXPIRED,
            },
        )
        if expired is not None:
            logger.info(
                "Expired stale transaction %s",
                transaction.transaction_id,
                extra={"user_id": transaction.user_id},
            )
        return expired

    def _require_bound(self, transaction_id: str) -> Transaction:
        with self.unit_of_work() as uow:
            transaction = uow.transactions.get(transaction_id)
        if transaction is None:
            raise NotFoundError("Transaction not found")
        if not transaction.external_transaction_id:
            raise StateConflictError("Transaction has not been registered with the gateway yet")
        return transaction


__all__ = [
    "INITIATION_EXPIRED",
    "PAYMENT_URL_GENERATION_FAILED",
    "PaymentService",
    "StaleReapResult",
    "TransactionPage",
]
