"""Domain models for payment transactions and the gateway protocol."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class Currency(str, Enum):
    """Currencies accepted by the gateway."""

    UZS = "UZS"
    USD = "USD"

    @property
    def iso_numeric(self) -> int:
        return 840 if self is Currency.USD else 860


class TransactionStatus(str, Enum):
    """Lifecycle status of a payment transaction."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    @property
    def is_open(self) -> bool:
        return self in {TransactionStatus.PENDING, TransactionStatus.PROCESSING}


class GatewayState(int, Enum):
    """Transaction state codes used by the gateway protocol."""

    PENDING = 0
    PROCESSING = 1
    COMPLETED = 2
    CANCELLED = -1
    REFUNDED = -2

    @classmethod
    def from_status(cls, status: TransactionStatus) -> "GatewayState":
        return _STATE_BY_STATUS[status]


_STATE_BY_STATUS = {
    TransactionStatus.PENDING: GatewayState.PENDING,
    TransactionStatus.PROCESSING: GatewayState.PROCESSING,
    TransactionStatus.COMPLETED: GatewayState.COMPLETED,
    TransactionStatus.CANCELLED: GatewayState.CANCELLED,
    TransactionStatus.FAILED: GatewayState.CANCELLED,
    TransactionStatus.REFUNDED: GatewayState.REFUNDED,
}

# Allowed status transitions. ``completed`` may only move to ``refunded``.
ALLOWED_TRANSITIONS = {
    TransactionStatus.PENDING: frozenset(
        {TransactionStatus.PROCESSING, TransactionStatus.CANCELLED, TransactionStatus.FAILED}
    ),
    TransactionStatus.PROCESSING: frozenset(
        {TransactionStatus.COMPLETED, TransactionStatus.CANCELLED, TransactionStatus.FAILED}
    ),
    TransactionStatus.COMPLETED: frozenset({TransactionStatus.REFUNDED}),
    TransactionStatus.FAILED: frozenset(),
    TransactionStatus.CANCELLED: frozenset(),
    TransactionStatus.REFUNDED: frozenset(),
}


class GatewayPaymentRecord(BaseModel):
    """Gateway fields consumed when a payment is performed.

    ``raw`` keeps the untouched webhook parameters for audit purposes and is
    never exposed through the public API.
    """

    external_transaction_id: str
    amount: Optional[int] = None
    gateway_time: Optional[int] = None
    raw: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class Transaction(BaseModel):
    """A single attempt to pay for a subscription period."""

    transaction_id: str
    user_id: str
    amount: int = Field(gt=0, description="Amount in minor currency units")
    currency: Currency
    status: TransactionStatus = TransactionStatus.PENDING
    subscription_id: Optional[str] = None
    external_transaction_id: Optional[str] = None
    webhook_received: bool = False
    webhook_received_at: Optional[datetime] = None
    performed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[int] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    refunded_at: Optional[datetime] = None
    refund_reason: Optional[str] = None
    refunded_by: Optional[str] = None
    gateway_payment: Optional[GatewayPaymentRecord] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def gateway_state(self) -> GatewayState:
        return GatewayState.from_status(self.status)


class GatewayTransactionState(BaseModel):
    """Typed view of the gateway's answer to an outbound status/cancel call."""

    state: GatewayState
    transaction: Optional[str] = None
    create_time: Optional[int] = None
    perform_time: Optional[int] = None
    cancel_time: Optional[int] = None
    reason: Optional[int] = None
    raw: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class InitiatedPayment(BaseModel):
    """Return value of a payment initiation request."""

    transaction: Transaction
    payment_url: str
    expires_in: int

    model_config = ConfigDict(frozen=True)


class CallbackOutcome(str, Enum):
    """Where the browser should land after returning from the gateway."""

    SUCCESS = "success"
    PAYMENT_FAILED = "payment_failed"
    PENDING = "pending"
    INVALID_CALLBACK = "invalid_callback"
    TRANSACTION_NOT_FOUND = "transaction_not_found"


class TransactionFilters(BaseModel):
    """Admin listing filters."""

    status: Optional[TransactionStatus] = None
    user_id: Optional[str] = None
    currency: Optional[Currency] = None

    model_config = ConfigDict(frozen=True)


class RevenueSummary(BaseModel):
    """Completed revenue for one currency."""

    currency: Currency
    total_amount: int = 0
    count: int = 0

    model_config = ConfigDict(frozen=True)


def to_millis(value: Optional[datetime]) -> int:
    """Convert a timestamp to the gateway's epoch-milliseconds format."""

    if value is None:
        return 0
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def from_millis(value: Any) -> Optional[datetime]:
    if value in (None, "", 0):
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None
