"""API schemas for payment and transaction endpoints."""
from __future__ import annotations

import math
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..payments import (
    Currency,
    GatewayTransactionState,
    InitiatedPayment,
    RevenueSummary,
    Transaction,
    TransactionStatus,
)


class Pagination(BaseModel):
    total: int
    page: int
    limit: int
    pages: int

    @classmethod
    def build(cls, *, total: int, page: int, limit: int) -> "Pagination":
        return cls(total=total, page=page, limit=limit, pages=math.ceil(total / limit) if limit else 0)


class TransactionResponse(BaseModel):
    """Public view of a transaction. Raw gateway payloads are never exposed."""

    transaction_id: str = Field(alias="transactionId")
    user_id: str = Field(alias="userId")
    subscription_id: Optional[str] = Field(alias="subscriptionId", default=None)
    amount: int
    currency: Currency
    status: TransactionStatus
    error_message: Optional[str] = Field(alias="errorMessage", default=None)
    error_code: Optional[str] = Field(alias="errorCode", default=None)
    performed_at: Optional[datetime] = Field(alias="performedAt", default=None)
    cancelled_at: Optional[datetime] = Field(alias="cancelledAt", default=None)
    refunded_at: Optional[datetime] = Field(alias="refundedAt", default=None)
    refund_reason: Optional[str] = Field(alias="refundReason", default=None)
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_transaction(cls, transaction: Transaction) -> "TransactionResponse":
        return cls(
            transaction_id=transaction.transaction_id,
            user_id=transaction.user_id,
            subscription_id=transaction.subscription_id,
            amount=transaction.amount,
            currency=transaction.currency,
            status=transaction.status,
            error_message=transaction.error_message,
            error_code=transaction.error_code,
            performed_at=transaction.performed_at,
            cancelled_at=transaction.cancelled_at,
            refunded_at=transaction.refunded_at,
            refund_reason=transaction.refund_reason,
            created_at=transaction.created_at,
            updated_at=transaction.updated_at,
        )


class TransactionListResponse(BaseModel):
    transactions: List[TransactionResponse]
    pagination: Pagination


class TransactionDetailResponse(BaseModel):
    transaction: TransactionResponse


class InitiatePaymentRequest(BaseModel):
    currency: str = Currency.UZS.value


class InitiatePaymentResponse(BaseModel):
    transaction_id: str = Field(alias="transactionId")
    payment_url: str = Field(alias="paymentUrl")
    amount: int
    currency: Currency
    expires_in: int = Field(alias="expiresIn")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_initiated(cls, initiated: InitiatedPayment) -> "InitiatePaymentResponse":
        return cls(
            transaction_id=initiated.transaction.transaction_id,
            payment_url=initiated.payment_url,
            amount=initiated.transaction.amount,
            currency=initiated.transaction.currency,
            expires_in=initiated.expires_in,
        )


class RevenueResponse(BaseModel):
    currency: Currency
    total_revenue: int = Field(alias="totalRevenue")
    count: int

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_summary(cls, summary: RevenueSummary) -> "RevenueResponse":
        return cls(currency=summary.currency, total_revenue=summary.total_amount, count=summary.count)


class AdminTransactionListResponse(BaseModel):
    transactions: List[TransactionResponse]
    revenue_stats: List[RevenueResponse] = Field(alias="revenueStats")
    pagination: Pagination

    model_config = ConfigDict(populate_by_name=True)


class RefundRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class GatewayCancelRequest(BaseModel):
    reason: int = Field(default=1, ge=1)


class GatewayStateResponse(BaseModel):
    state: int
    transaction: Optional[str] = None
    create_time: Optional[int] = Field(alias="createTime", default=None)
    perform_time: Optional[int] = Field(alias="performTime", default=None)
    cancel_time: Optional[int] = Field(alias="cancelTime", default=None)
    reason: Optional[int] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_state(cls, state: GatewayTransactionState) -> "GatewayStateResponse":
        return cls(
            state=state.state.value,
            transaction=state.transaction,
            create_time=state.create_time,
            perform_time=state.perform_time,
            cancel_time=state.cancel_time,
            reason=state.reason,
        )
