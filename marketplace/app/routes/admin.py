"""Administrative routes for subscriptions, transactions and gateway reconciliation."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status

from ..dependencies import get_session_admin
from ..exceptions import BillingError
from ..payments import Currency, TransactionFilters, TransactionStatus
from ..schemas.admin import (
    AdminSubscriptionListResponse,
    ExpiryRunResponse,
    GrantSubscriptionRequest,
    GrantSubscriptionResponse,
    RevokeSubscriptionRequest,
    SubscriptionStatsResponse,
)
from ..schemas.payments import (
    AdminTransactionListResponse,
    GatewayCancelRequest,
    GatewayStateResponse,
    Pagination,
    RefundRequest,
    RevenueResponse,
    TransactionDetailResponse,
    TransactionResponse,
)
from ..schemas.subscriptions import SubscriptionResponse
from ..services.billing import get_expiry_scheduler, get_payment_service, get_subscription_manager
from ..subscriptions import SubscriptionFilters, SubscriptionStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])


# ----------------------------------------------------------------------
# Subscriptions
# ----------------------------------------------------------------------
@router.post("/subscriptions/grant", response_model=GrantSubscriptionResponse)
def grant_subscription(
    payload: GrantSubscriptionRequest,
    *,
    current_admin=Depends(get_session_admin),
) -> GrantSubscriptionResponse:
    """Grant a free period, extending the user's live subscription when present."""

    try:
        grant = get_subscription_manager().grant(
            payload.user_id,
            granted_by=str(current_admin.id),
            duration_days=payload.duration_days,
        )
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return GrantSubscriptionResponse.from_grant(grant)


@router.post("/subscriptions/expire-now", response_model=ExpiryRunResponse)
def run_expiry_now(*, current_admin=Depends(get_session_admin)) -> ExpiryRunResponse:
    scheduler = get_expiry_scheduler()
    logger.info("Manual subscription expiry run requested", extra={"admin_id": str(current_admin.id)})
    try:
        summary = scheduler.run_once(trigger="manual")
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Subscription expiry run failed",
        ) from exc
    if summary is None:
        return ExpiryRunResponse(started=False)
    return ExpiryRunResponse(started=True, summary=summary.as_dict())


@router.get("/subscriptions/stats", response_model=SubscriptionStatsResponse)
def get_subscription_stats(
    *,
    start_date: Optional[datetime] = Query(default=None, alias="startDate"),
    end_date: Optional[datetime] = Query(default=None, alias="endDate"),
    current_admin=Depends(get_session_admin),
) -> SubscriptionStatsResponse:
    stats = get_subscription_manager().get_statistics(since=start_date, until=end_date)
    return SubscriptionStatsResponse.from_statistics(stats)


@router.get("/subscriptions", response_model=AdminSubscriptionListResponse)
def list_subscriptions(
    *,
    status_filter: Optional[SubscriptionStatus] = Query(default=None, alias="status"),
    user_id: Optional[str] = Query(default=None, alias="userId"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    current_admin=Depends(get_session_admin),
) -> AdminSubscriptionListResponse:
    result = get_subscription_manager().list_subscriptions(
        SubscriptionFilters(status=status_filter, user_id=user_id),
        page=page,
        limit=limit,
    )
    return AdminSubscriptionListResponse(
        subscriptions=[SubscriptionResponse.from_subscription(item) for item in result.items],
        stats={item.value: result.status_counts.get(item, 0) for item in SubscriptionStatus},
        pagination=Pagination.build(total=result.total, page=page, limit=limit),
    )


@router.post("/subscriptions/{subscription_id}/revoke", response_model=SubscriptionResponse)
def revoke_subscription(
    subscription_id: str,
    payload: Optional[RevokeSubscriptionRequest] = Body(default=None),
    *,
    current_admin=Depends(get_session_admin),
) -> SubscriptionResponse:
    body = payload or RevokeSubscriptionRequest()
    try:
        subscription = get_subscription_manager().revoke(
            subscription_id,
            reason=body.reason,
            revoked_by=str(current_admin.id),
        )
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return SubscriptionResponse.from_subscription(subscription)


# ----------------------------------------------------------------------
# Transactions
# ----------------------------------------------------------------------
@router.get("/transactions", response_model=AdminTransactionListResponse)
def list_all_transactions(
    *,
    status_filter: Optional[TransactionStatus] = Query(default=None, alias="status"),
    user_id: Optional[str] = Query(default=None, alias="userId"),
    currency: Optional[Currency] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    current_admin=Depends(get_session_admin),
) -> AdminTransactionListResponse:
    """List every transaction with revenue totals over completed payments."""

    result = get_payment_service().list_all_transactions(
        TransactionFilters(status=status_filter, user_id=user_id, currency=currency),
        page=page,
        limit=limit,
    )
    return AdminTransactionListResponse(
        transactions=[TransactionResponse.from_transaction(item) for item in result.items],
        revenue_stats=[RevenueResponse.from_summary(item) for item in result.revenue],
        pagination=Pagination.build(total=result.total, page=page, limit=limit),
    )


@router.post("/transactions/{transaction_id}/refund", response_model=TransactionDetailResponse)
def refund_transaction(
    transaction_id: str,
    payload: RefundRequest,
    *,
    current_admin=Depends(get_session_admin),
) -> TransactionDetailResponse:
    try:
        transaction = get_payment_service().refund(
            transaction_id,
            reason=payload.reason,
            refunded_by=str(current_admin.id),
        )
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return TransactionDetailResponse(transaction=TransactionResponse.from_transaction(transaction))


@router.get("/transactions/{transaction_id}/gateway-status", response_model=GatewayStateResponse)
def get_gateway_status(
    transaction_id: str,
    *,
    current_admin=Depends(get_session_admin),
) -> GatewayStateResponse:
    try:
        state = get_payment_service().check_gateway_status(transaction_id)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return GatewayStateResponse.from_state(state)


@router.post("/transactions/{transaction_id}/gateway-cancel", response_model=GatewayStateResponse)
def cancel_at_gateway(
    transaction_id: str,
    payload: Optional[GatewayCancelRequest] = Body(default=None),
    *,
    current_admin=Depends(get_session_admin),
) -> GatewayStateResponse:
    body = payload or GatewayCancelRequest()
    try:
        state = get_payment_service().cancel_at_gateway(transaction_id, reason=body.reason)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return GatewayStateResponse.from_state(state)


__all__ = ["router"]
