"""API routes for purchasing and managing the current user's subscription."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, Query, Request

from ..dependencies import get_session_user
from ..exceptions import BillingError
from ..schemas.payments import InitiatePaymentRequest, InitiatePaymentResponse, Pagination
from ..schemas.subscriptions import (
    CancelAutoRenewRequest,
    CancelAutoRenewResponse,
    SubscriptionHistoryResponse,
    SubscriptionResponse,
    SubscriptionStatusResponse,
)
from ..services.billing import get_payment_service, get_subscription_manager

router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


@router.post("/initiate", response_model=InitiatePaymentResponse)
def initiate_payment(
    request: Request,
    payload: Optional[InitiatePaymentRequest] = Body(default=None),
    *,
    current_user=Depends(get_session_user),
) -> InitiatePaymentResponse:
    """Open a pending transaction and hand back the hosted checkout URL."""

    body = payload or InitiatePaymentRequest()
    service = get_payment_service()
    try:
        initiated = service.initiate_payment(
            str(current_user.id),
            body.currency,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return InitiatePaymentResponse.from_initiated(initiated)


@router.get("/status", response_model=SubscriptionStatusResponse)
def get_subscription_status(*, current_user=Depends(get_session_user)) -> SubscriptionStatusResponse:
    overview = get_subscription_manager().get_status(str(current_user.id))
    return SubscriptionStatusResponse.from_overview(overview)


@router.get("/history", response_model=SubscriptionHistoryResponse)
def get_subscription_history(
    *,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    current_user=Depends(get_session_user),
) -> SubscriptionHistoryResponse:
    result = get_subscription_manager().list_history(str(current_user.id), page=page, limit=limit)
    return SubscriptionHistoryResponse(
        subscriptions=[SubscriptionResponse.from_subscription(item) for item in result.items],
        pagination=Pagination.build(total=result.total, page=page, limit=limit),
    )


@router.post("/cancel", response_model=CancelAutoRenewResponse)
def cancel_auto_renew(
    payload: Optional[CancelAutoRenewRequest] = Body(default=None),
    *,
    current_user=Depends(get_session_user),
) -> CancelAutoRenewResponse:
    """Turn off renewal; access continues until the paid period ends."""

    reason = payload.reason if payload else None
    try:
        subscription = get_subscription_manager().cancel_current_auto_renew(
            str(current_user.id),
            reason=reason,
        )
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return CancelAutoRenewResponse.from_subscription(subscription)


__all__ = ["router"]
