"""API routes exposing a user's own payment history."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from ..dependencies import get_session_user
from ..exceptions import BillingError
from ..payments import TransactionStatus
from ..schemas.payments import (
    Pagination,
    TransactionDetailResponse,
    TransactionListResponse,
    TransactionResponse,
)
from ..services.billing import get_payment_service

_DEFAULT_PAGE_SIZE = 10
_MAX_PAGE_SIZE = 100

router = APIRouter(prefix="/api/transactions", tags=["transactions"])


@router.get("", response_model=TransactionListResponse)
def list_transactions(
    *,
    status_filter: Optional[TransactionStatus] = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=_DEFAULT_PAGE_SIZE, ge=1, le=_MAX_PAGE_SIZE),
    current_user=Depends(get_session_user),
) -> TransactionListResponse:
    """Return the authenticated user's transactions, newest first."""

    result = get_payment_service().list_transactions(
        str(current_user.id),
        status=status_filter,
        page=page,
        limit=limit,
    )
    return TransactionListResponse(
        transactions=[TransactionResponse.from_transaction(item) for item in result.items],
        pagination=Pagination.build(total=result.total, page=page, limit=limit),
    )


@router.get("/{transaction_id}", response_model=TransactionDetailResponse)
def get_transaction(
    transaction_id: str,
    *,
    current_user=Depends(get_session_user),
) -> TransactionDetailResponse:
    try:
        transaction = get_payment_service().get_transaction(str(current_user.id), transaction_id)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return TransactionDetailResponse(transaction=TransactionResponse.from_transaction(transaction))


__all__ = ["router"]
