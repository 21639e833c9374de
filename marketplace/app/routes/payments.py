"""Routes called by the payment gateway and by the browser returning from checkout."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

from ..payments import CallbackOutcome
from ..services.billing import get_gateway_client, get_payment_service, get_webhook_processor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments/gateway", tags=["payments"])

_CALLBACK_QUERY = {
    CallbackOutcome.SUCCESS: "success=true",
    CallbackOutcome.PAYMENT_FAILED: "error=payment_failed",
    CallbackOutcome.PENDING: "status=pending",
    CallbackOutcome.INVALID_CALLBACK: "error=invalid_callback",
    CallbackOutcome.TRANSACTION_NOT_FOUND: "error=transaction_not_found",
}


@router.post("/webhook")
async def receive_webhook(request: Request) -> JSONResponse:
    """Answer a signed JSON-RPC call from the gateway.

    The body is read raw so the signature is checked against exactly what
    was delivered. Processing touches the database and runs off the event
    loop.
    """

    processor = get_webhook_processor()
    raw_body = await request.body()
    signature = request.headers.get(processor.signature_header)
    outcome = await run_in_threadpool(processor.handle_raw, raw_body, signature)
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)


@router.get("/callback")
def payment_callback(account: Optional[str] = Query(default=None)) -> RedirectResponse:
    service = get_payment_service()
    frontend_url = get_gateway_client().config.frontend_url
    outcome, transaction = service.resolve_callback(account)
    logger.info(
        "Payment callback resolved to %s",
        outcome.value,
        extra={"transaction_id": transaction.transaction_id if transaction else None},
    )
    return RedirectResponse(url=f"{frontend_url}/subscription?{_CALLBACK_QUERY[outcome]}")


__all__ = ["router"]
