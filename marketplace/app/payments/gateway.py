"""Client for the third-party payment gateway (checkout links and merchant API)."""
from __future__ import annotations

import base64
import json
import logging
from typing import Any, Callable, Dict, Mapping, Optional
from urllib import error as urllib_error, request as urllib_request
from uuid import uuid4

from pydantic import ValidationError

from ..config import PaymentConfig
from ..exceptions import ConfigurationError, TransientExternalError
from .models import Currency, GatewayTransactionState

logger = logging.getLogger(__name__)

Opener = Callable[..., Any]


class PaymentGatewayClient:
    """Builds checkout URLs and talks to the gateway's merchant API.

    ``opener`` defaults to :func:`urllib.request.urlopen` and is injectable so
    tests can answer outbound calls without a network.
    """

    def __init__(self, config: PaymentConfig, *, opener: Optional[Opener] = None) -> None:
        self._config = config
        self._opener = opener or urllib_request.urlopen

    @property
    def config(self) -> PaymentConfig:
        return self._config

    def generate_payment_url(
        self,
        *,
        user_id: str,
        amount: int,
        currency: Currency,
        transaction_id: str,
    ) -> str:
        """Return the hosted checkout URL for a pending transaction.

        The gateway expects the merchant parameters as base64-encoded JSON
        appended to the checkout base URL. ``amount`` is already in minor
        units.
        """

        if not self._config.merchant_id:
            raise ConfigurationError(
                "Payment gateway merchant ID not configured. Set PAYMENT_GATEWAY_MERCHANT_ID."
            )

        merchant_params = {
            "merchant_id": self._config.merchant_id,
            "account": {"user_id": str(user_id), "transaction_id": str(transaction_id)},
            "amount": int(amount),
            "currency": Currency(currency).iso_numeric,
            "callback": self._config.callback_url,
            "description": self._config.payment_description,
        }
        encoded = base64.b64encode(json.dumps(merchant_params).encode("utf-8")).decode("ascii")
        return f"{self._config.checkout_base_url}/{encoded}"

    def check_status(self, external_transaction_id: str) -> GatewayTransactionState:
        result = self._call("CheckTransaction", {"id": external_transaction_id})
        return self._parse_state(result)

    def cancel(self, external_transaction_id: str, *, reason: int = 1) -> GatewayTransactionState:
        result = self._call("CancelTransaction", {"id": external_transaction_id, "reason": reason})
        return self._parse_state(result)

    def _call(self, method: str, params: Mapping[str, Any]) -> Dict[str, Any]:
        if not self._config.merchant_id or not self._config.secret_key:
            raise ConfigurationError("Payment gateway merchant credentials are not configured")

        body = json.dumps({"jsonrpc": "2.0", "id": uuid4().hex, "method": method, "params": dict(params)})
        http_request = urllib_request.Request(
            self._config.api_url,
            data=body.encode("utf-8"),
            method="POST",
            headers={
                "Content-Type": "application/json",
                "X-Auth": f"{self._config.merchant_id}:{self._config.secret_key}",
            },
        )
        try:
            with self._opener(http_request, timeout=self._config.request_timeout) as response:
                raw = response.read()
            payload = json.loads(raw.decode("utf-8"))
        except (
            urllib_error.URLError,
            urllib_error.HTTPError,
            TimeoutError,
            OSError,
            json.JSONDecodeError,
            UnicodeDecodeError,
        ) as exc:
            logger.warning(
                "Payment gateway call failed",
                extra={"gateway_method": method, "error": str(exc)},
            )
            raise TransientExternalError(f"Payment gateway {method} failed: {exc}") from exc

        if not isinstance(payload, dict):
            raise TransientExternalError(f"Payment gateway {method} returned an unexpected payload")
        error = payload.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            logger.warning(
                "Payment gateway returned an error",
                extra={"gateway_method": method, "gateway_error": error},
            )
            raise TransientExternalError(
                f"Payment gateway {method} failed: {message}",
                detail={"gatewayError": error},
            )
        result = payload.get("result")
        if not isinstance(result, dict):
            raise TransientExternalError(f"Payment gateway {method} returned no result")
        return result

    @staticmethod
    def _parse_state(result: Dict[str, Any]) -> GatewayTransactionState:
        try:
            return GatewayTransactionState(
                state=result.get("state"),
                transaction=result.get("transaction"),
                create_time=result.get("create_time"),
                perform_time=result.get("perform_time"),
                cancel_time=result.get("cancel_time"),
                reason=result.get("reason"),
                raw=result,
            )
        except ValidationError as exc:
            raise TransientExternalError(f"Unrecognised gateway transaction state: {exc}") from exc


__all__ = ["PaymentGatewayClient"]
