"""Error taxonomy shared by the payment and subscription subsystems."""
from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


class BillingError(Exception):
    """Base class for actionable payment and subscription failures.

    Every error carries an application ``code``, the HTTP status used when it
    reaches an API caller, and the JSON-RPC code reported to the payment
    gateway when it is raised while handling a webhook.
    """

    code = "billing_error"
    http_status = status.HTTP_400_BAD_REQUEST
    rpc_code = -32400

    def __init__(self, message: str, *, detail: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = dict(detail or {})

    @property
    def payload(self) -> Dict[str, Any]:
        """Serialized representation suitable for JSON responses."""

        body: Dict[str, Any] = {"error": self.code, "message": self.message}
        body.update(self.detail)
        return body

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.http_status, detail=self.payload)

    def to_rpc_error(self) -> Dict[str, Any]:
        return {"code": self.rpc_code, "message": self.message}


class ConfigurationError(BillingError):
    """Operator error such as missing merchant credentials. Never retried."""

    code = "configuration_error"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    rpc_code = -32400


class AuthenticationError(BillingError):
    """Webhook signature is missing or does not match."""

    code = "invalid_signature"
    http_status = status.HTTP_401_UNAUTHORIZED
    rpc_code = -32504


class NotFoundError(BillingError):
    code = "not_found"
    http_status = status.HTTP_404_NOT_FOUND
    rpc_code = -31003


class AccountNotFoundError(NotFoundError):
    """The account referenced by a gateway request has no pending transaction."""

    code = "account_not_found"
    rpc_code = -31050


class StateConflictError(BillingError):
    code = "state_conflict"
    http_status = status.HTTP_409_CONFLICT
    rpc_code = -31008


class CannotCancelCompletedError(StateConflictError):
    code = "cannot_cancel_completed"
    rpc_code = -31007

    def __init__(self, message: str = "Cannot cancel completed transaction, use refund", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class PaymentInProgressError(StateConflictError):
    code = "payment_in_progress"
    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(
        self,
        message: str = "A payment is already in progress. Please complete or wait for it to expire.",
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)


class InvalidAmountError(BillingError):
    code = "invalid_amount"
    rpc_code = -31001


class InvalidRequestError(BillingError):
    """Malformed webhook envelope or parameters."""

    code = "invalid_request"
    rpc_code = -32600


class MethodNotFoundError(BillingError):
    code = "method_not_found"
    rpc_code = -32601


class TransientExternalError(BillingError):
    """The gateway could not be reached. Callers may retry."""

    code = "gateway_unavailable"
    http_status = status.HTTP_502_BAD_GATEWAY
    rpc_code = -32400


class ActivationSideEffectError(BillingError):
    """Post-payment activation failed. Logged and alerted, never sent to the gateway."""

    code = "activation_failed"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, *, transaction_id: str, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.transaction_id = transaction_id


__all__ = [
    "AccountNotFoundError",
    "ActivationSideEffectError",
    "AuthenticationError",
    "BillingError",
    "CannotCancelCompletedError",
    "ConfigurationError",
    "InvalidAmountError",
    "InvalidRequestError",
    "MethodNotFoundError",
    "NotFoundError",
    "PaymentInProgressError",
    "StateConflictError",
    "TransientExternalError",
]
