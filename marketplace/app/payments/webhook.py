"""JSON-RPC webhook protocol spoken by the payment gateway.

The gateway delivers every call at least once, possibly out of order and
concurrently. Handlers therefore look up before they mutate, answer
terminal states without side effects and perform each state change as a
single compare-and-set, so duplicates converge on the same answer.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from fastapi import status

from ..config import PaymentConfig
from ..exceptions import (
    AccountNotFoundError,
    ActivationSideEffectError,
    AuthenticationError,
    BillingError,
    CannotCancelCompletedError,
    ConfigurationError,
    InvalidAmountError,
    InvalidRequestError,
    MethodNotFoundError,
    NotFoundError,
    StateConflictError,
)
from ..unit_of_work import UnitOfWorkFactory
from .models import (
    GatewayPaymentRecord,
    GatewayState,
    Transaction,
    TransactionStatus,
    from_millis,
    to_millis,
)

logger = logging.getLogger(__name__)

PARSE_ERROR = -32700
INTERNAL_ERROR = -32400


class RpcMethod(str, Enum):
    """Methods the gateway may invoke on the merchant endpoint."""

    CHECK_PERFORM_TRANSACTION = "CheckPerformTransaction"
    CREATE_TRANSACTION = "CreateTransaction"
    PERFORM_TRANSACTION = "PerformTransaction"
    CANCEL_TRANSACTION = "CancelTransaction"
    CHECK_TRANSACTION = "CheckTransaction"


class SubscriptionActivator(Protocol):
    def activate_from_completed_transaction(self, transaction_id: str) -> Any:
        ...


class ActivationAlerter(Protocol):
    """Notifies operators that a paid transaction did not grant access."""

    def activation_failed(self, error: ActivationSideEffectError) -> None:
        ...


@dataclass(frozen=True)
class WebhookResponse:
    status_code: int
    body: Dict[str, Any]


def canonical_payload(payload: Mapping[str, Any]) -> bytes:
    """Serialize ``payload`` deterministically for signing."""

    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


def sign_payload(secret: str, payload: Mapping[str, Any]) -> str:
    return hmac.new(secret.encode("utf-8"), canonical_payload(payload), hashlib.sha256).hexdigest()


def _now() -> datetime:
    return datetime.now(timezone.utc)


class WebhookProcessor:
    """Authenticates and dispatches gateway webhook calls."""

    def __init__(
        self,
        *,
        config: PaymentConfig,
        unit_of_work: UnitOfWorkFactory,
        activator: SubscriptionActivator,
        alerter: ActivationAlerter,
        initiation_ttl: timedelta = timedelta(minutes=15),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._config = config
        self._unit_of_work = unit_of_work
        self._activator = activator
        self._alerter = alerter
        self._initiation_ttl = initiation_ttl
        self._clock = clock or _now
        self._handlers: Dict[RpcMethod, Callable[[Mapping[str, Any]], Dict[str, Any]]] = {
            RpcMethod.CHECK_PERFORM_TRANSACTION: self._check_perform_transaction,
            RpcMethod.CREATE_TRANSACTION: self._create_transaction,
            RpcMethod.PERFORM_TRANSACTION: self._perform_transaction,
            RpcMethod.CANCEL_TRANSACTION: self._cancel_transaction,
            RpcMethod.CHECK_TRANSACTION: self._check_transaction,
        }
        missing = set(RpcMethod) - set(self._handlers)
        if missing:
            raise RuntimeError(f"Webhook handlers missing for {sorted(m.value for m in missing)}")

    @property
    def signature_header(self) -> str:
        return self._config.signature_header

    # ------------------------------------------------------------------
    # Envelope
    # ------------------------------------------------------------------
    def verify_signature(self, payload: Mapping[str, Any], signature: Optional[str]) -> None:
        secret = self._config.secret_key
        if not secret:
            raise ConfigurationError("Payment gateway secret key not configured")
        if not signature:
            raise AuthenticationError("Missing webhook signature")
        expected = sign_payload(secret, payload)
        if not hmac.compare_digest(expected, signature.strip()):
            raise AuthenticationError("Invalid webhook signature")

    def handle_raw(self, raw_body: bytes, signature: Optional[str]) -> WebhookResponse:
        try:
            payload = json.loads(raw_body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.warning("Webhook body is not valid JSON")
            return self._error_response(None, PARSE_ERROR, "Parse error")
        return self.handle(payload, signature)

    def handle(self, payload: Any, signature: Optional[str]) -> WebhookResponse:
        """Process one webhook envelope and build the JSON-RPC response.

        Authentication failures answer HTTP 401. Every other failure is
        reported as a JSON-RPC error inside an HTTP 200 response.
        """

        if not isinstance(payload, dict):
            return self._error_response(None, InvalidRequestError.rpc_code, "Invalid request")
        request_id = payload.get("id")

        try:
            self.verify_signature(payload, signature)
        except ConfigurationError as exc:
            logger.error("Webhook rejected: %s", exc.message)
            return self._error_response(
                request_id,
                AuthenticationError.rpc_code,
                "Authentication failed",
                status_code=status.HTTP_401_UNAUTHORIZED,
            )
        except AuthenticationError as exc:
            logger.warning("Webhook rejected: %s", exc.message, extra={"rpc_id": request_id})
            return self._error_response(
                request_id,
                exc.rpc_code,
                exc.message,
                status_code=status.HTTP_401_UNAUTHORIZED,
            )

        method = payload.get("method")
        params = payload.get("params") or {}
        try:
            if not isinstance(method, str) or not isinstance(params, Mapping):
                raise InvalidRequestError("Invalid request")
            result = self.dispatch(method, params)
        except BillingError as exc:
            logger.info(
                "Webhook %s answered with error %s: %s",
                method,
                exc.rpc_code,
                exc.message,
                extra={"rpc_id": request_id},
            )
            return self._error_response(request_id, exc.rpc_code, exc.message)
        except Exception:
            logger.exception("Unhandled error while processing webhook %s", method)
            return self._error_response(request_id, INTERNAL_ERROR, "Internal error")

        return WebhookResponse(
            status_code=status.HTTP_200_OK,
            body={"jsonrpc": "2.0", "id": request_id, "result": result},
        )

    def dispatch(self, method: str, params: Mapping[str, Any]) -> Dict[str, Any]:
        try:
            rpc_method = RpcMethod(method)
        except ValueError as exc:
            raise MethodNotFoundError(f"Method not found: {method}") from exc
        logger.info("Webhook %s", rpc_method.value, extra={"rpc_params": dict(params)})
        return self._handlers[rpc_method](params)

    # ------------------------------------------------------------------
    # Methods
    # ------------------------------------------------------------------
    def _check_perform_transaction(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        transaction_id = _account_transaction_id(params)
        with self._unit_of_work() as uow:
            transaction = uow.transactions.get(transaction_id)
        if transaction is None:
            raise AccountNotFoundError("Transaction not found")
        if transaction.status != TransactionStatus.PENDING:
            raise StateConflictError("Transaction already processed")
        _check_amount(transaction, params)
        return {"allow": True}

    def _create_transaction(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        external_id = _external_id(params)
        transaction_id = _account_transaction_id(params)
        now = self._clock()
        received_at = from_millis(params.get("time")) or now

        with self._unit_of_work() as uow:
            existing = uow.transactions.get_by_external_id(external_id)
            if existing is not None:
                return _create_result(existing)

            transaction = uow.transactions.get(transaction_id, for_update=True)
            if transaction is None:
                raise AccountNotFoundError("Transaction not found")
            if transaction.external_transaction_id == external_id:
                return _create_result(transaction)
            _check_amount(transaction, params)
            if transaction.external_transaction_id is not None:
                raise StateConflictError("Transaction is already bound to another gateway transaction")
            if transaction.status != TransactionStatus.PENDING:
                raise StateConflictError("Transaction cannot be created in its current state")
            if now - transaction.created_at > self._initiation_ttl:
                raise StateConflictError("Transaction initiation window has expired")

            bound = uow.transactions.bind_external_id(transaction_id, external_id, received_at=received_at)
            if bound is None:
                raced = uow.transactions.get_by_external_id(external_id)
                if raced is None:
                    raise StateConflictError("Transaction changed while binding gateway transaction")
                return _create_result(raced)

        logger.info(
            "Bound gateway transaction %s to %s",
            external_id,
            transaction_id,
            extra={"user_id": bound.user_id},
        )
        return _create_result(bound)

    def _perform_transaction(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        external_id = _external_id(params)
        now = self._clock()

        with self._unit_of_work() as uow:
            transaction = uow.transactions.get_by_external_id(external_id, for_update=True)
            if transaction is None:
                raise NotFoundError("Transaction not found")

            if transaction.status == TransactionStatus.PROCESSING:
                record = GatewayPaymentRecord(
                    external_transaction_id=external_id,
                    amount=_optional_int(params.get("amount")),
                    gateway_time=_optional_int(params.get("time")),
                    raw=dict(params),
                )
                completed = uow.transactions.transition(
                    transaction.transaction_id,
                    expected=[TransactionStatus.PROCESSING],
                    status=TransactionStatus.COMPLETED,
                    changes={"performed_at": now, "gateway_payment": record},
                )
                if completed is None:
                    raise StateConflictError("Transaction changed while performing")
                transaction = completed
                logger.info(
                    "Completed transaction %s",
                    transaction.transaction_id,
                    extra={"user_id": transaction.user_id, "external_transaction_id": external_id},
                )
            elif transaction.status != TransactionStatus.COMPLETED:
                raise StateConflictError(
                    f"Cannot perform a {transaction.status.value} transaction"
                )

        if transaction.subscription_id is None:
            self._activate(transaction.transaction_id)

        return {
            "transaction": transaction.transaction_id,
            "perform_time": to_millis(transaction.performed_at or transaction.updated_at),
            "state": GatewayState.COMPLETED.value,
        }

    def _cancel_transaction(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        external_id = _external_id(params)
        reason = _optional_int(params.get("reason"))
        now = self._clock()

        with self._unit_of_work() as uow:
            transaction = uow.transactions.get_by_external_id(external_id, for_update=True)
            if transaction is None:
                raise NotFoundError("Transaction not found")
            if transaction.status in {TransactionStatus.COMPLETED, TransactionStatus.REFUNDED}:
                raise CannotCancelCompletedError()
            if transaction.status.is_open:
                cancelled = uow.transactions.transition(
                    transaction.transaction_id,
                    expected=[TransactionStatus.PENDING, TransactionStatus.PROCESSING],
                    status=TransactionStatus.CANCELLED,
                    changes={
                        "cancelled_at": now,
                        "cancel_reason": reason,
                        "error_message": f"Cancelled: {reason}",
                        "error_code": "GATEWAY_CANCELLED",
                    },
                )
                if cancelled is None:
                    raise StateConflictError("Transaction changed while cancelling")
                transaction = cancelled
                logger.info(
                    "Cancelled transaction %s",
                    transaction.transaction_id,
                    extra={"reason": reason, "external_transaction_id": external_id},
                )

        return {
            "transaction": transaction.transaction_id,
            "cancel_time": to_millis(transaction.cancelled_at or transaction.updated_at),
            "state": GatewayState.CANCELLED.value,
        }

    def _check_transaction(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        external_id = _external_id(params)
        with self._unit_of_work() as uow:
            transaction = uow.transactions.get_by_external_id(external_id)
        if transaction is None:
            raise NotFoundError("Transaction not found")
        return {
            "create_time": to_millis(transaction.webhook_received_at or transaction.created_at),
            "perform_time": to_millis(transaction.performed_at),
            "cancel_time": to_millis(transaction.cancelled_at),
            "transaction": transaction.transaction_id,
            "state": transaction.gateway_state.value,
            "reason": transaction.cancel_reason,
        }

    # ------------------------------------------------------------------
    # Activation boundary
    # ------------------------------------------------------------------
    def _activate(self, transaction_id: str) -> None:
        """Grant the paid subscription without ever failing the acknowledgement."""

        try:
            self._activator.activate_from_completed_transaction(transaction_id)
        except Exception as exc:
            error = (
                exc
                if isinstance(exc, ActivationSideEffectError)
                else ActivationSideEffectError(str(exc), transaction_id=transaction_id)
            )
            logger.exception(
                "Subscription activation failed for transaction %s",
                transaction_id,
                extra={"transaction_id": transaction_id},
            )
            self._alerter.activation_failed(error)

    @staticmethod
    def _error_response(
        request_id: Any,
        code: int,
        message: str,
        *,
        status_code: int = status.HTTP_200_OK,
    ) -> WebhookResponse:
        return WebhookResponse(
            status_code=status_code,
            body={"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}},
        )


def _create_result(transaction: Transaction) -> Dict[str, Any]:
    return {
        "create_time": to_millis(transaction.webhook_received_at or transaction.created_at),
        "transaction": transaction.transaction_id,
        "state": transaction.gateway_state.value,
    }


def _external_id(params: Mapping[str, Any]) -> str:
    value = params.get("id")
    if not isinstance(value, str) or not value.strip():
        raise InvalidRequestError("Missing gateway transaction id")
    return value


def _account_transaction_id(params: Mapping[str, Any]) -> str:
    account = params.get("account")
    if not isinstance(account, Mapping):
        raise InvalidRequestError("Missing account")
    value = account.get("transaction_id")
    if value is None or not str(value).strip():
        raise InvalidRequestError("Missing account.transaction_id")
    return str(value)


def _optional_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _check_amount(transaction: Transaction, params: Mapping[str, Any]) -> None:
    if "amount" not in params or params.get("amount") is None:
        return
    try:
        amount = int(params["amount"])
    except (TypeError, ValueError) as exc:
        raise InvalidAmountError("Incorrect amount") from exc
    if amount != transaction.amount:
        raise InvalidAmountError("Incorrect amount")


__all__ = [
    "ActivationAlerter",
    "RpcMethod",
    "SubscriptionActivator",
    "WebhookProcessor",
    "WebhookResponse",
    "canonical_payload",
    "sign_payload",
]
