"""Payment domain package covering transactions and the gateway protocol."""

from .models import (
    CallbackOutcome,
    Currency,
    GatewayPaymentRecord,
    GatewayState,
    GatewayTransactionState,
    InitiatedPayment,
    RevenueSummary,
    Transaction,
    TransactionFilters,
    TransactionStatus,
)
from .repository import TransactionStore

__all__ = [
    "CallbackOutcome",
    "Currency",
    "GatewayPaymentRecord",
    "GatewayState",
    "GatewayTransactionState",
    "InitiatedPayment",
    "RevenueSummary",
    "Transaction",
    "TransactionFilters",
    "TransactionStatus",
    "TransactionStore",
]
