"""Application wiring for the payment and subscription services."""
from __future__ import annotations

import logging
from datetime import timedelta
from functools import lru_cache

from ..config import load_payment_config, load_subscription_config
from ..exceptions import ActivationSideEffectError
from ..payments.gateway import PaymentGatewayClient
from ..payments.service import PaymentService
from ..payments.webhook import ActivationAlerter, WebhookProcessor
from ..subscriptions.models import SubscriptionAuditEvent, SubscriptionAuditEventType
from ..subscriptions.service import AuditLogger, SubscriptionManager
from ..unit_of_work import postgres_unit_of_work
from ...expiry import ExpiryScheduler

logger = logging.getLogger("billing")


class LoggingAuditLogger(AuditLogger):
    """Audit logger forwarding subscription events to the ``billing`` logger."""

    def log(self, event: SubscriptionAuditEvent) -> None:
        logger.info(
            "Subscription event %s user=%s subscription=%s transaction=%s actor=%s metadata=%s",
            event.event_type.value,
            event.user_id,
            event.subscription_id,
            event.transaction_id,
            event.actor_id,
            event.metadata,
        )


class LoggingActivationAlerter(ActivationAlerter):
    """Raises an operator-visible error log and records an audit event."""

    def __init__(self, audit_logger: AuditLogger) -> None:
        self._audit_logger = audit_logger

    def activation_failed(self, error: ActivationSideEffectError) -> None:
        logger.error(
            "ALERT: payment %s completed but subscription activation failed: %s",
            error.transaction_id,
            error.message,
        )
        self._audit_logger.log(
            SubscriptionAuditEvent(
                event_type=SubscriptionAuditEventType.ACTIVATION_FAILED,
                transaction_id=error.transaction_id,
                metadata={"error": error.message},
            )
        )


@lru_cache(maxsize=1)
def get_audit_logger() -> AuditLogger:
    return LoggingAuditLogger()


@lru_cache(maxsize=1)
def get_subscription_manager() -> SubscriptionManager:
    return SubscriptionManager(
        unit_of_work=postgres_unit_of_work,
        audit_logger=get_audit_logger(),
        config=load_subscription_config(),
    )


@lru_cache(maxsize=1)
def get_gateway_client() -> PaymentGatewayClient:
    return PaymentGatewayClient(load_payment_config())


@lru_cache(maxsize=1)
def get_payment_service() -> PaymentService:
    return PaymentService(
        unit_of_work=postgres_unit_of_work,
        gateway=get_gateway_client(),
        subscriptions=get_subscription_manager(),
        audit_logger=get_audit_logger(),
        config=load_subscription_config(),
    )


@lru_cache(maxsize=1)
def get_webhook_processor() -> WebhookProcessor:
    subscription_config = load_subscription_config()
    return WebhookProcessor(
        config=load_payment_config(),
        unit_of_work=postgres_unit_of_work,
        activator=get_subscription_manager(),
        alerter=LoggingActivationAlerter(get_audit_logger()),
        initiation_ttl=timedelta(minutes=subscription_config.initiation_ttl_minutes),
    )


@lru_cache(maxsize=1)
def get_expiry_scheduler() -> ExpiryScheduler:
    return ExpiryScheduler(
        subscriptions=get_subscription_manager(),
        payments=get_payment_service(),
    )


__all__ = [
    "LoggingActivationAlerter",
    "LoggingAuditLogger",
    "get_audit_logger",
    "get_expiry_scheduler",
    "get_gateway_client",
    "get_payment_service",
    "get_subscription_manager",
    "get_webhook_processor",
]
