from __future__ import annotations

import json
from concurrent.futures import ThreadPoolExecutor

import pytest

from marketplace.app.entitlements import EntitlementStatus
from marketplace.app.exceptions import ActivationSideEffectError, InvalidRequestError
from marketplace.app.payments import TransactionStatus
from marketplace.app.payments.models import to_millis
from marketplace.app.payments.webhook import RpcMethod, sign_payload
from marketplace.app.subscriptions import SubscriptionAuditEventType, SubscriptionStatus


def _envelope(method, params, request_id=1):
    return {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}


def _call(processor, payment_config, method, params, request_id=1):
    payload = _envelope(method, params, request_id)
    return processor.handle(payload, sign_payload(payment_config.secret_key, payload))


@pytest.fixture
def rpc(processor, payment_config):
    def call(method, params, request_id=1):
        return _call(processor, payment_config, method, params, request_id)

    return call


def _account(transaction_id="txn-1"):
    return {"transaction_id": transaction_id}


def _create(rpc, clock, external_id="gw-1", amount=1_200_000):
    return rpc(
        "CreateTransaction",
        {"id": external_id, "time": to_millis(clock()), "amount": amount, "account": _account()},
    )


def test_every_rpc_method_is_routed(processor):
    for method in RpcMethod:
        # Routed handlers reject empty params; unrouted methods would raise MethodNotFoundError.
        with pytest.raises(InvalidRequestError):
            processor.dispatch(method.value, {})


def test_check_perform_allows_pending_transaction(rpc, pending_transaction):
    response = rpc("CheckPerformTransaction", {"amount": 1_200_000, "account": _account()})

    assert response.status_code == 200
    assert response.body == {"jsonrpc": "2.0", "id": 1, "result": {"allow": True}}


def test_check_perform_rejects_amount_mismatch(rpc, pending_transaction):
    response = rpc("CheckPerformTransaction", {"amount": 999, "account": _account()})

    assert response.status_code == 200
    assert response.body["error"]["code"] == -31001


def test_check_perform_reports_unknown_account(rpc, pending_transaction):
    response = rpc("CheckPerformTransaction", {"amount": 1_200_000, "account": _account("missing")})

    assert response.body["error"]["code"] == -31050


def test_check_perform_rejects_processed_transaction(rpc, pending_transaction, clock):
    _create(rpc, clock)

    response = rpc("CheckPerformTransaction", {"amount": 1_200_000, "account": _account()})

    assert response.body["error"]["code"] == -31008


def test_create_binds_external_id(rpc, pending_transaction, database, clock):
    gateway_time = to_millis(clock())

    response = _create(rpc, clock)

    assert response.body["result"] == {
        "create_time": gateway_time,
        "transaction": "txn-1",
        "state": 1,
    }
    stored = database.transactions["txn-1"]
    assert stored.status == TransactionStatus.PROCESSING
    assert stored.external_transaction_id == "gw-1"
    assert stored.webhook_received is True


def test_create_is_idempotent_for_the_same_gateway_id(rpc, pending_transaction, clock):
    first = _create(rpc, clock)
    clock.advance(seconds=30)
    second = _create(rpc, clock)

    assert first.body["result"] == second.body["result"]


def test_create_rejects_a_second_gateway_id(rpc, pending_transaction, clock):
    _create(rpc, clock)

    response = _create(rpc, clock, external_id="gw-2")

    assert response.body["error"]["code"] == -31008


def test_create_rejects_expired_initiation(rpc, pending_transaction, database, clock):
    clock.advance(minutes=16)

    response = _create(rpc, clock)

    assert response.body["error"]["code"] == -31008
    assert database.transactions["txn-1"].status == TransactionStatus.PENDING


def test_perform_completes_and_activates_exactly_once(rpc, pending_transaction, database, clock, audit_log):
    _create(rpc, clock)
    clock.advance(minutes=1)
    perform_time = to_millis(clock())

    first = rpc("PerformTransaction", {"id": "gw-1"})
    clock.advance(minutes=1)
    second = rpc("PerformTransaction", {"id": "gw-1"})

    expected = {"transaction": "txn-1", "perform_time": perform_time, "state": 2}
    assert first.body["result"] == expected
    assert second.body["result"] == expected

    assert len(database.subscriptions) == 1
    subscription = next(iter(database.subscriptions.values()))
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.last_payment_id == "txn-1"

    transaction = database.transactions["txn-1"]
    assert transaction.status == TransactionStatus.COMPLETED
    assert transaction.subscription_id == subscription.subscription_id
    assert transaction.gateway_payment is not None
    assert transaction.gateway_payment.external_transaction_id == "gw-1"

    snapshot = database.users[transaction.user_id]
    assert snapshot.subscription_status == EntitlementStatus.ACTIVE
    assert snapshot.current_subscription_id == subscription.subscription_id
    assert snapshot.subscription_expires_at == subscription.end_date
    assert audit_log.types().count(SubscriptionAuditEventType.SUBSCRIPTION_ACTIVATED.value) == 1


def test_concurrent_perform_deliveries_grant_one_subscription(processor, payment_config, pending_transaction, database, clock):
    _create(lambda method, params: _call(processor, payment_config, method, params), clock)

    def deliver(request_id):
        return _call(processor, payment_config, "PerformTransaction", {"id": "gw-1"}, request_id)

    with ThreadPoolExecutor(max_workers=8) as pool:
        responses = list(pool.map(deliver, range(16)))

    assert {response.body["result"]["state"] for response in responses} == {2}
    assert len(database.subscriptions) == 1


def test_perform_unknown_gateway_id(rpc, pending_transaction):
    response = rpc("PerformTransaction", {"id": "nope"})

    assert response.body["error"]["code"] == -31003


def test_perform_rejects_cancelled_transaction(rpc, pending_transaction, clock):
    _create(rpc, clock)
    rpc("CancelTransaction", {"id": "gw-1", "reason": 3})

    response = rpc("PerformTransaction", {"id": "gw-1"})

    assert response.body["error"]["code"] == -31008


def test_activation_failure_still_acknowledges_payment(rpc, pending_transaction, database, clock, alerter):
    _create(rpc, clock)
    database.fail("subscriptions.create", RuntimeError("database unavailable"))

    response = rpc("PerformTransaction", {"id": "gw-1"})

    assert response.status_code == 200
    assert response.body["result"]["state"] == 2
    assert database.transactions["txn-1"].status == TransactionStatus.COMPLETED
    assert database.transactions["txn-1"].subscription_id is None
    assert database.subscriptions == {}
    assert len(alerter.errors) == 1
    assert isinstance(alerter.errors[0], ActivationSideEffectError)
    assert alerter.errors[0].transaction_id == "txn-1"


def test_activation_rolls_back_when_snapshot_write_fails(rpc, pending_transaction, database, clock, alerter):
    _create(rpc, clock)
    database.fail("subscriptions.save_snapshot", RuntimeError("lost connection"))

    rpc("PerformTransaction", {"id": "gw-1"})

    assert database.subscriptions == {}
    assert database.transactions["txn-1"].subscription_id is None
    assert database.users["user-1"].subscription_status == EntitlementStatus.NONE

    database.failures.clear()
    retry = rpc("PerformTransaction", {"id": "gw-1"})

    assert retry.body["result"]["state"] == 2
    assert len(database.subscriptions) == 1
    assert database.users["user-1"].subscription_status == EntitlementStatus.ACTIVE


def test_cancel_open_transaction_is_idempotent(rpc, pending_transaction, database, clock):
    _create(rpc, clock)
    clock.advance(minutes=2)
    cancel_time = to_millis(clock())

    first = rpc("CancelTransaction", {"id": "gw-1", "reason": 5})
    clock.advance(minutes=2)
    second = rpc("CancelTransaction", {"id": "gw-1", "reason": 5})

    expected = {"transaction": "txn-1", "cancel_time": cancel_time, "state": -1}
    assert first.body["result"] == expected
    assert second.body["result"] == expected
    stored = database.transactions["txn-1"]
    assert stored.status == TransactionStatus.CANCELLED
    assert stored.cancel_reason == 5
    assert stored.error_code == "GATEWAY_CANCELLED"


def test_cancel_completed_transaction_is_rejected(rpc, pending_transaction, database, clock):
    _create(rpc, clock)
    rpc("PerformTransaction", {"id": "gw-1"})

    response = rpc("CancelTransaction", {"id": "gw-1", "reason": 5})

    assert response.body["error"]["code"] == -31007
    assert database.transactions["txn-1"].status == TransactionStatus.COMPLETED


def test_check_transaction_reports_current_state(rpc, pending_transaction, clock):
    create_time = to_millis(clock())
    _create(rpc, clock)
    clock.advance(minutes=1)
    perform_time = to_millis(clock())
    rpc("PerformTransaction", {"id": "gw-1"})

    response = rpc("CheckTransaction", {"id": "gw-1"})

    assert response.body["result"] == {
        "create_time": create_time,
        "perform_time": perform_time,
        "cancel_time": 0,
        "transaction": "txn-1",
        "state": 2,
        "reason": None,
    }


def test_missing_signature_is_rejected_without_mutation(processor, pending_transaction, database, clock):
    payload = _envelope(
        "CreateTransaction",
        {"id": "gw-1", "time": to_millis(clock()), "account": _account()},
    )

    response = processor.handle(payload, None)

    assert response.status_code == 401
    assert response.body["error"]["code"] == -32504
    assert database.transactions["txn-1"].status == TransactionStatus.PENDING


def test_invalid_signature_is_rejected(processor, pending_transaction):
    payload = _envelope("CheckTransaction", {"id": "gw-1"})

    response = processor.handle(payload, sign_payload("wrong-secret", payload))

    assert response.status_code == 401
    assert response.body["error"]["code"] == -32504


def test_missing_secret_key_rejects_every_call(database, manager, alerter, clock, pending_transaction):
    from marketplace.app.config import load_payment_config
    from marketplace.app.payments.webhook import WebhookProcessor

    unconfigured = WebhookProcessor(
        config=load_payment_config({}),
        unit_of_work=database.unit_of_work,
        activator=manager,
        alerter=alerter,
        clock=clock,
    )
    payload = _envelope("CheckTransaction", {"id": "gw-1"})

    response = unconfigured.handle(payload, "anything")

    assert response.status_code == 401
    assert response.body["error"]["code"] == -32504


def test_unknown_method(rpc):
    response = rpc("RefundEverything", {})

    assert response.status_code == 200
    assert response.body["error"]["code"] == -32601


def test_handle_raw_reports_parse_errors(processor):
    response = processor.handle_raw(b"{not json", "sig")

    assert response.status_code == 200
    assert response.body["error"]["code"] == -32700


def test_handle_raw_accepts_signed_bytes(processor, payment_config, pending_transaction):
    payload = _envelope("CheckPerformTransaction", {"amount": 1_200_000, "account": _account()}, "abc")

    response = processor.handle_raw(
        json.dumps(payload).encode("utf-8"),
        sign_payload(payment_config.secret_key, payload),
    )

    assert response.body == {"jsonrpc": "2.0", "id": "abc", "result": {"allow": True}}


def test_unexpected_errors_map_to_internal_error(rpc, pending_transaction, database):
    database.fail("transactions.get", RuntimeError("boom"))

    response = rpc("CheckPerformTransaction", {"amount": 1_200_000, "account": _account()})

    assert response.status_code == 200
    assert response.body["error"] == {"code": -32400, "message": "Internal error"}


def test_missing_params_are_invalid_requests(rpc):
    response = rpc("CheckTransaction", {})

    assert response.body["error"]["code"] == -32600
