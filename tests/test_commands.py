"""
注文サービスのユースケースのテスト: チェックアウト、決済コールバック、
キャンセル、マーチャントの出荷処理。
"""
import json
from decimal import Decimal

import pytest
from sqlalchemy.dialects import postgresql

from conftest import signed_payload, stock_of
from services.order.app import commands, config, event_store, repository
from services.order.app.errors import (
    GatewayError,
    InvalidTransition,
    NotFound,
    PaymentInProgress,
    PermissionDenied,
)
from services.order.app.gateway import format_reference
from services.order.app.models import CartLine
from services.order.app.state_machine import Actor, OrderStatus

CUSTOMER = 7


def cart(*lines: tuple[int, int]) -> list[CartLine]:
    return [CartLine(product_id=pid, quantity=qty) for pid, qty in lines]


async def checkout(session, redis, gateway, address, lines=((1, 2), (2, 1))):
    return await commands.create_order(
        session, redis, gateway, CUSTOMER, cart(*lines), address
    )


def paid_callback(order, **overrides) -> dict:
    fields = {
        "refno": format_reference(order.id),
        "transaction_id": "TX1",
        "status": "success",
        "amount": str(order.total),
        "currency": "THB",
    }
    fields.update(overrides)
    return signed_payload(**fields)


def published_types(redis) -> list[str]:
    return [json.loads(call.args[1])["event_type"] for call in redis.publish.await_args_list]


# ── Checkout ─────────────────────────────────────


@pytest.mark.asyncio
async def test_create_order_returns_payment_url(session, redis, gateway, address):
    result = await checkout(session, redis, gateway, address)

    assert result.payment.payment_url.endswith(format_reference(result.order.id))
    order = await repository.load_order(session, result.order.id)
    assert order.status is OrderStatus.PENDING_PAYMENT
    assert order.payment_reference == result.payment.gateway_transaction_id

    attempts = await repository.load_attempts(session, order.id)
    assert [a.status for a in attempts] == ["pending"]
    assert attempts[0].request_hash == result.payment.request_hash
    assert published_types(redis) == ["OrderCreated", "PaymentRequested"]


@pytest.mark.asyncio
async def test_gateway_failure_keeps_order_and_stock(session, redis, gateway, gateway_stub, address):
    gateway_stub.fail_status = 500
    with pytest.raises(GatewayError) as excinfo:
        await checkout(session, redis, gateway, address)

    order_id = excinfo.value.order_id
    order = await repository.load_order(session, order_id)
    assert order.status is OrderStatus.PENDING_PAYMENT
    assert await stock_of(session, 1) == 8
    attempts = await repository.load_attempts(session, order_id)
    assert [a.status for a in attempts] == ["failed"]

    # 決済のやり直しで在庫を二重に確保しない
    gateway_stub.fail_status = None
    payment = await commands.request_payment(session, redis, gateway, order_id, CUSTOMER)
    assert payment.payment_url
    assert await stock_of(session, 1) == 8
    assert await stock_of(session, 2) == 4
    attempts = await repository.load_attempts(session, order_id)
    assert [a.status for a in attempts] == ["failed", "pending"]


@pytest.mark.asyncio
async def test_only_one_pending_attempt_per_order(session, redis, gateway, address):
    result = await checkout(session, redis, gateway, address)
    with pytest.raises(PaymentInProgress):
        await commands.request_payment(session, redis, gateway, result.order.id, CUSTOMER)


@pytest.mark.asyncio
async def test_stale_pending_attempt_is_expired(session, redis, gateway, address, monkeypatch):
    result = await checkout(session, redis, gateway, address)
    monkeypatch.setattr(config, "PAYMENT_ATTEMPT_TTL", 0)

    await commands.request_payment(session, redis, gateway, result.order.id, CUSTOMER)

    attempts = await repository.load_attempts(session, result.order.id)
    assert [a.status for a in attempts] == ["expired", "pending"]


@pytest.mark.asyncio
async def test_payment_request_checks_owner(session, redis, gateway, address):
    result = await checkout(session, redis, gateway, address)
    with pytest.raises(PermissionDenied):
        await commands.request_payment(session, redis, gateway, result.order.id, 99)


# ── Payment callbacks ────────────────────────────


@pytest.mark.asyncio
async def test_verified_success_marks_order_paid(session, redis, gateway, address):
    result = await checkout(session, redis, gateway, address)
    outcome = await commands.handle_payment_callback(
        session, redis, gateway, paid_callback(result.order)
    )

    assert outcome == "paid"
    order = await repository.load_order(session, result.order.id)
    assert order.status is OrderStatus.PAID
    assert order.paid_at is not None
    assert all(mo.status is OrderStatus.PAID for mo in order.merchant_orders)
    attempts = await repository.load_attempts(session, order.id)
    assert attempts[-1].status == "succeeded"
    assert attempts[-1].callback_received_at is not None


@pytest.mark.asyncio
async def test_replayed_callback_is_a_no_op(session, redis, gateway, address):
    result = await checkout(session, redis, gateway, address)
    payload = paid_callback(result.order)

    first = await commands.handle_payment_callback(session, redis, gateway, dict(payload))
    second = await commands.handle_payment_callback(session, redis, gateway, dict(payload))

    assert (first, second) == ("paid", "ignored")
    history = await event_store.load_transitions(session, result.order.id)
    assert [h["to_status"] for h in history] == ["pending_payment", "paid"]
    assert await stock_of(session, 1) == 8


@pytest.mark.asyncio
async def test_unsigned_callback_changes_nothing(session, redis, gateway, address):
    result = await checkout(session, redis, gateway, address)
    payload = paid_callback(result.order)
    payload["status"] = "failed"

    outcome = await commands.handle_payment_callback(session, redis, gateway, payload)

    assert outcome == "rejected"
    order = await repository.load_order(session, result.order.id)
    assert order.status is OrderStatus.PENDING_PAYMENT
    assert await stock_of(session, 1) == 8

    del payload["signature"]
    assert await commands.handle_payment_callback(session, redis, gateway, payload) == "rejected"


@pytest.mark.asyncio
async def test_failed_payment_restores_stock(session, redis, gateway, address):
    result = await checkout(session, redis, gateway, address)
    outcome = await commands.handle_payment_callback(
        session, redis, gateway, paid_callback(result.order, status="failed")
    )

    assert outcome == "payment_failed"
    order = await repository.load_order(session, result.order.id)
    assert order.status is OrderStatus.PAYMENT_FAILED
    assert await stock_of(session, 1) == 10
    assert await stock_of(session, 2) == 5


@pytest.mark.asyncio
async def test_amount_mismatch_fails_payment(session, redis, gateway, address):
    result = await checkout(session, redis, gateway, address)
    outcome = await commands.handle_payment_callback(
        session, redis, gateway, paid_callback(result.order, amount="1.00")
    )

    assert outcome == "payment_failed"
    history = await event_store.load_transitions(session, result.order.id)
    assert "amount mismatch" in history[-1]["reason"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides, reason",
    [
        ({"amount": "not-a-number"}, "amount missing or unreadable"),
        ({"amount": ""}, "amount missing or unreadable"),
        ({"currency": "USD"}, "currency mismatch"),
    ],
)
async def test_success_without_matching_amount_fails_payment(
    session, redis, gateway, address, overrides, reason
):
    result = await checkout(session, redis, gateway, address)
    outcome = await commands.handle_payment_callback(
        session, redis, gateway, paid_callback(result.order, **overrides)
    )

    assert outcome == "payment_failed"
    order = await repository.load_order(session, result.order.id)
    assert order.status is OrderStatus.PAYMENT_FAILED
    assert order.paid_at is None
    history = await event_store.load_transitions(session, result.order.id)
    assert reason in history[-1]["reason"]
    assert await stock_of(session, 1) == 10
    assert await stock_of(session, 2) == 5


@pytest.mark.asyncio
async def test_success_with_no_amount_fails_payment(session, redis, gateway, address):
    result = await checkout(session, redis, gateway, address)
    payload = signed_payload(
        refno=format_reference(result.order.id),
        transaction_id="TX1",
        status="success",
        currency="THB",
    )

    outcome = await commands.handle_payment_callback(session, redis, gateway, payload)

    assert outcome == "payment_failed"
    history = await event_store.load_transitions(session, result.order.id)
    assert "amount missing" in history[-1]["reason"]
    assert await stock_of(session, 1) == 10


@pytest.mark.asyncio
@pytest.mark.parametrize("currency", ["thb", None])
async def test_currency_is_case_insensitive_and_optional(
    session, redis, gateway, address, currency
):
    result = await checkout(session, redis, gateway, address)
    payload = paid_callback(result.order, currency=currency)
    if currency is None:
        payload = signed_payload(
            **{k: v for k, v in payload.items() if k not in ("currency", "signature")}
        )

    outcome = await commands.handle_payment_callback(session, redis, gateway, payload)
    assert outcome == "paid"


@pytest.mark.asyncio
async def test_callback_for_unknown_order(session, redis, gateway):
    payload = signed_payload(refno=format_reference(424242), status="success", amount="1.00")
    assert await commands.handle_payment_callback(session, redis, gateway, payload) == "unknown_order"


@pytest.mark.asyncio
async def test_late_failure_after_payment_is_ignored(session, redis, gateway, address):
    result = await checkout(session, redis, gateway, address)
    await commands.handle_payment_callback(session, redis, gateway, paid_callback(result.order))

    outcome = await commands.handle_payment_callback(
        session, redis, gateway, paid_callback(result.order, status="failed")
    )
    assert outcome == "ignored"
    order = await repository.load_order(session, result.order.id)
    assert order.status is OrderStatus.PAID


@pytest.mark.asyncio
async def test_reconcile_payment_polls_gateway(session, redis, gateway, gateway_stub, address):
    result = await checkout(session, redis, gateway, address)
    gateway_stub.payment_status = "00"

    order = await commands.reconcile_payment(session, redis, gateway, result.order.id)

    assert order.status is OrderStatus.PAID
    sent = gateway_stub.bodies("/payment/status")[0]
    assert sent["refno"] == format_reference(result.order.id)


@pytest.mark.asyncio
@pytest.mark.parametrize("reported", ["1.00", "garbage"])
async def test_reconcile_rejects_wrong_amount(
    session, redis, gateway, gateway_stub, address, reported
):
    result = await checkout(session, redis, gateway, address)
    gateway_stub.payment_status = "00"
    gateway_stub.status_amount = reported

    order = await commands.reconcile_payment(session, redis, gateway, result.order.id)

    assert order.status is OrderStatus.PAYMENT_FAILED
    assert await stock_of(session, 1) == 10
    history = await event_store.load_transitions(session, result.order.id)
    assert "amount mismatch" in history[-1]["reason"]


@pytest.mark.asyncio
async def test_reconcile_leaves_pending_payment_alone(session, redis, gateway, gateway_stub, address):
    result = await checkout(session, redis, gateway, address)
    gateway_stub.payment_status = "waiting"

    order = await commands.reconcile_payment(session, redis, gateway, result.order.id)
    assert order.status is OrderStatus.PENDING_PAYMENT


# ── Cancellation ─────────────────────────────────


@pytest.mark.asyncio
async def test_customer_cancels_unpaid_order(session, redis, gateway, address):
    result = await checkout(session, redis, gateway, address)
    order = await commands.cancel_order(
        session, redis, result.order.id, Actor.CUSTOMER, CUSTOMER
    )

    assert order.status is OrderStatus.CANCELLED
    assert not order.refund_required
    assert all(mo.status is OrderStatus.CANCELLED for mo in order.merchant_orders)
    assert await stock_of(session, 1) == 10
    assert await stock_of(session, 2) == 5


@pytest.mark.asyncio
async def test_cancelling_twice_does_not_restore_twice(session, redis, gateway, address):
    result = await checkout(session, redis, gateway, address)
    await commands.cancel_order(session, redis, result.order.id, "customer", CUSTOMER)
    with pytest.raises(InvalidTransition):
        await commands.cancel_order(session, redis, result.order.id, "admin", 1)
    assert await stock_of(session, 1) == 10


@pytest.mark.asyncio
async def test_customer_cannot_cancel_paid_order(session, redis, gateway, address):
    result = await checkout(session, redis, gateway, address)
    await commands.handle_payment_callback(session, redis, gateway, paid_callback(result.order))

    with pytest.raises(InvalidTransition):
        await commands.cancel_order(session, redis, result.order.id, Actor.CUSTOMER, CUSTOMER)
    assert await stock_of(session, 1) == 8


@pytest.mark.asyncio
async def test_admin_cancels_paid_order(session, redis, gateway, address):
    result = await checkout(session, redis, gateway, address)
    await commands.handle_payment_callback(session, redis, gateway, paid_callback(result.order))

    order = await commands.cancel_order(session, redis, result.order.id, Actor.ADMIN, "admin-1")

    assert order.status is OrderStatus.CANCELLED
    assert order.refund_required
    assert await stock_of(session, 1) == 10
    history = await event_store.load_transitions(session, order.id)
    assert history[-1]["actor"] == "admin"
    assert history[-1]["from_status"] == "paid"


@pytest.mark.asyncio
async def test_cannot_cancel_once_processing(session, redis, gateway, address):
    result = await checkout(session, redis, gateway, address, lines=((1, 1),))
    await commands.handle_payment_callback(session, redis, gateway, paid_callback(result.order))
    await commands.update_fulfilment(session, redis, result.order.id, 1, OrderStatus.PROCESSING)

    with pytest.raises(InvalidTransition):
        await commands.cancel_order(session, redis, result.order.id, Actor.ADMIN, "admin-1")
    order = await repository.load_order(session, result.order.id)
    assert order.status is OrderStatus.PROCESSING
    assert await stock_of(session, 1) == 9


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "steps",
    [
        [("processing", None)],
        [("processing", None), ("shipped", "TH0001")],
    ],
)
async def test_cannot_cancel_once_one_merchant_started(session, redis, gateway, address, steps):
    result = await checkout(session, redis, gateway, address)
    order_id = result.order.id
    await commands.handle_payment_callback(session, redis, gateway, paid_callback(result.order))
    for status, tracking in steps:
        await commands.update_fulfilment(
            session, redis, order_id, 1, status, tracking_number=tracking
        )

    with pytest.raises(InvalidTransition) as excinfo:
        await commands.cancel_order(session, redis, order_id, Actor.ADMIN, "admin-1")
    assert "merchant 1" in str(excinfo.value)

    order = await repository.load_order(session, order_id)
    assert order.status is OrderStatus.PAID
    assert not order.refund_required
    merchant_one = order.merchant_order_for(1)
    assert merchant_one.status is OrderStatus(steps[-1][0])
    assert merchant_one.tracking_number == steps[-1][1]
    assert order.merchant_order_for(2).status is OrderStatus.PAID
    assert await stock_of(session, 1) == 8
    assert await stock_of(session, 2) == 4
    history = await event_store.load_transitions(session, order_id)
    assert [h["to_status"] for h in history] == ["pending_payment", "paid"]


@pytest.mark.asyncio
async def test_only_owner_or_admin_may_cancel(session, redis, gateway, address):
    result = await checkout(session, redis, gateway, address)
    with pytest.raises(PermissionDenied):
        await commands.cancel_order(session, redis, result.order.id, Actor.CUSTOMER, 99)
    with pytest.raises(PermissionDenied):
        await commands.cancel_order(session, redis, result.order.id, Actor.MERCHANT, 1)


# ── Fulfilment ───────────────────────────────────


@pytest.mark.asyncio
async def test_parent_follows_slowest_merchant(session, redis, gateway, address):
    result = await checkout(session, redis, gateway, address)
    order_id = result.order.id
    await commands.handle_payment_callback(session, redis, gateway, paid_callback(result.order))

    order = await commands.update_fulfilment(session, redis, order_id, 1, "processing")
    assert order.status is OrderStatus.PAID

    order = await commands.update_fulfilment(
        session, redis, order_id, 1, "shipped", tracking_number="TH0001"
    )
    assert order.merchant_order_for(1).tracking_number == "TH0001"
    assert order.merchant_order_for(1).shipped_at is not None
    assert order.status is OrderStatus.PAID

    order = await commands.update_fulfilment(session, redis, order_id, 2, "processing")
    assert order.status is OrderStatus.PROCESSING

    order = await commands.update_fulfilment(
        session, redis, order_id, 2, "shipped", tracking_number="TH0002"
    )
    assert order.status is OrderStatus.SHIPPED

    await commands.update_fulfilment(session, redis, order_id, 1, "delivered")
    order = await commands.update_fulfilment(session, redis, order_id, 2, "delivered")
    assert order.status is OrderStatus.DELIVERED

    history = await event_store.load_transitions(session, order_id)
    assert [h["to_status"] for h in history] == [
        "pending_payment", "paid", "processing", "shipped", "delivered",
    ]


@pytest.mark.asyncio
async def test_fulfilment_requires_payment(session, redis, gateway, address):
    result = await checkout(session, redis, gateway, address)
    with pytest.raises(InvalidTransition):
        await commands.update_fulfilment(session, redis, result.order.id, 1, "processing")


@pytest.mark.asyncio
async def test_tracking_number_rejected_before_shipping(session, redis, gateway, address):
    result = await checkout(session, redis, gateway, address)
    await commands.handle_payment_callback(session, redis, gateway, paid_callback(result.order))
    with pytest.raises(InvalidTransition):
        await commands.update_fulfilment(
            session, redis, result.order.id, 1, "processing", tracking_number="TH0001"
        )
    order = await repository.load_order(session, result.order.id)
    assert order.merchant_order_for(1).status is OrderStatus.PAID


@pytest.mark.asyncio
async def test_merchant_without_items_in_order(session, redis, gateway, address):
    result = await checkout(session, redis, gateway, address, lines=((1, 1),))
    with pytest.raises(NotFound):
        await commands.update_fulfilment(session, redis, result.order.id, 2, "processing")


@pytest.mark.asyncio
async def test_total_matches_sub_orders_to_the_cent(session, redis, gateway, address):
    result = await checkout(session, redis, gateway, address, lines=((1, 3), (3, 3), (2, 2)))
    order = await repository.load_order(session, result.order.id)

    assert order.total == Decimal("475.00")
    assert sum(mo.subtotal for mo in order.merchant_orders) == order.total


@pytest.mark.asyncio
@pytest.mark.parametrize("operation", ["fulfilment", "cancel"])
async def test_parent_row_is_locked_before_reading(
    session, redis, gateway, address, monkeypatch, operation
):
    result = await checkout(session, redis, gateway, address)
    await commands.handle_payment_callback(session, redis, gateway, paid_callback(result.order))

    calls: list[str] = []
    for name in ("lock_order", "load_order", "load_merchant_order_statuses"):
        original = getattr(repository, name)

        async def recorded(*args, _name=name, _original=original, **kwargs):
            calls.append(_name)
            return await _original(*args, **kwargs)

        monkeypatch.setattr(repository, name, recorded)

    if operation == "fulfilment":
        await commands.update_fulfilment(session, redis, result.order.id, 1, "processing")
    else:
        await commands.cancel_order(session, redis, result.order.id, Actor.ADMIN, "admin-1")

    assert calls[:2] == ["lock_order", "load_order"]


def test_lock_statement_is_select_for_update():
    sql = str(repository.lock_order_statement(1).compile(dialect=postgresql.dialect()))
    assert "FOR UPDATE" in sql


@pytest.mark.asyncio
async def test_locking_unknown_order(session):
    with pytest.raises(NotFound):
        await repository.lock_order(session, 4242)
