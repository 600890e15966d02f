"""
Order Service — コマンドハンドラ (Write 側)

1 ハンドラ = 1 ユースケース:

  create_order            注文を組み立てて在庫を確保し、決済を開始する
  request_payment         未払い注文の決済をやり直す
  handle_payment_callback 署名検証済みのコールバック → paid / payment_failed
  reconcile_payment       ゲートウェイに直接問い合わせて同じ結果を適用する
  cancel_order            顧客または管理者によるキャンセル (在庫は戻す)
  update_fulfilment       マーチャントが自分のサブ注文を進める

状態変更は (id, status, version) の compare-and-set で行う。競合に
負けたハンドラは注文に触れない → 再送や順不同のコールバックは無害。
Redis へのイベント発行は必ずコミットの後。
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

import redis.asyncio as aioredis
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import builder, catalog, config, event_store, repository
from .errors import (
    GatewayError,
    InvalidTransition,
    NotFound,
    OrderError,
    PaymentInProgress,
    PermissionDenied,
    SignatureMismatch,
)
from .events import MerchantOrderUpdated, OrderCreated, OrderStatusChanged, PaymentRequested
from .gateway import PaymentGatewayClient, format_reference
from .models import (
    CartLine,
    CustomerContact,
    Order,
    PaymentCallback,
    PaymentRequest,
    ShippingAddress,
    money,
)
from .state_machine import (
    Actor,
    OrderStatus,
    Transition,
    check_transition,
    fulfilment_started,
    least_advanced,
)

logger = logging.getLogger(__name__)

CHANNEL = "order_events"

# ゲートウェイの結果 → 決済試行の status
_ATTEMPT_STATUS = {"succeeded": "succeeded", "failed": "failed", "expired": "expired"}


@dataclass
class Checkout:
    order: Order
    payment: PaymentRequest


# ── Create ───────────────────────────────────────


async def create_order(
    session: AsyncSession,
    redis: aioredis.Redis,
    gateway: PaymentGatewayClient,
    customer_id: int,
    cart_lines: list[CartLine],
    shipping_address: ShippingAddress,
) -> Checkout:
    """
    注文作成コマンド

    1. 注文を組み立て、在庫を確保して保存 (builder)
    2. OrderCreated を発行
    3. ゲートウェイに決済 URL を要求

    3 が失敗しても注文は pending_payment のまま在庫も確保したまま。
    GatewayError に order_id を載せるので、顧客は request_payment で
    在庫を取り直さずに再試行できる。
    """
    order = await builder.build_order(session, customer_id, cart_lines, shipping_address)

    await _publish(
        redis,
        "OrderCreated",
        OrderCreated(
            order_id=order.id,
            order_number=order.order_number,
            customer_id=order.customer_id,
            merchant_ids=[mo.merchant_id for mo in order.merchant_orders],
            total=str(order.total),
            timestamp=order.created_at,
        ),
    )

    try:
        payment = await _open_payment_attempt(session, redis, gateway, order)
    except GatewayError as e:
        e.order_id = order.id
        raise
    return Checkout(order=order, payment=payment)


async def request_payment(
    session: AsyncSession,
    redis: aioredis.Redis,
    gateway: PaymentGatewayClient,
    order_id: int,
    customer_id: int,
) -> PaymentRequest:
    """支払い待ちの注文に新しい決済試行を開く。在庫には触れない。"""
    order = await repository.load_order(session, order_id)
    if order.customer_id != customer_id:
        raise PermissionDenied(f"Order {order_id} does not belong to customer {customer_id}")
    if order.status is not OrderStatus.PENDING_PAYMENT:
        raise InvalidTransition(
            order.status.value, OrderStatus.PAID.value, "order is not awaiting payment"
        )
    return await _open_payment_attempt(session, redis, gateway, order)


async def _open_payment_attempt(
    session: AsyncSession,
    redis: aioredis.Redis,
    gateway: PaymentGatewayClient,
    order: Order,
) -> PaymentRequest:
    """
    注文ごとに 1 つしかない pending 枠を確保してからゲートウェイを呼ぶ。
    PAYMENT_ATTEMPT_TTL より古い pending は先に expired にする。
    """
    now = datetime.now(timezone.utc)

    pending = await repository.load_pending_attempt(session, order.id)
    if pending is not None:
        age = (now - pending.created_at).total_seconds()
        if age < config.PAYMENT_ATTEMPT_TTL:
            raise PaymentInProgress(
                f"Order {order.id} already has a pending payment attempt"
            )
        await repository.update_payment_attempt(session, pending.id, status="expired")
        logger.info("Expired stale payment attempt %s for order %s", pending.id, order.id)

    # 部分 UNIQUE インデックスが同時の 2 つ目を弾く
    try:
        attempt_id = await repository.insert_payment_attempt(session, order.id, now)
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise PaymentInProgress(
            f"Order {order.id} already has a pending payment attempt"
        ) from None

    contact = CustomerContact.from_address(order.shipping_address)
    try:
        payment = await gateway.create_payment_request(order, contact)
    except GatewayError:
        await repository.update_payment_attempt(session, attempt_id, status="failed")
        await session.commit()
        logger.warning("Payment request for order %s failed; attempt %s closed", order.id, attempt_id)
        raise

    await repository.update_payment_attempt(
        session,
        attempt_id,
        gateway_reference=payment.gateway_transaction_id,
        request_hash=payment.request_hash,
    )
    await repository.set_payment_reference(session, order.id, payment.gateway_transaction_id)
    await session.commit()

    await _publish(
        redis,
        "PaymentRequested",
        PaymentRequested(
            order_id=order.id,
            attempt_id=attempt_id,
            transaction_id=payment.gateway_transaction_id,
            timestamp=now,
        ),
    )
    return payment


# ── Payment results ──────────────────────────────


async def handle_payment_callback(
    session: AsyncSession,
    redis: aioredis.Redis,
    gateway: PaymentGatewayClient,
    payload: dict,
) -> str:
    """
    ゲートウェイのコールバックを適用し、結果を返す:

      rejected       署名不一致。何も変更しない
      unknown_order  参照番号に該当する注文がない
      ignored        注文がもう支払い待ちでない、または結果がまだ pending
      paid / payment_failed
    """
    try:
        callback = _verified_callback(gateway, payload)
    except SignatureMismatch as e:
        logger.warning("Dropping payment callback: %s", e.message)
        return "rejected"

    if callback.order_id is None:
        logger.warning("Payment callback with unusable reference %r", callback.reference_number)
        return "unknown_order"
    try:
        order = await repository.load_order(session, callback.order_id)
    except NotFound:
        logger.warning("Payment callback for unknown order %s", callback.order_id)
        return "unknown_order"

    if callback.status == "pending":
        logger.info("Payment for order %s still pending at gateway", order.id)
        return "ignored"

    return await _apply_payment_result(
        session,
        redis,
        order,
        callback.status,
        transaction_id=callback.transaction_id,
        problem=_callback_problem(order, callback, gateway.config.currency),
    )


def _verified_callback(gateway: PaymentGatewayClient, payload: dict) -> PaymentCallback:
    if not gateway.verify_callback(payload):
        raise SignatureMismatch(
            f"signature mismatch for reference {payload.get('refno')!r}"
        )
    return gateway.parse_callback(payload)


def _callback_problem(order: Order, callback: PaymentCallback, currency: str) -> str | None:
    """
    成功コールバックの金額と通貨を注文と突き合わせる。
    食い違いがあれば理由を返す (→ 成功でも payment_failed 扱い)。
    通貨が省略されたコールバックは設定通貨とみなす。
    """
    if callback.status != "succeeded":
        return None
    if callback.amount is None:
        return f"amount missing or unreadable: {callback.raw.get('amount')!r}"
    if callback.amount != order.total:
        return f"amount mismatch: expected {order.total}, received {callback.amount}"
    if callback.currency is not None and callback.currency.upper() != currency:
        return f"currency mismatch: expected {currency}, received {callback.currency}"
    return None


async def reconcile_payment(
    session: AsyncSession,
    redis: aioredis.Redis,
    gateway: PaymentGatewayClient,
    order_id: int,
) -> Order:
    """
    支払い待ちの注文についてゲートウェイに結果を問い合わせ、
    確定していればコールバックと同じように適用する。
    """
    order = await repository.load_order(session, order_id)
    if order.status is not OrderStatus.PENDING_PAYMENT:
        return order

    result = await gateway.check_status(format_reference(order.id))
    if result.status == "pending":
        return order

    problem = None
    reported = result.raw.get("amount")
    if result.status == "succeeded" and reported not in (None, ""):
        try:
            amount = money(reported)
        except ArithmeticError:
            amount = None
        if amount != order.total:
            problem = f"amount mismatch: expected {order.total}, received {reported!r}"

    transaction_id = result.raw.get("transaction_id")
    await _apply_payment_result(
        session,
        redis,
        order,
        result.status,
        transaction_id=str(transaction_id) if transaction_id else None,
        problem=problem,
    )
    return await repository.load_order(session, order_id)


async def _apply_payment_result(
    session: AsyncSession,
    redis: aioredis.Redis,
    order: Order,
    outcome: str,
    transaction_id: str | None = None,
    problem: str | None = None,
) -> str:
    if order.status is not OrderStatus.PENDING_PAYMENT:
        logger.info(
            "Order %s is %s; payment result %r ignored",
            order.id,
            order.status.value,
            outcome,
        )
        return "ignored"

    now = datetime.now(timezone.utc)
    target = OrderStatus.PAID if outcome == "succeeded" else OrderStatus.PAYMENT_FAILED
    reason = f"gateway reported {outcome}"
    if target is OrderStatus.PAID and problem is not None:
        logger.warning("Order %s payment not accepted: %s", order.id, problem)
        target = OrderStatus.PAYMENT_FAILED
        reason = problem

    transition = check_transition(order.status, target, Actor.GATEWAY)
    values: dict = {}
    if target is OrderStatus.PAID:
        values["paid_at"] = now
    if transaction_id:
        values["payment_reference"] = transaction_id

    applied = await _apply_transition(
        session, order, transition, now, actor_id=transaction_id, reason=reason, **values
    )
    if not applied:
        await session.rollback()
        logger.info("Order %s changed concurrently; payment result %r ignored", order.id, outcome)
        return "ignored"

    attempt = await repository.find_attempt_by_reference(session, order.id, transaction_id)
    if attempt is not None:
        attempt_status = _ATTEMPT_STATUS.get(outcome, "failed")
        if target is OrderStatus.PAYMENT_FAILED and attempt_status == "succeeded":
            attempt_status = "failed"
        await repository.update_payment_attempt(
            session, attempt.id, status=attempt_status, callback_received_at=now
        )

    await session.commit()
    await _publish_status(redis, order, transition, now, reason)
    logger.info("Order %s moved to %s", order.id, target.value)
    return target.value


# ── Cancellation ─────────────────────────────────


async def cancel_order(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: int,
    actor: Actor | str,
    actor_id: str | int | None = None,
) -> Order:
    """
    顧客 (pending_payment の間だけ) または管理者 (pending_payment / paid)
    によるキャンセル。確保した在庫はすべてカタログに戻す。
    支払い済みのキャンセルには返金フラグを立てる。

    親が paid のままでも、どれか 1 つのマーチャントが出荷処理を
    始めていればキャンセルできない。
    """
    actor = Actor(actor)
    await repository.lock_order(session, order_id)
    order = await repository.load_order(session, order_id)
    try:
        transition = _check_cancellation(order, actor, actor_id)
    except OrderError:
        await session.rollback()
        raise

    now = datetime.now(timezone.utc)
    reason = f"cancelled by {actor.value}"
    values = {"refund_required": True} if transition.requires_refund else {}

    applied = await _apply_transition(
        session,
        order,
        transition,
        now,
        actor_id=str(actor_id) if actor_id is not None else None,
        reason=reason,
        **values,
    )
    if not applied:
        await session.rollback()
        raise InvalidTransition(
            order.status.value, OrderStatus.CANCELLED.value, "order changed concurrently"
        )
    await session.commit()

    if transition.requires_refund:
        logger.warning("Order %s cancelled after payment; refund required", order.id)
    await _publish_status(redis, order, transition, now, reason)
    return await repository.load_order(session, order_id)


def _check_cancellation(order: Order, actor: Actor, actor_id) -> Transition:
    if actor is Actor.CUSTOMER:
        if actor_id is None or str(order.customer_id) != str(actor_id):
            raise PermissionDenied(f"Order {order.id} does not belong to this customer")
    elif actor is not Actor.ADMIN:
        raise PermissionDenied(f"{actor.value} cannot cancel orders")

    transition = check_transition(order.status, OrderStatus.CANCELLED, actor)
    for mo in order.merchant_orders:
        if fulfilment_started(mo.status):
            raise InvalidTransition(
                order.status.value,
                OrderStatus.CANCELLED.value,
                f"merchant {mo.merchant_id} is already {mo.status.value}",
            )
    return transition


# ── Fulfilment ───────────────────────────────────


async def update_fulfilment(
    session: AsyncSession,
    redis: aioredis.Redis,
    order_id: int,
    merchant_id: int,
    target: OrderStatus | str,
    tracking_number: str | None = None,
) -> Order:
    """
    マーチャントが自分のサブ注文を paid → processing → shipped → delivered
    と進める。親注文は一番遅いサブ注文に追従するので、全マーチャントが
    出荷して初めて shipped になる。

    親の行をロックしてからサブ注文を読むので、2 つのマーチャントが
    同時に進めても親の導出は必ずどちらかのコミット後の状態を見る。
    """
    target = OrderStatus(target)
    await repository.lock_order(session, order_id)
    order = await repository.load_order(session, order_id)
    sub = order.merchant_order_for(merchant_id)
    try:
        if sub is None:
            raise NotFound(f"Order {order_id} has no items from merchant {merchant_id}")
        check_transition(sub.status, target, Actor.MERCHANT, tracking_number)
    except OrderError:
        await session.rollback()
        raise

    now = datetime.now(timezone.utc)
    values: dict = {}
    if tracking_number:
        values["tracking_number"] = tracking_number
    if target is OrderStatus.SHIPPED:
        values["shipped_at"] = now
    elif target is OrderStatus.DELIVERED:
        values["delivered_at"] = now

    advanced = await repository.advance_merchant_order(
        session, sub.id, sub.status, target, **values
    )
    if not advanced:
        await session.rollback()
        raise InvalidTransition(sub.status.value, target.value, "sub-order changed concurrently")

    parent_transition = None
    statuses = await repository.load_merchant_order_statuses(session, order_id)
    derived = least_advanced(statuses)
    if derived is not order.status:
        parent_transition = check_transition(order.status, derived, Actor.MERCHANT)
        applied = await _apply_transition(
            session,
            order,
            parent_transition,
            now,
            actor_id=str(merchant_id),
            reason=f"all sub-orders {derived.value}",
        )
        if not applied:
            await session.rollback()
            raise InvalidTransition(
                order.status.value, derived.value, "order changed concurrently"
            )
    await session.commit()

    await _publish(
        redis,
        "MerchantOrderUpdated",
        MerchantOrderUpdated(
            order_id=order_id,
            merchant_id=merchant_id,
            status=target.value,
            tracking_number=tracking_number,
            timestamp=now,
        ),
    )
    if parent_transition is not None:
        await _publish_status(redis, order, parent_transition, now, None)
    return await repository.load_order(session, order_id)


# ── Shared ───────────────────────────────────────


async def _apply_transition(
    session: AsyncSession,
    order: Order,
    transition: Transition,
    now: datetime,
    actor_id: str | None = None,
    reason: str | None = None,
    **values,
) -> bool:
    """
    検証済みの遷移を 1 つ書き込む (コミットはしない):

    1. status の compare-and-set
    2. 監査ログに 1 行追記
    3. paid / cancelled / payment_failed はサブ注文にも反映
    4. 必要なら在庫を戻す

    他のリクエストが先に注文を変えていたら False。
    """
    if not await repository.compare_and_set_status(
        session, order, transition.target, now, **values
    ):
        return False

    await event_store.append_transition(
        session,
        order.id,
        version=order.version + 1,
        actor=transition.actor.value,
        actor_id=actor_id,
        from_status=transition.current.value,
        to_status=transition.target.value,
        reason=reason,
        now=now,
    )

    if transition.target in (
        OrderStatus.PAID,
        OrderStatus.CANCELLED,
        OrderStatus.PAYMENT_FAILED,
    ):
        await repository.set_all_merchant_orders_status(session, order.id, transition.target)

    if transition.restores_stock:
        for line in order.lines:
            await catalog.restore_stock(session, line.product_id, line.quantity)
        logger.info("Restored stock for %d line(s) of order %s", len(order.lines), order.id)
    return True


async def _publish_status(
    redis: aioredis.Redis,
    order: Order,
    transition: Transition,
    now: datetime,
    reason: str | None,
) -> None:
    await _publish(
        redis,
        "OrderStatusChanged",
        OrderStatusChanged(
            order_id=order.id,
            from_status=transition.current.value,
            to_status=transition.target.value,
            actor=transition.actor.value,
            reason=reason,
            timestamp=now,
        ),
    )


async def _publish(redis: aioredis.Redis, event_type: str, event: BaseModel) -> None:
    await redis.publish(
        CHANNEL,
        json.dumps(
            {"event_type": event_type, "data": event.model_dump(mode="json")},
            default=str,
        ),
    )
