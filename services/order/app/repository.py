"""
Order Service — リポジトリ

注文レコードの読み書きを明示的に行う。テーブルをまたぐ読み込みは
1 つずつ別のクエリで、遅延ロードはしない。ここの関数はコミット
しない: トランザクションは呼び出し元のコマンドハンドラが持つ。
"""

from datetime import datetime, timezone

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import NotFound
from .models import (
    MerchantOrder,
    Order,
    OrderLine,
    PaymentAttempt,
    ShippingAddress,
    as_utc,
    money,
)
from .schema import merchant_orders, order_lines, orders, payment_attempts
from .state_machine import OrderStatus

# ── Orders ───────────────────────────────────────


async def insert_order(session: AsyncSession, order: Order) -> Order:
    """注文をサブ注文・明細ごと INSERT し、ID を埋めたものを返す。"""
    result = await session.execute(
        insert(orders)
        .values(
            order_number=order.order_number,
            customer_id=order.customer_id,
            status=order.status.value,
            total=order.total,
            payment_reference=order.payment_reference,
            shipping_address=order.shipping_address.model_dump(),
            version=order.version,
            refund_required=False,
            created_at=order.created_at,
            updated_at=order.created_at,
        )
        .returning(orders.c.id)
    )
    order_id = result.scalar_one()

    saved_subs = []
    for mo in order.merchant_orders:
        result = await session.execute(
            insert(merchant_orders)
            .values(
                order_id=order_id,
                merchant_id=mo.merchant_id,
                status=mo.status.value,
                subtotal=mo.subtotal,
                commission_amount=mo.commission_amount,
                merchant_payout=mo.merchant_payout,
            )
            .returning(merchant_orders.c.id)
        )
        mo_id = result.scalar_one()

        saved_lines = []
        for line in mo.lines:
            result = await session.execute(
                insert(order_lines)
                .values(
                    order_id=order_id,
                    merchant_order_id=mo_id,
                    product_id=line.product_id,
                    product_name=line.product_name,
                    product_sku=line.product_sku,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    subtotal=line.subtotal,
                )
                .returning(order_lines.c.id)
            )
            saved_lines.append(line.model_copy(update={"id": result.scalar_one()}))
        saved_subs.append(mo.model_copy(update={"id": mo_id, "lines": saved_lines}))

    return order.model_copy(update={"id": order_id, "merchant_orders": saved_subs})


async def load_order(session: AsyncSession, order_id: int) -> Order:
    """注文をサブ注文・明細つきで 1 件読む。なければ NotFound。"""
    result = await session.execute(select(orders).where(orders.c.id == order_id))
    row = result.fetchone()
    if row is None:
        raise NotFound(f"Order {order_id} not found")

    result = await session.execute(
        select(order_lines)
        .where(order_lines.c.order_id == order_id)
        .order_by(order_lines.c.id)
    )
    lines_by_sub: dict[int, list[OrderLine]] = {}
    for line in result.fetchall():
        lines_by_sub.setdefault(line.merchant_order_id, []).append(
            OrderLine(
                id=line.id,
                product_id=line.product_id,
                product_name=line.product_name,
                product_sku=line.product_sku,
                quantity=line.quantity,
                unit_price=money(line.unit_price),
            )
        )

    result = await session.execute(
        select(merchant_orders)
        .where(merchant_orders.c.order_id == order_id)
        .order_by(merchant_orders.c.id)
    )
    subs = [
        MerchantOrder(
            id=mo.id,
            merchant_id=mo.merchant_id,
            status=OrderStatus(mo.status),
            tracking_number=mo.tracking_number,
            shipped_at=as_utc(mo.shipped_at),
            delivered_at=as_utc(mo.delivered_at),
            commission_amount=money(mo.commission_amount),
            lines=lines_by_sub.get(mo.id, []),
        )
        for mo in result.fetchall()
    ]

    return Order(
        id=row.id,
        order_number=row.order_number,
        customer_id=row.customer_id,
        status=OrderStatus(row.status),
        payment_reference=row.payment_reference,
        shipping_address=ShippingAddress(**row.shipping_address),
        version=row.version,
        refund_required=bool(row.refund_required),
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
        paid_at=as_utc(row.paid_at),
        merchant_orders=subs,
    )


def lock_order_statement(order_id: int):
    return select(orders.c.id).where(orders.c.id == order_id).with_for_update()


async def lock_order(session: AsyncSession, order_id: int) -> None:
    """
    親注文の行をトランザクション終了までロックする。

    サブ注文を読んで親の状態を決める処理 (出荷更新・キャンセル) は
    必ず先にこれを呼ぶ。同じ注文への並行更新は直列化され、後続は
    先行のコミット済みの状態を読む。
    """
    result = await session.execute(lock_order_statement(order_id))
    if result.fetchone() is None:
        raise NotFound(f"Order {order_id} not found")


async def compare_and_set_status(
    session: AsyncSession,
    order: Order,
    new_status: OrderStatus,
    now: datetime,
    **values,
) -> bool:
    """
    読み込み以降だれも変更していない場合だけ new_status に進める。
    False は他のリクエストが先に変更したということ。
    """
    result = await session.execute(
        update(orders)
        .where(
            orders.c.id == order.id,
            orders.c.status == order.status.value,
            orders.c.version == order.version,
        )
        .values(
            status=new_status.value,
            version=orders.c.version + 1,
            updated_at=now,
            **values,
        )
    )
    return result.rowcount == 1


async def set_payment_reference(
    session: AsyncSession, order_id: int, reference: str
) -> None:
    await session.execute(
        update(orders)
        .where(orders.c.id == order_id)
        .values(payment_reference=reference, updated_at=datetime.now(timezone.utc))
    )


# ── Sub-orders ───────────────────────────────────


async def advance_merchant_order(
    session: AsyncSession,
    merchant_order_id: int,
    expected_status: OrderStatus,
    new_status: OrderStatus,
    **values,
) -> bool:
    """サブ注文の status に対する compare-and-set。"""
    result = await session.execute(
        update(merchant_orders)
        .where(
            merchant_orders.c.id == merchant_order_id,
            merchant_orders.c.status == expected_status.value,
        )
        .values(status=new_status.value, **values)
    )
    return result.rowcount == 1


async def load_merchant_order_statuses(
    session: AsyncSession, order_id: int
) -> list[OrderStatus]:
    result = await session.execute(
        select(merchant_orders.c.status).where(merchant_orders.c.order_id == order_id)
    )
    return [OrderStatus(status) for status in result.scalars().all()]


async def set_all_merchant_orders_status(
    session: AsyncSession, order_id: int, status: OrderStatus
) -> None:
    """paid / cancelled / payment_failed はサブ注文も親に合わせる。"""
    await session.execute(
        update(merchant_orders)
        .where(merchant_orders.c.order_id == order_id)
        .values(status=status.value)
    )


# ── Payment attempts ─────────────────────────────


async def insert_payment_attempt(
    session: AsyncSession, order_id: int, now: datetime
) -> int:
    result = await session.execute(
        insert(payment_attempts)
        .values(order_id=order_id, status="pending", created_at=now)
        .returning(payment_attempts.c.id)
    )
    return result.scalar_one()


async def update_payment_attempt(session: AsyncSession, attempt_id: int, **values) -> None:
    await session.execute(
        update(payment_attempts)
        .where(payment_attempts.c.id == attempt_id)
        .values(**values)
    )


async def load_pending_attempt(
    session: AsyncSession, order_id: int
) -> PaymentAttempt | None:
    result = await session.execute(
        select(payment_attempts).where(
            payment_attempts.c.order_id == order_id,
            payment_attempts.c.status == "pending",
        )
    )
    row = result.fetchone()
    return _attempt(row) if row else None


async def load_attempts(session: AsyncSession, order_id: int) -> list[PaymentAttempt]:
    result = await session.execute(
        select(payment_attempts)
        .where(payment_attempts.c.order_id == order_id)
        .order_by(payment_attempts.c.id)
    )
    return [_attempt(row) for row in result.fetchall()]


async def find_attempt_by_reference(
    session: AsyncSession, order_id: int, gateway_reference: str | None
) -> PaymentAttempt | None:
    """コールバックが属する決済試行。見つからなければ pending のもの。"""
    if gateway_reference:
        result = await session.execute(
            select(payment_attempts).where(
                payment_attempts.c.order_id == order_id,
                payment_attempts.c.gateway_reference == gateway_reference,
            )
        )
        row = result.fetchone()
        if row is not None:
            return _attempt(row)
    return await load_pending_attempt(session, order_id)


def _attempt(row) -> PaymentAttempt:
    return PaymentAttempt(
        id=row.id,
        order_id=row.order_id,
        gateway_reference=row.gateway_reference,
        request_hash=row.request_hash,
        status=row.status,
        created_at=as_utc(row.created_at),
        callback_received_at=as_utc(row.callback_received_at),
    )
