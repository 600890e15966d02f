"""
Order Service — クエリハンドラ (Read 側)

顧客・マーチャント・管理者それぞれの視点で同じ注文を読み、JSON に
そのまま出せる dict で返す。各視点は自分の持ち分しか見えない:
マーチャントの一覧はそのマーチャントのサブ注文だけを返す。
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from . import event_store, repository
from .errors import NotFound
from .models import Order, as_utc, money
from .schema import merchant_orders, orders
from .state_machine import OrderStatus


def _iso(value) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def order_to_dict(order: Order) -> dict:
    return {
        "id": order.id,
        "order_number": order.order_number,
        "customer_id": order.customer_id,
        "status": order.status.value,
        "total": str(order.total),
        "payment_reference": order.payment_reference,
        "refund_required": order.refund_required,
        "shipping_address": order.shipping_address.model_dump(),
        "created_at": _iso(order.created_at),
        "updated_at": _iso(order.updated_at),
        "paid_at": _iso(order.paid_at),
        "merchant_orders": [
            {
                "id": mo.id,
                "merchant_id": mo.merchant_id,
                "status": mo.status.value,
                "tracking_number": mo.tracking_number,
                "subtotal": str(mo.subtotal),
                "commission_amount": str(mo.commission_amount),
                "merchant_payout": str(mo.merchant_payout),
                "shipped_at": _iso(mo.shipped_at),
                "delivered_at": _iso(mo.delivered_at),
                "lines": [
                    {
                        "product_id": line.product_id,
                        "product_name": line.product_name,
                        "product_sku": line.product_sku,
                        "quantity": line.quantity,
                        "unit_price": str(line.unit_price),
                        "subtotal": str(line.subtotal),
                    }
                    for line in mo.lines
                ],
            }
            for mo in order.merchant_orders
        ],
    }


async def get_order(session: AsyncSession, order_id: int) -> dict | None:
    try:
        order = await repository.load_order(session, order_id)
    except NotFound:
        return None
    return order_to_dict(order)


async def list_customer_orders(session: AsyncSession, customer_id: int) -> list[dict]:
    """顧客の注文一覧 (新しい順)。"""
    result = await session.execute(
        select(orders)
        .where(orders.c.customer_id == customer_id)
        .order_by(orders.c.created_at.desc(), orders.c.id.desc())
    )
    return [_summary(row) for row in result.fetchall()]


async def list_orders(
    session: AsyncSession, status: OrderStatus | str | None = None
) -> list[dict]:
    """管理者向けの全注文一覧。status で絞り込める。"""
    query = select(orders).order_by(orders.c.created_at.desc(), orders.c.id.desc())
    if status is not None:
        query = query.where(orders.c.status == OrderStatus(status).value)
    result = await session.execute(query)
    return [_summary(row) for row in result.fetchall()]


async def list_merchant_orders(
    session: AsyncSession,
    merchant_id: int,
    status: OrderStatus | str | None = None,
) -> list[dict]:
    """マーチャントのサブ注文一覧。親注文の状態と手数料・支払額つき。"""
    query = (
        select(
            merchant_orders.c.id,
            merchant_orders.c.order_id,
            merchant_orders.c.status,
            merchant_orders.c.tracking_number,
            merchant_orders.c.subtotal,
            merchant_orders.c.commission_amount,
            merchant_orders.c.merchant_payout,
            merchant_orders.c.shipped_at,
            merchant_orders.c.delivered_at,
            orders.c.order_number,
            orders.c.status.label("order_status"),
            orders.c.shipping_address,
            orders.c.created_at,
        )
        .join(orders, orders.c.id == merchant_orders.c.order_id)
        .where(merchant_orders.c.merchant_id == merchant_id)
        .order_by(orders.c.created_at.desc(), merchant_orders.c.id.desc())
    )
    if status is not None:
        query = query.where(merchant_orders.c.status == OrderStatus(status).value)
    result = await session.execute(query)
    return [
        {
            "id": row.id,
            "order_id": row.order_id,
            "order_number": row.order_number,
            "status": row.status,
            "order_status": row.order_status,
            "tracking_number": row.tracking_number,
            "subtotal": str(money(row.subtotal)),
            "commission_amount": str(money(row.commission_amount)),
            "merchant_payout": str(money(row.merchant_payout)),
            "shipping_address": row.shipping_address,
            "shipped_at": _iso(row.shipped_at),
            "delivered_at": _iso(row.delivered_at),
            "created_at": _iso(row.created_at),
        }
        for row in result.fetchall()
    ]


async def get_order_history(session: AsyncSession, order_id: int) -> list[dict]:
    """だれが注文をどこへ動かしたか (古い順)。"""
    return await event_store.load_transitions(session, order_id)


def _summary(row) -> dict:
    return {
        "id": row.id,
        "order_number": row.order_number,
        "customer_id": row.customer_id,
        "status": row.status,
        "total": str(money(row.total)),
        "payment_reference": row.payment_reference,
        "refund_required": bool(row.refund_required),
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
    }
