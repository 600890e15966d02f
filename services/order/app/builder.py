"""
Order Service — 注文ビルダー

複数マーチャントにまたがるカートを、マーチャントごとのサブ注文を
持つ 1 つの注文にする。

  1. 空のカートは拒否
  2. 全商品を引く。無効・存在しない商品は購入不可
  3. マーチャントごとに明細をまとめ、価格を固定し手数料を計算
  4. 明細ごとに在庫を確保
     └─ 1 つでも足りなければ、それまでに確保した分をすべて戻して
        (補償) InsufficientStock
  5. 注文 + サブ注文 + 明細を 1 トランザクションで保存

在庫の確保は 1 明細ずつコミットされる条件付き減算なので、チェック
アウトが同時に握る商品行は常に 1 つだけ。その代わり、失敗した
チェックアウトは一瞬だけ在庫を取り、あとで戻す。
"""

import logging
import secrets
from collections import OrderedDict
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from . import catalog, event_store, repository
from .errors import EmptyCart, InsufficientStock, NotFound, ProductUnavailable
from .models import (
    CartLine,
    MerchantOrder,
    Order,
    OrderLine,
    Product,
    ShippingAddress,
    money,
)
from .state_machine import Actor, OrderStatus

logger = logging.getLogger(__name__)


def new_order_number(now: datetime) -> str:
    return f"ORD-{now:%Y%m%d}-{secrets.token_hex(4).upper()}"


def merge_cart_lines(cart_lines: list[CartLine]) -> list[CartLine]:
    """同じ商品が 2 行あれば数量を合算して 1 行にする。"""
    merged: OrderedDict[int, int] = OrderedDict()
    for line in cart_lines:
        merged[line.product_id] = merged.get(line.product_id, 0) + line.quantity
    return [CartLine(product_id=pid, quantity=qty) for pid, qty in merged.items()]


def split_by_merchant(
    lines: list[CartLine], products: dict[int, Product]
) -> list[MerchantOrder]:
    """
    マーチャントごとのサブ注文を作る。

    単価はこの時点の販売価格で固定する。手数料はマーチャントの固定額 ×
    サブ注文の個数。
    """
    by_merchant: OrderedDict[int, list[OrderLine]] = OrderedDict()
    for line in lines:
        product = products[line.product_id]
        by_merchant.setdefault(product.merchant_id, []).append(
            OrderLine(
                product_id=product.id,
                product_name=product.name,
                product_sku=product.sku,
                quantity=line.quantity,
                unit_price=product.effective_price,
            )
        )

    commission_per_piece = {p.merchant_id: p.merchant_commission for p in products.values()}
    return [
        MerchantOrder(
            merchant_id=merchant_id,
            lines=merchant_lines,
            commission_amount=money(
                commission_per_piece[merchant_id]
                * sum(line.quantity for line in merchant_lines)
            ),
        )
        for merchant_id, merchant_lines in by_merchant.items()
    ]


async def build_order(
    session: AsyncSession,
    customer_id: int,
    cart_lines: list[CartLine],
    shipping_address: ShippingAddress,
) -> Order:
    """
    注文を組み立て、在庫を確保し、pending_payment で保存する。

    マーチャントをまたいで all-or-nothing: 例外で抜けたとき、この呼び出しが
    取った在庫は 1 つも減ったまま残らない。
    """
    if not cart_lines:
        raise EmptyCart()
    lines = merge_cart_lines(cart_lines)

    # ── 1. カタログ参照 ───────────────────────────
    products: dict[int, Product] = {}
    for line in lines:
        try:
            product = await catalog.lookup_product(session, line.product_id)
        except NotFound:
            raise ProductUnavailable(line.product_id, "not found") from None
        if not product.is_active:
            raise ProductUnavailable(line.product_id)
        products[line.product_id] = product

    # ── 2. マーチャント別に分割 ───────────────────
    merchant_orders = split_by_merchant(lines, products)

    # ── 3. 在庫確保 ───────────────────────────────
    reserved = await reserve_lines(session, lines)

    # ── 4. 保存 ───────────────────────────────────
    now = datetime.now(timezone.utc)
    order = Order(
        order_number=new_order_number(now),
        customer_id=customer_id,
        status=OrderStatus.PENDING_PAYMENT,
        shipping_address=shipping_address,
        version=1,
        created_at=now,
        merchant_orders=merchant_orders,
    )
    # キャンセル (CancelledError) でも確保分は必ず戻す
    try:
        order = await repository.insert_order(session, order)
        await event_store.append_transition(
            session,
            order.id,
            version=1,
            actor=Actor.CUSTOMER.value,
            actor_id=str(customer_id),
            from_status=None,
            to_status=OrderStatus.PENDING_PAYMENT.value,
            reason="order created",
            now=now,
        )
        await session.commit()
    except BaseException:
        await session.rollback()
        logger.exception("Persisting order for customer %s failed", customer_id)
        await release_lines(session, reserved)
        raise

    logger.info(
        "Order %s (%s) created: %d sub-order(s), total %s",
        order.id,
        order.order_number,
        len(order.merchant_orders),
        order.total,
    )
    return order


async def reserve_lines(session: AsyncSession, lines: list[CartLine]) -> list[CartLine]:
    """
    明細ごとに在庫を減らし、1 件ずつコミットする。
    足りない明細があれば、この呼び出しで確保した分を戻してから
    InsufficientStock を投げる。
    """
    reserved: list[CartLine] = []
    for line in lines:
        ok = await catalog.decrement_stock(session, line.product_id, line.quantity)
        if not ok:
            await session.rollback()
            logger.warning(
                "Insufficient stock for product %s (qty %s); releasing %d reservation(s)",
                line.product_id,
                line.quantity,
                len(reserved),
            )
            await release_lines(session, reserved)
            raise InsufficientStock(line.product_id, line.quantity)
        await session.commit()
        reserved.append(line)
    return reserved


async def release_lines(session: AsyncSession, lines: list[CartLine]) -> None:
    """補償: 確保した在庫を戻す。"""
    for line in lines:
        await catalog.restore_stock(session, line.product_id, line.quantity)
    await session.commit()
