"""
Order Service — カタログアクセス

カタログ (商品・マーチャント) の管理は別の場所。注文サービスは価格を
読み、在庫を動かすだけ。

decrement_stock が並行チェックアウト間の唯一の排他点。条件付き UPDATE
1 文で在庫の確認と減算を同時に行うので、最後の 1 個を 2 つの
リクエストが同時に取ることはない。
"""

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import NotFound
from .models import Product
from .schema import merchants, products


async def lookup_product(session: AsyncSession, product_id: int) -> Product:
    """
    商品を販売状態つきで 1 件読む。

    商品が無効、またはマーチャントが未承認なら is_active は False。
    存在しない ID は NotFound。
    """
    result = await session.execute(
        select(
            products.c.id,
            products.c.merchant_id,
            products.c.name,
            products.c.sku,
            products.c.price,
            products.c.sale_price,
            products.c.stock,
            products.c.is_active,
            merchants.c.is_approved,
            merchants.c.commission_amount,
        )
        .join(merchants, merchants.c.id == products.c.merchant_id)
        .where(products.c.id == product_id)
    )
    row = result.fetchone()
    if row is None:
        raise NotFound(f"Product {product_id} not found")
    return Product(
        id=row.id,
        merchant_id=row.merchant_id,
        name=row.name,
        sku=row.sku,
        price=row.price,
        sale_price=row.sale_price,
        stock=row.stock,
        is_active=bool(row.is_active and row.is_approved),
        merchant_commission=row.commission_amount or 0,
    )


async def decrement_stock(session: AsyncSession, product_id: int, quantity: int) -> bool:
    """在庫があれば quantity 個取る。取れたら True。"""
    result = await session.execute(
        update(products)
        .where(products.c.id == product_id, products.c.stock >= quantity)
        .values(stock=products.c.stock - quantity)
    )
    return result.rowcount == 1


async def restore_stock(session: AsyncSession, product_id: int, quantity: int) -> None:
    """確保した分を戻す (補償・キャンセル)。"""
    await session.execute(
        update(products)
        .where(products.c.id == product_id)
        .values(stock=products.c.stock + quantity)
    )
