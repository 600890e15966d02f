"""
Order Service — テーブル定義

merchants / products はカタログ側の持ち物で、ここでは読み取りと
在庫の増減だけを行う。それ以外は注文サービスが所有する。

order_transitions は監査ログ: 状態変更 1 回につき 1 行、注文ごとに
連番。UNIQUE (order_id, version) が同じ版を書こうとする 2 つ目の
書き込みを弾く楽観的ロックになる。
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

Money = Numeric(12, 2)

# ── Catalog (external collaborator) ──────────────

merchants = Table(
    "merchants",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String(255), nullable=False),
    Column("is_approved", Boolean, nullable=False, default=False),
    # 1 個売れるごとにマーケットプレイスが受け取る固定額
    Column("commission_amount", Money, nullable=False, default=0),
)

products = Table(
    "products",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("merchant_id", Integer, ForeignKey("merchants.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("sku", String(64), nullable=True),
    Column("price", Money, nullable=False),
    Column("sale_price", Money, nullable=True),
    Column("stock", Integer, nullable=False, default=0),
    Column("is_active", Boolean, nullable=False, default=True),
)

# ── Orders ───────────────────────────────────────

orders = Table(
    "orders",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("order_number", String(32), nullable=False, unique=True),
    Column("customer_id", Integer, nullable=False, index=True),
    Column("status", String(32), nullable=False, index=True),
    Column("total", Money, nullable=False),
    Column("payment_reference", String(64), nullable=True),
    Column("shipping_address", JSON, nullable=False),
    Column("version", Integer, nullable=False, default=0),
    Column("refund_required", Boolean, nullable=False, default=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Column("paid_at", DateTime(timezone=True), nullable=True),
)

merchant_orders = Table(
    "merchant_orders",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("order_id", Integer, ForeignKey("orders.id"), nullable=False, index=True),
    Column("merchant_id", Integer, nullable=False, index=True),
    Column("status", String(32), nullable=False),
    Column("tracking_number", String(64), nullable=True),
    Column("subtotal", Money, nullable=False),
    Column("commission_amount", Money, nullable=False, default=0),
    Column("merchant_payout", Money, nullable=False),
    Column("shipped_at", DateTime(timezone=True), nullable=True),
    Column("delivered_at", DateTime(timezone=True), nullable=True),
    UniqueConstraint("order_id", "merchant_id"),
)

order_lines = Table(
    "order_lines",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("order_id", Integer, ForeignKey("orders.id"), nullable=False, index=True),
    Column(
        "merchant_order_id",
        Integer,
        ForeignKey("merchant_orders.id"),
        nullable=False,
    ),
    Column("product_id", Integer, nullable=False),
    Column("product_name", String(255), nullable=False),
    Column("product_sku", String(64), nullable=True),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", Money, nullable=False),
    Column("subtotal", Money, nullable=False),
)

payment_attempts = Table(
    "payment_attempts",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("order_id", Integer, ForeignKey("orders.id"), nullable=False),
    Column("gateway_reference", String(64), nullable=True),
    Column("request_hash", String(64), nullable=True),
    Column("status", String(16), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("callback_received_at", DateTime(timezone=True), nullable=True),
    # pending の決済試行は注文ごとに 1 つまで
    Index(
        "uq_payment_attempts_pending",
        "order_id",
        unique=True,
        postgresql_where=text("status = 'pending'"),
        sqlite_where=text("status = 'pending'"),
    ),
)

order_transitions = Table(
    "order_transitions",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("order_id", Integer, ForeignKey("orders.id"), nullable=False),
    Column("version", Integer, nullable=False),
    Column("actor", String(16), nullable=False),
    Column("actor_id", String(64), nullable=True),
    Column("from_status", String(32), nullable=True),
    Column("to_status", String(32), nullable=False),
    Column("reason", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("order_id", "version"),
)


async def init_db(engine: AsyncEngine) -> None:
    """未作成のテーブルをすべて作成する。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
