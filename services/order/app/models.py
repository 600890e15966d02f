"""
Order Service — ドメインレコード

builder・repository・コマンドハンドラの間で受け渡す pydantic のレコード。
ここから DB には触れない。読み込みは必ず repository を明示的に呼ぶ。
"""

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from pydantic import BaseModel, Field

from .state_machine import OrderStatus

CENT = Decimal("0.01")


def money(value) -> Decimal:
    """セント単位に丸める。Decimal・int・str・ドライバの float を受け付ける。"""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def as_utc(value: datetime | None) -> datetime | None:
    """naive な日時を返すドライバがある。保存値は UTC。"""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# ── Input ────────────────────────────────────────

class CartLine(BaseModel):
    product_id: int
    quantity: int = Field(gt=0)


class ShippingAddress(BaseModel):
    name: str
    email: str
    phone: str
    address: str
    city: str
    state: str
    zip: str
    country: str


# ── Catalog ──────────────────────────────────────

class Product(BaseModel):
    id: int
    merchant_id: int
    name: str
    sku: str | None = None
    price: Decimal
    sale_price: Decimal | None = None
    stock: int
    is_active: bool
    merchant_commission: Decimal = Decimal("0.00")

    @property
    def effective_price(self) -> Decimal:
        return money(self.sale_price if self.sale_price is not None else self.price)


# ── Orders ───────────────────────────────────────

class OrderLine(BaseModel):
    id: int | None = None
    product_id: int
    product_name: str
    product_sku: str | None = None
    quantity: int
    unit_price: Decimal

    @property
    def subtotal(self) -> Decimal:
        return money(self.unit_price * self.quantity)


class MerchantOrder(BaseModel):
    id: int | None = None
    merchant_id: int
    status: OrderStatus = OrderStatus.PENDING_PAYMENT
    tracking_number: str | None = None
    shipped_at: datetime | None = None
    delivered_at: datetime | None = None
    commission_amount: Decimal = Decimal("0.00")
    lines: list[OrderLine] = []

    @property
    def subtotal(self) -> Decimal:
        return money(sum((line.subtotal for line in self.lines), Decimal("0")))

    @property
    def quantity(self) -> int:
        return sum(line.quantity for line in self.lines)

    @property
    def merchant_payout(self) -> Decimal:
        """マーチャントへの支払額 = 小計 - 手数料"""
        return money(self.subtotal - self.commission_amount)


class Order(BaseModel):
    id: int | None = None
    order_number: str
    customer_id: int
    status: OrderStatus = OrderStatus.PENDING_PAYMENT
    payment_reference: str | None = None
    shipping_address: ShippingAddress
    version: int = 0
    refund_required: bool = False
    created_at: datetime
    updated_at: datetime | None = None
    paid_at: datetime | None = None
    merchant_orders: list[MerchantOrder] = []

    @property
    def total(self) -> Decimal:
        return money(sum((mo.subtotal for mo in self.merchant_orders), Decimal("0")))

    @property
    def lines(self) -> list[OrderLine]:
        return [line for mo in self.merchant_orders for line in mo.lines]

    def merchant_order_for(self, merchant_id: int) -> MerchantOrder | None:
        for mo in self.merchant_orders:
            if mo.merchant_id == merchant_id:
                return mo
        return None


# ── Payments ─────────────────────────────────────

class PaymentAttempt(BaseModel):
    id: int
    order_id: int
    gateway_reference: str | None = None
    request_hash: str | None = None
    status: str
    created_at: datetime
    callback_received_at: datetime | None = None


class CustomerContact(BaseModel):
    email: str
    name: str
    phone: str
    address: str

    @classmethod
    def from_address(cls, address: ShippingAddress) -> "CustomerContact":
        return cls(
            email=address.email,
            name=address.name,
            phone=address.phone,
            address=", ".join(
                part
                for part in (
                    address.address,
                    address.city,
                    address.state,
                    address.zip,
                    address.country,
                )
                if part
            ),
        )


class PaymentRequest(BaseModel):
    payment_url: str
    gateway_transaction_id: str
    request_hash: str


class PaymentCallback(BaseModel):
    """署名検証済みコールバックを正規化したもの。"""
    reference_number: str
    order_id: int | None
    transaction_id: str | None = None
    status: str
    amount: Decimal | None = None
    currency: str | None = None
    paid_at: str | None = None
    raw: dict


class GatewayStatus(BaseModel):
    status: str
    raw: dict
