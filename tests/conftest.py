"""
共通フィクスチャ: インメモリのカタログ、スタブの決済プロバイダ、
モックの Redis 接続。
"""
import json
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

from decimal import Decimal
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from services.order.app.config import GatewayConfig
from services.order.app.gateway import PaymentGatewayClient, sign
from services.order.app.models import ShippingAddress
from services.order.app.schema import init_db, merchants, products

SECRET = "s3cr3t"

MERCHANTS = [
    {"id": 1, "name": "Merchant One", "is_approved": True,
     "commission_amount": Decimal("5.00")},
    {"id": 2, "name": "Merchant Two", "is_approved": True,
     "commission_amount": Decimal("2.50")},
    {"id": 3, "name": "Not Yet Approved", "is_approved": False,
     "commission_amount": Decimal("0.00")},
]

PRODUCTS = [
    {"id": 1, "merchant_id": 1, "name": "Product A", "sku": "A-1",
     "price": Decimal("100.00"), "sale_price": None, "stock": 10, "is_active": True},
    {"id": 2, "merchant_id": 2, "name": "Product B", "sku": "B-1",
     "price": Decimal("50.00"), "sale_price": None, "stock": 5, "is_active": True},
    {"id": 3, "merchant_id": 1, "name": "Product C", "sku": "C-1",
     "price": Decimal("30.00"), "sale_price": Decimal("25.00"), "stock": 3, "is_active": True},
    {"id": 4, "merchant_id": 2, "name": "Retired D", "sku": "D-1",
     "price": Decimal("10.00"), "sale_price": None, "stock": 100, "is_active": False},
    {"id": 5, "merchant_id": 3, "name": "Product E", "sku": "E-1",
     "price": Decimal("15.00"), "sale_price": None, "stock": 100, "is_active": True},
    {"id": 6, "merchant_id": 2, "name": "Last One F", "sku": "F-1",
     "price": Decimal("20.00"), "sale_price": None, "stock": 1, "is_active": True},
]


class GatewayStub:
    """httpx.MockTransport の裏で決済プロバイダを演じる。"""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.fail_status: int | None = None
        self.raise_timeout = False
        self.payment_status = "success"
        self.status_amount: str | None = None
        self._counter = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.raise_timeout:
            raise httpx.ReadTimeout("timed out", request=request)
        if self.fail_status is not None:
            return httpx.Response(self.fail_status, text="gateway unavailable")

        body = json.loads(request.content)
        if request.url.path == "/payment":
            self._counter += 1
            return httpx.Response(
                200,
                json={
                    "payment_url": f"https://pay.example.com/checkout/{body['refno']}",
                    "transaction_id": f"TX{self._counter}",
                },
            )
        if request.url.path == "/payment/status":
            reply = {"status": self.payment_status, "transaction_id": "TX1"}
            if self.status_amount is not None:
                reply["amount"] = self.status_amount
            return httpx.Response(200, json=reply)
        return httpx.Response(404, text="no such endpoint")

    def bodies(self, path: str) -> list[dict]:
        return [json.loads(r.content) for r in self.requests if r.url.path == path]


@pytest.fixture
def gateway_config() -> GatewayConfig:
    return GatewayConfig(
        api_url="https://gateway.example.com/",
        merchant_id="M1",
        secret_key=SECRET,
        currency="thb",
        return_url="http://localhost:5173/payment/return",
        callback_url="http://localhost:8000/payments/callback",
        timeout=2.0,
    )


@pytest.fixture
def gateway_stub() -> GatewayStub:
    return GatewayStub()


@pytest_asyncio.fixture
async def gateway(gateway_config, gateway_stub):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(gateway_stub))
    yield PaymentGatewayClient(gateway_config, http_client)
    await http_client.aclose()


@pytest.fixture
def redis():
    return AsyncMock()


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)
    async with engine.begin() as conn:
        await conn.execute(insert(merchants), MERCHANTS)
        await conn.execute(insert(products), PRODUCTS)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def address() -> ShippingAddress:
    return ShippingAddress(
        name="Somchai Jaidee",
        email="somchai@example.com",
        phone="0812345678",
        address="99 Sukhumvit Rd",
        city="Bangkok",
        state="Bangkok",
        zip="10110",
        country="TH",
    )


async def stock_of(session: AsyncSession, product_id: int) -> int:
    result = await session.execute(
        select(products.c.stock).where(products.c.id == product_id)
    )
    return result.scalar_one()


def signed_payload(secret: str = SECRET, **fields) -> dict:
    fields["signature"] = sign(fields, secret)
    return fields
