"""
Order Service — FastAPI エントリポイント

顧客・マーチャント・管理者・決済ゲートウェイ向けのエンドポイント。
コマンド (POST/PUT) は commands.py、読み取りは queries.py を通る。

認証はこのサービスの手前で済んでいる前提。アクターの識別子は
リクエストのフィールドとしてそのまま受け取る。
"""

import logging
import os
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import commands, config, event_store, queries
from .errors import GatewayError, OrderError
from .gateway import PaymentGatewayClient
from .models import CartLine, ShippingAddress
from .schema import init_db
from .state_machine import Actor, OrderStatus

logger = logging.getLogger(__name__)

DATABASE_URL = os.environ["DATABASE_URL"]

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
redis_pool: aioredis.Redis | None = None
gateway_client: PaymentGatewayClient | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool, gateway_client
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    await init_db(engine)
    redis_pool = aioredis.from_url(config.REDIS_URL, decode_responses=True)
    gateway_config = config.GatewayConfig.from_env()
    http_client = httpx.AsyncClient(timeout=gateway_config.timeout)
    gateway_client = PaymentGatewayClient(gateway_config, http_client)
    yield
    await http_client.aclose()
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)


# ── Dependencies ─────────────────────────────────

async def get_session():
    async with async_session() as session:
        yield session


def get_redis() -> aioredis.Redis:
    return redis_pool


def get_gateway() -> PaymentGatewayClient:
    return gateway_client


@app.exception_handler(OrderError)
async def order_error_handler(request: Request, exc: OrderError):
    content = {"detail": exc.message, "error": type(exc).__name__}
    if isinstance(exc, GatewayError) and exc.order_id is not None:
        content["order_id"] = exc.order_id
    return JSONResponse(status_code=exc.status_code, content=content)


# ── Request Models ───────────────────────────────

class CreateOrderRequest(BaseModel):
    customer_id: int
    items: list[CartLine] = Field(min_length=1)
    shipping_address: ShippingAddress


class PaymentRetryRequest(BaseModel):
    customer_id: int


class CancelRequest(BaseModel):
    actor: Actor
    actor_id: str | None = None


class FulfilmentRequest(BaseModel):
    status: OrderStatus
    tracking_number: str | None = None


# ── Command Endpoints ────────────────────────────

@app.post("/orders", status_code=201)
async def cmd_create_order(
    req: CreateOrderRequest,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
    gateway: PaymentGatewayClient = Depends(get_gateway),
):
    """カートから注文を作り、支払い先 URL を返す。"""
    checkout = await commands.create_order(
        session, redis, gateway,
        req.customer_id, req.items, req.shipping_address,
    )
    return {
        "order_id": checkout.order.id,
        "order_number": checkout.order.order_number,
        "status": checkout.order.status.value,
        "total": str(checkout.order.total),
        "payment_url": checkout.payment.payment_url,
        "transaction_id": checkout.payment.gateway_transaction_id,
    }


@app.post("/orders/{order_id}/payment")
async def cmd_request_payment(
    order_id: int,
    req: PaymentRetryRequest,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
    gateway: PaymentGatewayClient = Depends(get_gateway),
):
    """支払い待ちの注文の決済要求をやり直す。"""
    payment = await commands.request_payment(
        session, redis, gateway, order_id, req.customer_id
    )
    return {
        "order_id": order_id,
        "payment_url": payment.payment_url,
        "transaction_id": payment.gateway_transaction_id,
    }


@app.post("/orders/{order_id}/payment/reconcile")
async def cmd_reconcile_payment(
    order_id: int,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
    gateway: PaymentGatewayClient = Depends(get_gateway),
):
    """決済結果をゲートウェイに問い合わせる (決済完了後の戻りページ用)。"""
    order = await commands.reconcile_payment(session, redis, gateway, order_id)
    return {"order_id": order.id, "status": order.status.value}


@app.post("/orders/{order_id}/cancel")
async def cmd_cancel_order(
    order_id: int,
    req: CancelRequest,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
):
    order = await commands.cancel_order(session, redis, order_id, req.actor, req.actor_id)
    return {
        "order_id": order.id,
        "status": order.status.value,
        "refund_required": order.refund_required,
    }


@app.put("/merchants/{merchant_id}/orders/{order_id}/status")
async def cmd_update_fulfilment(
    merchant_id: int,
    order_id: int,
    req: FulfilmentRequest,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
):
    """マーチャントが自分の担当分を進める (processing / shipped / delivered)。"""
    order = await commands.update_fulfilment(
        session, redis, order_id, merchant_id, req.status, req.tracking_number
    )
    sub = order.merchant_order_for(merchant_id)
    return {
        "order_id": order.id,
        "order_status": order.status.value,
        "merchant_status": sub.status.value,
        "tracking_number": sub.tracking_number,
    }


@app.post("/payments/callback")
async def payment_callback(
    request: Request,
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis = Depends(get_redis),
    gateway: PaymentGatewayClient = Depends(get_gateway),
):
    """
    決済ゲートウェイの Webhook。結果にかかわらず常に 200 を返し、
    注文の詳細は返さない。
    """
    payload = await _read_callback_payload(request)
    if payload:
        outcome = await commands.handle_payment_callback(session, redis, gateway, payload)
        logger.info("Payment callback processed: %s", outcome)
    else:
        logger.warning("Empty payment callback received")
    return {"received": True}


async def _read_callback_payload(request: Request) -> dict:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}
    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


# ── Query Endpoints ──────────────────────────────

@app.get("/orders/{order_id}")
async def query_get_order(order_id: int, session: AsyncSession = Depends(get_session)):
    order = await queries.get_order(session, order_id)
    if not order:
        raise HTTPException(404, "Order not found")
    return order


@app.get("/orders/{order_id}/history")
async def query_order_history(order_id: int, session: AsyncSession = Depends(get_session)):
    """状態変更の監査ログ (紛争対応用)。"""
    return await queries.get_order_history(session, order_id)


@app.get("/customers/{customer_id}/orders")
async def query_customer_orders(customer_id: int, session: AsyncSession = Depends(get_session)):
    return await queries.list_customer_orders(session, customer_id)


@app.get("/merchants/{merchant_id}/orders")
async def query_merchant_orders(
    merchant_id: int,
    status: OrderStatus | None = None,
    session: AsyncSession = Depends(get_session),
):
    return await queries.list_merchant_orders(session, merchant_id, status)


@app.get("/admin/orders")
async def query_admin_orders(
    status: OrderStatus | None = None,
    session: AsyncSession = Depends(get_session),
):
    return await queries.list_orders(session, status)


@app.get("/admin/transitions")
async def query_all_transitions(session: AsyncSession = Depends(get_session)):
    """全注文の直近の状態変更。"""
    return await event_store.load_all_transitions(session)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
