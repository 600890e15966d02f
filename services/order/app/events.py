"""
Order Service — 発行イベント

変更のコミット後に Redis の "order_events" チャネルへ流す事実。
名前は過去形で、一度発行したら変更しない。
"""

from datetime import datetime

from pydantic import BaseModel


class OrderCreated(BaseModel):
    """注文が作られ、在庫が確保された。"""
    order_id: int
    order_number: str
    customer_id: int
    merchant_ids: list[int]
    total: str
    timestamp: datetime


class OrderStatusChanged(BaseModel):
    """親注文の状態が変わった。"""
    order_id: int
    from_status: str | None
    to_status: str
    actor: str
    reason: str | None = None
    timestamp: datetime


class MerchantOrderUpdated(BaseModel):
    """マーチャントが自分の担当分を進めた。"""
    order_id: int
    merchant_id: int
    status: str
    tracking_number: str | None = None
    timestamp: datetime


class PaymentRequested(BaseModel):
    """ゲートウェイで決済試行が開始された。"""
    order_id: int
    attempt_id: int
    transaction_id: str
    timestamp: datetime
