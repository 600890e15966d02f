"""
Order Service — 設定

設定は環境変数から読む。決済ゲートウェイの設定は GatewayConfig に
まとめてクライアントの生成時に渡すので、クライアント自身は環境変数を
読まない。
"""

import os

from pydantic import BaseModel, field_validator

REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
PAYMENT_ATTEMPT_TTL = int(os.environ.get("PAYMENT_ATTEMPT_TTL", "1800"))


class GatewayConfig(BaseModel):
    api_url: str
    merchant_id: str
    secret_key: str
    currency: str = "THB"
    return_url: str
    callback_url: str
    timeout: float = 10.0

    @field_validator("currency")
    @classmethod
    def _three_letter_code(cls, value: str) -> str:
        if len(value) != 3 or not value.isalpha():
            raise ValueError("currency must be a 3-letter code")
        return value.upper()

    @field_validator("api_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        frontend_url = os.environ.get("FRONTEND_URL", "http://localhost:5173")
        app_url = os.environ.get("APP_URL", "http://localhost:8000")
        return cls(
            api_url=os.environ.get("GATEWAY_API_URL", "https://api.paysolutions.asia"),
            merchant_id=os.environ["GATEWAY_MERCHANT_ID"],
            secret_key=os.environ["GATEWAY_SECRET_KEY"],
            currency=os.environ.get("GATEWAY_CURRENCY", "THB"),
            return_url=f"{frontend_url.rstrip('/')}/payment/return",
            callback_url=f"{app_url.rstrip('/')}/payments/callback",
            timeout=float(os.environ.get("GATEWAY_TIMEOUT", "10.0")),
        )
