"""
Order Service — 決済ゲートウェイクライアント

決済プロバイダとの通信はすべて PaymentGatewayClient を通す。

リクエストとコールバックの改ざん検知は共通の正規署名で行う:

    1. "signature" フィールドを除く
    2. 残りをキーでソート (挿入順ではない)
    3. その順に値を連結
    4. 共有シークレットを末尾に付ける
    5. SHA-256 の 16 進表記

双方がまったく同じ文字列を作らない限り検証は通らない。

呼び出しはタイムアウト付きの 1 往復で、リトライはしない。通信エラーや
2xx 以外の応答は生の本文を持った GatewayError になり、再試行するかは
呼び出し側が決める。
"""

import hashlib
import hmac
import logging
from collections.abc import Mapping
from decimal import Decimal, InvalidOperation

import httpx

from .config import GatewayConfig
from .errors import GatewayError
from .models import (
    CustomerContact,
    GatewayStatus,
    Order,
    PaymentCallback,
    PaymentRequest,
    money,
)

logger = logging.getLogger(__name__)

SIGNATURE_FIELD = "signature"
REFERENCE_WIDTH = 12

_SUCCEEDED = {"success", "succeeded", "paid", "00", "completed"}
_FAILED = {"failed", "fail", "declined", "cancelled", "canceled", "error"}
_EXPIRED = {"expired", "timeout"}


def sign(fields: Mapping[str, object], secret: str) -> str:
    """signature 以外の全フィールドに対する正規署名。"""
    payload = "".join(
        "" if fields[key] is None else str(fields[key])
        for key in sorted(k for k in fields if k != SIGNATURE_FIELD)
    )
    return hashlib.sha256((payload + secret).encode("utf-8")).hexdigest()


def format_amount(amount: Decimal) -> str:
    return f"{money(amount):.2f}"


def format_reference(order_id: int) -> str:
    """プロバイダの参照番号は 12 桁のゼロ埋め。"""
    return str(order_id).zfill(REFERENCE_WIDTH)


def parse_reference(reference_number: str) -> int | None:
    digits = str(reference_number).strip().lstrip("0")
    if not digits.isdigit():
        return None
    return int(digits)


def normalise_status(raw_status: object) -> str:
    """プロバイダの状態表記を succeeded / failed / expired / pending に寄せる。"""
    value = str(raw_status or "").strip().lower()
    if value in _SUCCEEDED:
        return "succeeded"
    if value in _FAILED:
        return "failed"
    if value in _EXPIRED:
        return "expired"
    return "pending"


class PaymentGatewayClient:
    """決済プロバイダへの署名付きリクエストと、プロバイダからの署名付きコールバック。"""

    def __init__(self, config: GatewayConfig, http_client: httpx.AsyncClient) -> None:
        self.config = config
        self.http = http_client

    # ── Signing ──────────────────────────────────

    def sign(self, fields: Mapping[str, object]) -> str:
        return sign(fields, self.config.secret_key)

    def build_payment_fields(self, order: Order, contact: CustomerContact) -> dict:
        fields = {
            "merchantid": self.config.merchant_id,
            "refno": format_reference(order.id),
            "amount": format_amount(order.total),
            "currency": self.config.currency,
            "customeremail": contact.email,
            "customername": contact.name,
            "customerphone": contact.phone,
            "customeraddress": contact.address,
            "returnurl": self.config.return_url,
            "postbackurl": self.config.callback_url,
        }
        fields[SIGNATURE_FIELD] = self.sign(fields)
        return fields

    def verify_callback(self, payload: Mapping[str, object]) -> bool:
        """
        payload の signature が他フィールドの正規署名と一致するときだけ True。
        例外は投げない: 署名がない・形式が不正なら単に不一致。
        """
        received = payload.get(SIGNATURE_FIELD)
        if not isinstance(received, str) or not received:
            return False
        expected = self.sign(payload)
        return hmac.compare_digest(
            expected.encode("ascii"), received.encode("utf-8")
        )

    def parse_callback(self, payload: Mapping[str, object]) -> PaymentCallback:
        reference_number = str(payload.get("refno") or "")
        amount = payload.get("amount")
        try:
            parsed_amount = money(amount) if amount not in (None, "") else None
        except (InvalidOperation, ValueError):
            parsed_amount = None
        return PaymentCallback(
            reference_number=reference_number,
            order_id=parse_reference(reference_number),
            transaction_id=_optional_str(payload.get("transaction_id")),
            status=normalise_status(payload.get("status")),
            amount=parsed_amount,
            currency=_optional_str(payload.get("currency")),
            paid_at=_optional_str(payload.get("payment_date")),
            raw=dict(payload),
        )

    # ── Provider calls ───────────────────────────

    async def create_payment_request(
        self, order: Order, contact: CustomerContact
    ) -> PaymentRequest:
        fields = self.build_payment_fields(order, contact)
        body = await self._post("/payment", fields)

        payment_url = body.get("payment_url")
        transaction_id = body.get("transaction_id")
        if not payment_url or not transaction_id:
            raise GatewayError(
                "Gateway reply is missing payment_url or transaction_id",
                raw=str(body),
            )
        logger.info(
            "Payment request created for order %s (transaction %s)",
            order.id,
            transaction_id,
        )
        return PaymentRequest(
            payment_url=str(payment_url),
            gateway_transaction_id=str(transaction_id),
            request_hash=fields[SIGNATURE_FIELD],
        )

    async def check_status(self, reference_number: str) -> GatewayStatus:
        fields = {
            "merchantid": self.config.merchant_id,
            "refno": reference_number,
        }
        fields[SIGNATURE_FIELD] = self.sign(fields)
        body = await self._post("/payment/status", fields)
        return GatewayStatus(status=normalise_status(body.get("status")), raw=body)

    async def _post(self, path: str, fields: dict) -> dict:
        url = f"{self.config.api_url}{path}"
        try:
            resp = await self.http.post(url, json=fields, timeout=self.config.timeout)
        except httpx.HTTPError as e:
            logger.warning("Gateway call %s failed: %s", path, e)
            raise GatewayError(f"Gateway unreachable: {e}") from e

        if not resp.is_success:
            logger.warning("Gateway call %s returned HTTP %s", path, resp.status_code)
            raise GatewayError(
                f"Gateway returned HTTP {resp.status_code}",
                raw=resp.text,
                status_code=resp.status_code,
            )
        try:
            body = resp.json()
        except ValueError as e:
            raise GatewayError(
                "Gateway reply is not JSON", raw=resp.text, status_code=resp.status_code
            ) from e
        if not isinstance(body, dict):
            raise GatewayError(
                "Gateway reply is not an object", raw=resp.text, status_code=resp.status_code
            )
        return body


def _optional_str(value: object) -> str | None:
    if value is None or value == "":
        return None
    return str(value)
