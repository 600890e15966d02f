"""
Order Service — エラー体系

注文コアが報告する失敗はすべて OrderError のサブクラス。
status_code は HTTP 層が返すステータスで、コア自身は見ない。
"""


class OrderError(Exception):
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(OrderError):
    """入力の形が不正。副作用の前に投げる。"""
    status_code = 422


class EmptyCart(ValidationError):
    def __init__(self) -> None:
        super().__init__("Cart is empty")


class NotFound(OrderError):
    status_code = 404


class ProductUnavailable(OrderError):
    status_code = 409

    def __init__(self, product_id: int, reason: str = "not available") -> None:
        super().__init__(f"Product {product_id} is {reason}")
        self.product_id = product_id


class InsufficientStock(OrderError):
    status_code = 409

    def __init__(self, product_id: int, requested: int) -> None:
        super().__init__(
            f"Insufficient stock for product {product_id}: requested={requested}"
        )
        self.product_id = product_id
        self.requested = requested


class InvalidTransition(OrderError):
    status_code = 409

    def __init__(self, current: str | None, target: str, reason: str = "") -> None:
        message = f"Cannot move order from {current} to {target}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.current = current
        self.target = target


class PermissionDenied(OrderError):
    status_code = 403


class PaymentInProgress(OrderError):
    status_code = 409


class GatewayError(OrderError):
    """
    決済プロバイダ側の失敗 (通信エラー・タイムアウト・2xx 以外・読めない応答)。
    raw には調査用にプロバイダの応答本文を残す。
    """
    status_code = 502

    def __init__(
        self,
        message: str,
        raw: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.raw = raw
        self.http_status = status_code
        self.order_id: int | None = None


class SignatureMismatch(OrderError):
    """コールバックの署名が一致しない。ログに残すだけで、エラーとしては返さない。"""
    status_code = 400
