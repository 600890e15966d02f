"""
Order Service — 注文ステートマシン

    pending_payment ──▶ paid ──▶ processing ──▶ shipped ──▶ delivered
          │   │           │
          │   │           └──▶ cancelled       (管理者のみ)
          │   └──▶ cancelled                   (顧客または管理者)
          └──▶ payment_failed                  (決済コールバック)

各遷移には実行できるアクターが決まっている。表にない遷移は
InvalidTransition で拒否し、呼び出し側は注文に触れない。
"""

from dataclasses import dataclass
from enum import Enum

from .errors import InvalidTransition


class OrderStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    PAID = "paid"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    PAYMENT_FAILED = "payment_failed"


class Actor(str, Enum):
    CUSTOMER = "customer"
    MERCHANT = "merchant"
    ADMIN = "admin"
    GATEWAY = "gateway"


TERMINAL_STATUSES = frozenset(
    {OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.PAYMENT_FAILED}
)

_TRANSITIONS: dict[tuple[OrderStatus, OrderStatus], frozenset[Actor]] = {
    (OrderStatus.PENDING_PAYMENT, OrderStatus.PAID): frozenset({Actor.GATEWAY}),
    (OrderStatus.PENDING_PAYMENT, OrderStatus.PAYMENT_FAILED): frozenset({Actor.GATEWAY}),
    (OrderStatus.PENDING_PAYMENT, OrderStatus.CANCELLED): frozenset(
        {Actor.CUSTOMER, Actor.ADMIN}
    ),
    (OrderStatus.PAID, OrderStatus.CANCELLED): frozenset({Actor.ADMIN}),
    (OrderStatus.PAID, OrderStatus.PROCESSING): frozenset({Actor.MERCHANT}),
    (OrderStatus.PROCESSING, OrderStatus.SHIPPED): frozenset({Actor.MERCHANT}),
    (OrderStatus.SHIPPED, OrderStatus.DELIVERED): frozenset({Actor.MERCHANT}),
}

# 出荷工程の順序。サブ注文から親注文の状態を導くのに使う
FULFILMENT_ORDER = (
    OrderStatus.PAID,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
)


@dataclass(frozen=True)
class Transition:
    current: OrderStatus
    target: OrderStatus
    actor: Actor
    tracking_number: str | None = None

    @property
    def restores_stock(self) -> bool:
        """未出荷のまま終わった注文は確保した在庫をカタログに戻す。"""
        return self.target in (OrderStatus.CANCELLED, OrderStatus.PAYMENT_FAILED)

    @property
    def requires_refund(self) -> bool:
        return self.current is OrderStatus.PAID and self.target is OrderStatus.CANCELLED


def is_terminal(status: OrderStatus | str) -> bool:
    return OrderStatus(status) in TERMINAL_STATUSES


def allowed_actors(current: OrderStatus | str, target: OrderStatus | str) -> frozenset[Actor]:
    return _TRANSITIONS.get((OrderStatus(current), OrderStatus(target)), frozenset())


def check_transition(
    current: OrderStatus | str,
    target: OrderStatus | str,
    actor: Actor | str,
    tracking_number: str | None = None,
) -> Transition:
    """
    状態遷移を 1 つ検証して返す。

    遷移が存在しない、アクターに権限がない、shipped 以外への遷移に
    追跡番号が付いている場合は InvalidTransition。
    """
    current = OrderStatus(current)
    target = OrderStatus(target)
    actor = Actor(actor)

    actors = allowed_actors(current, target)
    if not actors:
        raise InvalidTransition(current.value, target.value)
    if actor not in actors:
        raise InvalidTransition(
            current.value, target.value, f"not allowed for {actor.value}"
        )
    if tracking_number and target is not OrderStatus.SHIPPED:
        raise InvalidTransition(
            current.value, target.value, "tracking number only accepted when shipping"
        )
    return Transition(current, target, actor, tracking_number or None)


def fulfilment_rank(status: OrderStatus | str) -> int:
    return FULFILMENT_ORDER.index(OrderStatus(status))


def least_advanced(statuses: list[OrderStatus | str]) -> OrderStatus:
    """親注文は一番遅いサブ注文までしか進まない。"""
    return min((OrderStatus(s) for s in statuses), key=fulfilment_rank)


def fulfilment_started(status: OrderStatus | str) -> bool:
    """マーチャントが出荷処理を始めたか (processing 以降)。"""
    status = OrderStatus(status)
    return status in FULFILMENT_ORDER and fulfilment_rank(status) > 0
