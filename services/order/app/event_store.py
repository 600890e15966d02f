"""
Order Service — 状態遷移の監査ログ

注文の状態変更はすべてここに追記する: だれが、どの状態からどの状態へ、
いつ動かしたか。行は注文ごとに連番で、同じ版を 2 回追記すると
UNIQUE (order_id, version) 違反になる → 楽観的ロックを兼ねる。
"""

from datetime import datetime, timezone

from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import as_utc
from .schema import order_transitions


async def append_transition(
    session: AsyncSession,
    order_id: int,
    version: int,
    actor: str,
    from_status: str | None,
    to_status: str,
    actor_id: str | None = None,
    reason: str | None = None,
    now: datetime | None = None,
) -> int:
    """遷移を注文の指定版として記録する。コミットはしない。"""
    await session.execute(
        insert(order_transitions).values(
            order_id=order_id,
            version=version,
            actor=actor,
            actor_id=actor_id,
            from_status=from_status,
            to_status=to_status,
            reason=reason,
            created_at=now or datetime.now(timezone.utc),
        )
    )
    return version


async def load_transitions(session: AsyncSession, order_id: int) -> list[dict]:
    """注文の全履歴 (古い順)。"""
    result = await session.execute(
        select(order_transitions)
        .where(order_transitions.c.order_id == order_id)
        .order_by(order_transitions.c.version.asc())
    )
    return [_row_to_dict(row) for row in result.fetchall()]


async def load_all_transitions(session: AsyncSession, limit: int = 500) -> list[dict]:
    """全注文の直近の遷移 (管理者の紛争対応用)。"""
    result = await session.execute(
        select(order_transitions)
        .order_by(order_transitions.c.created_at.desc(), order_transitions.c.id.desc())
        .limit(limit)
    )
    return [_row_to_dict(row) for row in result.fetchall()]


def _row_to_dict(row) -> dict:
    created_at = as_utc(row.created_at)
    return {
        "order_id": row.order_id,
        "version": row.version,
        "actor": row.actor,
        "actor_id": row.actor_id,
        "from_status": row.from_status,
        "to_status": row.to_status,
        "reason": row.reason,
        "created_at": created_at.isoformat() if created_at else None,
    }
