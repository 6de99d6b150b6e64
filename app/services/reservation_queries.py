# app/services/reservation_queries.py
from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.stock_reservation import StockReservation


async def sum_active_reserved(
    session: AsyncSession,
    product_id: int,
    *,
    now: datetime,
) -> int:
    """
    某商品当前仍生效的预占总量。

    口径：expires_at > now 才算数；过期行即便还没被 sweep 删掉也不计入。
    """
    res = await session.execute(
        sa.select(sa.func.coalesce(sa.func.sum(StockReservation.quantity), 0)).where(
            StockReservation.product_id == int(product_id),
            StockReservation.expires_at > now,
        )
    )
    return int(res.scalar_one() or 0)


async def active_reserved_by_product(
    session: AsyncSession,
    *,
    now: datetime,
) -> Dict[int, Dict[str, int]]:
    """{product_id: {"reserved_quantity": n, "reservation_count": k}}"""
    res = await session.execute(
        sa.select(
            StockReservation.product_id,
            sa.func.sum(StockReservation.quantity),
            sa.func.count(StockReservation.id),
        )
        .where(StockReservation.expires_at > now)
        .group_by(StockReservation.product_id)
        .order_by(StockReservation.product_id)
    )
    return {
        int(pid): {"reserved_quantity": int(qty or 0), "reservation_count": int(cnt or 0)}
        for pid, qty, cnt in res.all()
    }


async def list_active(
    session: AsyncSession,
    *,
    now: datetime,
    product_id: Optional[int] = None,
    order_id: Optional[int] = None,
) -> List[StockReservation]:
    stmt = sa.select(StockReservation).where(StockReservation.expires_at > now)
    if product_id is not None:
        stmt = stmt.where(StockReservation.product_id == int(product_id))
    if order_id is not None:
        stmt = stmt.where(StockReservation.order_id == int(order_id))
    stmt = stmt.order_by(StockReservation.created_at.desc(), StockReservation.id.desc())
    res = await session.execute(stmt)
    return list(res.scalars().all())


async def find_expired_ids(
    session: AsyncSession,
    *,
    now: datetime,
    limit: int = 500,
) -> List[int]:
    """TTL sweep 的候选集：只读、不加锁。"""
    res = await session.execute(
        sa.select(StockReservation.id)
        .where(StockReservation.expires_at <= now)
        .order_by(StockReservation.id)
        .limit(int(limit))
    )
    return [int(x) for x in res.scalars().all()]


async def count_expiring_between(
    session: AsyncSession,
    *,
    now: datetime,
    until: datetime,
) -> int:
    res = await session.execute(
        sa.select(sa.func.count(StockReservation.id)).where(
            StockReservation.expires_at > now,
            StockReservation.expires_at <= until,
        )
    )
    return int(res.scalar_one() or 0)
