# app/services/payment_reconcile_queries.py
from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import List

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.enums import PaymentStatus
from app.models.order import Order
from app.services.payment_reconcile_types import OrderSnapshot
from app.services.payment_status import NON_TERMINAL


async def select_orders_for_reconciliation(
    session: AsyncSession,
    *,
    now: datetime,
    time_range_hours: int,
    grace_minutes: int = 10,
    buffer_hours: int = 6,
) -> List[OrderSnapshot]:
    """
    待对账订单：

      updated_at < now - grace        （最近刚动过的留给 webhook）
      created_at >= now - hours - buffer
      payment_status ∈ {PENDING, PROCESSING}

    终态订单永远不会被选中。
    """
    statuses = sorted(NON_TERMINAL)
    stmt = (
        sa.select(
            Order.id,
            Order.order_number,
            Order.payment_status,
            Order.payment_reference,
            Order.total,
            Order.currency,
            Order.customer_email,
            Order.customer_name,
            Order.user_id,
        )
        .where(
            Order.updated_at < now - timedelta(minutes=grace_minutes),
            Order.created_at >= now - timedelta(hours=time_range_hours + buffer_hours),
            Order.payment_status.in_(statuses),
        )
        .order_by(Order.created_at.desc(), Order.id.desc())
    )
    rows = (await session.execute(stmt)).all()
    return [
        OrderSnapshot(
            id=int(r.id),
            order_number=str(r.order_number),
            payment_status=PaymentStatus(r.payment_status),
            payment_reference=r.payment_reference or None,
            total=Decimal(r.total or 0),
            currency=str(r.currency or "NGN"),
            customer_email=r.customer_email,
            customer_name=r.customer_name,
            user_id=r.user_id,
        )
        for r in rows
    ]
