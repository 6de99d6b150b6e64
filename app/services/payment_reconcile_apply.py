# app/services/payment_reconcile_apply.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.enums import PaymentStatus
from app.models.order import Order
from app.services.payment_status import can_transition, fulfillment_status_for

log = logging.getLogger(__name__)


async def apply_payment_correction(
    session: AsyncSession,
    *,
    order_id: int,
    old_status: PaymentStatus,
    new_status: PaymentStatus,
    now: datetime,
    backfill_reference: Optional[str] = None,
) -> bool:
    """
    条件 UPDATE 修正订单支付状态：

      WHERE id = :id AND payment_status = :old

    返回：
      True  = 本次真正改动了（调用方据此发通知）
      False = 没改动（状态已被 webhook / 其他进程改过）

    backfill_reference 只在订单原本没有 reference 时写入。
    """
    if not can_transition(old_status, new_status) or old_status == new_status:
        raise ValueError(f"illegal payment transition: {old_status} -> {new_status}")

    values: Dict[str, Any] = {
        "payment_status": new_status,
        "updated_at": now,
    }
    fulfillment = fulfillment_status_for(new_status)
    if fulfillment is not None:
        values["status"] = fulfillment
    if backfill_reference:
        values["payment_reference"] = sa.func.coalesce(
            sa.func.nullif(Order.payment_reference, ""), backfill_reference
        )

    res = await session.execute(
        sa.update(Order)
        .where(Order.id == int(order_id), Order.payment_status == old_status)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    changed = (res.rowcount or 0) > 0
    if not changed:
        log.info(
            "[RECONCILIATION] order already moved, no update: order_id=%s expected=%s",
            order_id,
            old_status,
        )
    return changed
