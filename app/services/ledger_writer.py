from __future__ import annotations

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.enums import MovementType
from app.models.inventory_movement import InventoryMovement


async def write_movement(
    session: AsyncSession,
    *,
    product_id: int,
    movement_type: MovementType,
    quantity: int,
    previous_quantity: int,
    new_quantity: int,
    reference: Optional[str] = None,
    reason: Optional[str] = None,
    created_by: Optional[str] = None,
) -> int:
    """
    追加一条库存流水（只增不改）：

    - 不开事务、不提交，由调用方保证与 products.quantity 的更新同事务；
    - 返回生成的 id。
    """
    row = InventoryMovement(
        product_id=int(product_id),
        type=movement_type,
        quantity=int(quantity),
        previous_quantity=int(previous_quantity),
        new_quantity=int(new_quantity),
        reference=reference,
        reason=reason,
        created_by=created_by,
    )
    session.add(row)
    await session.flush()
    return int(row.id)
