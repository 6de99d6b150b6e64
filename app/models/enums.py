# app/models/enums.py
from __future__ import annotations

from enum import StrEnum


class PaymentStatus(StrEnum):
    """
    订单支付状态（orders.payment_status）：

    - PENDING / PROCESSING          非终态（对账引擎会去 Paystack 核实）
    - COMPLETED / FAILED / CANCELLED 终态（对账引擎不再触碰）
    """

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class OrderStatus(StrEnum):
    """订单履约状态（orders.status），对账修正时随支付状态一起推导。"""

    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class MovementType(StrEnum):
    """
    库存流水类型（inventory_movements.type）。

    方向由 INBOUND_TYPES / OUTBOUND_TYPES 固定表决定，不看 quantity 的正负：
    quantity 永远是正数。
    """

    # === 入库方向 ===
    INITIAL_STOCK = "INITIAL_STOCK"
    RESTOCK = "RESTOCK"
    PURCHASE = "PURCHASE"
    RETURN = "RETURN"
    TRANSFER_IN = "TRANSFER_IN"
    ADJUSTMENT_IN = "ADJUSTMENT_IN"
    RELEASE_RESERVE = "RELEASE_RESERVE"

    # === 出库方向 ===
    SALE = "SALE"
    TRANSFER_OUT = "TRANSFER_OUT"
    DAMAGE = "DAMAGE"
    THEFT = "THEFT"
    EXPIRED = "EXPIRED"
    RESERVE = "RESERVE"
    ADJUSTMENT_OUT = "ADJUSTMENT_OUT"


INBOUND_TYPES: frozenset[MovementType] = frozenset(
    {
        MovementType.INITIAL_STOCK,
        MovementType.RESTOCK,
        MovementType.PURCHASE,
        MovementType.RETURN,
        MovementType.TRANSFER_IN,
        MovementType.ADJUSTMENT_IN,
        MovementType.RELEASE_RESERVE,
    }
)

OUTBOUND_TYPES: frozenset[MovementType] = frozenset(
    {
        MovementType.SALE,
        MovementType.TRANSFER_OUT,
        MovementType.DAMAGE,
        MovementType.THEFT,
        MovementType.EXPIRED,
        MovementType.RESERVE,
        MovementType.ADJUSTMENT_OUT,
    }
)


def movement_direction(movement_type: MovementType | str) -> int:
    """入库 +1，出库 -1；未知类型直接报错（不做猜测）。"""
    try:
        mt = MovementType(str(movement_type).upper())
    except ValueError:
        raise ValueError(f"unknown movement type: {movement_type!r}") from None
    if mt in INBOUND_TYPES:
        return 1
    if mt in OUTBOUND_TYPES:
        return -1
    raise ValueError(f"movement type has no direction: {mt}")
