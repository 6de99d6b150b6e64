# app/models/inventory_movement.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.db.types import UTCDateTime, utc_now
from app.models.enums import MovementType


class InventoryMovement(Base):
    """
    库存流水（只增不改）

    - 与 products.quantity 的变更同事务写入
    - quantity 为正数，方向由 type 决定
    - previous_quantity / new_quantity 便于只靠流水回放余额
    """

    __tablename__ = "inventory_movements"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False
    )
    type: Mapped[MovementType] = mapped_column(
        sa.Enum(MovementType, name="movement_type", native_enum=False, length=32),
        nullable=False,
    )
    quantity: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    previous_quantity: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    new_quantity: Mapped[int] = mapped_column(sa.Integer, nullable=False)

    reference: Mapped[Optional[str]] = mapped_column(sa.String(128), nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(sa.String(255), nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)

    __table_args__ = (
        sa.CheckConstraint("quantity > 0", name="ck_inventory_movements_quantity_positive"),
        sa.Index("ix_inventory_movements_product_time", "product_id", "created_at"),
        sa.Index("ix_inventory_movements_type_time", "type", "created_at"),
        sa.Index("ix_inventory_movements_reference", "reference"),
    )

    def __repr__(self) -> str:
        return (
            f"<InventoryMovement {self.type} product={self.product_id} qty={self.quantity} "
            f"{self.previous_quantity}->{self.new_quantity} ref={self.reference}>"
        )
