# app/models/stock_reservation.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.db.types import UTCDateTime, utc_now


class StockReservation(Base):
    """库存预占：只记录承诺，不动在手数量；过期即失效，释放即物理删除"""

    __tablename__ = "stock_reservations"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    order_id: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)

    quantity: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(sa.String(255), nullable=True)

    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)

    __table_args__ = (
        sa.CheckConstraint("quantity > 0", name="ck_stock_reservations_quantity_positive"),
        sa.Index("ix_stock_reservations_product_expires", "product_id", "expires_at"),
        sa.Index("ix_stock_reservations_order_id", "order_id"),
        sa.Index("ix_stock_reservations_expires_at", "expires_at"),
    )

    def is_active(self, now: datetime) -> bool:
        return self.expires_at > now

    def __repr__(self) -> str:
        return (
            f"<StockReservation id={self.id} product={self.product_id} "
            f"order={self.order_id} qty={self.quantity} expires_at={self.expires_at}>"
        )
