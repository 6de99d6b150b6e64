# app/models/product.py
from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.db.types import UTCDateTime, utc_now


class Product(Base):
    """
    商品库存计数器（只由 StockService 写 quantity）

    - quantity：在手数量（持久），任何时刻 >= 0
    - 可售 = quantity - Σ 未过期 stock_reservations.quantity
    """

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    sku: Mapped[str] = mapped_column(sa.String(64), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True)

    quantity: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    low_stock_threshold: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=10)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (sa.CheckConstraint("quantity >= 0", name="ck_products_quantity_non_negative"),)

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku} qty={self.quantity}>"
