# app/models/order.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.db.types import UTCDateTime, utc_now
from app.models.enums import OrderStatus, PaymentStatus


class Order(Base):
    """
    订单头（对账引擎只关心支付相关列）

    - payment_status：对账引擎修正的字段
    - status：履约状态，随 payment_status 推导（COMPLETED→CONFIRMED，FAILED/CANCELLED→CANCELLED）
    - payment_reference：Paystack 交易号，可能缺失 / 错误（由对账回填）
    - total：订单金额（NGN，元）；Paystack 侧金额为 kobo
    """

    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    order_number: Mapped[str] = mapped_column(sa.String(32), nullable=False, unique=True)

    user_id: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    customer_email: Mapped[Optional[str]] = mapped_column(sa.String(255), nullable=True)
    customer_name: Mapped[Optional[str]] = mapped_column(sa.String(255), nullable=True)

    payment_status: Mapped[PaymentStatus] = mapped_column(
        sa.Enum(PaymentStatus, name="payment_status", native_enum=False, length=16),
        nullable=False,
        default=PaymentStatus.PENDING,
    )
    status: Mapped[OrderStatus] = mapped_column(
        sa.Enum(OrderStatus, name="order_status", native_enum=False, length=16),
        nullable=False,
        default=OrderStatus.PENDING,
    )
    payment_reference: Mapped[Optional[str]] = mapped_column(sa.String(128), nullable=True)

    total: Mapped[Decimal] = mapped_column(sa.Numeric(12, 2), nullable=False, default=0)
    currency: Mapped[str] = mapped_column(sa.String(3), nullable=False, default="NGN")

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        sa.Index("ix_orders_payment_status_updated", "payment_status", "updated_at"),
        sa.Index("ix_orders_created_at", "created_at"),
        sa.Index("ix_orders_payment_reference", "payment_reference"),
    )

    def __repr__(self) -> str:
        return (
            f"<Order id={self.id} no={self.order_number} "
            f"pay={self.payment_status} status={self.status} ref={self.payment_reference}>"
        )
