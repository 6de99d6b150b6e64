# app/services/stock_queries.py
from __future__ import annotations

from dataclasses import dataclass
from typing import List

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.product import Product
from app.services.errors import ProductNotFoundError


@dataclass(frozen=True)
class ProductState:
    id: int
    sku: str
    name: str
    is_active: bool
    quantity: int
    low_stock_threshold: int


def _state(p: Product) -> ProductState:
    return ProductState(
        id=int(p.id),
        sku=str(p.sku),
        name=str(p.name),
        is_active=bool(p.is_active),
        quantity=int(p.quantity),
        low_stock_threshold=int(p.low_stock_threshold),
    )


async def lock_product(session: AsyncSession, product_id: int) -> ProductState:
    """
    对 products 行加写锁后再读当前状态。

    用“自赋值 UPDATE”而不是 SELECT ... FOR UPDATE：
      - PostgreSQL：等价于行级锁，持有到事务结束；
      - SQLite：拿到库级写锁，并发写者按 busy timeout 排队。
    必须是事务里的第一条写语句，后续读到的一定是最新已提交值。
    """
    res = await session.execute(
        sa.update(Product)
        .where(Product.id == int(product_id))
        .values(quantity=Product.quantity, updated_at=Product.updated_at)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount == 0:
        raise ProductNotFoundError(product_id)
    return await load_product(session, product_id)


async def load_product(session: AsyncSession, product_id: int) -> ProductState:
    # populate_existing：余额由 Core UPDATE 改写，身份映射里的对象可能是旧值
    stmt = (
        sa.select(Product)
        .where(Product.id == int(product_id))
        .execution_options(populate_existing=True)
    )
    p = (await session.execute(stmt)).scalar_one_or_none()
    if p is None:
        raise ProductNotFoundError(product_id)
    return _state(p)


async def list_low_stock(session: AsyncSession) -> List[ProductState]:
    """在售 + 在手 <= 阈值（含 0），按在手数量升序。"""
    res = await session.execute(
        sa.select(Product)
        .where(
            Product.is_active.is_(True),
            Product.quantity <= Product.low_stock_threshold,
        )
        .order_by(Product.quantity.asc(), Product.id.asc())
        .execution_options(populate_existing=True)
    )
    return [_state(p) for p in res.scalars().all()]
