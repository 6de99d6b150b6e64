# app/services/reservation_service.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.tx import run_in_tx, tx_unit
from app.db.types import utc_now
from app.models.enums import MovementType
from app.models.stock_reservation import StockReservation
from app.obs.metrics import (
    reservations_created_total,
    reservations_rejected_total,
    reservations_released_total,
)
from app.services.errors import InsufficientStockError, ProductNotFoundError
from app.services.reservation_queries import (
    active_reserved_by_product,
    count_expiring_between,
    find_expired_ids,
    list_active,
    sum_active_reserved,
)
from app.services.stock_queries import load_product, lock_product
from app.services.stock_service import StockService

log = logging.getLogger(__name__)

DEFAULT_TTL_MINUTES = 15


@dataclass(frozen=True)
class ReservationItem:
    product_id: int
    quantity: int


@dataclass
class BulkReservationResult:
    success: bool
    reservations: List[StockReservation] = field(default_factory=list)
    total_reserved: int = 0


@dataclass(frozen=True)
class ReleaseSummary:
    released_count: int
    total_quantity: int


@dataclass(frozen=True)
class ConversionSummary:
    converted_count: int
    total_quantity: int


@dataclass
class ReservationStats:
    total_active_reservations: int
    total_reserved_quantity: int
    expiring_soon: int
    by_product: List[Dict[str, int]] = field(default_factory=list)


class ReservationService:
    """
    库存预占（软占用）服务

    - 预占只是带 TTL 的承诺，不动 products.quantity；
    - 可售 = 在手 - Σ 未过期预占；过期行即便没被 sweep 也不计入；
    - 不支持缺货预订：可售不足一律 InsufficientStockError。

    并发：
      reserve 先对 products 行加写锁（见 stock_queries.lock_product），
      再在同一事务里重读在手与预占合计，“检查 + 插入”对并发写者串行。

    事务：
      与 StockService 一致，session 已在事务中时只执行不提交，由调用方编排。
    """

    def __init__(
        self,
        *,
        stock_service: Optional[StockService] = None,
        default_ttl_minutes: int = DEFAULT_TTL_MINUTES,
    ) -> None:
        self._stock = stock_service or StockService()
        self._default_ttl = int(default_ttl_minutes)

    # ----------------------------------------------------------------------
    # 1. 单品预占
    # ----------------------------------------------------------------------
    async def reserve(
        self,
        session: AsyncSession,
        product_id: int,
        quantity: int,
        order_id: Optional[int] = None,
        expiration_minutes: Optional[int] = None,
        *,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> StockReservation:
        async def _inner() -> StockReservation:
            return await self._reserve_locked(
                session,
                product_id,
                quantity,
                order_id=order_id,
                expiration_minutes=expiration_minutes,
                reason=reason,
                now=now,
            )

        try:
            reservation = await run_in_tx(session, _inner)
        except InsufficientStockError:
            reservations_rejected_total.labels("insufficient_stock").inc()
            raise
        except ProductNotFoundError:
            reservations_rejected_total.labels("product_not_found").inc()
            raise

        reservations_created_total.inc()
        return reservation

    async def _reserve_locked(
        self,
        session: AsyncSession,
        product_id: int,
        quantity: int,
        *,
        order_id: Optional[int],
        expiration_minutes: Optional[int],
        reason: Optional[str],
        now: Optional[datetime],
    ) -> StockReservation:
        qty = int(quantity)
        if qty <= 0:
            raise ValueError(f"reservation quantity must be positive, got {quantity!r}")
        ttl = int(expiration_minutes or self._default_ttl)
        if ttl <= 0:
            raise ValueError(f"expiration_minutes must be positive, got {expiration_minutes!r}")

        # 1) 锁商品行（锁住之后再读，避免 check-then-act 竞态）
        product = await lock_product(session, product_id)
        ts = now or utc_now()

        if not product.is_active:
            raise InsufficientStockError(product.id, requested=qty, available=0)

        # 2) 锁内重读预占合计
        reserved = await sum_active_reserved(session, product.id, now=ts)
        available = product.quantity - reserved
        if available < qty:
            log.info(
                "reserve rejected: product_id=%s requested=%s on_hand=%s reserved=%s",
                product.id,
                qty,
                product.quantity,
                reserved,
            )
            raise InsufficientStockError(product.id, requested=qty, available=max(available, 0))

        # 3) 落预占行
        row = StockReservation(
            product_id=product.id,
            order_id=order_id,
            quantity=qty,
            reason=reason,
            expires_at=ts + timedelta(minutes=ttl),
            created_at=ts,
        )
        session.add(row)
        await session.flush()

        log.info(
            "reserved: id=%s product_id=%s order_id=%s qty=%s expires_at=%s",
            row.id,
            product.id,
            order_id,
            qty,
            row.expires_at.isoformat(),
        )
        return row

    # ----------------------------------------------------------------------
    # 2. 批量预占（全有或全无）
    # ----------------------------------------------------------------------
    async def bulk_reserve(
        self,
        session: AsyncSession,
        items: Sequence[Union[ReservationItem, Dict[str, Any], Tuple[int, int]]],
        order_id: Optional[int] = None,
        expiration_minutes: Optional[int] = None,
        *,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> BulkReservationResult:
        """
        结账不能带着部分预占往下走：任意一项失败，整批回滚并原样抛出。

        商品按 id 升序加锁，避免两个结账以相反顺序锁同一批商品而互等。
        """
        normalized = [_to_item(x) for x in items]
        if not normalized:
            return BulkReservationResult(success=True)

        order = sorted(range(len(normalized)), key=lambda i: normalized[i].product_id)
        made: Dict[int, StockReservation] = {}

        try:
            async with tx_unit(session):
                for idx in order:
                    item = normalized[idx]
                    made[idx] = await self._reserve_locked(
                        session,
                        item.product_id,
                        item.quantity,
                        order_id=order_id,
                        expiration_minutes=expiration_minutes,
                        reason=reason,
                        now=now,
                    )
        except (InsufficientStockError, ProductNotFoundError) as e:
            reservations_rejected_total.labels(
                "insufficient_stock" if isinstance(e, InsufficientStockError) else "product_not_found"
            ).inc()
            log.info(
                "bulk reserve rolled back: order_id=%s items=%s err=%s",
                order_id,
                len(normalized),
                e,
            )
            raise

        reservations_created_total.inc(len(made))
        ordered = [made[i] for i in range(len(normalized))]
        return BulkReservationResult(
            success=True,
            reservations=ordered,
            total_reserved=sum(r.quantity for r in ordered),
        )

    # ----------------------------------------------------------------------
    # 3. 释放
    # ----------------------------------------------------------------------
    async def release(
        self,
        session: AsyncSession,
        reservation_id: Optional[int] = None,
        order_id: Optional[int] = None,
        *,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        删除仍生效的预占；找不到 / 已过期返回 False（幂等 no-op，不是错误）。
        """
        if (reservation_id is None) == (order_id is None):
            raise ValueError("exactly one of reservation_id / order_id is required")

        ts = now or utc_now()
        stmt = sa.delete(StockReservation).where(StockReservation.expires_at > ts)
        if reservation_id is not None:
            stmt = stmt.where(StockReservation.id == int(reservation_id))
        else:
            stmt = stmt.where(StockReservation.order_id == int(order_id))

        async def _inner() -> int:
            res = await session.execute(stmt.execution_options(synchronize_session=False))
            return int(res.rowcount or 0)

        deleted = await run_in_tx(session, _inner)
        if deleted:
            reservations_released_total.labels("explicit").inc(deleted)
        log.info(
            "release: reservation_id=%s order_id=%s deleted=%s",
            reservation_id,
            order_id,
            deleted,
        )
        return deleted > 0

    async def release_all_for_order(self, session: AsyncSession, order_id: int) -> ReleaseSummary:
        """订单取消：该订单名下所有预占行（含已过期的惰性行）一并清掉。"""

        async def _inner() -> ReleaseSummary:
            rows = (
                await session.execute(
                    sa.select(StockReservation.quantity).where(
                        StockReservation.order_id == int(order_id)
                    )
                )
            ).scalars().all()
            if not rows:
                return ReleaseSummary(released_count=0, total_quantity=0)
            await session.execute(
                sa.delete(StockReservation)
                .where(StockReservation.order_id == int(order_id))
                .execution_options(synchronize_session=False)
            )
            return ReleaseSummary(released_count=len(rows), total_quantity=int(sum(rows)))

        summary = await run_in_tx(session, _inner)
        if summary.released_count:
            reservations_released_total.labels("order").inc(summary.released_count)
        return summary

    # ----------------------------------------------------------------------
    # 4. TTL 清理
    # ----------------------------------------------------------------------
    async def cleanup_expired(
        self,
        session: AsyncSession,
        *,
        now: Optional[datetime] = None,
        batch_size: int = 500,
    ) -> int:
        """
        删除 expires_at <= now 的预占，按批提交。

        只碰已经过期的行，和并发 reserve 互不干扰；
        DELETE 时再判一次过期条件，期间被 extend 的行不会误删。
        """
        ts = now or utc_now()
        owned = not session.in_transaction()
        total = 0

        while True:
            ids = await find_expired_ids(session, now=ts, limit=batch_size)
            if not ids:
                break

            res = await session.execute(
                sa.delete(StockReservation)
                .where(StockReservation.id.in_(ids), StockReservation.expires_at <= ts)
                .execution_options(synchronize_session=False)
            )
            total += int(res.rowcount or 0)
            if owned:
                await session.commit()

            if len(ids) < batch_size:
                break

        if owned and session.in_transaction():
            await session.commit()

        if total:
            reservations_released_total.labels("expired").inc(total)
        log.info("cleanup_expired: now=%s deleted=%s", ts.isoformat(), total)
        return total

    async def extend(
        self,
        session: AsyncSession,
        reservation_id: int,
        additional_minutes: Optional[int] = None,
        *,
        now: Optional[datetime] = None,
    ) -> bool:
        """把仍生效的预占续到 now + additional_minutes；已过期的不复活。"""
        ts = now or utc_now()
        minutes = int(additional_minutes or self._default_ttl)
        if minutes <= 0:
            raise ValueError(f"additional_minutes must be positive, got {additional_minutes!r}")

        async def _inner() -> int:
            res = await session.execute(
                sa.update(StockReservation)
                .where(
                    StockReservation.id == int(reservation_id),
                    StockReservation.expires_at > ts,
                )
                .values(expires_at=ts + timedelta(minutes=minutes))
                .execution_options(synchronize_session=False)
            )
            return int(res.rowcount or 0)

        return await run_in_tx(session, _inner) > 0

    # ----------------------------------------------------------------------
    # 5. 预占转销售（支付成功）
    # ----------------------------------------------------------------------
    async def convert_to_sale(
        self,
        session: AsyncSession,
        order_id: int,
        *,
        created_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ConversionSummary:
        """
        同一事务内：对仍生效的预占逐行写 SALE 流水扣在手 → 删除该订单的全部预占。

        已过期的预占不再占库存（可能已被别的订单占走），只删除不转销售。

        任一商品在手不足（InsufficientStockError）整体回滚，由调用方决定如何处置。
        """
        ts = now or utc_now()

        async def _inner() -> ConversionSummary:
            rows = (
                await session.execute(
                    sa.select(StockReservation)
                    .where(StockReservation.order_id == int(order_id))
                    .where(StockReservation.expires_at > ts)
                    .order_by(StockReservation.product_id, StockReservation.id)
                )
            ).scalars().all()
            for r in rows:
                await self._stock.apply_in_tx(
                    session,
                    r.product_id,
                    MovementType.SALE,
                    r.quantity,
                    reason="Order confirmed - stock sold",
                    reference=f"order:{order_id}",
                    created_by=created_by,
                )

            await session.execute(
                sa.delete(StockReservation)
                .where(StockReservation.order_id == int(order_id))
                .execution_options(synchronize_session=False)
            )
            return ConversionSummary(
                converted_count=len(rows),
                total_quantity=sum(int(r.quantity) for r in rows),
            )

        summary = await run_in_tx(session, _inner)
        log.info(
            "convert_to_sale: order_id=%s converted=%s qty=%s",
            order_id,
            summary.converted_count,
            summary.total_quantity,
        )
        return summary

    # ----------------------------------------------------------------------
    # 6. 只读查询
    # ----------------------------------------------------------------------
    async def get_reserved(
        self,
        session: AsyncSession,
        product_id: int,
        *,
        now: Optional[datetime] = None,
    ) -> int:
        return await sum_active_reserved(session, product_id, now=now or utc_now())

    async def get_available(
        self,
        session: AsyncSession,
        product_id: int,
        *,
        now: Optional[datetime] = None,
    ) -> int:
        product = await load_product(session, product_id)
        reserved = await sum_active_reserved(session, product.id, now=now or utc_now())
        return product.quantity - reserved

    async def list_active(
        self,
        session: AsyncSession,
        *,
        product_id: Optional[int] = None,
        order_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[StockReservation]:
        return await list_active(
            session, now=now or utc_now(), product_id=product_id, order_id=order_id
        )

    async def stats(
        self,
        session: AsyncSession,
        *,
        now: Optional[datetime] = None,
        expiring_within_minutes: int = 15,
    ) -> ReservationStats:
        ts = now or utc_now()
        per_product = await active_reserved_by_product(session, now=ts)
        expiring = await count_expiring_between(
            session, now=ts, until=ts + timedelta(minutes=int(expiring_within_minutes))
        )
        return ReservationStats(
            total_active_reservations=sum(v["reservation_count"] for v in per_product.values()),
            total_reserved_quantity=sum(v["reserved_quantity"] for v in per_product.values()),
            expiring_soon=expiring,
            by_product=[{"product_id": pid, **v} for pid, v in per_product.items()],
        )


def _to_item(raw: Union[ReservationItem, Dict[str, Any], Tuple[int, int]]) -> ReservationItem:
    if isinstance(raw, ReservationItem):
        return raw
    if isinstance(raw, dict):
        return ReservationItem(product_id=int(raw["product_id"]), quantity=int(raw["quantity"]))
    pid, qty = raw
    return ReservationItem(product_id=int(pid), quantity=int(qty))
