# app/services/stock_service.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.tx import run_in_tx, tx_unit
from app.db.types import utc_now
from app.models.enums import MovementType, movement_direction
from app.models.inventory_movement import InventoryMovement
from app.models.product import Product
from app.obs.metrics import stock_movements_total
from app.services.errors import InsufficientStockError
from app.services.ledger_writer import write_movement
from app.services.notification_dispatcher import (
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    NotificationKind,
    dispatch_safely,
)
from app.services.reservation_queries import sum_active_reserved
from app.services.stock_queries import ProductState, list_low_stock, load_product, lock_product

log = logging.getLogger(__name__)

MovementWriter = Callable[..., Awaitable[int]]


@dataclass(frozen=True)
class StockUpdate:
    product_id: int
    movement_id: int
    movement_type: MovementType
    quantity: int
    previous_quantity: int
    new_quantity: int
    low_stock_threshold: int

    @property
    def is_low_stock(self) -> bool:
        return self.new_quantity <= self.low_stock_threshold


@dataclass(frozen=True)
class StockAdjustment:
    product_id: int
    movement_type: Union[MovementType, str]
    quantity: int
    reason: Optional[str] = None
    reference: Optional[str] = None


@dataclass
class BulkAdjustResult:
    processed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class StockCheck:
    product_id: int
    available: bool
    current_stock: int
    reserved_stock: int
    available_stock: int
    is_low_stock: bool
    is_out_of_stock: bool


class StockService:
    """
    库存变更唯一入口（products.quantity 只在这里写）：

    - apply_movement：加锁 → 算新余额 → 防负 → 写余额 → 追加流水，同一事务；
    - bulk_adjust：后台批量纠偏，逐条独立提交，错误收集不中断；
    - check_availability / movement_history / low_stock_products：只读查询。

    事务语义：
      - session 不在事务中：自己 begin/commit，失败整体回滚；
      - session 已在事务中（调用方编排）：只执行，不提交；失败抛出由调用方回滚。
    """

    def __init__(
        self,
        *,
        notifier: Optional[NotificationDispatcher] = None,
        admin_email: str = "admin@bareloft.com",
        movement_writer: MovementWriter = write_movement,
    ) -> None:
        self._notifier = notifier or LoggingNotificationDispatcher()
        self._admin_email = admin_email
        self._write_movement = movement_writer

    # ------------------------------------------------------------------
    # 1. 单笔库存变更
    # ------------------------------------------------------------------
    async def apply_movement(
        self,
        session: AsyncSession,
        product_id: int,
        movement_type: Union[MovementType, str],
        quantity: int,
        *,
        reason: Optional[str] = None,
        reference: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> StockUpdate:
        owned = not session.in_transaction()

        async def _inner() -> StockUpdate:
            return await self.apply_in_tx(
                session,
                product_id,
                movement_type,
                quantity,
                reason=reason,
                reference=reference,
                created_by=created_by,
            )

        update = await run_in_tx(session, _inner)
        stock_movements_total.labels(update.movement_type.value).inc()
        if owned:
            await self._maybe_alert(update)
        return update

    async def apply_in_tx(
        self,
        session: AsyncSession,
        product_id: int,
        movement_type: Union[MovementType, str],
        quantity: int,
        *,
        reason: Optional[str] = None,
        reference: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> StockUpdate:
        """
        已在事务中时的裸执行版本（预占转销售等编排场景复用）。
        """
        mt = MovementType(str(movement_type).upper())
        qty = int(quantity)
        if qty <= 0:
            raise ValueError(f"movement quantity must be positive, got {quantity!r}")
        direction = movement_direction(mt)

        state = await lock_product(session, product_id)
        before = state.quantity
        after = before + direction * qty
        if after < 0:
            raise InsufficientStockError(product_id, requested=qty, available=before)

        await session.execute(
            sa.update(Product)
            .where(Product.id == state.id)
            .values(quantity=after)
            .execution_options(synchronize_session=False)
        )
        movement_id = await self._write_movement(
            session,
            product_id=state.id,
            movement_type=mt,
            quantity=qty,
            previous_quantity=before,
            new_quantity=after,
            reference=reference,
            reason=reason,
            created_by=created_by,
        )

        log.info(
            "stock movement applied: product_id=%s type=%s qty=%s %s->%s ref=%s",
            state.id,
            mt.value,
            qty,
            before,
            after,
            reference,
        )
        return StockUpdate(
            product_id=state.id,
            movement_id=movement_id,
            movement_type=mt,
            quantity=qty,
            previous_quantity=before,
            new_quantity=after,
            low_stock_threshold=state.low_stock_threshold,
        )

    # ------------------------------------------------------------------
    # 2. 批量纠偏（允许部分成功）
    # ------------------------------------------------------------------
    async def bulk_adjust(
        self,
        session: AsyncSession,
        updates: Sequence[Union[StockAdjustment, Dict[str, Any]]],
        batch_reason: str,
        created_by: Optional[str] = None,
    ) -> BulkAdjustResult:
        """
        与预占批量不同：这里是后台纠偏，不是一笔业务交易，
        所以逐条独立提交，单条失败只记入 errors。
        """
        result = BulkAdjustResult()

        for raw in updates:
            try:
                adj = raw if isinstance(raw, StockAdjustment) else StockAdjustment(**raw)
            except TypeError as e:
                pid = raw.get("product_id") if isinstance(raw, dict) else None
                log.warning("bulk adjust item malformed: product_id=%s err=%s", pid, e)
                result.errors.append({"product_id": pid, "error": str(e)})
                continue

            owned = not session.in_transaction()
            try:
                async with tx_unit(session):
                    update = await self.apply_in_tx(
                        session,
                        adj.product_id,
                        adj.movement_type,
                        adj.quantity,
                        reason=adj.reason or batch_reason,
                        reference=adj.reference,
                        created_by=created_by,
                    )
            except Exception as e:
                log.warning(
                    "bulk adjust item failed: product_id=%s type=%s qty=%s err=%s",
                    adj.product_id,
                    adj.movement_type,
                    adj.quantity,
                    e,
                )
                result.errors.append({"product_id": adj.product_id, "error": str(e)})
                continue

            result.processed += 1
            stock_movements_total.labels(update.movement_type.value).inc()
            if owned:
                await self._maybe_alert(update)

        log.info(
            "bulk adjust done: reason=%s processed=%s errors=%s",
            batch_reason,
            result.processed,
            len(result.errors),
        )
        return result

    # ------------------------------------------------------------------
    # 3. 只读查询
    # ------------------------------------------------------------------
    async def check_availability(
        self,
        session: AsyncSession,
        product_id: int,
        requested: int = 1,
        *,
        now: Optional[datetime] = None,
    ) -> StockCheck:
        state = await load_product(session, product_id)
        reserved = await sum_active_reserved(session, state.id, now=now or utc_now())
        available_stock = state.quantity - reserved
        return StockCheck(
            product_id=state.id,
            available=state.is_active and available_stock >= int(requested),
            current_stock=state.quantity,
            reserved_stock=reserved,
            available_stock=available_stock,
            is_low_stock=state.quantity <= state.low_stock_threshold,
            is_out_of_stock=state.quantity == 0,
        )

    async def movement_history(
        self,
        session: AsyncSession,
        product_id: int,
        limit: int = 50,
    ) -> List[InventoryMovement]:
        res = await session.execute(
            sa.select(InventoryMovement)
            .where(InventoryMovement.product_id == int(product_id))
            .order_by(InventoryMovement.created_at.desc(), InventoryMovement.id.desc())
            .limit(int(limit))
        )
        return list(res.scalars().all())

    async def low_stock_products(self, session: AsyncSession) -> List[ProductState]:
        return await list_low_stock(session)

    # ------------------------------------------------------------------
    # 内部：低库存提醒（只在越线那一下提醒）
    # ------------------------------------------------------------------
    async def _maybe_alert(self, update: StockUpdate) -> None:
        before, after = update.previous_quantity, update.new_quantity
        threshold = update.low_stock_threshold

        if after == 0 and before > 0:
            kind = NotificationKind.OUT_OF_STOCK
        elif after <= threshold < before:
            kind = NotificationKind.LOW_STOCK
        else:
            return

        await dispatch_safely(
            self._notifier,
            kind,
            self._admin_email,
            {
                "productId": update.product_id,
                "currentStock": after,
                "threshold": threshold,
                "movementType": update.movement_type.value,
            },
        )
