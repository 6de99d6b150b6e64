# app/jobs/recurring.py
"""
后台周期任务（与调度后端解耦）

任何后端（APScheduler / CLI / 外部 cron）只依赖 RecurringTask 协议：
    name: str
    async run() -> 本轮报告
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from app.services.payment_reconcile_service import PaymentReconcileService
from app.services.payment_reconcile_types import ReconcileOptions, ReconcileSummary, preset
from app.services.reservation_service import ReservationService

log = logging.getLogger(__name__)


class RecurringTask(Protocol):
    name: str

    async def run(self) -> Any: ...


class ReconcileTask:
    """按某个预设跑一轮支付对账"""

    def __init__(
        self,
        service: PaymentReconcileService,
        preset_name: str,
        *,
        options: ReconcileOptions | None = None,
    ) -> None:
        self.name = f"payment-reconcile-{preset_name}"
        self._service = service
        self._options = options or preset(preset_name)

    @property
    def options(self) -> ReconcileOptions:
        return self._options

    async def run(self) -> ReconcileSummary:
        return await self._service.run(self._options)


class ReservationSweepTask:
    """清理过期预占（可售计算本身不依赖它，只是回收行）"""

    name = "reservation-sweep"

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        reservations: ReservationService,
        *,
        batch_size: int = 500,
    ) -> None:
        self._session_factory = session_factory
        self._reservations = reservations
        self._batch_size = int(batch_size)

    async def run(self) -> int:
        async with self._session_factory() as session:
            deleted = await self._reservations.cleanup_expired(
                session, batch_size=self._batch_size
            )
        log.info("[ReservationSweep] deleted=%s batch_size=%s", deleted, self._batch_size)
        return deleted
