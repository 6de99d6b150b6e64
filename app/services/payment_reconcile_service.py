# app/services/payment_reconcile_service.py
from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from app.adapters.paystack import PaymentProvider
from app.db.types import utc_now
from app.models.enums import PaymentStatus
from app.obs.metrics import reconcile_orders_total, reconcile_run_duration, reconcile_runs_total
from app.services.errors import ReconciliationRunError
from app.services.notification_dispatcher import (
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    NotificationKind,
    dispatch_safely,
)
from app.services.payment_reconcile_apply import apply_payment_correction
from app.services.payment_reconcile_queries import select_orders_for_reconciliation
from app.services.payment_reconcile_strategies import (
    VerificationStrategy,
    default_strategies,
    verify_order,
)
from app.services.payment_reconcile_types import (
    OrderSnapshot,
    PaymentDiscrepancy,
    ReconcileOptions,
    ReconcileSummary,
    VerificationResult,
)
from app.services.payment_status import (
    can_transition,
    fulfillment_status_for,
    is_terminal,
    map_provider_status,
)

log = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncSession]

_CUSTOMER_KIND = {
    PaymentStatus.COMPLETED: NotificationKind.PAYMENT_CONFIRMATION,
    PaymentStatus.FAILED: NotificationKind.PAYMENT_FAILED,
    PaymentStatus.CANCELLED: NotificationKind.ORDER_CANCELLED,
}

# 管理员汇总里最多带多少条错误
_REPORT_MAX_ERRORS = 10


class PaymentReconcileService:
    """
    支付对账引擎（webhook 之外的兜底）

    一轮对账：
      1) 选单：近 N 小时、非终态、最近 10 分钟没动过的订单；
      2) 分批：每批之间 sleep，避免打爆 Paystack 限流；
      3) 核实：按策略列表依次查交易，第一个命中为准；
      4) 比对：映射后的渠道状态 ≠ 本地状态 → 记一条差异；
      5) 修正：只对终态做条件 UPDATE，每单一个事务；
      6) 通知：只有本轮真的改了状态才通知客户 / 管理员；
      7) 汇总：有差异时给管理员发本轮报告。

    单个订单出错只记进 summary.errors，不影响后续订单；
    选单失败抛 ReconciliationRunError，整轮中止。
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        provider: PaymentProvider,
        *,
        notifier: Optional[NotificationDispatcher] = None,
        strategies: Optional[Sequence[VerificationStrategy]] = None,
        admin_email: Optional[str] = "admin@bareloft.com",
        support_email: str = "support@bareloft.com",
        grace_minutes: int = 10,
        buffer_hours: int = 6,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._provider = provider
        self._notifier = notifier or LoggingNotificationDispatcher()
        self._strategies: List[VerificationStrategy] = list(strategies or default_strategies())
        self._admin_email = admin_email
        self._support_email = support_email
        self._grace_minutes = int(grace_minutes)
        self._buffer_hours = int(buffer_hours)
        self._sleep = sleep

    async def run(
        self,
        options: Optional[ReconcileOptions] = None,
        *,
        now: Optional[datetime] = None,
    ) -> ReconcileSummary:
        opts = options or ReconcileOptions()
        ts = now or utc_now()
        started = time.perf_counter()
        summary = ReconcileSummary(mode=opts.mode)

        log.info(
            "[RECONCILIATION] run start: mode=%s hours=%s batch_size=%s only_unconfirmed=%s",
            opts.mode,
            opts.time_range_hours,
            opts.batch_size,
            opts.only_unconfirmed,
        )

        orders = await self._select(opts, ts)
        summary.total_processed = len(orders)

        batches = [orders[i : i + opts.batch_size] for i in range(0, len(orders), opts.batch_size)]
        for idx, batch in enumerate(batches):
            log.info(
                "[RECONCILIATION] batch %s/%s: orders=%s", idx + 1, len(batches), len(batch)
            )
            for order in batch:
                await self._process_order(order, summary, ts)
            if idx < len(batches) - 1 and opts.batch_delay_seconds > 0:
                await self._sleep(opts.batch_delay_seconds)

        if summary.discrepancies_found:
            await self._send_report(summary)

        summary.duration_seconds = time.perf_counter() - started
        reconcile_runs_total.labels(str(opts.mode), "ok").inc()
        reconcile_run_duration.labels(str(opts.mode)).observe(summary.duration_seconds)
        log.info(
            "[RECONCILIATION] run done: mode=%s processed=%s discrepancies=%s updated=%s "
            "failed=%s skipped=%s errors=%s duration=%.3fs",
            opts.mode,
            summary.total_processed,
            summary.discrepancies_found,
            summary.successful_updates,
            summary.failed_updates,
            summary.skipped,
            len(summary.errors),
            summary.duration_seconds,
        )
        return summary

    # ------------------------------------------------------------------
    # 选单
    # ------------------------------------------------------------------
    async def _select(self, opts: ReconcileOptions, now: datetime) -> List[OrderSnapshot]:
        try:
            async with self._session_factory() as session:
                return await select_orders_for_reconciliation(
                    session,
                    now=now,
                    time_range_hours=opts.time_range_hours,
                    grace_minutes=self._grace_minutes,
                    buffer_hours=self._buffer_hours,
                )
        except Exception as e:
            reconcile_runs_total.labels(str(opts.mode), "aborted").inc()
            log.exception("[RECONCILIATION] order selection failed: mode=%s", opts.mode)
            raise ReconciliationRunError("select_orders", e) from e

    # ------------------------------------------------------------------
    # 单订单
    # ------------------------------------------------------------------
    async def _process_order(
        self, order: OrderSnapshot, summary: ReconcileSummary, now: datetime
    ) -> None:
        try:
            outcome = await self._reconcile_one(order, summary, now)
        except Exception as e:
            outcome = "error"
            summary.failed_updates += 1
            summary.errors.append(
                f"order {order.order_number} (id={order.id}): {type(e).__name__}: {e}"
            )
            log.exception(
                "[RECONCILIATION] order failed: order_id=%s order_number=%s reference=%s",
                order.id,
                order.order_number,
                order.payment_reference,
            )
        reconcile_orders_total.labels(outcome).inc()

    async def _reconcile_one(
        self, order: OrderSnapshot, summary: ReconcileSummary, now: datetime
    ) -> str:
        found = await verify_order(self._provider, order, self._strategies)
        if found is None:
            # 无证据 = 不动：不记差异、不改状态
            summary.skipped += 1
            log.info(
                "[RECONCILIATION] not_found: order_id=%s order_number=%s reference=%s",
                order.id,
                order.order_number,
                order.payment_reference,
            )
            return "not_found"

        tx = found.transaction
        mapped = map_provider_status(tx.status)
        if mapped == order.payment_status:
            summary.skipped += 1
            return "in_sync"

        discrepancy = self._discrepancy(order, found, mapped)
        summary.discrepancies_found += 1
        summary.discrepancies.append(discrepancy)
        log.warning(
            "[RECONCILIATION] discrepancy: order_id=%s order_number=%s db=%s paystack=%s raw=%s",
            order.id,
            order.order_number,
            order.payment_status,
            mapped,
            tx.status,
        )

        if not is_terminal(mapped) or not can_transition(order.payment_status, mapped):
            summary.failed_updates += 1
            summary.errors.append(
                f"order {order.order_number} (id={order.id}): provider status "
                f"'{tx.status}' is not definitive, left as {order.payment_status}"
            )
            return "ambiguous"

        backfill = None
        if found.by_metadata and not order.payment_reference and tx.reference:
            backfill = tx.reference

        async with self._session_factory() as session:
            async with session.begin():
                changed = await apply_payment_correction(
                    session,
                    order_id=order.id,
                    old_status=order.payment_status,
                    new_status=mapped,
                    now=now,
                    backfill_reference=backfill,
                )

        if not changed:
            summary.skipped += 1
            return "raced"

        summary.successful_updates += 1
        log.info(
            "[RECONCILIATION] corrected: order_id=%s order_number=%s %s -> %s backfill_reference=%s",
            order.id,
            order.order_number,
            order.payment_status,
            mapped,
            backfill,
        )
        await self._notify_change(order, discrepancy, mapped)
        return "updated"

    @staticmethod
    def _discrepancy(
        order: OrderSnapshot, found: VerificationResult, mapped: PaymentStatus
    ) -> PaymentDiscrepancy:
        tx = found.transaction
        if found.by_metadata:
            reason = f"transaction found by order number in paystack metadata (status={tx.status})"
        else:
            reason = f"paystack reports {tx.status} while order is {order.payment_status}"
        return PaymentDiscrepancy(
            order_id=order.id,
            order_number=order.order_number,
            database_status=order.payment_status,
            paystack_status=mapped,
            amount=order.total,
            payment_reference=order.payment_reference or tx.reference or None,
            reason=reason,
            found_reference=tx.reference or None,
            strategy=found.strategy,
        )

    # ------------------------------------------------------------------
    # 通知
    # ------------------------------------------------------------------
    async def _notify_change(
        self, order: OrderSnapshot, discrepancy: PaymentDiscrepancy, new_status: PaymentStatus
    ) -> None:
        customer_name = (order.customer_name or "").strip() or "Valued Customer"
        fulfillment = fulfillment_status_for(new_status)

        kind = _CUSTOMER_KIND.get(new_status)
        if kind and order.customer_email:
            data = {
                "order_number": order.order_number,
                "amount": str(order.total),
                "currency": order.currency,
                "customer_name": customer_name,
                "payment_reference": discrepancy.payment_reference,
                "order_status": str(fulfillment) if fulfillment else None,
                "reconciliation_update": True,
            }
            if new_status != PaymentStatus.COMPLETED:
                data["reason"] = discrepancy.reason
                data["support_email"] = self._support_email
            await dispatch_safely(self._notifier, kind, order.customer_email, data)
        elif kind:
            log.warning(
                "[RECONCILIATION] no customer email, skip customer notification: order_id=%s",
                order.id,
            )

        if self._admin_email:
            await dispatch_safely(
                self._notifier,
                NotificationKind.ADMIN_ORDER_UPDATE,
                self._admin_email,
                {
                    "order_id": order.id,
                    "order_number": order.order_number,
                    "customer_name": customer_name,
                    "customer_email": order.customer_email,
                    "old_payment_status": str(order.payment_status),
                    "new_payment_status": str(new_status),
                    "new_order_status": str(fulfillment) if fulfillment else None,
                    "payment_reference": discrepancy.payment_reference,
                    "strategy": discrepancy.strategy,
                    "reason": discrepancy.reason,
                },
            )

    async def _send_report(self, summary: ReconcileSummary) -> None:
        if not self._admin_email:
            return
        data = summary.as_dict()
        data["errors"] = summary.errors[:_REPORT_MAX_ERRORS]
        data["discrepancies"] = [d.as_dict() for d in summary.discrepancies]
        await dispatch_safely(
            self._notifier,
            NotificationKind.ADMIN_RECONCILIATION_REPORT,
            self._admin_email,
            data,
        )
