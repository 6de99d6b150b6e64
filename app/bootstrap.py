# app/bootstrap.py
# 核心服务装配：所有组件显式构造、显式 start / shutdown
from __future__ import annotations

import logging
from typing import Optional

from app.adapters.paystack import PaymentProvider, PaystackClient
from app.core.config import AppSettings
from app.core.scheduler import ReconciliationScheduler, register_default_jobs
from app.db.session import Database
from app.jobs.recurring import ReconcileTask, ReservationSweepTask
from app.services.notification_dispatcher import (
    LoggingNotificationDispatcher,
    NotificationDispatcher,
)
from app.services.payment_reconcile_service import PaymentReconcileService
from app.services.payment_reconcile_types import preset
from app.services.reservation_service import ReservationService
from app.services.stock_service import StockService

log = logging.getLogger(__name__)


class CoreServices:
    """
    库存预占 + 支付对账核心的服务容器

        core = CoreServices(settings)
        await core.start()
        ...
        await core.shutdown()

    provider / notifier / database 可由调用方注入（测试用 fake）；
    注入的对象生命周期归调用方，这里只管自己建的。
    """

    def __init__(
        self,
        settings: AppSettings,
        *,
        database: Optional[Database] = None,
        provider: Optional[PaymentProvider] = None,
        notifier: Optional[NotificationDispatcher] = None,
    ) -> None:
        self.settings = settings
        self._owns_db = database is None
        self.database = database or Database(settings.DATABASE_URL, echo=settings.SQL_ECHO)

        self._paystack: Optional[PaystackClient] = None
        if provider is None:
            self._paystack = PaystackClient(
                secret_key=settings.PAYSTACK_SECRET_KEY,
                base_url=settings.PAYSTACK_BASE_URL,
                timeout=settings.PAYSTACK_TIMEOUT_SECONDS,
            )
            provider = self._paystack
        self.provider: PaymentProvider = provider

        self.notifier: NotificationDispatcher = notifier or LoggingNotificationDispatcher()
        self.stock = StockService(notifier=self.notifier, admin_email=settings.ADMIN_EMAIL)
        self.reservations = ReservationService(
            stock_service=self.stock,
            default_ttl_minutes=settings.RESERVATION_TTL_MINUTES,
        )
        self.reconcile = PaymentReconcileService(
            self.database.session,
            self.provider,
            notifier=self.notifier,
            admin_email=settings.ADMIN_EMAIL,
            support_email=settings.SUPPORT_EMAIL,
            grace_minutes=settings.RECONCILE_GRACE_MINUTES,
            buffer_hours=settings.RECONCILE_BUFFER_HOURS,
        )
        self.scheduler: Optional[ReconciliationScheduler] = None
        self._started = False

    def build_scheduler(self) -> ReconciliationScheduler:
        delay = self.settings.RECONCILE_BATCH_DELAY_SECONDS

        def _task(name: str) -> ReconcileTask:
            opts = preset(name)
            if opts.batch_delay_seconds > 0:
                opts = opts.with_overrides(batch_delay_seconds=delay)
            return ReconcileTask(self.reconcile, name, options=opts)

        scheduler = ReconciliationScheduler(timezone=self.settings.SCHEDULER_TIMEZONE)
        register_default_jobs(
            scheduler,
            frequent=_task("frequent"),
            regular=_task("regular"),
            comprehensive=_task("comprehensive"),
            sweep=ReservationSweepTask(
                self.database.session,
                self.reservations,
                batch_size=self.settings.RESERVATION_SWEEP_BATCH_SIZE,
            ),
            sweep_interval_seconds=self.settings.RESERVATION_SWEEP_INTERVAL_SECONDS,
        )
        return scheduler

    async def start(
        self,
        *,
        enable_scheduler: Optional[bool] = None,
        create_schema: bool = False,
    ) -> None:
        if self._started:
            return
        if self._owns_db:
            await self.database.init(create_schema=create_schema)
        if self._paystack is not None:
            await self._paystack.start()

        if enable_scheduler is None:
            enable_scheduler = self.settings.ENABLE_RECONCILE_SCHEDULER
        if enable_scheduler:
            self.scheduler = self.build_scheduler()
            self.scheduler.start()

        self._started = True
        log.info(
            "core services started: env=%s scheduler=%s",
            self.settings.ENV,
            bool(self.scheduler),
        )

    async def shutdown(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.shutdown(wait=False)
            self.scheduler = None
        if self._paystack is not None:
            await self._paystack.close()
        if self._owns_db:
            await self.database.dispose()
        self._started = False
        log.info("core services stopped")
