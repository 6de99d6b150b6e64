# app/core/scheduler.py
from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional

from apscheduler.job import Job
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from app.jobs.recurring import RecurringTask

log = logging.getLogger(__name__)


async def _run_task(task: RecurringTask) -> None:
    # 任务异常只记日志，下一次触发照常
    try:
        report = await task.run()
        log.info("[Scheduler] task done: name=%s report=%s", task.name, _short(report))
    except Exception:
        log.exception("[Scheduler] task failed: name=%s", task.name)


def _short(report: object) -> object:
    as_dict = getattr(report, "as_dict", None)
    return as_dict() if callable(as_dict) else report


class ReconciliationScheduler:
    """
    APScheduler（AsyncIOScheduler）后端

    - 每个任务 max_instances=1 + coalesce：上一轮没跑完不会叠加；
    - 显式 start / shutdown，不再有模块级 _scheduler 全局变量。
    """

    def __init__(self, *, timezone: str = "Africa/Lagos") -> None:
        self.timezone = timezone
        self._scheduler = AsyncIOScheduler(timezone=timezone)
        self._tasks: Dict[str, RecurringTask] = {}

    @property
    def running(self) -> bool:
        return bool(self._scheduler.running)

    def add_task(self, task: RecurringTask, trigger: BaseTrigger) -> None:
        self._tasks[task.name] = task
        self._scheduler.add_job(
            _run_task,
            trigger,
            args=[task],
            id=task.name,
            name=task.name,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        log.info("[Scheduler] registered: name=%s trigger=%s", task.name, trigger)

    def add_cron(self, task: RecurringTask, **cron: object) -> None:
        self.add_task(task, CronTrigger(timezone=self.timezone, **cron))

    def add_interval(self, task: RecurringTask, *, seconds: int) -> None:
        self.add_task(task, IntervalTrigger(seconds=int(seconds), timezone=self.timezone))

    def jobs(self) -> List[Job]:
        return list(self._scheduler.get_jobs())

    def job_ids(self) -> List[str]:
        return sorted(j.id for j in self.jobs())

    async def run_now(self, name: str) -> object:
        """手动触发某个已注册任务（绕过调度，直接 await）。"""
        task = self._tasks.get(name)
        if task is None:
            raise KeyError(f"unknown task: {name}")
        return await task.run()

    def start(self) -> None:
        if self._scheduler.running:
            return
        self._scheduler.start()
        log.info("[Scheduler] started: tz=%s jobs=%s", self.timezone, self.job_ids())

    async def shutdown(self, *, wait: bool = False) -> None:
        if not self._scheduler.running:
            return
        self._scheduler.shutdown(wait=wait)
        # 新版 AsyncIOScheduler 的 shutdown 经 call_soon_threadsafe 延后执行，让出事件循环直到真正停下
        for _ in range(10):
            if not self._scheduler.running:
                break
            await asyncio.sleep(0)
        log.info("[Scheduler] stopped")


def register_default_jobs(
    scheduler: ReconciliationScheduler,
    *,
    frequent: RecurringTask,
    regular: RecurringTask,
    comprehensive: RecurringTask,
    sweep: Optional[RecurringTask] = None,
    sweep_interval_seconds: int = 300,
) -> None:
    """
    默认排班：
      frequent       每 15 分钟
      regular        每 6 小时整点
      comprehensive  每天 02:00（调度器时区）
      sweep          每 sweep_interval_seconds 秒
    """
    scheduler.add_cron(frequent, minute="*/15")
    scheduler.add_cron(regular, hour="*/6", minute=0)
    scheduler.add_cron(comprehensive, hour=2, minute=0)
    if sweep is not None:
        scheduler.add_interval(sweep, seconds=sweep_interval_seconds)
