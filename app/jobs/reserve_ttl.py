# app/jobs/reserve_ttl.py
"""
预占 TTL 清理（统一入口）

目标：
  - 删除 expires_at <= now 的 stock_reservations；
  - 可售计算本身已经忽略过期行，这里只是回收；
  - 并发安全 & 幂等由 ReservationService.cleanup_expired 实现。

用法：
  - 本地/生产均可使用：
        python -m app.jobs.reserve_ttl
  - 调度器里走 ReservationSweepTask，不经过这里。
"""

from __future__ import annotations

from typing import Optional

from app.core.config import AppSettings, get_settings
from app.core.logging import setup_logging
from app.db.session import Database
from app.services.reservation_service import ReservationService


async def main(settings: Optional[AppSettings] = None) -> int:
    """
    独立运行入口（例如：python -m app.jobs.reserve_ttl）。

    行为：
      - 连接与应用相同的 DATABASE_URL；
      - 按 RESERVATION_SWEEP_BATCH_SIZE 分批删除过期预占，每批提交；
      - 打印处理数量并返回。
    """
    settings = settings or get_settings()

    db = Database(settings.DATABASE_URL, echo=settings.SQL_ECHO)
    await db.init()
    batch_size = settings.RESERVATION_SWEEP_BATCH_SIZE
    svc = ReservationService(default_ttl_minutes=settings.RESERVATION_TTL_MINUTES)

    try:
        async with db.session() as session:
            deleted = await svc.cleanup_expired(session, batch_size=batch_size)
        print(f"[ReserveTTL] deleted {deleted} expired reservations (batch_size={batch_size})")
        return deleted
    finally:
        await db.dispose()


if __name__ == "__main__":
    import asyncio

    _s = get_settings()
    setup_logging(_s.LOG_LEVEL, json=_s.JSON_LOG)
    asyncio.run(main(_s))
