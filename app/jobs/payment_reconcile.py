# app/jobs/payment_reconcile.py
"""
支付对账独立入口

用法：
    python -m app.jobs.payment_reconcile                      # manual 预设
    python -m app.jobs.payment_reconcile --mode emergency     # 近 1 小时，批间不等待
    python -m app.jobs.payment_reconcile --mode regular --hours 48 --batch-size 20

退出码：0 = 本轮跑完（单个订单失败也算跑完）；1 = 整轮中止（选单失败）。
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Optional, Sequence

from app.bootstrap import CoreServices
from app.core.config import AppSettings, get_settings
from app.core.logging import setup_logging
from app.services.errors import ReconciliationRunError
from app.services.payment_reconcile_types import PRESETS, ReconcileOptions, preset


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="payment_reconcile", description="Paystack payment reconciliation")
    p.add_argument("--mode", choices=sorted(PRESETS), default="manual")
    p.add_argument("--hours", type=int, default=None, help="override time_range_hours")
    p.add_argument("--batch-size", type=int, default=None)
    p.add_argument("--batch-delay", type=float, default=None, help="seconds between batches")
    return p


def options_from_args(args: argparse.Namespace) -> ReconcileOptions:
    return preset(args.mode).with_overrides(
        time_range_hours=args.hours,
        batch_size=args.batch_size,
        batch_delay_seconds=args.batch_delay,
    )


async def main(
    argv: Optional[Sequence[str]] = None,
    *,
    core: Optional[CoreServices] = None,
    settings: Optional[AppSettings] = None,
) -> int:
    args = build_parser().parse_args(argv)
    settings = settings or get_settings()
    if core is None:
        setup_logging(settings.LOG_LEVEL, json=settings.JSON_LOG)

    owned = core is None
    core = core or CoreServices(settings)
    await core.start(enable_scheduler=False)
    try:
        summary = await core.reconcile.run(options_from_args(args))
    except ReconciliationRunError as e:
        print(f"[RECONCILIATION] aborted: {e}", file=sys.stderr)
        return 1
    finally:
        if owned:
            await core.shutdown()

    print(json.dumps(summary.as_dict(), ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
