#!/usr/bin/env python3
"""
预占补跑（运维入口）

对 status=queued 且预占不足的订单重跑分配器（只补缺口，重复运行安全）。

用法：
    python scripts/reserve_backfill.py [--limit N] [--dry-run]
"""
from __future__ import annotations

import argparse
import asyncio

# ★ 集中导入 & 映射校验
from wmscore.db.base import init_models

init_models()

from wmscore.core.config import get_settings  # noqa: E402
from wmscore.core.logging import setup_logging  # noqa: E402
from wmscore.db.session import async_session_maker, close_engines  # noqa: E402
from wmscore.services.reservation_backfill import backfill_reservations  # noqa: E402


async def _run(limit: int | None, dry_run: bool) -> None:
    try:
        async with async_session_maker() as session:
            report = await backfill_reservations(session, limit=limit)
            if dry_run:
                await session.rollback()
            else:
                await session.commit()
        print(f"[backfill] {report.as_dict()}{' (dry-run, rolled back)' if dry_run else ''}")
        if report.partial:
            print(f"[backfill] partial orders: {report.partial}")
        if report.failed:
            print(f"[backfill] failed orders: {report.failed}")
    finally:
        await close_engines()


def main() -> None:
    p = argparse.ArgumentParser(description="Re-run reservation for under-reserved queued orders")
    p.add_argument("--limit", type=int, default=None, help="最多处理多少个订单")
    p.add_argument("--dry-run", action="store_true", help="只计算，不提交")
    args = p.parse_args()
    setup_logging(get_settings().LOG_LEVEL)
    asyncio.run(_run(args.limit, args.dry_run))


if __name__ == "__main__":
    main()
