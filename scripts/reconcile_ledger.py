#!/usr/bin/env python3
"""
台账对账（运维入口）

从 inventory_txns 重放三桶数量，与 ledger_entries 比对。
默认只报告；--apply 时以重放结果覆盖台账（崩溃恢复）。

用法：
    python scripts/reconcile_ledger.py [--apply]
退出码：有漂移且未 --apply → 1
"""
from __future__ import annotations

import argparse
import asyncio
import sys

# ★ 集中导入 & 映射校验
from wmscore.db.base import init_models

init_models()

from wmscore.core.config import get_settings  # noqa: E402
from wmscore.core.logging import setup_logging  # noqa: E402
from wmscore.db.session import async_session_maker, close_engines  # noqa: E402
from wmscore.services.ledger_replay_service import LedgerReplayService  # noqa: E402


async def _run(apply: bool) -> int:
    try:
        async with async_session_maker() as session:
            report = await LedgerReplayService.reconcile(session, apply=apply)
            if report.applied:
                await session.commit()
    finally:
        await close_engines()

    for d in report.drifts:
        print(f"[drift] {d.as_dict()}")
    print(f"[reconcile] checked={report.checked} drifts={len(report.drifts)} applied={report.applied}")
    return 1 if (report.drifts and not report.applied) else 0


def main() -> None:
    p = argparse.ArgumentParser(description="Replay inventory_txns and reconcile ledger_entries")
    p.add_argument("--apply", action="store_true", help="以重放结果覆盖台账（默认只报告）")
    args = p.parse_args()
    setup_logging(get_settings().LOG_LEVEL)
    sys.exit(asyncio.run(_run(args.apply)))


if __name__ == "__main__":
    main()
