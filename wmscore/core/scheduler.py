from __future__ import annotations

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from wmscore.core.config import get_settings
from wmscore.db.session import async_session_maker
from wmscore.services.claim_lease_sweep import sweep_expired_claims

logger = logging.getLogger("wmscore.scheduler")

_scheduler: AsyncIOScheduler | None = None


async def _job_sweep_claims() -> None:
    async with async_session_maker() as session:
        released = await sweep_expired_claims(session)
        await session.commit()
    if released:
        logger.info("claim sweep job released %d orders", released)


def init_scheduler() -> AsyncIOScheduler | None:
    """
    认领租约回收任务：ENABLE_CLAIM_SWEEP 打开且 CLAIM_LEASE_SECONDS > 0 才启动。
    """
    global _scheduler
    settings = get_settings()
    if not settings.ENABLE_CLAIM_SWEEP or settings.CLAIM_LEASE_SECONDS <= 0:
        return None
    if _scheduler is not None:
        return _scheduler

    _scheduler = AsyncIOScheduler(timezone="UTC")
    _scheduler.add_job(
        _job_sweep_claims,
        "interval",
        seconds=settings.CLAIM_SWEEP_INTERVAL_SECONDS,
        id="claim_lease_sweep",
        max_instances=1,
        coalesce=True,
    )
    _scheduler.start()
    logger.info(
        "claim sweep scheduled every %ss (lease=%ss)",
        settings.CLAIM_SWEEP_INTERVAL_SECONDS,
        settings.CLAIM_LEASE_SECONDS,
    )
    return _scheduler


def shutdown_scheduler() -> None:
    global _scheduler
    if _scheduler is not None:
        _scheduler.shutdown(wait=False)
        _scheduler = None
