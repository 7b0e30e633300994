# wmscore/services/claim_lease_sweep.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from wmscore.metrics import CLAIMS
from wmscore.models.enums import PickAction
from wmscore.models.order_claim import OrderClaim
from wmscore.services.claim_arbiter import ClaimArbiter
from wmscore.services.errors import ConcurrentModification, InvalidTransition, ReleaseRefused

UTC = timezone.utc

logger = logging.getLogger("wmscore.claims.sweep")


async def find_expired_claims(session: AsyncSession, *, now: datetime, limit: int) -> List[int]:
    rows = await session.execute(
        sa.select(OrderClaim.order_id)
        .where(OrderClaim.expires_at.is_not(None), OrderClaim.expires_at < now)
        .order_by(OrderClaim.expires_at.asc(), OrderClaim.order_id.asc())
        .limit(int(limit))
    )
    return [int(x) for x in rows.scalars().all()]


async def sweep_expired_claims(
    session: AsyncSession,
    *,
    now: Optional[datetime] = None,
    batch_size: int = 100,
    arbiter: Optional[ClaimArbiter] = None,
) -> int:
    """
    扫描并回收租约过期的认领。

    语义：
      - 仅处理 order_claims.expires_at IS NOT NULL AND expires_at < :now
      - 零进度 → 释放认领，订单回到 queued（picking_logs 记 claim_expired）
      - 已有进度 → 认领保持粘住，清空 expires_at，不再被扫描
      - 已被其它路径处理（并发释放 / 完成）→ 跳过

    返回：
      int : 本次真正释放的认领数量。
    """
    if now is None:
        now = datetime.now(UTC)

    arbiter = arbiter or ClaimArbiter()
    total_released = 0
    seen: set[int] = set()

    while True:
        limit = batch_size + len(seen)
        found = await find_expired_claims(session, now=now, limit=limit)
        ids = [x for x in found if x not in seen]
        if not ids:
            break

        for order_id in ids:
            seen.add(order_id)
            try:
                await arbiter.release(
                    session,
                    order_id,
                    action=PickAction.CLAIM_EXPIRED,
                    reason="lease_expired",
                    retry=False,
                )
                total_released += 1
            except ReleaseRefused:
                await session.execute(
                    sa.update(OrderClaim)
                    .where(OrderClaim.order_id == order_id)
                    .values(expires_at=None)
                    .execution_options(synchronize_session=False)
                )
                CLAIMS.labels("expire", "sticky").inc()
                logger.info("expired claim kept (progress exists): order=%s", order_id)
            except InvalidTransition:
                # 订单已不在认领态：清理残留认领行
                await session.execute(sa.delete(OrderClaim).where(OrderClaim.order_id == order_id))
                logger.info("stale claim row dropped: order=%s", order_id)
            except ConcurrentModification as e:
                logger.info("expired claim skipped: order=%s (%s)", order_id, e.message)

        if len(found) < limit:
            break

    if total_released:
        CLAIMS.labels("expire", "ok").inc(total_released)
        logger.info("claim lease sweep released %d orders", total_released)
    return total_released
