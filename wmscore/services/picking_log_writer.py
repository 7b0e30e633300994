# wmscore/services/picking_log_writer.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from wmscore.models.enums import PickAction
from wmscore.models.picking_log import PickingLog

logger = logging.getLogger("wmscore.picking_log")


class PickingLogWriter:
    """
    拣货作业审计写入器：

    - 唯一职责：往 picking_logs 写一行（只增不改）
    - 与业务写入同一事务；失败随事务一起回滚，不单独吞掉
    - 同时打一行 INFO 日志，便于无库排障
    """

    @staticmethod
    async def write(
        session: AsyncSession,
        *,
        action: PickAction,
        order_id: int,
        line_id: Optional[int] = None,
        worker_id: Optional[str] = None,
        sku: Optional[str] = None,
        qty_before: Optional[int] = None,
        qty_after: Optional[int] = None,
        status_before: Optional[str] = None,
        status_after: Optional[str] = None,
        reason: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        await session.execute(
            sa.insert(PickingLog).values(
                action=action.value,
                order_id=int(order_id),
                line_id=line_id,
                worker_id=worker_id,
                sku=sku,
                qty_before=qty_before,
                qty_after=qty_after,
                status_before=status_before,
                status_after=status_after,
                reason=reason,
                meta=meta,
            )
        )
        logger.info(
            "[%s] order=%s line=%s worker=%s qty=%s->%s status=%s->%s%s",
            action.value,
            order_id,
            line_id,
            worker_id,
            qty_before,
            qty_after,
            status_before,
            status_after,
            f" reason={reason}" if reason else "",
        )


async def list_picking_logs(session: AsyncSession, order_id: int) -> List[PickingLog]:
    rows = await session.execute(
        sa.select(PickingLog)
        .where(PickingLog.order_id == int(order_id))
        .order_by(PickingLog.id.asc())
    )
    return list(rows.scalars().all())
