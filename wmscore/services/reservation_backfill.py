# wmscore/services/reservation_backfill.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from wmscore.models.enums import LineStatus, OrderStatus
from wmscore.models.order import Order
from wmscore.models.order_line import OrderLine
from wmscore.services.errors import ConcurrentModification
from wmscore.services.reservation_allocator import ReservationAllocator

logger = logging.getLogger("wmscore.backfill")


@dataclass
class BackfillReport:
    scanned: int = 0
    reserved: List[int] = field(default_factory=list)
    partial: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "scanned": self.scanned,
            "reserved": len(self.reserved),
            "partial": len(self.partial),
            "failed": len(self.failed),
        }


async def find_underreserved_orders(session: AsyncSession, *, limit: Optional[int] = None) -> List[int]:
    """排队中、且至少一条未完成行的 reserved + picked < required 的订单。"""
    gap = sa.exists().where(
        OrderLine.order_id == Order.id,
        OrderLine.status.not_in([LineStatus.COMPLETED.value, LineStatus.SHORT.value]),
        (OrderLine.reserved_qty + OrderLine.picked_qty) < OrderLine.required_qty,
    )
    stmt = (
        sa.select(Order.id)
        .where(Order.status == OrderStatus.QUEUED.value, gap)
        .order_by(Order.created_at.asc(), Order.id.asc())
    )
    if limit is not None:
        stmt = stmt.limit(int(limit))
    return [int(x) for x in (await session.execute(stmt)).scalars().all()]


async def backfill_reservations(
    session: AsyncSession,
    *,
    limit: Optional[int] = None,
    allocator: Optional[ReservationAllocator] = None,
) -> BackfillReport:
    """
    对预占不足的排队订单重跑分配器。

    分配器按流水口径只补缺口（ref 幂等），重复运行安全。
    不提交事务；单个订单并发冲突只记 failed，继续下一单。
    """
    alloc = allocator or ReservationAllocator()
    report = BackfillReport()

    for order_id in await find_underreserved_orders(session, limit=limit):
        report.scanned += 1
        try:
            res = await alloc.allocate_order(session, order_id)
        except ConcurrentModification as e:
            logger.warning("backfill order=%s conflict: %s", order_id, e.message)
            report.failed.append(order_id)
            continue

        if not res.allocation_short:
            report.reserved.append(order_id)
        elif any(x.held_qty > 0 for x in res.lines):
            report.partial.append(order_id)
        else:
            report.failed.append(order_id)

    logger.info("reservation backfill done: %s", report.as_dict())
    return report
