# wmscore/services/exception_review.py
from __future__ import annotations

import logging
from typing import List, Optional

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from wmscore.models.enums import OrderStatus, PickAction, Resolution
from wmscore.models.order import Order
from wmscore.services.errors import InvalidTransition
from wmscore.services.order_intake import OrderIntakeService
from wmscore.services.order_reads import get_order
from wmscore.services.picking_log_writer import PickingLogWriter

logger = logging.getLogger("wmscore.review")


def _open_exception_cond():
    return sa.or_(
        Order.needs_review.is_(True),
        sa.and_(Order.status == OrderStatus.EXCEPTION.value, Order.resolution.is_(None)),
        sa.and_(Order.allocation_short.is_(True), Order.status == OrderStatus.QUEUED.value),
    )


async def list_review_orders(session: AsyncSession, *, limit: int = 100) -> List[Order]:
    """
    待复核订单：
      - needs_review（完成但有 short 行）
      - status = exception 且未处理（全部缺货）
      - 入队预占不足、仍在排队（allocation_short）
    """
    rows = await session.execute(
        sa.select(Order)
        .where(_open_exception_cond())
        .order_by(Order.updated_at.asc(), Order.id.asc())
        .limit(int(limit))
        .execution_options(populate_existing=True)
    )
    return list(rows.scalars().all())


class ExceptionReviewService:
    """
    异常复核处理：

      ship_partial → 确认部分发货（仅 completed 且有已拣量），清除复核标记
      resolved     → 问题已处理，清除复核标记
      hold         → 记录决定，保留复核标记
      cancelled    → 取消订单（仅在一件未拣时允许，走补偿释放）
    """

    def __init__(self, intake: Optional[OrderIntakeService] = None) -> None:
        self.intake = intake or OrderIntakeService()

    async def resolve_exception(
        self,
        session: AsyncSession,
        order_id: int,
        *,
        resolution: str,
        resolved_by: str,
        notes: Optional[str] = None,
    ) -> Order:
        res = Resolution(resolution)
        who = (resolved_by or "").strip()
        if not who:
            raise ValueError("resolved_by is required")

        order = await get_order(session, order_id)
        ctx = {"order_id": order.id, "status": order.status, "resolution": res.value}
        open_exception = (
            bool(order.needs_review)
            or (order.status == OrderStatus.EXCEPTION.value and order.resolution is None)
            or (bool(order.allocation_short) and order.status == OrderStatus.QUEUED.value)
        )
        if not open_exception:
            raise InvalidTransition(f"order {order.id} has no open exception", context=ctx)

        picked_total = sum(int(ln.picked_qty) for ln in order.lines)
        if res == Resolution.SHIP_PARTIAL and (order.status != OrderStatus.COMPLETED.value or picked_total == 0):
            raise InvalidTransition("ship_partial needs a completed order with picked quantity", context=ctx)

        status_before = order.status
        if res == Resolution.CANCELLED:
            # picked > 0 时 cancel_order 会拒绝
            order = await self.intake.cancel_order(session, order.id, actor=who, reason="exception_review")

        await session.execute(
            sa.update(Order)
            .where(Order.id == order.id)
            .values(
                resolution=res.value,
                resolved_by=who,
                resolution_notes=notes,
                needs_review=(res == Resolution.HOLD),
                allocation_short=(res == Resolution.HOLD and bool(order.allocation_short)),
                version=Order.version + 1,
            )
            .execution_options(synchronize_session=False)
        )

        await PickingLogWriter.write(
            session,
            action=PickAction.EXCEPTION_RESOLVED,
            order_id=order.id,
            worker_id=who,
            status_before=status_before,
            status_after=order.status,
            reason=res.value,
            meta={"notes": notes} if notes else None,
        )
        logger.info("order %s exception resolved: %s by %s", order.id, res.value, who)
        return await get_order(session, order.id)
