# wmscore/services/pick_queue.py
from __future__ import annotations

from typing import List

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from wmscore.models.enums import OrderStatus, Priority
from wmscore.models.order import Order

# rush > high > normal；未知优先级排最后
_PRIORITY_RANK = sa.case(
    {p.value: p.rank for p in Priority},
    value=Order.priority,
    else_=len(Priority),
)


async def list_pick_queue(session: AsyncSession, *, limit: int = 50) -> List[Order]:
    """
    可认领订单队列：status = queued 且未挂起。
    排序：优先级（rush → high → normal），同级按入队时间先后，id 兜底。

    只是时点快照：认领时仍以条件更新为准，输家刷新队列即可。
    """
    rows = await session.execute(
        sa.select(Order)
        .where(Order.status == OrderStatus.QUEUED.value, Order.on_hold.is_(False))
        .order_by(_PRIORITY_RANK.asc(), Order.created_at.asc(), Order.id.asc())
        .limit(int(limit))
        .execution_options(populate_existing=True)
    )
    return list(rows.scalars().all())
