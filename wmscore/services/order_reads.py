# wmscore/services/order_reads.py
from __future__ import annotations

from typing import Optional

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from wmscore.models.order import Order
from wmscore.models.order_claim import OrderClaim
from wmscore.models.order_line import OrderLine
from wmscore.services.errors import NotFound


async def get_order(session: AsyncSession, order_id: int) -> Order:
    """
    读取订单（含行 / 分配腿）。

    服务层大量使用 Core 条件更新（synchronize_session=False），
    identity map 中的对象可能已过期，这里始终 populate_existing 取库里最新值。
    """
    order = (
        await session.execute(
            sa.select(Order)
            .where(Order.id == int(order_id))
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if order is None:
        raise NotFound(f"order {order_id} not found", context={"order_id": int(order_id)})
    return order


async def get_line(session: AsyncSession, line_id: int) -> OrderLine:
    line = (
        await session.execute(
            sa.select(OrderLine)
            .where(OrderLine.id == int(line_id))
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if line is None:
        raise NotFound(f"order line {line_id} not found", context={"line_id": int(line_id)})
    return line


async def get_claim(session: AsyncSession, order_id: int) -> Optional[OrderClaim]:
    return (
        await session.execute(
            sa.select(OrderClaim)
            .where(OrderClaim.order_id == int(order_id))
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
