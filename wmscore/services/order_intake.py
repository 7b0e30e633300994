# wmscore/services/order_intake.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional, Sequence

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from wmscore.core.config import get_settings
from wmscore.db.dialect import dialect_insert
from wmscore.models.enums import OrderStatus, PickAction, Priority
from wmscore.models.order import Order
from wmscore.models.order_line import OrderLine
from wmscore.models.stocked_item import StockedItem
from wmscore.services.claim_arbiter import ClaimArbiter
from wmscore.services.errors import ConcurrentModification, InvalidTransition, NotFound
from wmscore.services.order_reads import get_order
from wmscore.services.picking_log_writer import PickingLogWriter
from wmscore.services.reservation_allocator import OrderAllocation, ReservationAllocator
from wmscore.services.retry import with_conflict_retry

UTC = timezone.utc

logger = logging.getLogger("wmscore.orders")

# 不可再 hold / cancel 的订单状态
_CLOSED = (OrderStatus.READY_TO_SHIP.value, OrderStatus.CANCELLED.value)


@dataclass(frozen=True)
class IntakeResult:
    order: Order
    created: bool
    allocation: Optional[OrderAllocation]


def _to_int_pos(v: Any, *, field: str) -> int:
    try:
        n = int(v)
    except (TypeError, ValueError):
        raise ValueError(f"{field} must be an integer, got {v!r}") from None
    if n <= 0:
        raise ValueError(f"{field} must be > 0, got {n}")
    return n


class OrderIntakeService:
    """
    订单入队 / 取消 / 挂起

    ingest_order：
      - external_ref 幂等（INSERT ... ON CONFLICT DO NOTHING）：重复同步直接返回已有订单
      - 行商品按 item_id 或 sku 解析，找不到 → NotFound
      - 入队即按行跑一次预占分配；部分分配只打标记，不阻塞入队
    """

    def __init__(
        self,
        *,
        allocator: Optional[ReservationAllocator] = None,
        arbiter: Optional[ClaimArbiter] = None,
        now=None,
    ) -> None:
        self.allocator = allocator or ReservationAllocator()
        self.arbiter = arbiter or ClaimArbiter()
        self._now = now or (lambda: datetime.now(UTC))

    # ------------------------------------------------------------------
    # 入队
    # ------------------------------------------------------------------

    async def ingest_order(
        self,
        session: AsyncSession,
        *,
        external_ref: str,
        lines: Sequence[Mapping[str, Any]],
        priority: str = Priority.NORMAL.value,
    ) -> IntakeResult:
        ref = (external_ref or "").strip()
        if not ref:
            raise ValueError("external_ref is required")
        prio = Priority(priority)
        if not lines:
            raise ValueError("an order needs at least one line")

        resolved = await self._resolve_lines(session, lines)

        order_id = (
            await session.execute(
                dialect_insert(session, Order)
                .values(
                    external_ref=ref,
                    priority=prio.value,
                    status=OrderStatus.QUEUED.value,
                    version=1,
                    on_hold=False,
                    allocation_short=False,
                    needs_review=False,
                )
                .on_conflict_do_nothing(index_elements=[Order.external_ref])
                .returning(Order.id)
            )
        ).scalar_one_or_none()

        if order_id is None:
            existing = (
                await session.execute(sa.select(Order.id).where(Order.external_ref == ref))
            ).scalar_one()
            logger.info("ingest_order idempotent hit: ref=%s order=%s", ref, existing)
            return IntakeResult(order=await get_order(session, existing), created=False, allocation=None)

        await session.execute(
            sa.insert(OrderLine),
            [
                {
                    "order_id": int(order_id),
                    "line_no": no,
                    "item_id": item_id,
                    "required_qty": qty,
                    "reserved_qty": 0,
                    "picked_qty": 0,
                }
                for no, (item_id, qty) in enumerate(resolved, start=1)
            ],
        )

        allocation = await self.allocator.allocate_order(session, order_id)
        order = await get_order(session, order_id)
        logger.info(
            "order ingested: ref=%s id=%s lines=%d priority=%s allocation_short=%s",
            ref,
            order.id,
            len(resolved),
            prio.value,
            order.allocation_short,
        )
        return IntakeResult(order=order, created=True, allocation=allocation)

    async def _resolve_lines(
        self, session: AsyncSession, lines: Sequence[Mapping[str, Any]]
    ) -> List[tuple[int, int]]:
        out: List[tuple[int, int]] = []
        for idx, raw in enumerate(lines, start=1):
            qty = _to_int_pos(raw.get("qty"), field=f"lines[{idx}].qty")
            item_id = raw.get("item_id")
            sku = raw.get("sku")

            if item_id is not None:
                cond = StockedItem.id == int(item_id)
            elif sku:
                cond = StockedItem.sku == str(sku).strip()
            else:
                raise ValueError(f"lines[{idx}] needs item_id or sku")

            found = (await session.execute(sa.select(StockedItem.id).where(cond))).scalar_one_or_none()
            if found is None:
                raise NotFound(
                    f"stocked item not found for line {idx}",
                    context={"line": idx, "item_id": item_id, "sku": sku},
                )
            out.append((int(found), qty))
        return out

    # ------------------------------------------------------------------
    # 取消
    # ------------------------------------------------------------------

    async def cancel_order(
        self,
        session: AsyncSession,
        order_id: int,
        *,
        actor: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Order:
        """
        取消订单：逐腿 unreserve 补偿释放预占，移除认领，状态 cancelled。
        一旦产生已拣数量即拒绝（实物已离开库位，需走异常复核）。
        """

        async def unit() -> Order:
            order = await get_order(session, order_id)
            ctx = {"order_id": order.id, "status": order.status}
            if order.status == OrderStatus.CANCELLED.value:
                return order
            if order.status == OrderStatus.READY_TO_SHIP.value:
                raise InvalidTransition("order is already ready to ship", context=ctx)
            if any(ln.picked_qty > 0 for ln in order.lines):
                raise InvalidTransition("order has picked quantity and cannot be cancelled", context=ctx)

            status_before = order.status
            hit = (
                await session.execute(
                    sa.update(Order)
                    .where(
                        Order.id == order.id,
                        Order.status == status_before,
                        ~sa.exists().where(OrderLine.order_id == order.id, OrderLine.picked_qty > 0),
                    )
                    .values(
                        status=OrderStatus.CANCELLED.value,
                        cancelled_at=self._now(),
                        version=Order.version + 1,
                    )
                    .returning(Order.id)
                    .execution_options(synchronize_session=False)
                )
            ).scalar_one_or_none()
            if hit is None:
                raise ConcurrentModification(f"order {order.id} changed during cancel", context=ctx)

            released = 0
            for line_id in [ln.id for ln in order.lines]:
                released += await self.allocator.release_line(session, line_id, short=False)
            await self.arbiter.end_claim(session, order.id)

            await PickingLogWriter.write(
                session,
                action=PickAction.ORDER_CANCELLED,
                order_id=order.id,
                worker_id=actor,
                status_before=status_before,
                status_after=OrderStatus.CANCELLED.value,
                reason=reason,
                meta={"released_qty": released},
            )
            logger.info("order %s cancelled, released %s reserved units", order.id, released)
            return await get_order(session, order.id)

        return await with_conflict_retry(
            unit,
            limit=get_settings().CONFLICT_RETRY_LIMIT,
            op="cancel_order",
            on_conflict=session.rollback,
        )

    # ------------------------------------------------------------------
    # 挂起
    # ------------------------------------------------------------------

    async def set_hold(self, session: AsyncSession, order_id: int, *, on_hold: bool) -> Order:
        """挂起的订单不能被认领（已认领的作业不受影响）。"""
        hit = (
            await session.execute(
                sa.update(Order)
                .where(Order.id == int(order_id), Order.status.not_in(_CLOSED))
                .values(on_hold=bool(on_hold), version=Order.version + 1)
                .returning(Order.id)
                .execution_options(synchronize_session=False)
            )
        ).scalar_one_or_none()

        order = await get_order(session, order_id)
        if hit is None:
            raise InvalidTransition(
                f"order {order.id} cannot be {'held' if on_hold else 'released from hold'} in status {order.status}",
                context={"order_id": order.id, "status": order.status},
            )
        logger.info("order %s on_hold=%s", order.id, order.on_hold)
        return order

    async def hold_order(self, session: AsyncSession, order_id: int) -> Order:
        return await self.set_hold(session, order_id, on_hold=True)

    async def unhold_order(self, session: AsyncSession, order_id: int) -> Order:
        return await self.set_hold(session, order_id, on_hold=False)
