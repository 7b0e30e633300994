# wmscore/api/routers/orders_routes_intake.py
from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from wmscore.api.routers.orders_schemas import (
    CancelIn,
    IngestOut,
    OrderIn,
    OrderOut,
    OrderSummaryOut,
    PickingLogOut,
    ResolveExceptionIn,
)
from wmscore.db.session import get_session
from wmscore.services.exception_review import ExceptionReviewService, list_review_orders
from wmscore.services.order_intake import OrderIntakeService
from wmscore.services.order_reads import get_order
from wmscore.services.pick_queue import list_pick_queue
from wmscore.services.picking_log_writer import list_picking_logs


def register(router: APIRouter) -> None:
    @router.post("", response_model=IngestOut, status_code=201)
    async def ingest_order(
        payload: OrderIn,
        session: AsyncSession = Depends(get_session),
    ) -> IngestOut:
        """外部订单同步入队（external_ref 幂等，重复提交返回已有订单，created=false）。"""
        try:
            res = await OrderIntakeService().ingest_order(
                session,
                external_ref=payload.external_ref,
                lines=[ln.model_dump() for ln in payload.lines],
                priority=payload.priority,
            )
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        return IngestOut(created=res.created, order=OrderOut.from_model(res.order))

    @router.get("/queue", response_model=List[OrderSummaryOut])
    async def pick_queue(
        limit: int = Query(50, ge=1, le=500),
        session: AsyncSession = Depends(get_session),
    ) -> List[OrderSummaryOut]:
        rows = await list_pick_queue(session, limit=limit)
        return [OrderSummaryOut.from_model(o) for o in rows]

    @router.get("/review", response_model=List[OrderSummaryOut])
    async def review_orders(
        limit: int = Query(100, ge=1, le=500),
        session: AsyncSession = Depends(get_session),
    ) -> List[OrderSummaryOut]:
        rows = await list_review_orders(session, limit=limit)
        return [OrderSummaryOut.from_model(o) for o in rows]

    @router.get("/{order_id}", response_model=OrderOut)
    async def get_order_detail(
        order_id: int,
        session: AsyncSession = Depends(get_session),
    ) -> OrderOut:
        return OrderOut.from_model(await get_order(session, order_id))

    @router.get("/{order_id}/picking-logs", response_model=List[PickingLogOut])
    async def picking_logs(
        order_id: int,
        session: AsyncSession = Depends(get_session),
    ) -> List[PickingLogOut]:
        await get_order(session, order_id)
        rows = await list_picking_logs(session, order_id)
        return [PickingLogOut.model_validate(r) for r in rows]

    @router.post("/{order_id}/hold", response_model=OrderOut)
    async def hold_order(
        order_id: int,
        session: AsyncSession = Depends(get_session),
    ) -> OrderOut:
        try:
            order = await OrderIntakeService().hold_order(session, order_id)
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        return OrderOut.from_model(order)

    @router.post("/{order_id}/unhold", response_model=OrderOut)
    async def unhold_order(
        order_id: int,
        session: AsyncSession = Depends(get_session),
    ) -> OrderOut:
        try:
            order = await OrderIntakeService().unhold_order(session, order_id)
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        return OrderOut.from_model(order)

    @router.post("/{order_id}/cancel", response_model=OrderOut)
    async def cancel_order(
        order_id: int,
        payload: Optional[CancelIn] = Body(None),
        session: AsyncSession = Depends(get_session),
    ) -> OrderOut:
        body = payload or CancelIn()
        try:
            order = await OrderIntakeService().cancel_order(
                session, order_id, actor=body.actor, reason=body.reason
            )
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        return OrderOut.from_model(order)

    @router.post("/{order_id}/resolve-exception", response_model=OrderOut)
    async def resolve_exception(
        order_id: int,
        payload: ResolveExceptionIn,
        session: AsyncSession = Depends(get_session),
    ) -> OrderOut:
        try:
            order = await ExceptionReviewService().resolve_exception(
                session,
                order_id,
                resolution=payload.resolution,
                resolved_by=payload.resolved_by,
                notes=payload.notes,
            )
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        return OrderOut.from_model(order)
