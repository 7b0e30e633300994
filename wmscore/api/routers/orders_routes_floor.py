# wmscore/api/routers/orders_routes_floor.py
# 作业现场：认领 / 释放 / 列表扫码 / 下一行 / 发货准备
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from wmscore.api.routers.order_lines_schemas import ScanOut
from wmscore.api.routers.orders_schemas import (
    ClaimIn,
    ClaimOut,
    OrderLineOut,
    OrderOut,
    OrderScanIn,
    ReadyToShipIn,
    ReleaseIn,
    ReleaseOut,
)
from wmscore.db.session import get_session
from wmscore.services.claim_arbiter import ClaimArbiter
from wmscore.services.errors import ReleaseRefused
from wmscore.services.pick_state_machine import PickService


def register(router: APIRouter) -> None:
    @router.post("/{order_id}/claim", response_model=ClaimOut)
    async def claim_order(
        order_id: int,
        payload: ClaimIn,
        session: AsyncSession = Depends(get_session),
    ) -> ClaimOut:
        """认领竞争：输家得到 409 already_claimed，应刷新队列而不是重试同一订单。"""
        try:
            res = await ClaimArbiter().claim(session, order_id, payload.worker_id)
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        return ClaimOut(
            order_id=res.order_id,
            worker_id=res.worker_id,
            claimed_at=res.claimed_at,
            expires_at=res.expires_at,
            reclaimed=res.reclaimed,
        )

    @router.post("/{order_id}/release", response_model=ReleaseOut)
    async def release_order(
        order_id: int,
        payload: Optional[ReleaseIn] = Body(None),
        session: AsyncSession = Depends(get_session),
    ) -> ReleaseOut:
        """
        释放认领。已有拣货进度时不是错误：返回 200 + released=false + reason，
        认领保持不变。
        """
        worker_id = payload.worker_id if payload is not None else None
        try:
            res = await ClaimArbiter().release(session, order_id, worker_id=worker_id)
            await session.commit()
        except ReleaseRefused as e:
            await session.rollback()
            return ReleaseOut(
                order_id=order_id,
                released=False,
                status=e.context.get("status"),
                reason=e.message,
            )
        except Exception:
            await session.rollback()
            raise
        return ReleaseOut(order_id=res.order_id, released=True, status=res.status)

    @router.post("/{order_id}/scan", response_model=ScanOut)
    async def scan_order(
        order_id: int,
        payload: OrderScanIn,
        session: AsyncSession = Depends(get_session),
    ) -> ScanOut:
        try:
            res = await PickService().scan_order(session, order_id, payload.worker_id, payload.code)
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        return ScanOut.from_result(res)

    @router.get("/{order_id}/next-line", response_model=Optional[OrderLineOut])
    async def next_line(
        order_id: int,
        after_line_id: Optional[int] = Query(None),
        session: AsyncSession = Depends(get_session),
    ) -> Optional[OrderLineOut]:
        line = await PickService().next_pending_line(session, order_id, after_line_id)
        return OrderLineOut.from_model(line) if line is not None else None

    @router.post("/{order_id}/ready-to-ship", response_model=OrderOut)
    async def ready_to_ship(
        order_id: int,
        payload: Optional[ReadyToShipIn] = Body(None),
        session: AsyncSession = Depends(get_session),
    ) -> OrderOut:
        worker_id = payload.worker_id if payload is not None else None
        try:
            order = await PickService().mark_ready_to_ship(session, order_id, worker_id)
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        return OrderOut.from_model(order)
