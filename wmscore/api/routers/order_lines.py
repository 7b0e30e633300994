# wmscore/api/routers/order_lines.py
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from wmscore.api.routers.order_lines_schemas import LinePatchIn, LineScanIn, PickOut, ScanOut
from wmscore.db.session import get_session
from wmscore.services.pick_state_machine import PickService

router = APIRouter(prefix="/order-lines", tags=["picking"])


@router.patch("/{line_id}", response_model=PickOut)
async def patch_order_line(
    line_id: int,
    payload: LinePatchIn,
    session: AsyncSession = Depends(get_session),
) -> PickOut:
    """
    行状态迁移（目标状态 + 可选的实拣总量）：

    - completed：补拣到 picked_quantity（缺省 = 需求量）
    - in_progress：开始作业，或补拣到未满的 picked_quantity
    - short：缺货（必须带 short_reason），余下预占释放回可用
    - pending：不可回退 → 409
    """
    try:
        res = await PickService().apply_item_patch(
            session,
            line_id,
            payload.worker_id,
            status=payload.status,
            picked_quantity=payload.picked_quantity,
            short_reason=payload.short_reason,
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return PickOut.from_result(res)


@router.post("/{line_id}/scan", response_model=ScanOut)
async def scan_order_line(
    line_id: int,
    payload: LineScanIn,
    session: AsyncSession = Depends(get_session),
) -> ScanOut:
    try:
        res = await PickService().scan_line(session, line_id, payload.worker_id, payload.code, payload.qty)
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return ScanOut.from_result(res)
