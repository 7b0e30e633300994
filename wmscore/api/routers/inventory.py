# wmscore/api/routers/inventory.py
from __future__ import annotations

from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from wmscore.api.problem import raise_422
from wmscore.api.routers.inventory_schemas import (
    AdjustIn,
    BinStockOut,
    ItemStockOut,
    LedgerOutcomeOut,
    ReceiveIn,
    ReconcileIn,
    ReconcileOut,
    TransferIn,
    TransferOut,
    TxnOut,
)
from wmscore.db.session import get_session
from wmscore.models.enums import RefType
from wmscore.models.stocked_item import StockedItem
from wmscore.services.errors import NotFound
from wmscore.services.inventory_ledger import InventoryLedger, Ref
from wmscore.services.ledger_replay_service import LedgerReplayService
from wmscore.services.ledger_writer import list_by_ref, list_txns

router = APIRouter(prefix="/inventory", tags=["inventory"])


@router.post("/receive", response_model=LedgerOutcomeOut)
async def receive_stock(
    payload: ReceiveIn,
    session: AsyncSession = Depends(get_session),
) -> LedgerOutcomeOut:
    """入库：on_hand += qty。带 ref_id 时同一收货单重复提交为 IDEMPOTENT。"""
    ref = (
        Ref(RefType.RECEIPT.value, payload.ref_id, payload.ref_seq)
        if payload.ref_id
        else Ref.manual()
    )
    try:
        out = await InventoryLedger().receive(
            session,
            item_id=payload.item_id,
            bin_id=payload.bin_id,
            qty=payload.qty,
            ref=ref,
            note=payload.note,
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return LedgerOutcomeOut.from_outcome(out)


@router.post("/adjust", response_model=LedgerOutcomeOut)
async def adjust_stock(
    payload: AdjustIn,
    session: AsyncSession = Depends(get_session),
) -> LedgerOutcomeOut:
    """盘点差异 / 报损：负向调整不得低于 reserved + picked（否则 409 insufficient_stock）。"""
    ref = Ref(RefType.MANUAL.value, payload.ref_id) if payload.ref_id else Ref.manual()
    try:
        out = await InventoryLedger().adjust(
            session,
            item_id=payload.item_id,
            bin_id=payload.bin_id,
            delta=payload.delta,
            ref=ref,
            note=payload.note,
        )
        out.raise_for_status()
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return LedgerOutcomeOut.from_outcome(out)


@router.post("/transfer", response_model=TransferOut)
async def transfer_stock(
    payload: TransferIn,
    session: AsyncSession = Depends(get_session),
) -> TransferOut:
    """库位间移库：源库位可用量不足 → 409 insufficient_stock；源 = 目标 → 422。"""
    ref = Ref(RefType.TRANSFER.value, payload.ref_id) if payload.ref_id else None
    try:
        out = await InventoryLedger().transfer(
            session,
            item_id=payload.item_id,
            from_bin_id=payload.from_bin_id,
            to_bin_id=payload.to_bin_id,
            qty=payload.qty,
            ref=ref,
            note=payload.note,
        )
        out.raise_for_status()
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return TransferOut.from_outcome(out, payload.qty)


@router.get("/items/{item_id}", response_model=ItemStockOut)
async def item_stock(
    item_id: int,
    session: AsyncSession = Depends(get_session),
) -> ItemStockOut:
    sku = (
        await session.execute(sa.select(StockedItem.sku).where(StockedItem.id == int(item_id)))
    ).scalar_one_or_none()
    if sku is None:
        raise NotFound(f"stocked item {item_id} not found", context={"item_id": int(item_id)})

    bins = await InventoryLedger().list_for_item(session, item_id)
    on_hand = sum(b.on_hand for b in bins)
    reserved = sum(b.reserved for b in bins)
    picked = sum(b.picked for b in bins)
    return ItemStockOut(
        item_id=int(item_id),
        sku=sku,
        on_hand=on_hand,
        reserved=reserved,
        picked=picked,
        available=on_hand - reserved - picked,
        bins=[BinStockOut.from_stock(b) for b in bins],
    )


@router.get("/txns", response_model=List[TxnOut])
async def list_inventory_txns(
    ref_type: Optional[str] = Query(None),
    ref_id: Optional[str] = Query(None),
    item_id: Optional[int] = Query(None),
    bin_id: Optional[int] = Query(None),
    limit: int = Query(200, ge=1, le=1000),
    session: AsyncSession = Depends(get_session),
) -> List[TxnOut]:
    """
    两种查法：
      - ref_type + ref_id：某个来源（订单行 / 收货单）的全部流水，按发生顺序
      - item_id [+ bin_id]：最近流水，新 → 旧
    """
    if ref_type or ref_id:
        if not (ref_type and ref_id):
            raise_422("invalid_query", "ref_type and ref_id must be given together")
        rows = await list_by_ref(session, ref_type=ref_type, ref_id=ref_id)
    elif item_id is not None:
        rows = await list_txns(session, item_id=item_id, bin_id=bin_id, limit=limit)
    else:
        raise_422("invalid_query", "give ref_type + ref_id, or item_id")
    return [TxnOut.model_validate(r) for r in rows]


@router.get("/timeline")
async def ledger_timeline(
    item_id: int = Query(...),
    bin_id: int = Query(...),
    session: AsyncSession = Depends(get_session),
) -> List[Dict[str, Any]]:
    """逐条重放某个 (item, bin) 的流水，给出每步前后的三桶数量。"""
    return await LedgerReplayService.timeline(session, item_id=item_id, bin_id=bin_id)


@router.post("/reconcile", response_model=ReconcileOut)
async def reconcile_ledger(
    payload: Optional[ReconcileIn] = Body(None),
    session: AsyncSession = Depends(get_session),
) -> ReconcileOut:
    apply = bool(payload.apply) if payload is not None else False
    try:
        report = await LedgerReplayService.reconcile(session, apply=apply)
        if report.applied:
            await session.commit()
        else:
            await session.rollback()
    except Exception:
        await session.rollback()
        raise
    return ReconcileOut.from_report(report)
