# wmscore/services/ledger_writer.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from wmscore.db.dialect import dialect_insert
from wmscore.models.inventory_txn import InventoryTxn


async def write_txn(
    session: AsyncSession,
    *,
    item_id: int,
    bin_id: int,
    txn_type: str,
    qty_delta: int,
    ref_type: str,
    ref_id: str,
    ref_seq: int = 1,
    order_id: Optional[int] = None,
    note: Optional[str] = None,
    on_hand_after: int,
    reserved_after: int,
    picked_after: int,
    occurred_at: datetime,
) -> int:
    """
    幂等流水写入：

    - 唯一键 (txn_type, ref_type, ref_id, ref_seq)，冲突 DO NOTHING
    - 命中幂等返回 0，否则返回新 id
    """
    stmt = (
        dialect_insert(session, InventoryTxn)
        .values(
            item_id=int(item_id),
            bin_id=int(bin_id),
            txn_type=str(txn_type),
            qty_delta=int(qty_delta),
            ref_type=str(ref_type),
            ref_id=str(ref_id),
            ref_seq=int(ref_seq),
            order_id=order_id,
            note=note,
            on_hand_after=int(on_hand_after),
            reserved_after=int(reserved_after),
            picked_after=int(picked_after),
            occurred_at=occurred_at,
        )
        .on_conflict_do_nothing()
        .returning(InventoryTxn.id)
    )
    res = await session.execute(stmt)
    new_id = res.scalar_one_or_none()
    return int(new_id or 0)


async def txn_exists(
    session: AsyncSession,
    *,
    txn_type: str,
    ref_type: str,
    ref_id: str,
    ref_seq: int,
) -> bool:
    row = await session.execute(
        sa.select(InventoryTxn.id)
        .where(
            InventoryTxn.txn_type == str(txn_type),
            InventoryTxn.ref_type == str(ref_type),
            InventoryTxn.ref_id == str(ref_id),
            InventoryTxn.ref_seq == int(ref_seq),
        )
        .limit(1)
    )
    return row.scalar_one_or_none() is not None


async def next_ref_seq(
    session: AsyncSession,
    *,
    txn_type: str,
    ref_type: str,
    ref_id: str,
) -> int:
    """同一来源下同类动作的下一个序号（1 起）。"""
    row = await session.execute(
        sa.select(sa.func.coalesce(sa.func.max(InventoryTxn.ref_seq), 0)).where(
            InventoryTxn.txn_type == str(txn_type),
            InventoryTxn.ref_type == str(ref_type),
            InventoryTxn.ref_id == str(ref_id),
        )
    )
    return int(row.scalar_one()) + 1


async def sum_by_ref(
    session: AsyncSession,
    *,
    ref_type: str,
    ref_id: str,
    txn_types: tuple[str, ...],
) -> int:
    """按来源汇总某几类流水的 qty_delta（幂等判定：该来源已经做了多少）。"""
    row = await session.execute(
        sa.select(sa.func.coalesce(sa.func.sum(InventoryTxn.qty_delta), 0)).where(
            InventoryTxn.ref_type == str(ref_type),
            InventoryTxn.ref_id == str(ref_id),
            InventoryTxn.txn_type.in_([str(t) for t in txn_types]),
        )
    )
    return int(row.scalar_one())


async def list_by_ref(
    session: AsyncSession,
    *,
    ref_type: str,
    ref_id: str,
) -> list[InventoryTxn]:
    rows = await session.execute(
        sa.select(InventoryTxn)
        .where(InventoryTxn.ref_type == str(ref_type), InventoryTxn.ref_id == str(ref_id))
        .order_by(InventoryTxn.id.asc())
    )
    return list(rows.scalars().all())


async def list_txns(
    session: AsyncSession,
    *,
    item_id: Optional[int] = None,
    bin_id: Optional[int] = None,
    limit: int = 200,
) -> list[InventoryTxn]:
    """按商品 / 库位看最近的流水（新 → 旧）。"""
    stmt = sa.select(InventoryTxn)
    if item_id is not None:
        stmt = stmt.where(InventoryTxn.item_id == int(item_id))
    if bin_id is not None:
        stmt = stmt.where(InventoryTxn.bin_id == int(bin_id))
    rows = await session.execute(stmt.order_by(InventoryTxn.id.desc()).limit(int(limit)))
    return list(rows.scalars().all())
