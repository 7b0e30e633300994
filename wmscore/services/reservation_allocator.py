# wmscore/services/reservation_allocator.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from wmscore.db.dialect import dialect_insert
from wmscore.metrics import RESERVATIONS
from wmscore.models.enums import OrderStatus, RefType, TxnType
from wmscore.models.order import Order
from wmscore.models.order_line import OrderLine
from wmscore.models.order_line_allocation import OrderLineAllocation
from wmscore.services.errors import ConcurrentModification
from wmscore.services.inventory_ledger import (
    IDEMPOTENT,
    OK,
    BinStock,
    InventoryLedger,
    Ref,
)
from wmscore.services.ledger_writer import next_ref_seq, sum_by_ref
from wmscore.services.order_reads import get_line, get_order

logger = logging.getLogger("wmscore.allocator")

# 行级“已预占 + 已消耗”口径：reserve(+) / unreserve(-) / short(-)
HELD_TXN_TYPES = (TxnType.RESERVE.value, TxnType.UNRESERVE.value, TxnType.SHORT.value)

# 单行分配最多几轮“重读候选 → 尝试预占”
_MAX_ROUNDS = 16

# 不再分配的订单状态
_CLOSED_ORDER_STATUSES = {
    OrderStatus.COMPLETED.value,
    OrderStatus.EXCEPTION.value,
    OrderStatus.READY_TO_SHIP.value,
    OrderStatus.CANCELLED.value,
}


@dataclass
class AllocationLeg:
    bin_id: int
    pick_sequence: int
    qty: int
    ref_seq: int


@dataclass
class LineAllocation:
    """
    单行分配结果：

    - status：reserved（足额）/ partial（部分）/ unavailable（一件没分到）/ skipped（终态行）
    - legs：本次调用新落地的预占腿（幂等重放时为空）
    """

    line_id: int
    item_id: int
    required_qty: int
    held_qty: int
    status: str
    legs: List[AllocationLeg] = field(default_factory=list)

    @property
    def short_qty(self) -> int:
        return max(0, self.required_qty - self.held_qty)


@dataclass
class OrderAllocation:
    order_id: int
    lines: List[LineAllocation]

    @property
    def allocation_short(self) -> bool:
        return any(x.status in ("partial", "unavailable") for x in self.lines)


def line_ref(line: OrderLine, ref_seq: int = 1) -> Ref:
    return Ref(RefType.ORDER_LINE.value, str(line.id), ref_seq, order_id=line.order_id)


async def held_qty_for_line(session: AsyncSession, line_id: int) -> int:
    """按流水口径：该行累计仍持有的预占 + 已拣量。"""
    return await sum_by_ref(
        session,
        ref_type=RefType.ORDER_LINE.value,
        ref_id=str(line_id),
        txn_types=HELD_TXN_TYPES,
    )


async def list_allocations(session: AsyncSession, line_id: int) -> List[OrderLineAllocation]:
    """订单行的预占腿，按 pick_sequence 升序（拣货消耗顺序）。"""
    rows = await session.execute(
        sa.select(OrderLineAllocation)
        .where(OrderLineAllocation.line_id == int(line_id))
        .order_by(OrderLineAllocation.pick_sequence.asc(), OrderLineAllocation.bin_id.asc())
        .execution_options(populate_existing=True)
    )
    return list(rows.scalars().all())


async def consume_allocation(session: AsyncSession, allocation_id: int, qty: int, *, picked: bool) -> None:
    """
    从一腿扣减预占：picked=True 记入已拣，否则记入已释放。
    前置条件失效（该腿预占已被并发扣走）→ ConcurrentModification。
    """
    q = int(qty)
    values = {"reserved_qty": OrderLineAllocation.reserved_qty - q}
    if picked:
        values["picked_qty"] = OrderLineAllocation.picked_qty + q
    else:
        values["released_qty"] = OrderLineAllocation.released_qty + q

    hit = (
        await session.execute(
            sa.update(OrderLineAllocation)
            .where(OrderLineAllocation.id == int(allocation_id), OrderLineAllocation.reserved_qty >= q)
            .values(**values)
            .returning(OrderLineAllocation.id)
            .execution_options(synchronize_session=False)
        )
    ).scalar_one_or_none()
    if hit is None:
        raise ConcurrentModification(
            f"allocation {allocation_id} no longer holds {q} reserved units",
            context={"allocation_id": int(allocation_id), "qty": q},
        )


class ReservationAllocator:
    """
    预占分配器（按 pick_sequence 选库位）

    规则：
    ------------------------------------------
    • 候选：该商品 available > 0 的全部库位，pick_sequence 升序
    • 优先第一个 available >= need 的库位（单库位满足，减少拣货行走）
    • 否则取第一个有货库位，预占 min(available, need)（部分分配），剩余继续下一轮
    • 预占失败（读写之间可用量被并发吃掉）→ 换下一个候选库位
    • 所有库位加起来仍不足 → 行部分分配，订单 allocation_short 标记人工关注
    ------------------------------------------

    幂等：
      need = required_qty - Σ流水(reserve/unreserve/short, ref=该订单行)
      整体重跑只会补足缺口，不会重复预占；每一腿 ref_seq 递增，
      并发的重复调用会在流水唯一键上撞车并被冲正。

    不阻塞、不等待；多腿分配中途失败是合法的可续跑状态。
    """

    def __init__(self, ledger: Optional[InventoryLedger] = None) -> None:
        self.ledger = ledger or InventoryLedger()

    async def allocate_order(self, session: AsyncSession, order_id: int) -> OrderAllocation:
        order = await get_order(session, order_id)
        if order.status in _CLOSED_ORDER_STATUSES:
            logger.info("allocate_order skipped: order=%s status=%s", order.id, order.status)
            return OrderAllocation(order_id=order.id, lines=[])

        results: List[LineAllocation] = []
        for line_id in [ln.id for ln in order.lines]:
            results.append(await self.allocate_line(session, line_id))

        out = OrderAllocation(order_id=order.id, lines=results)
        await session.execute(
            sa.update(Order)
            .where(Order.id == order.id)
            .values(allocation_short=out.allocation_short)
            .execution_options(synchronize_session=False)
        )
        if out.allocation_short:
            logger.warning(
                "order %s allocated partially: %s",
                order.id,
                {x.line_id: x.short_qty for x in results if x.short_qty > 0},
            )
        return out

    async def allocate_line(self, session: AsyncSession, line_id: int) -> LineAllocation:
        line = await get_line(session, line_id)
        required = int(line.required_qty)

        if line.is_terminal:
            held = await held_qty_for_line(session, line.id)
            return LineAllocation(line.id, line.item_id, required, held, "skipped")

        legs: List[AllocationLeg] = []
        misses = 0
        for _ in range(_MAX_ROUNDS):
            need = required - await held_qty_for_line(session, line.id)
            if need <= 0:
                break

            candidates = await self.ledger.list_for_item(session, line.item_id, only_available=True)
            if not candidates:
                break

            if await self._reserve_one(session, line, need, candidates, legs):
                misses = 0
                continue
            # 本轮候选全部被并发吃掉：重读一次，仍落空则按现有持有量收尾
            misses += 1
            if misses > 1:
                break

        held = await held_qty_for_line(session, line.id)
        if legs:
            await self._refresh_primary_bin(session, line.id)

        if held >= required:
            status = "reserved"
        elif held > 0:
            status = "partial"
        else:
            status = "unavailable"

        RESERVATIONS.labels(status).inc()
        if status != "reserved":
            logger.info(
                "line %s (item=%s) short on allocation: required=%s held=%s",
                line.id,
                line.item_id,
                required,
                held,
            )
        return LineAllocation(line.id, line.item_id, required, held, status, legs)

    async def release_line(self, session: AsyncSession, line_id: int, *, short: bool = False) -> int:
        """
        释放订单行仍持有的全部预占（补偿调用，不回滚任何事务）：

        - short=False → unreserve（订单取消 / 放弃）
        - short=True  → short_reserve（缺货，库存重新可用）
        返回实际释放数量。
        """
        line = await get_line(session, line_id)
        txn_type = TxnType.SHORT if short else TxnType.UNRESERVE
        released = 0

        for alloc in await list_allocations(session, line.id):
            if alloc.reserved_qty <= 0:
                continue
            seq = await next_ref_seq(
                session,
                txn_type=txn_type.value,
                ref_type=RefType.ORDER_LINE.value,
                ref_id=str(line.id),
            )
            kwargs = dict(
                item_id=line.item_id,
                bin_id=alloc.bin_id,
                qty=int(alloc.reserved_qty),
                ref=line_ref(line, seq),
                note=f"order {line.order_id} line {line.line_no}",
            )
            if short:
                out = (await self.ledger.short_reserve(session, **kwargs)).raise_for_status()
            else:
                out = await self.ledger.unreserve(session, **kwargs)
            if out.status != OK:
                continue

            await consume_allocation(session, alloc.id, out.qty, picked=False)
            await session.execute(
                sa.update(OrderLine)
                .where(OrderLine.id == line.id)
                .values(reserved_qty=OrderLine.reserved_qty - out.qty)
                .execution_options(synchronize_session=False)
            )
            released += out.qty

        if released:
            logger.info(
                "line %s released %s reserved units (%s)", line.id, released, txn_type.value
            )
        return released

    # ------------------------------------------------------------------
    # 内部
    # ------------------------------------------------------------------

    @staticmethod
    def _ordered(candidates: List[BinStock], need: int) -> List[BinStock]:
        """首选满足整量的库位放最前，其余保持 pick_sequence 顺序。"""
        whole = next((c for c in candidates if c.available >= need), None)
        if whole is None:
            return list(candidates)
        return [whole] + [c for c in candidates if c.bin_id != whole.bin_id]

    async def _reserve_one(
        self,
        session: AsyncSession,
        line: OrderLine,
        need: int,
        candidates: List[BinStock],
        legs: List[AllocationLeg],
    ) -> bool:
        """
        尝试在一个库位落一腿。
        成功（或被并发的同一请求抢先落账）返回 True；候选全部预占失败返回 False。
        """
        for cand in self._ordered(candidates, need):
            take = min(cand.available, need)
            if take <= 0:
                continue

            seq = await next_ref_seq(
                session,
                txn_type=TxnType.RESERVE.value,
                ref_type=RefType.ORDER_LINE.value,
                ref_id=str(line.id),
            )
            out = await self.ledger.reserve(
                session,
                item_id=line.item_id,
                bin_id=cand.bin_id,
                qty=take,
                ref=line_ref(line, seq),
                note=f"order {line.order_id} line {line.line_no}",
            )

            if out.status == OK:
                await self._record_leg(session, line.id, cand.bin_id, cand.pick_sequence, take)
                legs.append(AllocationLeg(cand.bin_id, cand.pick_sequence, take, seq))
                return True
            if out.status == IDEMPOTENT:
                RESERVATIONS.labels("idempotent").inc()
                return True

            RESERVATIONS.labels("conflict").inc()
            logger.info(
                "reserve lost race: line=%s bin=%s take=%s available_now=%s",
                line.id,
                cand.bin_id,
                take,
                out.available,
            )
        return False

    async def _record_leg(
        self,
        session: AsyncSession,
        line_id: int,
        bin_id: int,
        pick_sequence: int,
        qty: int,
    ) -> None:
        ins = dialect_insert(session, OrderLineAllocation).values(
            line_id=int(line_id),
            bin_id=int(bin_id),
            pick_sequence=int(pick_sequence),
            reserved_qty=int(qty),
            picked_qty=0,
            released_qty=0,
        )
        ins = ins.on_conflict_do_update(
            index_elements=[OrderLineAllocation.line_id, OrderLineAllocation.bin_id],
            set_={"reserved_qty": OrderLineAllocation.reserved_qty + ins.excluded.reserved_qty},
        )
        await session.execute(ins)

        await session.execute(
            sa.update(OrderLine)
            .where(OrderLine.id == int(line_id))
            .values(reserved_qty=OrderLine.reserved_qty + int(qty))
            .execution_options(synchronize_session=False)
        )

    async def _refresh_primary_bin(self, session: AsyncSession, line_id: int) -> None:
        first_bin = (
            await session.execute(
                sa.select(OrderLineAllocation.bin_id)
                .where(OrderLineAllocation.line_id == int(line_id))
                .order_by(OrderLineAllocation.pick_sequence.asc(), OrderLineAllocation.bin_id.asc())
                .limit(1)
            )
        ).scalar_one_or_none()
        if first_bin is not None:
            await session.execute(
                sa.update(OrderLine)
                .where(OrderLine.id == int(line_id))
                .values(bin_id=int(first_bin))
                .execution_options(synchronize_session=False)
            )
