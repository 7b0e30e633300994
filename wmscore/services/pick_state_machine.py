# wmscore/services/pick_state_machine.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from wmscore.core.config import get_settings
from wmscore.metrics import PICK_TRANSITIONS, SCANS
from wmscore.models.enums import (
    LineStatus,
    OrderStatus,
    PickAction,
    RefType,
    ShortReason,
    TxnType,
)
from wmscore.models.order import Order
from wmscore.models.order_line import OrderLine
from wmscore.services.claim_arbiter import ACTIVE_CLAIM_STATUSES, ClaimArbiter
from wmscore.services.errors import ConcurrentModification, InsufficientStock, InvalidTransition
from wmscore.services.inventory_ledger import OK, InventoryLedger
from wmscore.services.ledger_writer import next_ref_seq
from wmscore.services.order_reads import get_line, get_order
from wmscore.services.picking_log_writer import PickingLogWriter
from wmscore.services.reservation_allocator import (
    ReservationAllocator,
    consume_allocation,
    line_ref,
    list_allocations,
)
from wmscore.services.retry import with_conflict_retry
from wmscore.services.scan_verify import (
    INCOMPLETE,
    LIST_SCAN_MIN_LEN,
    MATCH,
    WRONG_ITEM,
    normalize_code,
    verify_scan,
)

UTC = timezone.utc

logger = logging.getLogger("wmscore.picking")

T = TypeVar("T")


@dataclass(frozen=True)
class PickResult:
    order_id: int
    line_id: int
    sku: str
    line_status: str
    required_qty: int
    picked_qty: int
    reserved_qty: int
    short_reason: Optional[str]
    order_status: str
    order_completed: bool = False
    needs_review: bool = False

    @classmethod
    def build(cls, line: OrderLine, order: Order, *, completed: bool) -> "PickResult":
        return cls(
            order_id=order.id,
            line_id=line.id,
            sku=line.item.sku,
            line_status=line.status,
            required_qty=int(line.required_qty),
            picked_qty=int(line.picked_qty),
            reserved_qty=int(line.reserved_qty),
            short_reason=line.short_reason,
            order_status=order.status,
            order_completed=completed,
            needs_review=bool(order.needs_review),
        )


@dataclass(frozen=True)
class ScanResult:
    result: str
    order_id: int
    line_id: Optional[int]
    scanned: str
    expected: Optional[str]
    pick: Optional[PickResult] = None


class PickService:
    """
    拣货执行状态机（订单行）

        pending ──confirm──▶ in_progress ──confirm(足量)──▶ completed
           │                     │
           └──────short──────────┴──────────────────────▶ short

    • 终态（completed / short）不可再迁移
    • 每个动作都要求作业员持有订单认领
    • confirm：reserved → picked（按分配腿 pick_sequence 顺序消耗）
    • short：已拣部分 commit_pick，余下预占 short_reserve 释放回可用
    • 所有行到终态 → 订单 completed（有 short 行则标记异常复核，订单仍部分发货）

    写入都是条件更新；前置条件失效抛 ConcurrentModification，
    由 with_conflict_retry 回滚后整体重跑（最多 CONFLICT_RETRY_LIMIT 次）。
    因为冲突时会 rollback，这些方法必须是调用方事务里的唯一工作单元。
    """

    def __init__(
        self,
        *,
        ledger: Optional[InventoryLedger] = None,
        allocator: Optional[ReservationAllocator] = None,
        arbiter: Optional[ClaimArbiter] = None,
        retry_limit: Optional[int] = None,
        now=None,
    ) -> None:
        self.ledger = ledger or InventoryLedger()
        self.allocator = allocator or ReservationAllocator(self.ledger)
        self.arbiter = arbiter or ClaimArbiter()
        self._retry_limit = retry_limit
        self._now = now or (lambda: datetime.now(UTC))

    @property
    def retry_limit(self) -> int:
        if self._retry_limit is not None:
            return int(self._retry_limit)
        return int(get_settings().CONFLICT_RETRY_LIMIT)

    async def _run(self, session: AsyncSession, op: str, fn: Callable[[], Awaitable[T]]) -> T:
        return await with_conflict_retry(fn, limit=self.retry_limit, op=op, on_conflict=session.rollback)

    # ------------------------------------------------------------------
    # 行级动作
    # ------------------------------------------------------------------

    async def confirm_pick(
        self, session: AsyncSession, line_id: int, worker_id: str, qty: int = 1
    ) -> PickResult:
        """确认拣货 qty 件（扫码匹配或手工确认）。"""
        return await self._run(
            session, "confirm_pick", lambda: self._confirm_once(session, line_id, worker_id, qty)
        )

    async def short_pick(
        self,
        session: AsyncSession,
        line_id: int,
        worker_id: str,
        reason: str,
        picked_qty: Optional[int] = None,
    ) -> PickResult:
        """
        缺货拣货：picked_qty 为该行最终实拣总量（缺省 = 当前已拣量），必须小于需求量。
        """
        short_reason = ShortReason(reason)
        return await self._run(
            session,
            "short_pick",
            lambda: self._short_once(session, line_id, worker_id, short_reason, picked_qty),
        )

    async def apply_item_patch(
        self,
        session: AsyncSession,
        line_id: int,
        worker_id: str,
        *,
        status: str,
        picked_quantity: Optional[int] = None,
        short_reason: Optional[str] = None,
    ) -> PickResult:
        """
        PATCH 语义（目标状态 + 可选的实拣总量）：

          completed    → 补拣到 picked_quantity（缺省 = 需求量），须 >= 需求量
          in_progress  → 有 picked_quantity：补拣到该总量（须 < 需求量）
                         无 picked_quantity：仅开始作业（pending → in_progress）
          short        → short_pick(short_reason, picked_quantity)
          pending      → 不允许（不可回退）
        """
        target = LineStatus(status)
        if target == LineStatus.SHORT:
            if not short_reason:
                raise ValueError("short_reason is required for a short pick")
            return await self.short_pick(session, line_id, worker_id, short_reason, picked_quantity)
        if target == LineStatus.PENDING:
            raise InvalidTransition("an order line cannot move back to pending", context={"line_id": int(line_id)})

        async def unit() -> PickResult:
            line = await get_line(session, line_id)
            ctx = {"line_id": line.id, "status": line.status, "picked_qty": line.picked_qty}

            if target == LineStatus.IN_PROGRESS and picked_quantity is None:
                return await self._start_once(session, line, worker_id)

            if target == LineStatus.COMPLETED:
                total = int(line.required_qty) if picked_quantity is None else int(picked_quantity)
                if total < line.required_qty:
                    raise InvalidTransition(
                        "completed requires picked_quantity >= required quantity",
                        context={**ctx, "required_qty": line.required_qty},
                    )
            else:
                total = int(picked_quantity)
                if total >= line.required_qty:
                    raise InvalidTransition(
                        "picked_quantity reaches the required quantity; use status=completed",
                        context={**ctx, "required_qty": line.required_qty},
                    )

            delta = total - int(line.picked_qty)
            if delta == 0 and target == LineStatus.IN_PROGRESS and line.status == LineStatus.PENDING.value:
                return await self._start_once(session, line, worker_id)
            if delta == 0 and line.status == target.value:
                return await self._snapshot(session, line.id, completed=False)
            if delta <= 0:
                raise InvalidTransition("picked quantity cannot decrease", context={**ctx, "target": total})
            return await self._confirm_once(session, line.id, worker_id, delta)

        return await self._run(session, "item_patch", unit)

    async def scan_line(
        self, session: AsyncSession, line_id: int, worker_id: str, code: str, qty: int = 1
    ) -> ScanResult:
        """
        聚焦视图扫码：对当前行校验。
        MATCH → 确认拣货 qty；WRONG_ITEM → 记审计，不改状态；INCOMPLETE → 忽略。
        """

        async def unit() -> ScanResult:
            line = await get_line(session, line_id)
            order = await get_order(session, line.order_id)
            await self.arbiter.require_claim(session, order, worker_id)

            verdict = verify_scan(code, line.item.sku)
            if verdict.result == MATCH:
                pick = await self._confirm_once(session, line.id, worker_id, qty)
                return ScanResult(MATCH, order.id, line.id, verdict.scanned, line.item.sku, pick)
            if verdict.result == WRONG_ITEM:
                await self._log_mismatch(session, order.id, line, worker_id, code)
            return ScanResult(verdict.result, order.id, line.id, verdict.scanned, line.item.sku)

        res = await self._run(session, "scan_line", unit)
        SCANS.labels(res.result).inc()
        return res

    async def scan_order(self, session: AsyncSession, order_id: int, worker_id: str, code: str) -> ScanResult:
        """
        列表视图扫码：在订单内找第一条 SKU 匹配的未完成行，确认 1 件。
        匹配不到且输入长度 >= LIST_SCAN_MIN_LEN → WRONG_ITEM。
        """

        async def unit() -> ScanResult:
            order = await get_order(session, order_id)
            await self.arbiter.require_claim(session, order, worker_id)

            scanned = normalize_code(code)
            target = None
            if scanned:
                target = next(
                    (
                        ln
                        for ln in order.lines
                        if not ln.is_terminal and normalize_code(ln.item.sku) == scanned
                    ),
                    None,
                )
            if target is not None:
                pick = await self._confirm_once(session, target.id, worker_id, 1)
                return ScanResult(MATCH, order.id, target.id, scanned, target.item.sku, pick)
            if len(scanned) >= LIST_SCAN_MIN_LEN:
                await self._log_mismatch(session, order.id, None, worker_id, code)
                return ScanResult(WRONG_ITEM, order.id, None, scanned, None)
            return ScanResult(INCOMPLETE, order.id, None, scanned, None)

        res = await self._run(session, "scan_order", unit)
        SCANS.labels(res.result).inc()
        return res

    # ------------------------------------------------------------------
    # 订单级
    # ------------------------------------------------------------------

    async def next_pending_line(
        self, session: AsyncSession, order_id: int, after_line_id: Optional[int] = None
    ) -> Optional[OrderLine]:
        """
        单作业员多行遍历：取 after_line_id 之后的下一条未完成行，到尾部回绕。
        只按行号顺序，不做优先级。没有未完成行返回 None。
        """
        order = await get_order(session, order_id)
        lines = list(order.lines)
        open_lines = [ln for ln in lines if not ln.is_terminal]
        if not open_lines:
            return None
        if after_line_id is None:
            return open_lines[0]

        pos = next((i for i, ln in enumerate(lines) if ln.id == int(after_line_id)), -1)
        for ln in lines[pos + 1 :]:
            if not ln.is_terminal:
                return ln
        return open_lines[0]

    async def mark_ready_to_ship(
        self, session: AsyncSession, order_id: int, worker_id: Optional[str] = None
    ) -> Order:
        """外部确认发货准备：仅 completed → ready_to_ship。"""
        ts = self._now()
        hit = (
            await session.execute(
                sa.update(Order)
                .where(Order.id == int(order_id), Order.status == OrderStatus.COMPLETED.value)
                .values(status=OrderStatus.READY_TO_SHIP.value, ready_at=ts, version=Order.version + 1)
                .returning(Order.id)
                .execution_options(synchronize_session=False)
            )
        ).scalar_one_or_none()

        order = await get_order(session, order_id)
        if hit is None:
            raise InvalidTransition(
                f"order {order.id} must be completed before it can ship (status={order.status})",
                context={"order_id": order.id, "status": order.status},
            )

        await PickingLogWriter.write(
            session,
            action=PickAction.ORDER_READY_TO_SHIP,
            order_id=order.id,
            worker_id=worker_id,
            status_before=OrderStatus.COMPLETED.value,
            status_after=OrderStatus.READY_TO_SHIP.value,
            meta={"needs_review": bool(order.needs_review)},
        )
        return order

    # ------------------------------------------------------------------
    # 工作单元（可整体重跑）
    # ------------------------------------------------------------------

    async def _confirm_once(self, session: AsyncSession, line_id: int, worker_id: str, qty: int) -> PickResult:
        q = int(qty)
        if q <= 0:
            raise ValueError(f"qty must be a positive integer, got {qty!r}")

        line = await get_line(session, line_id)
        order = await get_order(session, line.order_id)
        await self.arbiter.require_claim(session, order, worker_id)
        _guard_open(line)

        if line.picked_qty + q > line.required_qty:
            raise InvalidTransition(
                f"picking {q} would exceed the required quantity",
                context={
                    "line_id": line.id,
                    "required_qty": line.required_qty,
                    "picked_qty": line.picked_qty,
                    "qty": q,
                },
            )

        status_before, picked_before = line.status, int(line.picked_qty)
        line = await self._pick_units(session, line, q)

        picked_after = picked_before + q
        status_after = (
            LineStatus.COMPLETED.value if picked_after >= line.required_qty else LineStatus.IN_PROGRESS.value
        )
        await self._update_line(
            session,
            line,
            status_before=status_before,
            picked_before=picked_before,
            picked_qty=picked_after,
            reserved_qty=OrderLine.reserved_qty - q,
            status=status_after,
            picked_at=self._now(),
        )
        await self._mark_order_in_progress(session, order)

        await PickingLogWriter.write(
            session,
            action=PickAction.ITEM_PICKED,
            order_id=order.id,
            line_id=line.id,
            worker_id=worker_id,
            sku=line.item.sku,
            qty_before=picked_before,
            qty_after=picked_after,
            status_before=status_before,
            status_after=status_after,
        )
        PICK_TRANSITIONS.labels(status_after).inc()
        return await self._finish(session, line.id, worker_id)

    async def _short_once(
        self,
        session: AsyncSession,
        line_id: int,
        worker_id: str,
        reason: ShortReason,
        picked_qty: Optional[int],
    ) -> PickResult:
        line = await get_line(session, line_id)
        order = await get_order(session, line.order_id)
        await self.arbiter.require_claim(session, order, worker_id)
        _guard_open(line)

        picked_before = int(line.picked_qty)
        final_picked = picked_before if picked_qty is None else int(picked_qty)
        ctx = {
            "line_id": line.id,
            "required_qty": line.required_qty,
            "picked_qty": picked_before,
            "target": final_picked,
        }
        if final_picked < picked_before:
            raise InvalidTransition("picked quantity cannot decrease", context=ctx)
        if final_picked >= line.required_qty:
            raise InvalidTransition("a short pick must be below the required quantity", context=ctx)

        status_before = line.status
        extra = final_picked - picked_before
        if extra > 0:
            line = await self._pick_units(session, line, extra)

        values: dict = {
            "picked_qty": final_picked,
            "reserved_qty": OrderLine.reserved_qty - extra,
            "status": LineStatus.SHORT.value,
            "short_reason": reason.value,
        }
        if extra > 0:
            values["picked_at"] = self._now()
        await self._update_line(
            session, line, status_before=status_before, picked_before=picked_before, **values
        )
        freed = await self.allocator.release_line(session, line.id, short=True)
        await self._mark_order_in_progress(session, order)

        await PickingLogWriter.write(
            session,
            action=PickAction.ITEM_SHORTED,
            order_id=order.id,
            line_id=line.id,
            worker_id=worker_id,
            sku=line.item.sku,
            qty_before=picked_before,
            qty_after=final_picked,
            status_before=status_before,
            status_after=LineStatus.SHORT.value,
            reason=reason.value,
            meta={"required_qty": int(line.required_qty), "released_qty": freed},
        )
        PICK_TRANSITIONS.labels(LineStatus.SHORT.value).inc()
        logger.info(
            "line %s shorted (%s): picked=%s of %s, released=%s",
            line.id,
            reason.value,
            final_picked,
            line.required_qty,
            freed,
        )
        return await self._finish(session, line.id, worker_id)

    async def _start_once(self, session: AsyncSession, line: OrderLine, worker_id: str) -> PickResult:
        order = await get_order(session, line.order_id)
        await self.arbiter.require_claim(session, order, worker_id)
        _guard_open(line)
        if line.status == LineStatus.PENDING.value:
            await self._update_line(
                session,
                line,
                status_before=line.status,
                picked_before=int(line.picked_qty),
                status=LineStatus.IN_PROGRESS.value,
            )
            PICK_TRANSITIONS.labels(LineStatus.IN_PROGRESS.value).inc()
        return await self._snapshot(session, line.id, completed=False)

    # ------------------------------------------------------------------
    # 内部
    # ------------------------------------------------------------------

    async def _pick_units(self, session: AsyncSession, line: OrderLine, qty: int) -> OrderLine:
        """
        reserved → picked（按分配腿 pick_sequence 顺序消耗 qty 件）。
        行预占不足时先补分配；补完仍不足 → InsufficientStock。
        """
        if line.reserved_qty < qty:
            await self.allocator.allocate_line(session, line.id)
            line = await get_line(session, line.id)
            if line.reserved_qty < qty:
                raise InsufficientStock(
                    f"line {line.id} holds {line.reserved_qty} reserved units, cannot pick {qty}",
                    context={
                        "line_id": line.id,
                        "item_id": line.item_id,
                        "reserved_qty": int(line.reserved_qty),
                        "qty": int(qty),
                    },
                )

        remaining = int(qty)
        for alloc in await list_allocations(session, line.id):
            if remaining <= 0:
                break
            take = min(int(alloc.reserved_qty), remaining)
            if take <= 0:
                continue

            seq = await next_ref_seq(
                session,
                txn_type=TxnType.PICK.value,
                ref_type=RefType.ORDER_LINE.value,
                ref_id=str(line.id),
            )
            out = await self.ledger.commit_pick(
                session,
                item_id=line.item_id,
                bin_id=alloc.bin_id,
                qty=take,
                ref=line_ref(line, seq),
                note=f"order {line.order_id} line {line.line_no}",
            )
            if out.status != OK:
                raise ConcurrentModification(
                    f"commit_pick on bin {alloc.bin_id} returned {out.status}",
                    context={"line_id": line.id, "bin_id": alloc.bin_id, "qty": take},
                )
            await consume_allocation(session, alloc.id, take, picked=True)
            remaining -= take

        if remaining > 0:
            raise ConcurrentModification(
                f"line {line.id} allocations changed while picking",
                context={"line_id": line.id, "missing": remaining},
            )
        return line

    async def _update_line(
        self,
        session: AsyncSession,
        line: OrderLine,
        *,
        status_before: str,
        picked_before: int,
        **values: Any,
    ) -> None:
        hit = (
            await session.execute(
                sa.update(OrderLine)
                .where(
                    OrderLine.id == line.id,
                    OrderLine.status == status_before,
                    OrderLine.picked_qty == int(picked_before),
                )
                .values(**values, updated_at=self._now())
                .returning(OrderLine.id)
                .execution_options(synchronize_session=False)
            )
        ).scalar_one_or_none()
        if hit is None:
            raise ConcurrentModification(
                f"order line {line.id} changed concurrently",
                context={"line_id": line.id, "expected_status": status_before, "expected_picked": picked_before},
            )

    async def _mark_order_in_progress(self, session: AsyncSession, order: Order) -> None:
        if order.status == OrderStatus.IN_PROGRESS.value:
            return
        hit = (
            await session.execute(
                sa.update(Order)
                .where(Order.id == order.id, Order.status == OrderStatus.CLAIMED.value)
                .values(status=OrderStatus.IN_PROGRESS.value, version=Order.version + 1)
                .returning(Order.id)
                .execution_options(synchronize_session=False)
            )
        ).scalar_one_or_none()
        if hit is None:
            raise ConcurrentModification(
                f"order {order.id} changed concurrently", context={"order_id": order.id, "status": order.status}
            )

    async def _maybe_complete_order(self, session: AsyncSession, order_id: int, worker_id: str) -> bool:
        """
        所有行到终态 → 订单收尾：
          - 有已拣数量 → completed；存在 short 行则 needs_review（仍部分发货）
          - 全部 short 且一件未拣 → exception（无货可发）
        """
        rows = (
            await session.execute(
                sa.select(OrderLine.line_no, OrderLine.status, OrderLine.picked_qty)
                .where(OrderLine.order_id == int(order_id))
                .order_by(OrderLine.line_no.asc())
            )
        ).all()
        if not rows or any(not LineStatus(r[1]).is_terminal for r in rows):
            return False

        short_lines = [int(r[0]) for r in rows if r[1] == LineStatus.SHORT.value]
        total_picked = sum(int(r[2]) for r in rows)

        if total_picked == 0:
            status_after = OrderStatus.EXCEPTION.value
            review_reason = "all lines short; nothing picked"
        else:
            status_after = OrderStatus.COMPLETED.value
            review_reason = f"short lines: {', '.join(map(str, short_lines))}" if short_lines else None

        hit = (
            await session.execute(
                sa.update(Order)
                .where(Order.id == int(order_id), Order.status.in_(ACTIVE_CLAIM_STATUSES))
                .values(
                    status=status_after,
                    completed_at=self._now(),
                    needs_review=bool(short_lines),
                    review_reason=review_reason,
                    version=Order.version + 1,
                )
                .returning(Order.id)
                .execution_options(synchronize_session=False)
            )
        ).scalar_one_or_none()
        if hit is None:
            return False

        await self.arbiter.end_claim(session, order_id)
        await PickingLogWriter.write(
            session,
            action=PickAction.ORDER_COMPLETED,
            order_id=int(order_id),
            worker_id=worker_id,
            status_before=OrderStatus.IN_PROGRESS.value,
            status_after=status_after,
            reason=review_reason,
            meta={"short_lines": short_lines, "picked_total": total_picked},
        )
        if short_lines:
            logger.warning(
                "order %s finished as %s with short lines %s; flagged for review",
                order_id,
                status_after,
                short_lines,
            )
        return True

    async def _finish(self, session: AsyncSession, line_id: int, worker_id: str) -> PickResult:
        line = await get_line(session, line_id)
        completed = False
        if line.is_terminal:
            completed = await self._maybe_complete_order(session, line.order_id, worker_id)
        return await self._snapshot(session, line.id, completed=completed)

    async def _snapshot(self, session: AsyncSession, line_id: int, *, completed: bool) -> PickResult:
        line = await get_line(session, line_id)
        order = await get_order(session, line.order_id)
        return PickResult.build(line, order, completed=completed)

    async def _log_mismatch(
        self,
        session: AsyncSession,
        order_id: int,
        line: Optional[OrderLine],
        worker_id: str,
        code: str,
    ) -> None:
        await PickingLogWriter.write(
            session,
            action=PickAction.SCAN_MISMATCH,
            order_id=order_id,
            line_id=line.id if line is not None else None,
            worker_id=worker_id,
            sku=line.item.sku if line is not None else None,
            reason="wrong_item_scan",
            meta={"scanned": code},
        )


def _guard_open(line: OrderLine) -> None:
    if line.is_terminal:
        raise InvalidTransition(
            f"order line {line.id} is already {line.status}",
            context={"line_id": line.id, "status": line.status},
        )
