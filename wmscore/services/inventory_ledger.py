# wmscore/services/inventory_ledger.py
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from wmscore.db.dialect import dialect_insert
from wmscore.models.enums import RefType, TxnType
from wmscore.models.ledger_entry import LedgerEntry
from wmscore.models.stocked_item import StockedItem
from wmscore.models.storage_bin import StorageBin
from wmscore.services.errors import ConcurrentModification, InsufficientStock, NotFound
from wmscore.services.ledger_writer import txn_exists, write_txn

UTC = timezone.utc

logger = logging.getLogger("wmscore.ledger")

OK = "OK"
IDEMPOTENT = "IDEMPOTENT"
INSUFFICIENT = "INSUFFICIENT"
NOOP = "NOOP"

# unreserve 的“读 → 条件写”在并发下最多重读几次
_UNRESERVE_REREAD_LIMIT = 3


@dataclass(frozen=True)
class LedgerOutcome:
    """
    台账原语的返回值（失败不抛异常，由调用方决定是否换库位 / 缩量重试）

    - status：OK / IDEMPOTENT / INSUFFICIENT / NOOP
    - qty：本次实际生效的数量（IDEMPOTENT / INSUFFICIENT / NOOP 为 0）
    - on_hand / reserved / picked：写后（或失败时读到的当前）三桶数量
    """

    status: str
    txn_type: str
    item_id: int
    bin_id: int
    qty: int
    on_hand: int
    reserved: int
    picked: int
    txn_id: int = 0

    @property
    def ok(self) -> bool:
        return self.status != INSUFFICIENT

    @property
    def applied(self) -> bool:
        return self.status == OK

    @property
    def available(self) -> int:
        return self.on_hand - self.reserved - self.picked

    def raise_for_status(self) -> "LedgerOutcome":
        if self.status == INSUFFICIENT:
            raise InsufficientStock(
                f"{self.txn_type} rejected: item={self.item_id} bin={self.bin_id} "
                f"on_hand={self.on_hand} reserved={self.reserved} picked={self.picked}",
                context={
                    "item_id": self.item_id,
                    "bin_id": self.bin_id,
                    "txn_type": self.txn_type,
                    "available": self.available,
                    "reserved": self.reserved,
                },
            )
        return self


@dataclass(frozen=True)
class BinStock:
    item_id: int
    bin_id: int
    bin_code: str
    pick_sequence: int
    on_hand: int
    reserved: int
    picked: int

    @property
    def available(self) -> int:
        return self.on_hand - self.reserved - self.picked


@dataclass(frozen=True)
class Ref:
    """流水来源：类型 + id + 同类动作序号"""

    ref_type: str
    ref_id: str
    ref_seq: int = 1
    order_id: Optional[int] = None

    @classmethod
    def manual(cls) -> "Ref":
        return cls(RefType.MANUAL.value, uuid.uuid4().hex)


@dataclass(frozen=True)
class TransferOutcome:
    """
    库位间移库：两条 adjust 流水（源 -qty，目标 +qty）。
    源库位可用量不足时 destination 为 None，整笔不生效。
    """

    source: LedgerOutcome
    destination: Optional[LedgerOutcome]

    @property
    def status(self) -> str:
        if self.destination is None:
            return self.source.status
        if self.source.status == IDEMPOTENT and self.destination.status == IDEMPOTENT:
            return IDEMPOTENT
        return OK

    def raise_for_status(self) -> "TransferOutcome":
        self.source.raise_for_status()
        return self


_RETURNING = (LedgerEntry.on_hand, LedgerEntry.reserved, LedgerEntry.picked)


class InventoryLedger:
    """
    库存台账原语（唯一被允许修改 ledger_entries 三桶数量的入口）

    每个原语：
    ------------------------------------------
    1) 幂等探测：同一 (txn_type, ref) 已有流水 → IDEMPOTENT
    2) 单行条件更新 UPDATE ... WHERE <前置条件> RETURNING
       - 条件不成立 → INSUFFICIENT（不抛异常，不写任何东西）
    3) 同一数据库事务内追加流水
       - 追加命中唯一键（并发重复请求抢先）→ 反向冲正本次更新 → IDEMPOTENT
    ------------------------------------------
    不做进程内加锁；所有并发安全来自存储层的行级条件更新。
    本类不提交事务，由调用方（路由 / 脚本 / 任务）控制事务边界。
    """

    def __init__(self, *, now=None) -> None:
        self._now = now or (lambda: datetime.now(UTC))

    # ------------------------------------------------------------------
    # 读
    # ------------------------------------------------------------------

    async def get_entry(self, session: AsyncSession, item_id: int, bin_id: int) -> Optional[BinStock]:
        rows = await self._select_stock(
            session, sa.and_(LedgerEntry.item_id == int(item_id), LedgerEntry.bin_id == int(bin_id))
        )
        return rows[0] if rows else None

    async def list_for_item(
        self,
        session: AsyncSession,
        item_id: int,
        *,
        only_available: bool = False,
    ) -> List[BinStock]:
        """按 pick_sequence 升序（bin_id 兜底稳定排序）列出该商品的各库位余额。"""
        cond = LedgerEntry.item_id == int(item_id)
        if only_available:
            cond = sa.and_(
                cond,
                (LedgerEntry.on_hand - LedgerEntry.reserved - LedgerEntry.picked) > 0,
            )
        return await self._select_stock(session, cond)

    async def _select_stock(self, session: AsyncSession, cond) -> List[BinStock]:
        stmt = (
            sa.select(
                LedgerEntry.item_id,
                LedgerEntry.bin_id,
                StorageBin.code,
                StorageBin.pick_sequence,
                LedgerEntry.on_hand,
                LedgerEntry.reserved,
                LedgerEntry.picked,
            )
            .join(StorageBin, StorageBin.id == LedgerEntry.bin_id)
            .where(cond)
            .order_by(StorageBin.pick_sequence.asc(), LedgerEntry.bin_id.asc())
        )
        rows = (await session.execute(stmt)).all()
        return [
            BinStock(
                item_id=int(r[0]),
                bin_id=int(r[1]),
                bin_code=str(r[2]),
                pick_sequence=int(r[3]),
                on_hand=int(r[4]),
                reserved=int(r[5]),
                picked=int(r[6]),
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # 写原语
    # ------------------------------------------------------------------

    async def reserve(
        self, session: AsyncSession, *, item_id: int, bin_id: int, qty: int, ref: Ref, note: str | None = None
    ) -> LedgerOutcome:
        """available >= qty 时 reserved += qty。"""
        q = _positive(qty)
        return await self._apply(
            session,
            txn_type=TxnType.RESERVE,
            item_id=item_id,
            bin_id=bin_id,
            values={"reserved": LedgerEntry.reserved + q},
            reverse={"reserved": LedgerEntry.reserved - q},
            condition=(LedgerEntry.on_hand - LedgerEntry.reserved - LedgerEntry.picked) >= q,
            qty=q,
            signed_delta=q,
            ref=ref,
            note=note,
        )

    async def unreserve(
        self, session: AsyncSession, *, item_id: int, bin_id: int, qty: int, ref: Ref, note: str | None = None
    ) -> LedgerOutcome:
        """
        reserved -= min(qty, reserved)。

        min 依赖一次读；读到的 reserved 在写入时失效则重读，超过上限抛 ConcurrentModification。
        """
        q = _positive(qty)
        for _ in range(_UNRESERVE_REREAD_LIMIT):
            cur = await self.get_entry(session, item_id, bin_id)
            take = min(q, cur.reserved) if cur is not None else 0
            if take <= 0:
                if cur is not None and await self._already_applied(session, TxnType.UNRESERVE, ref):
                    return _outcome(IDEMPOTENT, TxnType.UNRESERVE, item_id, bin_id, 0, cur)
                return _outcome(NOOP, TxnType.UNRESERVE, item_id, bin_id, 0, cur)

            out = await self._apply(
                session,
                txn_type=TxnType.UNRESERVE,
                item_id=item_id,
                bin_id=bin_id,
                values={"reserved": LedgerEntry.reserved - take},
                reverse={"reserved": LedgerEntry.reserved + take},
                condition=LedgerEntry.reserved >= take,
                qty=take,
                signed_delta=-take,
                ref=ref,
                note=note,
            )
            if out.status != INSUFFICIENT:
                return out
            logger.info("unreserve lost race item=%s bin=%s take=%s, re-read", item_id, bin_id, take)

        raise ConcurrentModification(
            "unreserve: reserved quantity kept changing",
            context={"item_id": int(item_id), "bin_id": int(bin_id), "qty": q},
        )

    async def commit_pick(
        self, session: AsyncSession, *, item_id: int, bin_id: int, qty: int, ref: Ref, note: str | None = None
    ) -> LedgerOutcome:
        """reserved >= qty 时 reserved -= qty, picked += qty。"""
        q = _positive(qty)
        return await self._apply(
            session,
            txn_type=TxnType.PICK,
            item_id=item_id,
            bin_id=bin_id,
            values={"reserved": LedgerEntry.reserved - q, "picked": LedgerEntry.picked + q},
            reverse={"reserved": LedgerEntry.reserved + q, "picked": LedgerEntry.picked - q},
            condition=LedgerEntry.reserved >= q,
            qty=q,
            signed_delta=q,
            ref=ref,
            note=note,
        )

    async def short_reserve(
        self, session: AsyncSession, *, item_id: int, bin_id: int, qty: int, ref: Ref, note: str | None = None
    ) -> LedgerOutcome:
        """
        缺货释放：reserved -= qty，不进入 picked，库存重新可用。
        真实损耗由后续 adjust 冲减 on_hand。
        """
        q = _positive(qty)
        return await self._apply(
            session,
            txn_type=TxnType.SHORT,
            item_id=item_id,
            bin_id=bin_id,
            values={"reserved": LedgerEntry.reserved - q},
            reverse={"reserved": LedgerEntry.reserved + q},
            condition=LedgerEntry.reserved >= q,
            qty=q,
            signed_delta=-q,
            ref=ref,
            note=note,
        )

    async def receive(
        self, session: AsyncSession, *, item_id: int, bin_id: int, qty: int, ref: Ref, note: str | None = None
    ) -> LedgerOutcome:
        """入库：on_hand += qty（台账行不存在则先建零行）。"""
        q = _positive(qty)
        await self._ensure_entry(session, item_id, bin_id)
        return await self._apply(
            session,
            txn_type=TxnType.RECEIVE,
            item_id=item_id,
            bin_id=bin_id,
            values={"on_hand": LedgerEntry.on_hand + q},
            reverse={"on_hand": LedgerEntry.on_hand - q},
            condition=None,
            qty=q,
            signed_delta=q,
            ref=ref,
            note=note,
        )

    async def adjust(
        self, session: AsyncSession, *, item_id: int, bin_id: int, delta: int, ref: Ref, note: str | None = None
    ) -> LedgerOutcome:
        """
        手工调整 on_hand（盘点差异 / 报损）。
        负向调整不得使 on_hand 低于 reserved + picked。
        """
        d = int(delta)
        if d == 0:
            raise ValueError("adjust delta must be non-zero")
        await self._ensure_entry(session, item_id, bin_id)
        condition = None
        if d < 0:
            condition = (LedgerEntry.on_hand + d) >= (LedgerEntry.reserved + LedgerEntry.picked)
        return await self._apply(
            session,
            txn_type=TxnType.ADJUST,
            item_id=item_id,
            bin_id=bin_id,
            values={"on_hand": LedgerEntry.on_hand + d},
            reverse={"on_hand": LedgerEntry.on_hand - d},
            condition=condition,
            qty=abs(d),
            signed_delta=d,
            ref=ref,
            note=note,
        )

    async def transfer(
        self,
        session: AsyncSession,
        *,
        item_id: int,
        from_bin_id: int,
        to_bin_id: int,
        qty: int,
        ref: Optional[Ref] = None,
        note: str | None = None,
    ) -> TransferOutcome:
        """
        库位间移库（同一事务内两条 adjust）：
          - 源库位 on_hand -= qty，要求源 available >= qty（已预占 / 已拣的不动）
          - 目标库位 on_hand += qty（台账行不存在则先建）
        两条流水共用一个 ref，ref_seq 分别为 seq / seq+1，重放仍可还原 on_hand。
        """
        q = _positive(qty)
        src, dst = int(from_bin_id), int(to_bin_id)
        if src == dst:
            raise ValueError("transfer source and destination bins must differ")
        ref = ref or Ref(RefType.TRANSFER.value, uuid.uuid4().hex)
        note = note or f"transfer {src}->{dst}"

        if await self.get_entry(session, item_id, src) is None:
            return TransferOutcome(
                source=_outcome(INSUFFICIENT, TxnType.ADJUST, item_id, src, 0, None),
                destination=None,
            )

        out_src = await self.adjust(session, item_id=item_id, bin_id=src, delta=-q, ref=ref, note=note)
        if out_src.status == INSUFFICIENT:
            logger.info("transfer refused item=%s %s->%s qty=%s available=%s", item_id, src, dst, q, out_src.available)
            return TransferOutcome(source=out_src, destination=None)

        out_dst = await self.adjust(
            session,
            item_id=item_id,
            bin_id=dst,
            delta=q,
            ref=replace(ref, ref_seq=ref.ref_seq + 1),
            note=note,
        )
        return TransferOutcome(source=out_src, destination=out_dst)

    # ------------------------------------------------------------------
    # 内部
    # ------------------------------------------------------------------

    async def _ensure_entry(self, session: AsyncSession, item_id: int, bin_id: int) -> None:
        if await self.get_entry(session, item_id, bin_id) is not None:
            return
        item = (
            await session.execute(sa.select(StockedItem.id).where(StockedItem.id == int(item_id)))
        ).scalar_one_or_none()
        bin_ = (
            await session.execute(sa.select(StorageBin.id).where(StorageBin.id == int(bin_id)))
        ).scalar_one_or_none()
        if item is None or bin_ is None:
            raise NotFound(
                "unknown item or bin",
                context={"item_id": int(item_id), "bin_id": int(bin_id)},
            )
        stmt = (
            dialect_insert(session, LedgerEntry)
            .values(item_id=int(item_id), bin_id=int(bin_id), on_hand=0, reserved=0, picked=0)
            .on_conflict_do_nothing()
        )
        await session.execute(stmt)

    async def _already_applied(self, session: AsyncSession, txn_type: TxnType, ref: Ref) -> bool:
        return await txn_exists(
            session,
            txn_type=txn_type.value,
            ref_type=ref.ref_type,
            ref_id=ref.ref_id,
            ref_seq=ref.ref_seq,
        )

    async def _apply(
        self,
        session: AsyncSession,
        *,
        txn_type: TxnType,
        item_id: int,
        bin_id: int,
        values: Dict[str, Any],
        reverse: Dict[str, Any],
        condition,
        qty: int,
        signed_delta: int,
        ref: Ref,
        note: Optional[str],
    ) -> LedgerOutcome:
        item_id, bin_id = int(item_id), int(bin_id)

        # ---------- 幂等 ----------
        if await self._already_applied(session, txn_type, ref):
            cur = await self.get_entry(session, item_id, bin_id)
            return _outcome(IDEMPOTENT, txn_type, item_id, bin_id, 0, cur)

        # ---------- 单行条件更新 ----------
        where = [LedgerEntry.item_id == item_id, LedgerEntry.bin_id == bin_id]
        if condition is not None:
            where.append(condition)

        ts = self._now()
        row = (
            await session.execute(
                sa.update(LedgerEntry)
                .where(*where)
                .values(**values, updated_at=ts)
                .returning(*_RETURNING)
                .execution_options(synchronize_session=False)
            )
        ).first()

        if row is None:
            cur = await self.get_entry(session, item_id, bin_id)
            return _outcome(INSUFFICIENT, txn_type, item_id, bin_id, 0, cur)

        on_hand, reserved, picked = int(row[0]), int(row[1]), int(row[2])

        # ---------- 追加流水 ----------
        txn_id = await write_txn(
            session,
            item_id=item_id,
            bin_id=bin_id,
            txn_type=txn_type.value,
            qty_delta=signed_delta,
            ref_type=ref.ref_type,
            ref_id=ref.ref_id,
            ref_seq=ref.ref_seq,
            order_id=ref.order_id,
            note=note,
            on_hand_after=on_hand,
            reserved_after=reserved,
            picked_after=picked,
            occurred_at=ts,
        )

        if txn_id == 0:
            # 并发重复请求已先落账：冲正本次更新
            back = (
                await session.execute(
                    sa.update(LedgerEntry)
                    .where(LedgerEntry.item_id == item_id, LedgerEntry.bin_id == bin_id)
                    .values(**reverse)
                    .returning(*_RETURNING)
                    .execution_options(synchronize_session=False)
                )
            ).first()
            logger.info(
                "ledger %s duplicate ref=%s:%s#%s, reverted", txn_type.value, ref.ref_type, ref.ref_id, ref.ref_seq
            )
            return LedgerOutcome(
                status=IDEMPOTENT,
                txn_type=txn_type.value,
                item_id=item_id,
                bin_id=bin_id,
                qty=0,
                on_hand=int(back[0]),
                reserved=int(back[1]),
                picked=int(back[2]),
            )

        return LedgerOutcome(
            status=OK,
            txn_type=txn_type.value,
            item_id=item_id,
            bin_id=bin_id,
            qty=qty,
            on_hand=on_hand,
            reserved=reserved,
            picked=picked,
            txn_id=txn_id,
        )


def _positive(qty: int) -> int:
    q = int(qty)
    if q <= 0:
        raise ValueError(f"qty must be a positive integer, got {qty!r}")
    return q


def _outcome(
    status: str,
    txn_type: TxnType,
    item_id: int,
    bin_id: int,
    qty: int,
    cur: Optional[BinStock],
) -> LedgerOutcome:
    return LedgerOutcome(
        status=status,
        txn_type=txn_type.value,
        item_id=int(item_id),
        bin_id=int(bin_id),
        qty=qty,
        on_hand=cur.on_hand if cur else 0,
        reserved=cur.reserved if cur else 0,
        picked=cur.picked if cur else 0,
    )
