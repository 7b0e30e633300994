# wmscore/services/ledger_replay_service.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from wmscore.db.dialect import dialect_insert
from wmscore.models.enums import TxnType
from wmscore.models.inventory_txn import InventoryTxn
from wmscore.models.ledger_entry import LedgerEntry

UTC = timezone.utc

logger = logging.getLogger("wmscore.replay")

Key = Tuple[int, int]


@dataclass(frozen=True)
class Buckets:
    on_hand: int = 0
    reserved: int = 0
    picked: int = 0

    @property
    def available(self) -> int:
        return self.on_hand - self.reserved - self.picked

    def as_dict(self) -> Dict[str, int]:
        return {"on_hand": self.on_hand, "reserved": self.reserved, "picked": self.picked}


def apply_delta(b: Buckets, txn_type: str, delta: int) -> Buckets:
    """
    单条流水对三桶的影响：
      receive / adjust → on_hand
      reserve(+) / unreserve(-) / short(-) → reserved
      pick(+q) → reserved -q, picked +q
    """
    t = TxnType(txn_type)
    if t in (TxnType.RECEIVE, TxnType.ADJUST):
        return Buckets(b.on_hand + delta, b.reserved, b.picked)
    if t == TxnType.PICK:
        return Buckets(b.on_hand, b.reserved - delta, b.picked + delta)
    return Buckets(b.on_hand, b.reserved + delta, b.picked)


@dataclass(frozen=True)
class Drift:
    item_id: int
    bin_id: int
    ledger: Optional[Buckets]
    replayed: Buckets

    def as_dict(self) -> Dict[str, Any]:
        return {
            "item_id": self.item_id,
            "bin_id": self.bin_id,
            "ledger": self.ledger.as_dict() if self.ledger else None,
            "replayed": self.replayed.as_dict(),
        }


@dataclass
class ReconcileReport:
    checked: int = 0
    drifts: List[Drift] = field(default_factory=list)
    applied: bool = False

    @property
    def clean(self) -> bool:
        return not self.drifts


class LedgerReplayService:
    """
    Ledger Replay Engine
    --------------------
    从 inventory_txns 重放三桶数量（流水是崩溃一致性的锚点）：

      on_hand  = Σ receive + Σ adjust
      picked   = Σ pick
      reserved = Σ reserve + Σ unreserve + Σ short − Σ pick

    reconcile：与 ledger_entries 比对；apply=True 时以重放结果覆盖台账。
    """

    @staticmethod
    async def replay(
        session: AsyncSession,
        *,
        item_id: Optional[int] = None,
        bin_id: Optional[int] = None,
    ) -> Dict[Key, Buckets]:
        stmt = sa.select(
            InventoryTxn.item_id,
            InventoryTxn.bin_id,
            InventoryTxn.txn_type,
            sa.func.coalesce(sa.func.sum(InventoryTxn.qty_delta), 0),
        ).group_by(InventoryTxn.item_id, InventoryTxn.bin_id, InventoryTxn.txn_type)
        if item_id is not None:
            stmt = stmt.where(InventoryTxn.item_id == int(item_id))
        if bin_id is not None:
            stmt = stmt.where(InventoryTxn.bin_id == int(bin_id))

        out: Dict[Key, Buckets] = {}
        for it, bn, txn_type, total in (await session.execute(stmt)).all():
            k = (int(it), int(bn))
            out[k] = apply_delta(out.get(k, Buckets()), txn_type, int(total))
        return out

    @staticmethod
    async def timeline(session: AsyncSession, *, item_id: int, bin_id: int) -> List[Dict[str, Any]]:
        """逐事件重放单个 (item, bin)，给出每条流水前后的三桶数量。"""
        rows = (
            await session.execute(
                sa.select(InventoryTxn)
                .where(InventoryTxn.item_id == int(item_id), InventoryTxn.bin_id == int(bin_id))
                .order_by(InventoryTxn.id.asc())
            )
        ).scalars()

        cur = Buckets()
        timeline: List[Dict[str, Any]] = []
        for e in rows:
            before = cur
            cur = apply_delta(cur, e.txn_type, int(e.qty_delta))
            timeline.append(
                {
                    "id": e.id,
                    "occurred_at": e.occurred_at,
                    "txn_type": e.txn_type,
                    "delta": e.qty_delta,
                    "ref": f"{e.ref_type}:{e.ref_id}#{e.ref_seq}",
                    "before": before.as_dict(),
                    "after": cur.as_dict(),
                }
            )
        return timeline

    @classmethod
    async def reconcile(cls, session: AsyncSession, *, apply: bool = False) -> ReconcileReport:
        replayed = await cls.replay(session)

        rows = (
            await session.execute(
                sa.select(
                    LedgerEntry.item_id,
                    LedgerEntry.bin_id,
                    LedgerEntry.on_hand,
                    LedgerEntry.reserved,
                    LedgerEntry.picked,
                )
            )
        ).all()
        current: Dict[Key, Buckets] = {
            (int(r[0]), int(r[1])): Buckets(int(r[2]), int(r[3]), int(r[4])) for r in rows
        }

        report = ReconcileReport(checked=len(set(current) | set(replayed)))
        for key in sorted(set(current) | set(replayed)):
            want = replayed.get(key, Buckets())
            have = current.get(key)
            if have != want:
                report.drifts.append(Drift(key[0], key[1], have, want))

        for d in report.drifts:
            logger.warning(
                "ledger drift item=%s bin=%s ledger=%s replayed=%s",
                d.item_id,
                d.bin_id,
                d.ledger.as_dict() if d.ledger else None,
                d.replayed.as_dict(),
            )

        if apply and report.drifts:
            await cls._overwrite(session, report.drifts)
            report.applied = True
            logger.info("reconcile applied %d corrections", len(report.drifts))
        return report

    @staticmethod
    async def _overwrite(session: AsyncSession, drifts: List[Drift]) -> None:
        ts = datetime.now(UTC)
        for d in drifts:
            values = {**d.replayed.as_dict(), "updated_at": ts}
            if d.ledger is None:
                await session.execute(
                    dialect_insert(session, LedgerEntry)
                    .values(item_id=d.item_id, bin_id=d.bin_id, **values)
                    .on_conflict_do_nothing()
                )
                continue
            await session.execute(
                sa.update(LedgerEntry)
                .where(LedgerEntry.item_id == d.item_id, LedgerEntry.bin_id == d.bin_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
