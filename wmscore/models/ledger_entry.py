# wmscore/models/ledger_entry.py
from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from wmscore.db.base import Base


class LedgerEntry(Base):
    """
    库存余额（唯一真实来源），维度 (item_id, bin_id)

    - on_hand / reserved / picked 均为非负整数
    - 不变量：reserved + picked <= on_hand（CHECK 约束兜底）
    - 只允许通过 InventoryLedger 的单行条件更新修改
    - 永不删除：数量为 0 的行保留，保证审计连续
    """

    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)

    item_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("stocked_items.id", ondelete="RESTRICT"), nullable=False
    )
    bin_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("storage_bins.id", ondelete="RESTRICT"), nullable=False
    )

    on_hand: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    reserved: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    picked: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)

    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        sa.UniqueConstraint("item_id", "bin_id", name="uq_ledger_entries_item_bin"),
        sa.CheckConstraint("on_hand >= 0", name="ck_ledger_on_hand_nonneg"),
        sa.CheckConstraint("reserved >= 0", name="ck_ledger_reserved_nonneg"),
        sa.CheckConstraint("picked >= 0", name="ck_ledger_picked_nonneg"),
        sa.CheckConstraint("reserved + picked <= on_hand", name="ck_ledger_committed_le_on_hand"),
    )

    bin = relationship("StorageBin", lazy="selectin")

    @property
    def available(self) -> int:
        return int(self.on_hand) - int(self.reserved) - int(self.picked)

    def __repr__(self) -> str:
        return (
            f"<LedgerEntry item={self.item_id} bin={self.bin_id} "
            f"on_hand={self.on_hand} reserved={self.reserved} picked={self.picked}>"
        )
