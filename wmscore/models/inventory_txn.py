# wmscore/models/inventory_txn.py
from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from wmscore.db.base import Base


class InventoryTxn(Base):
    """
    库存流水（只增不改）

    幂等唯一：(txn_type, ref_type, ref_id, ref_seq)
      - ref_type / ref_id 指向来源业务（订单行 / 收货单 / 手工）
      - ref_seq 为同一来源下的第 N 次同类动作（多库位分配的第 N 腿、第 N 次拣货确认）
    *_after 记录本次变更后的三桶数量，便于审计阅读；重放只依赖 qty_delta。
    """

    __tablename__ = "inventory_txns"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)

    item_id: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    bin_id: Mapped[int] = mapped_column(sa.Integer, nullable=False)

    txn_type: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    qty_delta: Mapped[int] = mapped_column(sa.Integer, nullable=False)

    ref_type: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    ref_id: Mapped[str] = mapped_column(sa.String(128), nullable=False)
    ref_seq: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=1)
    order_id: Mapped[int | None] = mapped_column(sa.Integer, nullable=True)

    note: Mapped[str | None] = mapped_column(sa.Text, nullable=True)

    on_hand_after: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    reserved_after: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    picked_after: Mapped[int] = mapped_column(sa.Integer, nullable=False)

    occurred_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        sa.UniqueConstraint(
            "txn_type", "ref_type", "ref_id", "ref_seq", name="uq_inventory_txns_type_ref_seq"
        ),
        sa.Index("ix_inventory_txns_ref", "ref_type", "ref_id"),
        sa.Index("ix_inventory_txns_item_bin", "item_id", "bin_id"),
        sa.Index("ix_inventory_txns_order", "order_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<InventoryTxn {self.txn_type} item={self.item_id} bin={self.bin_id} "
            f"delta={self.qty_delta} ref={self.ref_type}:{self.ref_id}#{self.ref_seq}>"
        )
