# wmscore/models/picking_log.py
from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from wmscore.db.base import Base


class PickingLog(Base):
    """
    拣货作业审计（只增不改）：认领 / 释放 / 拣货 / 缺货 / 扫错 / 完成 ...
    """

    __tablename__ = "picking_logs"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    action: Mapped[str] = mapped_column(sa.String(32), nullable=False)

    order_id: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    line_id: Mapped[int | None] = mapped_column(sa.Integer, nullable=True)
    worker_id: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    sku: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)

    qty_before: Mapped[int | None] = mapped_column(sa.Integer, nullable=True)
    qty_after: Mapped[int | None] = mapped_column(sa.Integer, nullable=True)
    status_before: Mapped[str | None] = mapped_column(sa.String(16), nullable=True)
    status_after: Mapped[str | None] = mapped_column(sa.String(16), nullable=True)
    reason: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    meta: Mapped[dict | None] = mapped_column(sa.JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        sa.Index("ix_picking_logs_order", "order_id", "created_at"),
        sa.Index("ix_picking_logs_worker", "worker_id"),
    )

    def __repr__(self) -> str:
        return f"<PickingLog {self.action} order={self.order_id} line={self.line_id}>"
