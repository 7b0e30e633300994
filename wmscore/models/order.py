# wmscore/models/order.py
from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, List

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from wmscore.db.base import Base
from wmscore.models.enums import OrderStatus, Priority

if TYPE_CHECKING:
    from wmscore.models.order_line import OrderLine


class Order(Base):
    """
    出库作业单（外部订单同步进入队列）

    状态：queued → claimed → in_progress → completed | exception → ready_to_ship
          （任一非终态可 cancelled）
    - needs_review：存在 short 行，需异常复核（订单仍可部分发货）
    - allocation_short：入队预占不足，需人工关注
    - version：乐观并发版本号，每次状态变更 +1
    """

    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    external_ref: Mapped[str] = mapped_column(sa.String(128), nullable=False, unique=True)

    priority: Mapped[str] = mapped_column(
        sa.String(16), nullable=False, default=Priority.NORMAL.value
    )
    status: Mapped[str] = mapped_column(
        sa.String(16), nullable=False, default=OrderStatus.QUEUED.value
    )
    version: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=1)

    on_hold: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    allocation_short: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)

    needs_review: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    review_reason: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    resolution: Mapped[str | None] = mapped_column(sa.String(16), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(sa.Text, nullable=True)

    claimed_by: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
    claimed_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    ready_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)

    lines: Mapped[List["OrderLine"]] = relationship(
        "OrderLine",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderLine.line_no",
        lazy="selectin",
    )

    __table_args__ = (sa.Index("ix_orders_status_priority", "status", "priority"),)

    def __repr__(self) -> str:
        return f"<Order id={self.id} ref={self.external_ref!r} status={self.status} v={self.version}>"
