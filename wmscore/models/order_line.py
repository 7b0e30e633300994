# wmscore/models/order_line.py
from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, List

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from wmscore.db.base import Base
from wmscore.models.enums import LineStatus

if TYPE_CHECKING:
    from wmscore.models.order import Order
    from wmscore.models.order_line_allocation import OrderLineAllocation
    from wmscore.models.stocked_item import StockedItem


class OrderLine(Base):
    """
    订单行：pending → in_progress → completed | short（终态）

    - reserved_qty：该行当前仍持有的预占量（各库位分配之和）
    - picked_qty：已确认拣货量
    - bin_id：首选分配库位（多库位分配时为 pick_sequence 最小的一腿）
    """

    __tablename__ = "order_lines"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    line_no: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=1)

    item_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("stocked_items.id", ondelete="RESTRICT"), nullable=False
    )
    required_qty: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    reserved_qty: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    picked_qty: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)

    status: Mapped[str] = mapped_column(
        sa.String(16), nullable=False, default=LineStatus.PENDING.value
    )
    short_reason: Mapped[str | None] = mapped_column(sa.String(16), nullable=True)
    bin_id: Mapped[int | None] = mapped_column(
        sa.Integer, sa.ForeignKey("storage_bins.id", ondelete="RESTRICT"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
    picked_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        sa.UniqueConstraint("order_id", "line_no", name="uq_order_lines_order_line_no"),
        sa.CheckConstraint("required_qty > 0", name="ck_order_lines_required_pos"),
        sa.CheckConstraint("picked_qty >= 0", name="ck_order_lines_picked_nonneg"),
        sa.CheckConstraint("reserved_qty >= 0", name="ck_order_lines_reserved_nonneg"),
    )

    order: Mapped["Order"] = relationship("Order", back_populates="lines")
    item: Mapped["StockedItem"] = relationship("StockedItem", lazy="selectin")
    allocations: Mapped[List["OrderLineAllocation"]] = relationship(
        "OrderLineAllocation",
        back_populates="line",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def is_terminal(self) -> bool:
        return LineStatus(self.status).is_terminal

    @property
    def remaining_qty(self) -> int:
        return max(0, int(self.required_qty) - int(self.picked_qty))

    def __repr__(self) -> str:
        return (
            f"<OrderLine id={self.id} order={self.order_id} item={self.item_id} "
            f"req={self.required_qty} picked={self.picked_qty} status={self.status}>"
        )
