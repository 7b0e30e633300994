# wmscore/models/order_line_allocation.py
from __future__ import annotations

from typing import TYPE_CHECKING

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship

from wmscore.db.base import Base

if TYPE_CHECKING:
    from wmscore.models.order_line import OrderLine


class OrderLineAllocation(Base):
    """
    订单行在某库位上的预占腿：

    - reserved_qty：该腿仍持有的预占
    - picked_qty：该腿已转为 picked 的数量
    - released_qty：该腿已释放（unreserve / short）的数量
    """

    __tablename__ = "order_line_allocations"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    line_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("order_lines.id", ondelete="CASCADE"), nullable=False
    )
    bin_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("storage_bins.id", ondelete="RESTRICT"), nullable=False
    )
    pick_sequence: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)

    reserved_qty: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    picked_qty: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    released_qty: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)

    __table_args__ = (
        sa.UniqueConstraint("line_id", "bin_id", name="uq_order_line_allocations_line_bin"),
        sa.CheckConstraint("reserved_qty >= 0", name="ck_allocations_reserved_nonneg"),
    )

    line: Mapped["OrderLine"] = relationship("OrderLine", back_populates="allocations")

    def __repr__(self) -> str:
        return (
            f"<OrderLineAllocation line={self.line_id} bin={self.bin_id} "
            f"reserved={self.reserved_qty} picked={self.picked_qty}>"
        )
