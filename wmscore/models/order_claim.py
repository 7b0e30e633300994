# wmscore/models/order_claim.py
from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from wmscore.db.base import Base


class OrderClaim(Base):
    """
    认领关系 (order, worker)。order_id 即主键：同一订单最多一条有效认领。
    expires_at 仅在启用认领租约时写入。
    """

    __tablename__ = "order_claims"

    order_id: Mapped[int] = mapped_column(
        sa.Integer, sa.ForeignKey("orders.id", ondelete="CASCADE"), primary_key=True
    )
    worker_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    claimed_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)

    __table_args__ = (sa.Index("ix_order_claims_expires_at", "expires_at"),)

    def __repr__(self) -> str:
        return f"<OrderClaim order={self.order_id} worker={self.worker_id!r}>"
