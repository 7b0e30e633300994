# wmscore/models/stocked_item.py
from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from wmscore.db.base import Base


class StockedItem(Base):
    """
    可追踪库存单元（商品 / 变体）。

    - 由商品目录维护（外部），核心只引用
    - 一旦被台账行或订单行引用即视为不可变
    """

    __tablename__ = "stocked_items"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    sku: Mapped[str] = mapped_column(sa.String(64), nullable=False, unique=True, index=True)
    name: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    units_per_pack: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<StockedItem id={self.id} sku={self.sku!r}>"
