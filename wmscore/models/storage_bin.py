# wmscore/models/storage_bin.py
from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from wmscore.db.base import Base


class StorageBin(Base):
    """
    物理库位。pick_sequence 越小越优先（拣货路径顺序）。
    由库位管理维护（外部），核心只读。
    """

    __tablename__ = "storage_bins"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(sa.String(64), nullable=False, unique=True)
    zone: Mapped[str | None] = mapped_column(sa.String(32), nullable=True)
    pick_sequence: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (sa.Index("ix_storage_bins_pick_sequence", "pick_sequence"),)

    def __repr__(self) -> str:
        return f"<StorageBin id={self.id} code={self.code!r} seq={self.pick_sequence}>"
