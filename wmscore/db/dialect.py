# wmscore/db/dialect.py
from __future__ import annotations

from typing import Any

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession


def dialect_name(session: AsyncSession) -> str:
    return session.bind.dialect.name


def dialect_insert(session: AsyncSession, model: Any):
    """
    返回方言专属 insert 构造器（支持 on_conflict_do_nothing）。
    命中冲突时 RETURNING 不返回行。
    """
    if dialect_name(session) == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)
