# wmscore/db/session.py
# 异步会话工厂 + FastAPI 依赖（get_session）
from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Any, Dict

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from wmscore.core.config import get_settings


def build_engine(url: str, *, echo: bool = False) -> AsyncEngine:
    """
    构建异步 Engine：
      - sqlite（aiosqlite）：NullPool + busy timeout，避免连接跨事件循环复用
      - 其他（psycopg3）：连接池 + pre_ping
    """
    kwargs: Dict[str, Any] = {"echo": echo, "future": True}
    if url.startswith("sqlite"):
        kwargs["poolclass"] = NullPool
        kwargs["connect_args"] = {"timeout": 30}
    else:
        kwargs["pool_pre_ping"] = True
    return create_async_engine(url, **kwargs)


_settings = get_settings()

async_engine: AsyncEngine = build_engine(_settings.database_url, echo=_settings.SQL_ECHO)

async_session_maker: async_sessionmaker[AsyncSession] = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_maker() as session:
        yield session


async def close_engines() -> None:
    await async_engine.dispose()
