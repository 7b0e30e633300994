# tests/conftest.py
from __future__ import annotations

import os
import tempfile
from typing import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

# ============================================================
# ★ 在 import wmscore 之前固定 DSN：settings / engine 在导入时读取
#   默认临时 sqlite 文件；WMS_TEST_DATABASE_URL 可指向 PostgreSQL
# ============================================================
_TMP_DIR = tempfile.mkdtemp(prefix="wmscore-test-")
DATABASE_URL = os.getenv("WMS_TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{_TMP_DIR}/wmscore-test.db"
os.environ["WMS_DATABASE_URL"] = DATABASE_URL
os.environ["CLAIM_LEASE_SECONDS"] = "0"
os.environ["ENABLE_CLAIM_SWEEP"] = "false"

from tests._helpers import BINS, ITEMS  # noqa: E402
from wmscore.core.config import normalize_async_dsn  # noqa: E402
from wmscore.db.base import Base, init_models  # noqa: E402
from wmscore.db.session import build_engine, get_session  # noqa: E402
from wmscore.main import app  # noqa: E402
from wmscore.models.stocked_item import StockedItem  # noqa: E402
from wmscore.models.storage_bin import StorageBin  # noqa: E402


# =========================================
# 每用例独立 Engine（NullPool，避免跨 loop）
# =========================================
@pytest_asyncio.fixture(scope="function")
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    eng = build_engine(normalize_async_dsn(DATABASE_URL))
    try:
        yield eng
    finally:
        await eng.dispose()


@pytest.fixture(scope="function")
def session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """并发测试用：每个并发参与者各开一个 session。"""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    async with session_maker() as sess:
        try:
            yield sess
        finally:
            if sess.in_transaction():
                await sess.rollback()


# =========================================
# 重建表 + 最小种子数据（每测试一次）
# =========================================
@pytest_asyncio.fixture(autouse=True, scope="function")
async def _db_reset_and_seed(engine: AsyncEngine):
    init_models()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
        await conn.execute(sa.insert(StockedItem), ITEMS)
        await conn.execute(sa.insert(StorageBin), BINS)


# =========================================
# FastAPI / httpx AsyncClient
# =========================================
@pytest_asyncio.fixture(scope="function")
async def client(session_maker) -> AsyncGenerator[httpx.AsyncClient, None]:
    async def _override_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_maker() as sess:
            yield sess

    app.dependency_overrides[get_session] = _override_session
    transport = httpx.ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(
            transport=transport,
            base_url="http://testserver",
            timeout=httpx.Timeout(10.0, connect=5.0, read=10.0, write=5.0, pool=5.0),
        ) as c:
            yield c
    finally:
        app.dependency_overrides.pop(get_session, None)
