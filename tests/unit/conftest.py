# tests/unit/conftest.py
import pytest


@pytest.fixture(autouse=True)
def _db_reset_and_seed():
    """纯函数单测不碰数据库：覆盖根 conftest 的建表 / 种子。"""
    yield
