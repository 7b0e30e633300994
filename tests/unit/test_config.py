# tests/unit/test_config.py
import pytest

from wmscore.core.config import AppSettings, normalize_async_dsn


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("postgresql://u:p@h:5432/db", "postgresql+psycopg://u:p@h:5432/db"),
        ("postgres://u:p@h/db", "postgresql+psycopg://u:p@h/db"),
        ("postgresql+asyncpg://u@h/db", "postgresql+psycopg://u@h/db"),
        ("postgresql+psycopg://u@h/db", "postgresql+psycopg://u@h/db"),
        ("sqlite:///./x.db", "sqlite+aiosqlite:///./x.db"),
        ('"sqlite+aiosqlite:///./x.db"', "sqlite+aiosqlite:///./x.db"),
    ],
)
def test_normalize_async_dsn(raw, expected):
    assert normalize_async_dsn(raw) == expected


def test_wms_database_url_wins(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite:///./a.db")
    monkeypatch.setenv("WMS_DATABASE_URL", "postgresql://u@h/b")
    s = AppSettings(_env_file=None)
    assert s.database_url == "postgresql+psycopg://u@h/b"


def test_lease_defaults(monkeypatch):
    for k in ("CLAIM_LEASE_SECONDS", "ENABLE_CLAIM_SWEEP", "CONFLICT_RETRY_LIMIT"):
        monkeypatch.delenv(k, raising=False)
    s = AppSettings(_env_file=None)
    assert s.CLAIM_LEASE_SECONDS == 0
    assert s.ENABLE_CLAIM_SWEEP is False
    assert s.CONFLICT_RETRY_LIMIT == 3
