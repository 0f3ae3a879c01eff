"""Unit tests for Database parameter handling (no server needed)."""

from __future__ import annotations

import pytest

from calsync.db import ConnectionParams, Database, affected_rows

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _clear_db_env(monkeypatch: pytest.MonkeyPatch):
    for var in (
        "DATABASE_URL",
        "POSTGRES_HOST",
        "POSTGRES_PORT",
        "POSTGRES_USER",
        "POSTGRES_PASSWORD",
        "POSTGRES_SSLMODE",
        "POSTGRES_DB",
    ):
        monkeypatch.delenv(var, raising=False)


class TestParamsFromEnv:
    def test_database_url_wins(self, monkeypatch):
        monkeypatch.setenv(
            "DATABASE_URL", "postgresql://app:pw@db.internal:6432/ws?sslmode=require"
        )
        monkeypatch.setenv("POSTGRES_HOST", "ignored")

        params = ConnectionParams.from_env()

        assert params == ConnectionParams(
            host="db.internal",
            port=6432,
            user="app",
            password="pw",
            ssl="require",
            database="ws",
        )

    def test_postgres_vars_fallback(self, monkeypatch):
        monkeypatch.setenv("POSTGRES_HOST", "pg")
        monkeypatch.setenv("POSTGRES_PORT", "5433")
        monkeypatch.setenv("POSTGRES_SSLMODE", "bogus")

        params = ConnectionParams.from_env()

        assert params.host == "pg"
        assert params.port == 5433
        assert params.user == "postgres"
        assert params.ssl is None
        assert params.database is None


class TestDatabase:
    def test_from_env_defaults_to_calsync_database(self):
        assert Database.from_env().db_name == "calsync"

    def test_from_env_explicit_name_overrides_env(self, monkeypatch):
        monkeypatch.setenv("POSTGRES_DB", "from_env")
        assert Database.from_env().db_name == "from_env"
        assert Database.from_env("explicit").db_name == "explicit"

    def test_dsn_quotes_credentials(self):
        db = Database("calsync", user="app", password="p@ss/word", host="db", port=5432)
        assert db.dsn == "postgresql://app:p%40ss%2Fword@db:5432/calsync"

    def test_dsn_carries_sslmode(self):
        db = Database("calsync", ssl="verify-full")
        assert db.dsn.endswith("/calsync?sslmode=verify-full")

    def test_invalid_schema_rejected(self):
        with pytest.raises(ValueError, match="Invalid schema name"):
            Database("calsync", schema="drop table;")

    async def test_proxy_without_pool_raises(self):
        with pytest.raises(RuntimeError, match="no active connection pool"):
            await Database("calsync").fetch("SELECT 1")


class TestAffectedRows:
    @pytest.mark.parametrize(
        ("status", "expected"),
        [("UPDATE 1", 1), ("DELETE 12", 12), ("UPDATE 0", 0), ("", 0), (None, 0)],
    )
    def test_parses_command_tag(self, status, expected):
        assert affected_rows(status) == expected
