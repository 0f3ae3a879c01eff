"""asyncpg pool for the sync worker and its stores.

Host and credentials come from ``DATABASE_URL`` or the ``POSTGRES_*``
variables; the database name and optional schema come from ``[worker.db]``.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import Any
from urllib.parse import parse_qs, quote, urlparse

import asyncpg

logger = logging.getLogger(__name__)

APPLICATION_NAME = "calsync"
DEFAULT_DB_NAME = "calsync"

_SSL_MODES = frozenset({"disable", "allow", "prefer", "require", "verify-ca", "verify-full"})
_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _ssl_mode(raw: str | None) -> str | None:
    mode = (raw or "").strip().lower()
    if not mode:
        return None
    if mode not in _SSL_MODES:
        logger.warning("Unknown sslmode %r ignored", raw)
        return None
    return mode


def _schema(raw: str | None) -> str | None:
    name = (raw or "").strip()
    if not name:
        return None
    if _IDENTIFIER.fullmatch(name) is None:
        raise ValueError(f"Invalid schema name: {raw!r}")
    return name


@dataclass(frozen=True)
class ConnectionParams:
    """Server address and credentials, independent of the database name."""

    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = "postgres"
    ssl: str | None = None
    database: str | None = None

    @classmethod
    def from_env(cls) -> ConnectionParams:
        url = os.environ.get("DATABASE_URL")
        if url:
            parsed = urlparse(url)
            return cls(
                host=parsed.hostname or cls.host,
                port=parsed.port or cls.port,
                user=parsed.username or cls.user,
                password=parsed.password or cls.password,
                ssl=_ssl_mode(parse_qs(parsed.query).get("sslmode", [None])[0]),
                database=parsed.path.lstrip("/") or None,
            )
        env = os.environ
        return cls(
            host=env.get("POSTGRES_HOST", cls.host),
            port=int(env.get("POSTGRES_PORT", str(cls.port))),
            user=env.get("POSTGRES_USER", cls.user),
            password=env.get("POSTGRES_PASSWORD", cls.password),
            ssl=_ssl_mode(env.get("POSTGRES_SSLMODE")),
            database=env.get("POSTGRES_DB"),
        )


def affected_rows(status: str) -> int:
    """Row count from an asyncpg command tag such as ``UPDATE 1``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0


class Database:
    """One named database and its connection pool.

    Stores take this object and use its ``fetch``/``execute`` proxies; the
    advisory lock takes ``pool`` directly because it pins connections.
    """

    def __init__(
        self,
        db_name: str,
        schema: str | None = None,
        host: str = "localhost",
        port: int = 5432,
        user: str = "postgres",
        password: str = "postgres",
        ssl: str | None = None,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ) -> None:
        self.db_name = db_name
        self.schema = _schema(schema)
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.ssl = ssl
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: asyncpg.Pool | None = None

    @classmethod
    def from_env(
        cls,
        db_name: str | None = None,
        schema: str | None = None,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ) -> Database:
        """Build from the environment; an explicit ``db_name`` beats the one in the URL."""
        params = ConnectionParams.from_env()
        return cls(
            db_name=db_name or params.database or DEFAULT_DB_NAME,
            schema=schema,
            host=params.host,
            port=params.port,
            user=params.user,
            password=params.password,
            ssl=params.ssl,
            min_pool_size=min_pool_size,
            max_pool_size=max_pool_size,
        )

    @property
    def dsn(self) -> str:
        """libpq URL for the migration runner."""
        auth = f"{quote(self.user, safe='')}:{quote(self.password, safe='')}"
        url = f"postgresql://{auth}@{self.host}:{self.port}/{self.db_name}"
        return f"{url}?sslmode={self.ssl}" if self.ssl else url

    def _server_kwargs(self, database: str) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "database": database,
        }
        if self.ssl:
            kwargs["ssl"] = self.ssl
        return kwargs

    async def provision(self) -> None:
        """Create the database on first start. Needs CREATEDB on the maintenance db."""
        conn = await asyncpg.connect(**self._server_kwargs("postgres"))
        try:
            if await conn.fetchval("SELECT 1 FROM pg_database WHERE datname = $1", self.db_name):
                return
            quoted = self.db_name.replace('"', '""')
            await conn.execute(f'CREATE DATABASE "{quoted}" TEMPLATE template0')
            logger.info("Provisioned database %s", self.db_name)
        finally:
            await conn.close()

    async def connect(self) -> asyncpg.Pool:
        settings = {"application_name": APPLICATION_NAME}
        if self.schema:
            settings["search_path"] = f"{self.schema},public"
        self.pool = await asyncpg.create_pool(
            **self._server_kwargs(self.db_name),
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            server_settings=settings,
        )
        logger.info(
            "Opened pool on %s (size %d-%d)", self.db_name, self.min_pool_size, self.max_pool_size
        )
        return self.pool

    async def close(self) -> None:
        if self.pool is None:
            return
        pool, self.pool = self.pool, None
        await pool.close()
        logger.info("Closed pool on %s", self.db_name)

    def _active_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise RuntimeError(f"Database '{self.db_name}' has no active connection pool")
        return self.pool

    async def fetch(self, query: str, *args: Any) -> list[asyncpg.Record]:
        return await self._active_pool().fetch(query, *args)

    async def fetchrow(self, query: str, *args: Any) -> asyncpg.Record | None:
        return await self._active_pool().fetchrow(query, *args)

    async def fetchval(self, query: str, *args: Any) -> Any:
        return await self._active_pool().fetchval(query, *args)

    async def execute(self, query: str, *args: Any) -> str:
        return await self._active_pool().execute(query, *args)
