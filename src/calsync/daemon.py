"""SyncDaemon: wires configuration, database, provider and worker together.

Startup sequence:
 1. Load config (calsync.toml)
 2. Configure logging, tracing and metrics
 3. Connect the database pool
 4. Apply migrations (optional)
 5. Build stores, lock, provider factory and handlers
 6. Start the sync worker

Shutdown runs the reverse order and never aborts half-way.
"""

from __future__ import annotations

import logging
from pathlib import Path

from calsync.config import CalsyncConfig, ConfigError, load_config
from calsync.core.clock import Clock, SystemClock
from calsync.core.logging import configure_logging
from calsync.core.metrics import SyncMetrics, init_metrics
from calsync.core.telemetry import init_telemetry
from calsync.db import Database
from calsync.migrations import run_migrations
from calsync.sync.bindings import PostgresBindingRepository
from calsync.sync.connections import PostgresConnectionRepository
from calsync.sync.handlers import SyncHandlers
from calsync.sync.locks import DistributedLock, PostgresAdvisoryLock
from calsync.sync.outbox import PostgresOutboxStore
from calsync.sync.provider import CredentialDecryptor, GoogleProviderFactory, ProviderFactory
from calsync.sync.sources import SqlActiveEntitySource
from calsync.sync.worker import SyncWorker

logger = logging.getLogger(__name__)


def database_for(config: CalsyncConfig) -> Database:
    return Database.from_env(
        config.db.name,
        schema=config.db.schema,
        min_pool_size=config.db.min_pool_size,
        max_pool_size=config.db.max_pool_size,
    )


def build_provider_factory(
    config: CalsyncConfig,
    decryptor: CredentialDecryptor | None = None,
    clock: Clock | None = None,
) -> GoogleProviderFactory:
    if not config.provider.client_id or not config.provider.client_secret:
        raise ConfigError("provider.client_id and provider.client_secret are required to run")
    return GoogleProviderFactory(
        client_id=config.provider.client_id,
        client_secret=config.provider.client_secret,
        decryptor=decryptor,
        timeout_s=config.provider.timeout_s,
        rate_limit_retries=config.provider.rate_limit_retries,
        clock=clock,
    )


def advisory_lock_for(db: Database) -> PostgresAdvisoryLock:
    if db.pool is None:
        raise RuntimeError(f"Database '{db.db_name}' must be connected before locking")
    return PostgresAdvisoryLock(db.pool)


def build_worker(
    config: CalsyncConfig,
    db: Database,
    providers: ProviderFactory,
    lock: DistributedLock,
    *,
    clock: Clock | None = None,
) -> SyncWorker:
    """Wire the Postgres stores, handlers and lock into a worker for ``config``."""
    store = PostgresOutboxStore(db)
    connections = PostgresConnectionRepository(db)
    active_sources = (
        SqlActiveEntitySource(db, config.rebuild.source_relation)
        if config.rebuild.source_relation
        else None
    )
    handlers = SyncHandlers(
        bindings=PostgresBindingRepository(db),
        connections=connections,
        providers=providers,
        outbox=store,
        active_sources=active_sources,
        max_attempts=config.worker.max_attempts,
    )
    return SyncWorker(
        store=store,
        lock=lock,
        handlers=handlers,
        connections=connections,
        config=config.worker,
        clock=clock,
        metrics=SyncMetrics(worker_name=config.worker.name),
    )


class SyncDaemon:
    """Runs one sync worker process."""

    def __init__(
        self,
        config_path: Path | None = None,
        *,
        config: CalsyncConfig | None = None,
        provider_factory: ProviderFactory | None = None,
        decryptor: CredentialDecryptor | None = None,
        clock: Clock | None = None,
        apply_migrations: bool = True,
    ) -> None:
        if config_path is None and config is None:
            raise ValueError("SyncDaemon needs a config_path or a config")
        self.config_path = config_path
        self.config = config
        self.db: Database | None = None
        self.worker: SyncWorker | None = None
        self._provider_factory = provider_factory
        self._decryptor = decryptor
        self._clock = clock or SystemClock()
        self._apply_migrations = apply_migrations
        self._lock: PostgresAdvisoryLock | None = None

    async def start(self) -> None:
        """Execute the startup sequence. A failure at any step stops the rest."""
        if self.config is None:
            if self.config_path is None:
                raise ValueError("SyncDaemon needs a config_path or a config")
            self.config = load_config(self.config_path)
        config = self.config

        configure_logging(
            level=config.logging.level,
            fmt=config.logging.format,
            log_root=Path(config.logging.log_root) if config.logging.log_root else None,
            worker_name=config.worker.name,
        )
        init_telemetry(f"calsync.{config.worker.name}")
        init_metrics(f"calsync.{config.worker.name}")
        logger.info("Loaded config for worker: %s", config.worker.name)

        if self._provider_factory is None:
            self._provider_factory = build_provider_factory(config, self._decryptor, self._clock)

        self.db = database_for(config)
        await self.db.provision()
        await self.db.connect()

        if self._apply_migrations:
            await run_migrations(self.db.dsn, schema=config.db.schema)

        self._lock = advisory_lock_for(self.db)
        self.worker = build_worker(
            config, self.db, self._provider_factory, self._lock, clock=self._clock
        )
        await self.worker.start()

    async def shutdown(self) -> None:
        """Graceful shutdown.

        1. Stop the worker (in-flight items finish)
        2. Release any advisory locks still held
        3. Close the provider HTTP client
        4. Close the DB pool
        """
        name = self.config.worker.name if self.config else "unknown"
        logger.info("Shutting down worker: %s", name)

        if self.worker is not None:
            try:
                await self.worker.stop()
            except Exception:
                logger.exception("Error while stopping sync worker")

        if self._lock is not None:
            try:
                await self._lock.release_all()
            except Exception:
                logger.exception("Error while releasing advisory locks")

        if self._provider_factory is not None:
            try:
                await self._provider_factory.close()
            except Exception:
                logger.exception("Error while closing calendar provider")

        if self.db is not None:
            await self.db.close()

        logger.info("Worker shutdown complete")

