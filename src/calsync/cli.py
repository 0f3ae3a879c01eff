"""CLI for calsync: run the outbox sync worker and operate its queue."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from collections.abc import Awaitable, Callable
from datetime import timedelta
from pathlib import Path
from typing import Any, TypeVar
from uuid import UUID

import click

from calsync import __version__
from calsync.config import CONFIG_FILENAME, CalsyncConfig, ConfigError, load_config
from calsync.core.clock import SystemClock
from calsync.daemon import (
    SyncDaemon,
    advisory_lock_for,
    build_provider_factory,
    build_worker,
    database_for,
)
from calsync.db import Database
from calsync.migrations import run_migrations
from calsync.sync.outbox import PostgresOutboxStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

_config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=Path(CONFIG_FILENAME),
    show_default=True,
    help="Path to calsync.toml (or the directory containing it)",
)


def _load(config_path: Path) -> CalsyncConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc


async def _with_database(config: CalsyncConfig, fn: Callable[[Database], Awaitable[T]]) -> T:
    db = database_for(config)
    await db.connect()
    try:
        return await fn(db)
    finally:
        await db.close()


def _json_default(value: Any) -> str:
    return value.isoformat() if hasattr(value, "isoformat") else str(value)


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """calsync: reliable outbox sync from workspaces to Google Calendar."""
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(name)s: %(message)s")


@cli.command()
@_config_option
@click.option(
    "--skip-migrations", is_flag=True, help="Do not apply schema migrations on startup"
)
def run(config_path: Path, skip_migrations: bool) -> None:
    """Start the sync worker and run until SIGINT/SIGTERM."""
    config = _load(config_path)
    click.echo(f"Starting calsync worker {config.worker.name}")
    asyncio.run(_run_daemon(config, apply_migrations=not skip_migrations))


async def _run_daemon(config: CalsyncConfig, *, apply_migrations: bool) -> None:
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    daemon = SyncDaemon(config=config, apply_migrations=apply_migrations)
    try:
        await daemon.start()
        click.echo(f"Worker {config.worker.name} polling every {config.worker.poll_interval_s}s")
        await shutdown_event.wait()
    finally:
        await daemon.shutdown()


@cli.command()
@_config_option
def drain(config_path: Path) -> None:
    """Process one batch of ready outbox items and exit."""
    config = _load(config_path)

    async def _drain(db: Database) -> dict[str, int]:
        providers = build_provider_factory(config)
        worker = build_worker(config, db, providers, advisory_lock_for(db))
        try:
            return await worker.drain_once()
        finally:
            await providers.close()

    try:
        counts = asyncio.run(_with_database(config, _drain))
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    if not counts:
        click.echo("No ready outbox items")
        return
    for outcome, count in sorted(counts.items()):
        click.echo(f"{outcome:<16} {count}")


@cli.command()
@_config_option
@click.option("--workspace", "workspace_id", type=click.UUID, default=None)
def status(config_path: Path, workspace_id: UUID | None) -> None:
    """Show outbox item counts by status."""
    config = _load(config_path)
    counts = asyncio.run(
        _with_database(config, lambda db: PostgresOutboxStore(db).status_counts(workspace_id))
    )
    click.echo(f"{'Status':<14} {'Count':>8}")
    click.echo("-" * 23)
    for name, count in counts.items():
        click.echo(f"{name:<14} {count:>8}")


@cli.command("dead-letters")
@_config_option
@click.option("--workspace", "workspace_id", type=click.UUID, default=None)
@click.option("--limit", type=int, default=50, show_default=True, help="Max rows (capped at 500)")
@click.option("--json", "as_json", is_flag=True, help="Emit JSON lines instead of a table")
def dead_letters(
    config_path: Path, workspace_id: UUID | None, limit: int, as_json: bool
) -> None:
    """List dead-lettered outbox items, newest first."""
    config = _load(config_path)
    rows = asyncio.run(
        _with_database(
            config, lambda db: PostgresOutboxStore(db).list_dead_letters(workspace_id, limit)
        )
    )
    if as_json:
        for row in rows:
            click.echo(json.dumps(row, default=_json_default))
        return
    if not rows:
        click.echo("No dead-lettered items")
        return
    for row in rows:
        click.echo(
            f"{row['id']}  {row['operation']:<13} attempts={row['attempts']}/"
            f"{row['max_attempts']}  {row['last_error'] or ''}"
        )


@cli.command()
@_config_option
@click.argument("item_id", type=click.UUID)
def replay(config_path: Path, item_id: UUID) -> None:
    """Return a dead-lettered item to PENDING with its attempts reset."""
    config = _load(config_path)
    requeued = asyncio.run(
        _with_database(
            config,
            lambda db: PostgresOutboxStore(db).requeue_dead_letter(item_id, SystemClock().now()),
        )
    )
    if not requeued:
        click.echo(f"Outbox item {item_id} is not dead-lettered")
        sys.exit(1)
    click.echo(f"Requeued {item_id}")


@cli.command()
@_config_option
@click.option(
    "--older-than-days",
    type=click.IntRange(min=1),
    default=None,
    help="Retention window (defaults to retention.older_than_days)",
)
def purge(config_path: Path, older_than_days: int | None) -> None:
    """Delete COMPLETED and DEAD_LETTER items older than the retention window."""
    config = _load(config_path)
    days = older_than_days or config.retention.older_than_days
    cutoff = SystemClock().now() - timedelta(days=days)
    deleted = asyncio.run(
        _with_database(config, lambda db: PostgresOutboxStore(db).purge_terminal(cutoff))
    )
    click.echo(f"Purged {deleted} outbox item(s) older than {days} day(s)")


@cli.command()
@_config_option
def migrate(config_path: Path) -> None:
    """Apply schema migrations."""
    config = _load(config_path)
    db = database_for(config)

    async def _migrate() -> None:
        await db.provision()
        await run_migrations(db.dsn, schema=config.db.schema)

    asyncio.run(_migrate())
    click.echo(f"Database {db.db_name} is at head")


if __name__ == "__main__":
    cli()
