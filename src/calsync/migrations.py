"""Programmatic Alembic migration runner.

Lets the worker CLI apply the schema without shelling out to the Alembic CLI.
"""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path

from alembic.config import Config

from alembic import command

logger = logging.getLogger(__name__)

# Root of the alembic directory (sibling to src/)
ALEMBIC_DIR = Path(__file__).resolve().parent.parent.parent / "alembic"

CHAIN = "core"
_TARGET_SCHEMA_OPTION = "calsync.target_schema"
_VERSION_TABLE_SCHEMA_OPTION = "version_table_schema"
_VALID_SCHEMA_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _normalize_schema(schema: str | None) -> str | None:
    if schema is None:
        return None
    normalized = schema.strip()
    if not normalized:
        return None
    if _VALID_SCHEMA_RE.fullmatch(normalized) is None:
        raise ValueError(f"Invalid migration schema name: {schema!r}")
    return normalized


def build_alembic_config(db_url: str, target_schema: str | None = None) -> Config:
    """Build an Alembic Config pointing at the calsync version directory.

    Args:
        db_url: SQLAlchemy-compatible database URL.
        target_schema: Optional schema to create the tables in.
    """
    config = Config(str(ALEMBIC_DIR.parent / "alembic.ini"))
    config.set_main_option("script_location", str(ALEMBIC_DIR))
    # Config uses configparser interpolation; '%' in URLs must be escaped.
    config.set_main_option("sqlalchemy.url", db_url.replace("%", "%%"))
    config.set_main_option("version_locations", str(ALEMBIC_DIR / "versions" / CHAIN))
    normalized_schema = _normalize_schema(target_schema)
    if normalized_schema is not None:
        config.set_main_option(_TARGET_SCHEMA_OPTION, normalized_schema)
        config.set_main_option(_VERSION_TABLE_SCHEMA_OPTION, normalized_schema)
    return config


async def run_migrations(db_url: str, schema: str | None = None) -> None:
    """Upgrade the calsync chain to head.

    Alembic is synchronous, so the upgrade runs in a worker thread to keep
    the event loop responsive.
    """
    config = build_alembic_config(db_url, target_schema=schema)
    logger.info(
        "Running migration chain to head (chain=%s, schema=%s)", CHAIN, schema or "<default>"
    )
    await asyncio.to_thread(command.upgrade, config, f"{CHAIN}@head")
