"""Worker configuration loading and validation.

Reads ``calsync.toml``, resolves ``${VAR}`` references from the environment,
parses all sections, and returns a validated :class:`CalsyncConfig`.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

CONFIG_FILENAME = "calsync.toml"

# Pattern matching ${VAR_NAME}; alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_DB_SCHEMA_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [worker.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class DatabaseConfig:
    """Database selection from [worker.db].

    Host and credentials always come from DATABASE_URL or POSTGRES_* env vars.
    """

    name: str | None = None
    schema: str | None = None
    min_pool_size: int = 2
    max_pool_size: int = 10


@dataclass
class WorkerConfig:
    """Polling, batching and retry settings from [worker]."""

    name: str = "calsync"
    batch_size: int = 10
    poll_interval_s: float = 5.0
    max_attempts: int = 5
    base_backoff_s: float = 1.0
    max_backoff_s: float = 3600.0
    max_parallel: int = 1
    recover_processing_after_s: float = 300.0
    shutdown_timeout_s: float = 30.0


@dataclass
class ProviderConfig:
    """Google OAuth client and HTTP settings from [provider]."""

    client_id: str | None = None
    client_secret: str | None = None
    timeout_s: float = 30.0
    rate_limit_retries: int = 0


@dataclass
class RetentionConfig:
    older_than_days: int = 30


@dataclass
class RebuildConfig:
    """Where REBUILD_ALL reads active entities from; unset disables recreation."""

    source_relation: str | None = None


@dataclass
class CalsyncConfig:
    """Parsed and validated configuration."""

    worker: WorkerConfig = field(default_factory=WorkerConfig)
    db: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    rebuild: RebuildConfig = field(default_factory=RebuildConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _section(data: dict[str, Any], key: str, path: str) -> dict[str, Any]:
    section = data.get(key, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{path}] must be a TOML table")
    return section


def _number(
    section: dict[str, Any],
    key: str,
    default: float,
    path: str,
    *,
    cast: type = int,
    minimum: float = 1,
) -> Any:
    raw = section.get(key, default)
    if isinstance(raw, bool):
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a number.")
    try:
        value = cast(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a number.") from exc
    if value < minimum:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be >= {minimum}.")
    return value


def _optional_str(section: dict[str, Any], key: str, path: str) -> str | None:
    raw = section.get(key)
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise ConfigError(f"{path}.{key} must be a string when set")
    normalized = raw.strip()
    return normalized or None


def _parse_worker(section: dict[str, Any]) -> WorkerConfig:
    name = str(section.get("name", "calsync")).strip()
    if not name:
        raise ConfigError("worker.name must be a non-empty string")

    worker = WorkerConfig(
        name=name,
        batch_size=_number(section, "batch_size", 10, "worker"),
        poll_interval_s=_number(
            section, "poll_interval_s", 5.0, "worker", cast=float, minimum=0.01
        ),
        max_attempts=_number(section, "max_attempts", 5, "worker"),
        base_backoff_s=_number(
            section, "base_backoff_s", 1.0, "worker", cast=float, minimum=0.001
        ),
        max_backoff_s=_number(
            section, "max_backoff_s", 3600.0, "worker", cast=float, minimum=0.001
        ),
        max_parallel=_number(section, "max_parallel", 1, "worker"),
        recover_processing_after_s=_number(
            section, "recover_processing_after_s", 300.0, "worker", cast=float, minimum=1
        ),
        shutdown_timeout_s=_number(
            section, "shutdown_timeout_s", 30.0, "worker", cast=float, minimum=0.01
        ),
    )
    if worker.max_backoff_s < worker.base_backoff_s:
        raise ConfigError(
            f"Invalid worker.max_backoff_s: {worker.max_backoff_s!r}. "
            "Must be >= worker.base_backoff_s."
        )
    return worker


def _parse_db(section: dict[str, Any]) -> DatabaseConfig:
    schema = _optional_str(section, "schema", "worker.db")
    if schema is not None and _DB_SCHEMA_PATTERN.fullmatch(schema) is None:
        raise ConfigError(
            f"Invalid worker.db.schema: {schema!r}. Expected a valid SQL identifier-style value."
        )
    db = DatabaseConfig(
        name=_optional_str(section, "name", "worker.db"),
        schema=schema,
        min_pool_size=_number(section, "min_pool_size", 2, "worker.db"),
        max_pool_size=_number(section, "max_pool_size", 10, "worker.db"),
    )
    if db.max_pool_size < db.min_pool_size:
        raise ConfigError("worker.db.max_pool_size must be >= worker.db.min_pool_size")
    return db


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid worker.logging.format: {log_format!r}. Expected 'text' or 'json'."
        )
    return LoggingConfig(
        level=str(section.get("level", "INFO")).upper(),
        format=log_format,
        log_root=_optional_str(section, "log_root", "worker.logging"),
    )


def parse_config(data: dict[str, Any]) -> CalsyncConfig:
    """Validate an already-decoded TOML document."""
    data = resolve_env_vars(data)

    worker_section = _section(data, "worker", "worker")
    provider_section = _section(data, "provider", "provider")
    retention_section = _section(data, "retention", "retention")
    rebuild_section = _section(data, "rebuild", "rebuild")

    worker = _parse_worker(worker_section)
    db = _parse_db(_section(worker_section, "db", "worker.db"))
    # Each in-flight item pins one pooled connection for its advisory lock and
    # needs another for its queue updates.
    if worker.max_parallel >= db.max_pool_size:
        raise ConfigError(
            f"Invalid worker.max_parallel: {worker.max_parallel}. "
            f"Must be < worker.db.max_pool_size ({db.max_pool_size})."
        )

    return CalsyncConfig(
        worker=worker,
        db=db,
        logging=_parse_logging(_section(worker_section, "logging", "worker.logging")),
        provider=ProviderConfig(
            client_id=_optional_str(provider_section, "client_id", "provider"),
            client_secret=_optional_str(provider_section, "client_secret", "provider"),
            timeout_s=_number(
                provider_section, "timeout_s", 30.0, "provider", cast=float, minimum=0.1
            ),
            rate_limit_retries=_number(
                provider_section, "rate_limit_retries", 0, "provider", minimum=0
            ),
        ),
        retention=RetentionConfig(
            older_than_days=_number(retention_section, "older_than_days", 30, "retention"),
        ),
        rebuild=RebuildConfig(
            source_relation=_optional_str(rebuild_section, "source_relation", "rebuild"),
        ),
    )


def load_config(path: Path) -> CalsyncConfig:
    """Load and validate ``calsync.toml``.

    Parameters
    ----------
    path:
        The TOML file itself, or a directory containing ``calsync.toml``.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or has invalid values.
    """
    toml_path = path / CONFIG_FILENAME if path.is_dir() else path

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
