"""Calendar sync configuration loading and validation.

Reads a ``calsync.toml`` file, resolves ``${VAR}`` environment references in
string values, and returns a validated :class:`SyncConfig` dataclass.  Every
setting has a default, so a missing file yields a runnable configuration.

Example ``calsync.toml``::

    [database]
    name = "bookings"

    [logging]
    level = "INFO"
    format = "json"

    [oauth]
    state_secret = "${CALSYNC_OAUTH_STATE_SECRET}"

    [oauth.google]
    client_id = "${GOOGLE_CALENDAR_CLIENT_ID}"
    client_secret = "${GOOGLE_CALENDAR_CLIENT_SECRET}"

    [sync]
    refresh_window_minutes = 15
    deactivation_grace_hours = 24

    [jobs]
    max_attempts = 3

    [schedule]
    token_refresh_cron = "*/10 * * * *"
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from croniter import croniter

from calsync.db import db_params_from_env

# Matches ${VAR_NAME} references.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_VALID_LOG_FORMATS = {"text", "json"}

DEFAULT_DB_NAME = "calsync"

# Booking lock connection plus work connection.
CONNECTIONS_PER_JOB = 2


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class DatabaseConfig:
    """Connection settings from the [database] section."""

    name: str = DEFAULT_DB_NAME
    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = "postgres"
    ssl: str | None = None
    min_pool_size: int = 2
    max_pool_size: int = 10


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class OAuthClientConfig:
    """OAuth client credentials for one provider ([oauth.google], [oauth.microsoft])."""

    client_id: str | None = None
    client_secret: str | None = None

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def __repr__(self) -> str:
        return (
            f"OAuthClientConfig(client_id={self.client_id!r}, "
            f"client_secret={'***' if self.client_secret else None})"
        )


@dataclass
class OAuthConfig:
    """OAuth settings from the [oauth] section."""

    state_secret: str | None = None
    state_max_age_seconds: int = 15 * 60
    google: OAuthClientConfig = field(default_factory=OAuthClientConfig)
    microsoft: OAuthClientConfig = field(default_factory=OAuthClientConfig)


@dataclass
class SyncSettings:
    """Coordinator and token refresh tuning from the [sync] section."""

    refresh_window_minutes: int = 15
    deactivation_grace_hours: int = 24
    import_window_days: int = 30
    http_timeout_seconds: float = 30.0
    http_connect_timeout_seconds: float = 10.0
    retry_failed_limit: int = 50
    max_mapping_attempts: int = 5
    statistics_window_hours: int = 24


@dataclass
class JobSettings:
    """Job retry and worker settings from the [jobs] section."""

    max_attempts: int = 3
    base_delay_seconds: float = 30.0
    max_delay_seconds: float = 600.0
    import_interval_min_hours: float = 4.0
    import_interval_max_hours: float = 6.0
    worker_concurrency: int = 4


@dataclass
class ScheduleSettings:
    """Cron expressions for the periodic sweeps from the [schedule] section."""

    token_refresh_cron: str = "*/10 * * * *"
    schedule_imports_cron: str = "0 */4 * * *"
    retry_failed_cron: str | None = None


@dataclass
class SyncConfig:
    """Top-level configuration for the calendar sync subsystem."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    oauth: OAuthConfig = field(default_factory=OAuthConfig)
    sync: SyncSettings = field(default_factory=SyncSettings)
    jobs: JobSettings = field(default_factory=JobSettings)
    schedule: ScheduleSettings = field(default_factory=ScheduleSettings)

    @classmethod
    def from_env(cls) -> SyncConfig:
        """Build a default configuration from environment variables.

        Database params come from ``DATABASE_URL`` (or ``POSTGRES_*``); OAuth
        client credentials from ``GOOGLE_CALENDAR_CLIENT_ID`` /
        ``GOOGLE_CALENDAR_CLIENT_SECRET`` and ``MICROSOFT_CLIENT_ID`` /
        ``MICROSOFT_CLIENT_SECRET``.
        """
        params = db_params_from_env()
        database = DatabaseConfig(
            name=os.environ.get("CALSYNC_DB_NAME", DEFAULT_DB_NAME),
            host=str(params["host"]),
            port=int(params["port"]),
            user=str(params["user"]),
            password=str(params["password"]),
            ssl=params["ssl"] if isinstance(params["ssl"], str) else None,
        )
        oauth = OAuthConfig(
            state_secret=os.environ.get("CALSYNC_OAUTH_STATE_SECRET") or None,
            google=OAuthClientConfig(
                client_id=os.environ.get("GOOGLE_CALENDAR_CLIENT_ID") or None,
                client_secret=os.environ.get("GOOGLE_CALENDAR_CLIENT_SECRET") or None,
            ),
            microsoft=OAuthClientConfig(
                client_id=os.environ.get("MICROSOFT_CLIENT_ID") or None,
                client_secret=os.environ.get("MICROSOFT_CLIENT_SECRET") or None,
            ),
        )
        return cls(database=database, oauth=oauth)


# ---------------------------------------------------------------------------
# Environment variable resolution
# ---------------------------------------------------------------------------


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Strings have each reference replaced by the variable's value; dicts and
    lists are walked recursively; other types pass through unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, str):
        return _resolve_string(value)
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]
    return value


def _resolve_string(s: str) -> str:
    missing: list[str] = []

    def _replace(match: re.Match[str]) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    resolved = _ENV_VAR_PATTERN.sub(_replace, s)
    if missing:
        raise ConfigError(f"Environment variable(s) not set: {', '.join(sorted(set(missing)))}")
    return resolved


# ---------------------------------------------------------------------------
# Section parsers
# ---------------------------------------------------------------------------


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name, {})
    if not isinstance(value, dict):
        raise ConfigError(f"[{name}] must be a table")
    return value


def _positive_int(section: str, key: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigError(f"{section}.{key} must be a positive integer, got {value!r}")
    return value


def _positive_number(section: str, key: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, int | float) or value <= 0:
        raise ConfigError(f"{section}.{key} must be a positive number, got {value!r}")
    return float(value)


def _validate_cron(section: str, key: str, value: Any) -> str:
    if not isinstance(value, str) or not croniter.is_valid(value):
        raise ConfigError(f"{section}.{key} is not a valid cron expression: {value!r}")
    return value


def _parse_database(raw: dict[str, Any]) -> DatabaseConfig:
    defaults = DatabaseConfig()
    port = raw.get("port", defaults.port)
    return DatabaseConfig(
        name=str(raw.get("name", defaults.name)),
        host=str(raw.get("host", defaults.host)),
        port=_positive_int("database", "port", port),
        user=str(raw.get("user", defaults.user)),
        password=str(raw.get("password", defaults.password)),
        ssl=raw.get("ssl"),
        min_pool_size=_positive_int(
            "database", "min_pool_size", raw.get("min_pool_size", defaults.min_pool_size)
        ),
        max_pool_size=_positive_int(
            "database", "max_pool_size", raw.get("max_pool_size", defaults.max_pool_size)
        ),
    )


def _parse_logging(raw: dict[str, Any]) -> LoggingConfig:
    fmt = str(raw.get("format", "text")).lower()
    if fmt not in _VALID_LOG_FORMATS:
        raise ConfigError(f"logging.format must be one of {sorted(_VALID_LOG_FORMATS)}")
    return LoggingConfig(
        level=str(raw.get("level", "INFO")).upper(),
        format=fmt,
        log_root=raw.get("log_root"),
    )


def _parse_oauth(raw: dict[str, Any]) -> OAuthConfig:
    def _client(name: str) -> OAuthClientConfig:
        section = raw.get(name, {})
        if not isinstance(section, dict):
            raise ConfigError(f"[oauth.{name}] must be a table")
        return OAuthClientConfig(
            client_id=section.get("client_id") or None,
            client_secret=section.get("client_secret") or None,
        )

    max_age = raw.get("state_max_age_seconds", OAuthConfig().state_max_age_seconds)
    return OAuthConfig(
        state_secret=raw.get("state_secret") or None,
        state_max_age_seconds=_positive_int("oauth", "state_max_age_seconds", max_age),
        google=_client("google"),
        microsoft=_client("microsoft"),
    )


def _parse_sync(raw: dict[str, Any]) -> SyncSettings:
    d = SyncSettings()
    return SyncSettings(
        refresh_window_minutes=_positive_int(
            "sync", "refresh_window_minutes", raw.get("refresh_window_minutes", d.refresh_window_minutes)
        ),
        deactivation_grace_hours=_positive_int(
            "sync",
            "deactivation_grace_hours",
            raw.get("deactivation_grace_hours", d.deactivation_grace_hours),
        ),
        import_window_days=_positive_int(
            "sync", "import_window_days", raw.get("import_window_days", d.import_window_days)
        ),
        http_timeout_seconds=_positive_number(
            "sync", "http_timeout_seconds", raw.get("http_timeout_seconds", d.http_timeout_seconds)
        ),
        http_connect_timeout_seconds=_positive_number(
            "sync",
            "http_connect_timeout_seconds",
            raw.get("http_connect_timeout_seconds", d.http_connect_timeout_seconds),
        ),
        retry_failed_limit=_positive_int(
            "sync", "retry_failed_limit", raw.get("retry_failed_limit", d.retry_failed_limit)
        ),
        max_mapping_attempts=_positive_int(
            "sync", "max_mapping_attempts", raw.get("max_mapping_attempts", d.max_mapping_attempts)
        ),
        statistics_window_hours=_positive_int(
            "sync",
            "statistics_window_hours",
            raw.get("statistics_window_hours", d.statistics_window_hours),
        ),
    )


def _parse_jobs(raw: dict[str, Any]) -> JobSettings:
    d = JobSettings()
    settings = JobSettings(
        max_attempts=_positive_int("jobs", "max_attempts", raw.get("max_attempts", d.max_attempts)),
        base_delay_seconds=_positive_number(
            "jobs", "base_delay_seconds", raw.get("base_delay_seconds", d.base_delay_seconds)
        ),
        max_delay_seconds=_positive_number(
            "jobs", "max_delay_seconds", raw.get("max_delay_seconds", d.max_delay_seconds)
        ),
        import_interval_min_hours=_positive_number(
            "jobs",
            "import_interval_min_hours",
            raw.get("import_interval_min_hours", d.import_interval_min_hours),
        ),
        import_interval_max_hours=_positive_number(
            "jobs",
            "import_interval_max_hours",
            raw.get("import_interval_max_hours", d.import_interval_max_hours),
        ),
        worker_concurrency=_positive_int(
            "jobs", "worker_concurrency", raw.get("worker_concurrency", d.worker_concurrency)
        ),
    )
    if settings.import_interval_min_hours > settings.import_interval_max_hours:
        raise ConfigError("jobs.import_interval_min_hours must not exceed import_interval_max_hours")
    if settings.base_delay_seconds > settings.max_delay_seconds:
        raise ConfigError("jobs.base_delay_seconds must not exceed max_delay_seconds")
    return settings


def _parse_schedule(raw: dict[str, Any]) -> ScheduleSettings:
    d = ScheduleSettings()
    retry_cron = raw.get("retry_failed_cron", d.retry_failed_cron)
    return ScheduleSettings(
        token_refresh_cron=_validate_cron(
            "schedule", "token_refresh_cron", raw.get("token_refresh_cron", d.token_refresh_cron)
        ),
        schedule_imports_cron=_validate_cron(
            "schedule",
            "schedule_imports_cron",
            raw.get("schedule_imports_cron", d.schedule_imports_cron),
        ),
        retry_failed_cron=(
            _validate_cron("schedule", "retry_failed_cron", retry_cron) if retry_cron else None
        ),
    )


def validate_pool_capacity(config: SyncConfig) -> None:
    """Check the pool can serve every concurrent job.

    A running sync holds the booking lock on one connection and does its work
    (token refresh, mapping writes) on another, so the pool needs
    ``CONNECTIONS_PER_JOB`` connections per worker slot.

    Raises
    ------
    ConfigError
        If the pool bounds are inconsistent or too small.
    """
    db, jobs = config.database, config.jobs
    if db.min_pool_size > db.max_pool_size:
        raise ConfigError("database.min_pool_size must not exceed database.max_pool_size")
    needed = jobs.worker_concurrency * CONNECTIONS_PER_JOB
    if db.max_pool_size < needed:
        raise ConfigError(
            f"database.max_pool_size={db.max_pool_size} cannot serve "
            f"jobs.worker_concurrency={jobs.worker_concurrency} "
            f"(needs at least {needed} connections)"
        )


def parse_config(raw: dict[str, Any]) -> SyncConfig:
    """Validate an already-decoded TOML mapping into a :class:`SyncConfig`."""
    resolved = resolve_env_vars(raw)
    config = SyncConfig(
        database=_parse_database(_section(resolved, "database")),
        logging=_parse_logging(_section(resolved, "logging")),
        oauth=_parse_oauth(_section(resolved, "oauth")),
        sync=_parse_sync(_section(resolved, "sync")),
        jobs=_parse_jobs(_section(resolved, "jobs")),
        schedule=_parse_schedule(_section(resolved, "schedule")),
    )
    validate_pool_capacity(config)
    return config


def load_config(path: Path | str | None = None) -> SyncConfig:
    """Load configuration from a TOML file.

    When *path* is ``None`` or does not exist, the defaults are returned.

    Raises
    ------
    ConfigError
        If the file cannot be parsed or contains invalid values.
    """
    if path is None:
        return SyncConfig()
    config_path = Path(path)
    if not config_path.exists():
        return SyncConfig()
    try:
        with config_path.open("rb") as fh:
            raw = tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {config_path}: {exc}") from exc
    return parse_config(raw)
