"""
Worker settings.

Resolution order, lowest to highest precedence: built-in defaults, the JSON
table configuration file, environment variables (optionally loaded from a
dotenv file), command-line flags.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

import jsonschema
from dotenv import load_dotenv

from src.utils.sql_safety import validate_identifier, validate_integer_param

from .errors import ConfigurationError
from .registry import TableSpec, build_table_specs

logger = logging.getLogger(__name__)

DEFAULT_ENV_PATH = ".env.sync"
DEFAULT_TABLE_CONFIG = "sync/tables.config.json"
DEFAULT_STATE_PATH = "sync/.sync-state.json"
DEFAULT_DELETION_LOG_TABLE = "sync_deletions"

REQUIRED_ENV_VARS = [
    "SYNC_SOURCE_DATABASE_URL",
    "SYNC_SOURCE_SERVICE_KEY",
    "SYNC_TARGET_DATABASE_URL",
    "SYNC_TARGET_SERVICE_KEY",
]

RECONCILE_MODES = {"reconcile", "cron", "once"}

_TABLE_ENTRY_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": "string", "minLength": 1},
        "schema": {"type": "string", "minLength": 1},
        "primaryKeys": {"type": "array", "items": {"type": "string"}},
        "realtime": {"type": "boolean"},
        "reconcile": {"type": "boolean"},
        "realtimeEnabled": {"type": "boolean"},
        "reconcileEnabled": {"type": "boolean"},
        "incrementalFields": {
            "oneOf": [
                {"type": "string"},
                {"type": "array", "items": {"type": "string"}},
            ]
        },
        "skip": {"type": "boolean"},
    },
}

CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "defaults": {
            **_TABLE_ENTRY_SCHEMA,
            "not": {"required": ["name"]},
        },
        "tables": {
            "type": "array",
            "items": {**_TABLE_ENTRY_SCHEMA, "required": ["name"]},
        },
        "reconciliation": {
            "type": "object",
            "properties": {
                "batchSize": {"type": "integer", "minimum": 1},
                "intervalMs": {"type": "integer", "minimum": 0},
                "lookbackMs": {"type": "integer", "minimum": 0},
                "initialBackfillMs": {"type": "integer", "minimum": 0},
            },
        },
        "deletionLog": {
            "type": "object",
            "properties": {
                "enabled": {"type": "boolean"},
                "schema": {"type": "string", "minLength": 1},
                "table": {"type": "string", "minLength": 1},
            },
        },
    },
    "required": ["tables"],
}


@dataclass
class Credentials:
    """Connection URL plus the service credential used as its password."""

    url: str
    service_key: str

    def __repr__(self) -> str:
        return f"Credentials(url={self.url!r}, service_key='***')"


@dataclass
class ReconciliationOptions:
    batch_size: int = 500
    interval_ms: int = 30_000
    lookback_ms: int = 5 * 60_000
    initial_backfill_ms: int = 24 * 60 * 60_000


@dataclass
class DeletionLogOptions:
    enabled: bool = True
    schema: str = "public"
    table: str = DEFAULT_DELETION_LOG_TABLE

    @property
    def key(self) -> str:
        return f"{self.schema}:{self.table}"


@dataclass
class Settings:
    source: Credentials
    target: Credentials
    tables: list[TableSpec]
    reconciliation: ReconciliationOptions = field(default_factory=ReconciliationOptions)
    deletion_log: DeletionLogOptions = field(default_factory=DeletionLogOptions)
    config_path: Path = Path(DEFAULT_TABLE_CONFIG)
    state_path: Path = Path(DEFAULT_STATE_PATH)
    mode: str = "default"
    realtime: bool = True
    loop: bool = True
    metrics_port: Optional[int] = None
    retry_attempts: int = 5
    retry_base_delay: float = 0.5
    shutdown_grace_seconds: float = 5.0

    @property
    def run_realtime(self) -> bool:
        return self.mode == "default" and self.realtime

    @property
    def run_reconciliation_loop(self) -> bool:
        return self.mode == "default" and self.loop

    @property
    def run_single_reconciliation(self) -> bool:
        return self.mode == "reconcile"


def load_env_file(environ: Mapping[str, str] = os.environ) -> Optional[Path]:
    """
    Load SYNC_ENV_PATH (default .env.sync) into os.environ if it exists.

    Variables already set in the environment win over the file.
    """
    env_path = Path(environ.get("SYNC_ENV_PATH", DEFAULT_ENV_PATH))
    if env_path.exists():
        load_dotenv(env_path, override=False)
        logger.debug(f"Loaded environment from {env_path}")
        return env_path
    return None


def _env_flag(environ: Mapping[str, str], name: str, default: bool = True) -> bool:
    value = environ.get(name)
    if value is None or value == "":
        return default
    return value.strip().lower() != "false"


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    value = environ.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        parsed = int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")
    try:
        validate_integer_param(parsed, name)
    except ValueError as e:
        raise ConfigurationError(str(e)) from e
    return parsed


def credentials_from_env(environ: Mapping[str, str]) -> tuple[Credentials, Credentials]:
    """
    Read source and target credentials.

    Raises:
        ConfigurationError: Listing every missing variable
    """
    missing = [name for name in REQUIRED_ENV_VARS if not environ.get(name)]
    if missing:
        raise ConfigurationError(
            f"Missing required environment variables: {', '.join(missing)}. "
            f"Copy sync/env.sync.example to {DEFAULT_ENV_PATH} and fill in your credentials."
        )

    return (
        Credentials(environ["SYNC_SOURCE_DATABASE_URL"], environ["SYNC_SOURCE_SERVICE_KEY"]),
        Credentials(environ["SYNC_TARGET_DATABASE_URL"], environ["SYNC_TARGET_SERVICE_KEY"]),
    )


def credentials_from_vault(vault_client: Any) -> tuple[Credentials, Credentials]:
    """Read source and target credentials from Vault (secret/sync/{source,target})."""
    source = vault_client.get_sync_credentials("source")
    target = vault_client.get_sync_credentials("target")
    return (
        Credentials(source["url"], source["service_key"]),
        Credentials(target["url"], target["service_key"]),
    )


def load_table_config(path: Path) -> dict[str, Any]:
    """
    Read and validate the JSON table configuration.

    Raises:
        ConfigurationError: If the file is missing, not JSON, or fails validation
    """
    if not path.exists():
        raise ConfigurationError(f"Could not find tables config at {path}")

    try:
        with open(path, encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot read tables config {path}: {e}") from e

    try:
        jsonschema.validate(instance=raw, schema=CONFIG_SCHEMA)
    except jsonschema.exceptions.ValidationError as e:
        location = "/".join(str(p) for p in e.absolute_path) or "<root>"
        raise ConfigurationError(f"Invalid tables config {path} at {location}: {e.message}") from e

    return raw


def resolve_mode(flags: Any, environ: Mapping[str, str]) -> tuple[str, bool, bool]:
    """
    Work out (mode, realtime, loop) from SYNC_MODE/SYNC_REALTIME/SYNC_LOOP and flags.

    --reconcile-only, --cron and --once select the single-pass mode; --default
    forces the default mode; --once also disables the loop.
    """
    env_mode = environ.get("SYNC_MODE", "").strip().lower()
    mode = "default"
    if env_mode in RECONCILE_MODES:
        mode = "reconcile"
    elif env_mode not in ("", "default"):
        logger.warning(f"Unknown SYNC_MODE {env_mode!r}; using default mode")

    if getattr(flags, "reconcile_only", False) or getattr(flags, "cron", False) or getattr(flags, "once", False):
        mode = "reconcile"
    if getattr(flags, "default", False):
        mode = "default"

    realtime = _env_flag(environ, "SYNC_REALTIME") and not getattr(flags, "no_realtime", False)
    loop = _env_flag(environ, "SYNC_LOOP") and not getattr(flags, "once", False)

    return mode, realtime, loop


def load_settings(
    flags: Any = None,
    environ: Optional[Mapping[str, str]] = None,
    vault_client: Any = None,
) -> Settings:
    """
    Build Settings from flags, environment and the table configuration file.

    Args:
        flags: Parsed CLI namespace (attributes are optional)
        environ: Environment mapping (default: os.environ)
        vault_client: When given, credentials are read from Vault instead of the environment

    Raises:
        ConfigurationError: On any missing or invalid setting
    """
    environ = os.environ if environ is None else environ

    if vault_client is not None:
        try:
            source, target = credentials_from_vault(vault_client)
        except Exception as e:
            raise ConfigurationError(f"Failed to fetch credentials from Vault: {e}") from e
    else:
        source, target = credentials_from_env(environ)

    config_path = Path(environ.get("SYNC_TABLE_CONFIG") or DEFAULT_TABLE_CONFIG)
    raw = load_table_config(config_path)

    tables = build_table_specs(raw.get("tables", []), raw.get("defaults"))

    file_options = raw.get("reconciliation") or {}
    defaults = ReconciliationOptions()
    reconciliation = ReconciliationOptions(
        batch_size=_env_int(environ, "SYNC_RECONCILE_BATCH_SIZE", file_options.get("batchSize", defaults.batch_size)),
        interval_ms=_env_int(environ, "SYNC_RECONCILE_INTERVAL_MS", file_options.get("intervalMs", defaults.interval_ms)),
        lookback_ms=_env_int(environ, "SYNC_RECONCILE_LOOKBACK_MS", file_options.get("lookbackMs", defaults.lookback_ms)),
        initial_backfill_ms=_env_int(
            environ, "SYNC_INITIAL_BACKFILL_MS", file_options.get("initialBackfillMs", defaults.initial_backfill_ms)
        ),
    )
    try:
        validate_integer_param(reconciliation.batch_size, "batchSize", min_value=1)
    except ValueError as e:
        raise ConfigurationError(str(e)) from e

    log_options = raw.get("deletionLog") or {}
    deletion_log = DeletionLogOptions(
        enabled=log_options.get("enabled", True),
        schema=log_options.get("schema", "public"),
        table=log_options.get("table", DEFAULT_DELETION_LOG_TABLE),
    )
    try:
        validate_identifier(deletion_log.schema)
        validate_identifier(deletion_log.table)
    except ValueError as e:
        raise ConfigurationError(f"deletionLog: {e}") from e

    mode, realtime, loop = resolve_mode(flags, environ)

    metrics_port = getattr(flags, "metrics_port", None)
    if metrics_port is None:
        metrics_port = _env_int(environ, "SYNC_METRICS_PORT", 0) or None

    return Settings(
        source=source,
        target=target,
        tables=tables,
        reconciliation=reconciliation,
        deletion_log=deletion_log,
        config_path=config_path,
        state_path=Path(environ.get("SYNC_STATE_PATH") or DEFAULT_STATE_PATH),
        mode=mode,
        realtime=realtime,
        loop=loop,
        metrics_port=metrics_port,
    )
