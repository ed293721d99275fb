"""
Table registry.

Turns raw table configuration into TableSpec objects and resolves how each
table can be reconciled by probing the source.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, Optional

from src.utils.retry import RetryPolicy
from src.utils.sql_safety import validate_identifier

from .errors import ColumnNotFoundError, ConfigurationError, MissingPrimaryKeyError, TableNotFoundError

logger = logging.getLogger(__name__)

PRIMARY_SCHEMA = "public"

DEFAULT_INCREMENTAL_FIELDS = ["updated_at", "created_at"]

TABLE_DEFAULTS: dict[str, Any] = {
    "schema": PRIMARY_SCHEMA,
    "primaryKeys": [],
    "realtime": True,
    "reconcile": True,
    "incrementalFields": DEFAULT_INCREMENTAL_FIELDS,
    "skip": False,
}


@dataclass
class TableSpec:
    """
    One replicated table.

    Configuration fields are fixed at startup. `active` and
    `incremental_field` are resolved by TableRegistry.resolve(); `pending`
    marks a table whose probes failed for a reason other than its schema.
    """

    name: str
    schema: str = PRIMARY_SCHEMA
    primary_keys: list[str] = field(default_factory=list)
    realtime_enabled: bool = True
    reconcile_enabled: bool = True
    incremental_fields: list[str] = field(default_factory=lambda: list(DEFAULT_INCREMENTAL_FIELDS))
    active: bool = True
    incremental_field: Optional[str] = None
    pending: bool = False

    @property
    def key(self) -> str:
        """State and lookup key, `schema:name`."""
        return f"{self.schema}:{self.name}"

    @property
    def full_scan(self) -> bool:
        return self.incremental_field is None

    @property
    def mode(self) -> str:
        return "full" if self.full_scan else "incremental"

    def key_for(self, row: Optional[dict[str, Any]]) -> dict[str, Any]:
        """
        Extract the primary key of a row.

        Raises:
            MissingPrimaryKeyError: If the table has no primary keys or the row
                lacks any of them
        """
        if not self.primary_keys:
            raise MissingPrimaryKeyError(self.key, ["<no primaryKeys configured>"])
        if not isinstance(row, dict):
            raise MissingPrimaryKeyError(self.key, list(self.primary_keys))

        missing = [pk for pk in self.primary_keys if pk not in row]
        if missing:
            raise MissingPrimaryKeyError(self.key, missing)

        return {pk: row[pk] for pk in self.primary_keys}

    def __str__(self) -> str:
        return self.key


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


def build_table_spec(raw: dict[str, Any], defaults: Optional[dict[str, Any]] = None) -> TableSpec:
    """
    Merge one raw table entry with defaults.

    Accepts `realtime`/`reconcile` or `realtimeEnabled`/`reconcileEnabled`,
    and a single incremental field given as a string.

    Raises:
        ConfigurationError: If the entry has no name or contains an invalid identifier
    """
    merged = {**TABLE_DEFAULTS, **(defaults or {}), **raw}

    name = merged.get("name")
    if not name:
        raise ConfigurationError(f"Table entry without a name: {raw!r}")

    spec = TableSpec(
        name=name,
        schema=merged.get("schema") or PRIMARY_SCHEMA,
        primary_keys=_as_list(merged.get("primaryKeys")),
        realtime_enabled=bool(merged.get("realtimeEnabled", merged.get("realtime", True))),
        reconcile_enabled=bool(merged.get("reconcileEnabled", merged.get("reconcile", True))),
        incremental_fields=_as_list(merged.get("incrementalFields")),
        active=not merged.get("skip", False),
    )

    try:
        for identifier in [spec.name, spec.schema, *spec.primary_keys, *spec.incremental_fields]:
            validate_identifier(identifier)
    except ValueError as e:
        raise ConfigurationError(f"Table {spec.key}: {e}") from e

    return spec


def build_table_specs(
    raw_tables: Iterable[dict[str, Any]],
    defaults: Optional[dict[str, Any]] = None,
) -> list[TableSpec]:
    """Build one TableSpec per configuration entry, rejecting duplicates."""
    specs: list[TableSpec] = []
    seen: set[str] = set()

    for raw in raw_tables:
        spec = build_table_spec(raw, defaults)
        if spec.key in seen:
            raise ConfigurationError(f"Table {spec.key} is configured more than once")
        seen.add(spec.key)
        specs.append(spec)

    return specs


class TableRegistry:
    """The configured tables, keyed by `schema:name`."""

    def __init__(self, tables: Iterable[TableSpec], primary_schema: str = PRIMARY_SCHEMA):
        self.primary_schema = primary_schema
        self._tables: dict[str, TableSpec] = {}
        for table in tables:
            self._tables[table.key] = table

    def __iter__(self) -> Iterator[TableSpec]:
        return iter(self._tables.values())

    def __len__(self) -> int:
        return len(self._tables)

    def get(self, key: str) -> Optional[TableSpec]:
        return self._tables.get(key)

    def lookup(self, table_name: str) -> Optional[TableSpec]:
        """
        Resolve a table reference as written in the deletion log.

        Accepts `schema:name`, `schema.name` or a bare name in the primary schema.
        """
        if not table_name:
            return None

        for separator in (":", "."):
            if separator in table_name:
                schema, name = table_name.split(separator, 1)
                return self._tables.get(f"{schema}:{name}")

        return self._tables.get(f"{self.primary_schema}:{table_name}")

    def active_tables(self) -> list[TableSpec]:
        return [t for t in self._tables.values() if t.active]

    def realtime_tables(self) -> list[TableSpec]:
        return [t for t in self._tables.values() if t.active and t.realtime_enabled]

    def reconcile_tables(self) -> list[TableSpec]:
        return [t for t in self._tables.values() if t.active and t.reconcile_enabled and not t.pending]

    def pending_tables(self) -> list[TableSpec]:
        return [t for t in self._tables.values() if t.active and t.pending]

    def resolve(self, source: Any, retry_policy: Optional[RetryPolicy] = None) -> None:
        """
        Probe the source once per table to settle its replication mode.

        Args:
            source: Object with probe_column(table, column) raising
                TableNotFoundError or ColumnNotFoundError for schema problems
            retry_policy: Retries any other probe error. A table whose probes
                still fail stays pending and is probed again by resolve_pending()
        """
        for table in self._tables.values():
            self._resolve_table(table, source, retry_policy)

    def resolve_pending(self, source: Any, retry_policy: Optional[RetryPolicy] = None) -> None:
        """Probe again the tables whose earlier probes failed for a non-schema reason."""
        for table in self.pending_tables():
            self._resolve_table(table, source, retry_policy)

    def _probe(self, table: TableSpec, source: Any, column: str, retry_policy: Optional[RetryPolicy]) -> None:
        if retry_policy is None:
            source.probe_column(table, column)
            return
        retry_policy.call(
            lambda: source.probe_column(table, column),
            f"[{table.key}] probe {column}",
            give_up_on=(TableNotFoundError, ColumnNotFoundError),
        )

    def _resolve_table(self, table: TableSpec, source: Any, retry_policy: Optional[RetryPolicy] = None) -> None:
        if not table.active:
            logger.warning(f"[{table.key}] Replication disabled by configuration (skip)")
            return

        if not table.primary_keys:
            table.active = False
            logger.warning(
                f"[{table.key}] No primaryKeys configured; upserts and deletes are "
                f"impossible, replication disabled"
            )
            return

        try:
            for candidate in table.incremental_fields:
                try:
                    self._probe(table, source, candidate, retry_policy)
                except ColumnNotFoundError as e:
                    logger.warning(f"[{table.key}] Cannot use incremental field \"{candidate}\": {e}")
                    continue

                table.incremental_field = candidate
                table.pending = False
                logger.info(
                    f"[{table.key}] Mode: incremental on \"{candidate}\" "
                    f"(realtime={table.realtime_enabled}, reconcile={table.reconcile_enabled})"
                )
                return

            # No usable incremental field: full scan ordered by primary key
            for pk in table.primary_keys:
                self._probe(table, source, pk, retry_policy)
        except TableNotFoundError:
            table.active = False
            table.pending = False
            logger.warning(f"[{table.key}] Table not found in source; replication disabled")
            return
        except ColumnNotFoundError as e:
            table.active = False
            table.pending = False
            logger.warning(f"[{table.key}] Primary key columns unreadable ({e}); replication disabled")
            return
        except Exception as e:
            table.incremental_field = None
            table.pending = True
            logger.warning(
                f"[{table.key}] Probe failed ({type(e).__name__}: {e}); "
                f"reconciliation deferred until the next cycle"
            )
            return

        table.incremental_field = None
        table.pending = False

        if table.reconcile_enabled:
            logger.warning(
                f"[{table.key}] Mode: full scan ordered by {', '.join(table.primary_keys)} "
                f"(no usable incremental field among {table.incremental_fields})"
            )
        else:
            logger.info(f"[{table.key}] Mode: realtime only (reconcile disabled)")
