"""
Target connector.

Idempotent writes to the target PostgreSQL store: upsert by primary key and
delete by primary key.
"""

import logging
from typing import Any

import psycopg2.extras
from opentelemetry import trace
from psycopg2 import sql

from src.utils.db_pool import PostgresConnectionPool
from src.utils.sql_safety import qualified_table
from src.utils.tracing import trace_operation

from ..registry import TableSpec

logger = logging.getLogger(__name__)


JSON_TYPES = ("json", "jsonb")

JSON_COLUMNS_QUERY = """
SELECT column_name
FROM information_schema.columns
WHERE table_schema = %s AND table_name = %s AND data_type IN %s
"""


def _adapt(value: Any, json_column: bool = False) -> Any:
    # json/jsonb values arrive as dicts, lists or scalars; arrays stay arrays elsewhere
    if value is None:
        return None
    if json_column or isinstance(value, dict):
        return psycopg2.extras.Json(value)
    return value


def dedupe_by_key(table: TableSpec, rows: list[dict]) -> list[dict]:
    """
    Keep the last row per primary key, preserving first-seen order.

    A single INSERT ... ON CONFLICT cannot touch the same key twice.
    """
    by_key: dict[tuple, dict] = {}
    for row in rows:
        key = tuple(row[pk] for pk in table.primary_keys)
        by_key[key] = row
    return list(by_key.values())


class TargetConnector:
    """Write side of replication."""

    def __init__(self, pool: PostgresConnectionPool, page_size: int = 500):
        self.pool = pool
        self.page_size = page_size
        self._json_columns: dict[str, frozenset[str]] = {}

    def upsert_rows(self, table: TableSpec, rows: list[dict]) -> int:
        """
        INSERT ... ON CONFLICT (pk) DO UPDATE for every row.

        Rows are grouped by column set so partial rows only overwrite the
        columns they carry.

        Returns:
            Number of rows sent
        """
        if not rows:
            return 0

        rows = dedupe_by_key(table, rows)
        groups: dict[tuple[str, ...], list[dict]] = {}
        for row in rows:
            groups.setdefault(tuple(row.keys()), []).append(row)

        with trace_operation(
            "upsert_rows",
            kind=trace.SpanKind.CLIENT,
            db_role="target",
            table=table.key,
            rows=len(rows),
        ):
            with self.pool.acquire() as conn:
                with conn.cursor() as cursor:
                    json_columns = self._json_columns_of(table, cursor)
                    for columns, group in groups.items():
                        query = self._upsert_statement(table, columns)
                        values = [
                            tuple(_adapt(row[c], c in json_columns) for c in columns)
                            for row in group
                        ]
                        psycopg2.extras.execute_values(
                            cursor, query, values, page_size=self.page_size
                        )

        return len(rows)

    def delete_row(self, table: TableSpec, key: dict[str, Any]) -> int:
        """
        DELETE the row matching every primary key field.

        Returns:
            Number of rows deleted (0 when the row was already gone)
        """
        predicate = sql.SQL(" AND ").join(
            sql.SQL("{} = %s").format(sql.Identifier(pk)) for pk in table.primary_keys
        )
        query = sql.SQL("DELETE FROM {} WHERE {}").format(
            qualified_table(table.schema, table.name),
            predicate,
        )

        with trace_operation(
            "delete_row",
            kind=trace.SpanKind.CLIENT,
            db_role="target",
            table=table.key,
        ):
            with self.pool.acquire() as conn:
                with conn.cursor() as cursor:
                    cursor.execute(query, tuple(key[pk] for pk in table.primary_keys))
                    return cursor.rowcount

    def _json_columns_of(self, table: TableSpec, cursor: Any) -> frozenset[str]:
        """json/jsonb columns of the target table, looked up once per table."""
        cached = self._json_columns.get(table.key)
        if cached is not None:
            return cached

        cursor.execute(JSON_COLUMNS_QUERY, (table.schema, table.name, JSON_TYPES))
        found = frozenset(row[0] for row in cursor.fetchall())
        self._json_columns[table.key] = found
        if found:
            logger.debug(f"[{table.key}] JSON columns: {', '.join(sorted(found))}")
        return found

    def _upsert_statement(self, table: TableSpec, columns: tuple[str, ...]) -> sql.Composed:
        updates = [c for c in columns if c not in table.primary_keys]
        if updates:
            conflict_action = sql.SQL("DO UPDATE SET {}").format(
                sql.SQL(", ").join(
                    sql.SQL("{0} = EXCLUDED.{0}").format(sql.Identifier(c)) for c in updates
                )
            )
        else:
            conflict_action = sql.SQL("DO NOTHING")

        return sql.SQL("INSERT INTO {table} ({columns}) VALUES %s ON CONFLICT ({keys}) {action}").format(
            table=qualified_table(table.schema, table.name),
            columns=sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            keys=sql.SQL(", ").join(sql.Identifier(pk) for pk in table.primary_keys),
            action=conflict_action,
        )
