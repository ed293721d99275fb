"""
Source connector.

Read access to the source PostgreSQL store: column probes, ordered range
reads, the deletion log, and LISTEN channels for realtime notifications.
"""

import logging
import select
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import psycopg2
import psycopg2.errors
import psycopg2.extras
from opentelemetry import trace
from psycopg2 import sql

from src.utils.db_pool import PostgresConnectionPool, connect
from src.utils.sql_safety import channel_name, qualified_table
from src.utils.tracing import trace_operation

from ..errors import (
    ChannelClosedError,
    ChannelError,
    ChannelTimeoutError,
    ColumnNotFoundError,
    TableNotFoundError,
)
from ..registry import TableSpec

logger = logging.getLogger(__name__)


@dataclass
class DeletionLogEntry:
    """A tombstone written by the source when a row is deleted there."""

    id: int
    table_name: str
    payload: Any
    processed_at: Optional[datetime] = None


class NotifyChannel:
    """
    One LISTEN subscription on a dedicated autocommit connection.

    poll() raises ChannelError when the connection fails,
    ChannelTimeoutError when the heartbeat query does not answer, and
    ChannelClosedError once the connection has been closed.
    """

    def __init__(
        self,
        dsn: str,
        password: Optional[str],
        channel: str,
        heartbeat_interval: float = 30.0,
        connect_timeout: int = 10,
    ):
        self.dsn = dsn
        self.password = password
        self.channel = channel
        self.heartbeat_interval = heartbeat_interval
        self.connect_timeout = connect_timeout
        self._conn = None
        self._last_activity = time.monotonic()

    def open(self) -> None:
        """Connect and LISTEN."""
        try:
            self._conn = connect(self.dsn, self.password, connect_timeout=self.connect_timeout)
            with self._conn.cursor() as cursor:
                cursor.execute(sql.SQL("LISTEN {}").format(sql.Identifier(self.channel)))
        except psycopg2.OperationalError as e:
            self._discard()
            if "timeout" in str(e).lower():
                raise ChannelTimeoutError(f"Timed out subscribing to {self.channel}: {e}") from e
            raise ChannelError(f"Cannot subscribe to {self.channel}: {e}") from e
        except psycopg2.Error as e:
            self._discard()
            raise ChannelError(f"Cannot subscribe to {self.channel}: {e}") from e

        self._last_activity = time.monotonic()

    def poll(self, timeout: float) -> list[str]:
        """Wait up to timeout seconds and return the notification payloads received."""
        if self._conn is None or self._conn.closed:
            raise ChannelClosedError(f"Channel {self.channel} is closed")

        try:
            readable, _, _ = select.select([self._conn], [], [], timeout)
        except (OSError, ValueError) as e:
            raise ChannelClosedError(f"Channel {self.channel} is closed: {e}") from e

        if not readable:
            if time.monotonic() - self._last_activity >= self.heartbeat_interval:
                self._heartbeat()
            return self._drain()

        try:
            self._conn.poll()
        except psycopg2.InterfaceError as e:
            raise ChannelClosedError(f"Channel {self.channel} is closed: {e}") from e
        except psycopg2.OperationalError as e:
            raise ChannelError(f"Channel {self.channel} failed: {e}") from e
        except psycopg2.Error as e:
            raise ChannelError(f"Channel {self.channel} failed: {type(e).__name__}: {e}") from e

        self._last_activity = time.monotonic()
        return self._drain()

    def close(self) -> None:
        """UNLISTEN and close the connection."""
        if self._conn is None or self._conn.closed:
            return
        try:
            with self._conn.cursor() as cursor:
                cursor.execute(sql.SQL("UNLISTEN {}").format(sql.Identifier(self.channel)))
        finally:
            self._discard()

    def _heartbeat(self) -> None:
        try:
            with self._conn.cursor() as cursor:
                cursor.execute("SELECT 1")
                cursor.fetchone()
        except psycopg2.InterfaceError as e:
            raise ChannelClosedError(f"Channel {self.channel} is closed: {e}") from e
        except psycopg2.Error as e:
            raise ChannelTimeoutError(f"Heartbeat on {self.channel} failed: {e}") from e
        self._last_activity = time.monotonic()

    def _drain(self) -> list[str]:
        payloads = [n.payload for n in self._conn.notifies if n.channel == self.channel]
        self._conn.notifies.clear()
        return payloads

    def _discard(self) -> None:
        if self._conn is not None and not self._conn.closed:
            try:
                self._conn.close()
            except psycopg2.Error:
                pass
        self._conn = None


class SourceConnector:
    """
    Read side of replication.

    Reads go through a PostgresConnectionPool; realtime channels open their
    own connections with the same credentials.
    """

    def __init__(
        self,
        pool: PostgresConnectionPool,
        heartbeat_interval: float = 30.0,
    ):
        self.pool = pool
        self.heartbeat_interval = heartbeat_interval

    def _select(self, query: sql.Composable, params: tuple, operation: str, table: str) -> list[dict]:
        with trace_operation(
            operation,
            kind=trace.SpanKind.CLIENT,
            db_role="source",
            table=table,
        ) as span:
            with self.pool.acquire() as conn:
                with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cursor:
                    cursor.execute(query, params)
                    rows = [dict(row) for row in cursor.fetchall()]
            span.set_attribute("rows", len(rows))
            return rows

    def probe_columns(self, schema: str, name: str, columns: list[str]) -> None:
        """
        Run a bounded read of the given columns.

        Raises:
            TableNotFoundError: If schema.name does not exist
            ColumnNotFoundError: If a column does not exist
        """
        query = sql.SQL("SELECT {} FROM {} LIMIT 1").format(
            sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            qualified_table(schema, name),
        )
        try:
            self._select(query, (), "probe_columns", f"{schema}:{name}")
        except psycopg2.errors.UndefinedTable as e:
            raise TableNotFoundError(f"{schema}.{name} does not exist") from e
        except psycopg2.errors.UndefinedColumn as e:
            raise ColumnNotFoundError(f"{schema}.{name}: {e}".strip()) from e

    def probe_column(self, table: TableSpec, column: str) -> None:
        self.probe_columns(table.schema, table.name, [column])

    def fetch_modified_since(
        self,
        table: TableSpec,
        field: str,
        since: datetime,
        offset: int,
        limit: int,
    ) -> list[dict]:
        """Rows with field >= since, ascending by field then primary key."""
        order = [sql.Identifier(field), *(sql.Identifier(pk) for pk in table.primary_keys)]
        query = sql.SQL(
            "SELECT * FROM {table} WHERE {field} >= %s ORDER BY {order} LIMIT %s OFFSET %s"
        ).format(
            table=qualified_table(table.schema, table.name),
            field=sql.Identifier(field),
            order=sql.SQL(", ").join(order),
        )
        return self._select(query, (since, limit, offset), "fetch_modified_since", table.key)

    def fetch_page(self, table: TableSpec, offset: int, limit: int) -> list[dict]:
        """A page of all rows, ascending by primary key."""
        query = sql.SQL("SELECT * FROM {table} ORDER BY {order} LIMIT %s OFFSET %s").format(
            table=qualified_table(table.schema, table.name),
            order=sql.SQL(", ").join(sql.Identifier(pk) for pk in table.primary_keys),
        )
        return self._select(query, (limit, offset), "fetch_page", table.key)

    def fetch_pending_deletions(
        self,
        schema: str,
        log_table: str,
        after_id: Optional[int],
        limit: int,
    ) -> list[DeletionLogEntry]:
        """Unprocessed deletion log entries with id > after_id, ascending by id."""
        conditions = [sql.SQL("processed_at IS NULL")]
        params: list[Any] = []
        if after_id is not None:
            conditions.append(sql.SQL("id > %s"))
            params.append(after_id)
        params.append(limit)

        query = sql.SQL(
            "SELECT id, table_name, payload FROM {log} WHERE {where} ORDER BY id ASC LIMIT %s"
        ).format(
            log=qualified_table(schema, log_table),
            where=sql.SQL(" AND ").join(conditions),
        )
        rows = self._select(query, tuple(params), "fetch_pending_deletions", f"{schema}:{log_table}")
        return [
            DeletionLogEntry(id=row["id"], table_name=row["table_name"], payload=row["payload"])
            for row in rows
        ]

    def mark_deletions_processed(
        self,
        schema: str,
        log_table: str,
        ids: list[int],
        processed_at: datetime,
    ) -> int:
        """Set processed_at on the given ids in one statement."""
        query = sql.SQL("UPDATE {log} SET processed_at = %s WHERE id = ANY(%s)").format(
            log=qualified_table(schema, log_table),
        )
        with trace_operation(
            "mark_deletions_processed",
            kind=trace.SpanKind.CLIENT,
            db_role="source",
            entries=len(ids),
        ):
            with self.pool.acquire() as conn:
                with conn.cursor() as cursor:
                    cursor.execute(query, (processed_at, list(ids)))
                    return cursor.rowcount

    def open_channel(self, table: TableSpec) -> NotifyChannel:
        """Create (not yet opened) the LISTEN channel for a table."""
        return NotifyChannel(
            dsn=self.pool.dsn,
            password=self.pool.password,
            channel=channel_name(table.schema, table.name),
            heartbeat_interval=self.heartbeat_interval,
        )
