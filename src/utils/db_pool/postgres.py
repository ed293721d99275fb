"""PostgreSQL connection pool implementation."""

from typing import Any

import psycopg2
import psycopg2.extensions
from opentelemetry import trace

from src.utils.tracing import trace_operation

from .base import BaseConnectionPool


def connect(
    dsn: str,
    password: str | None = None,
    application_name: str = "pg-sync-worker/0.1",
    connect_timeout: int = 10,
) -> psycopg2.extensions.connection:
    """Open an autocommit PostgreSQL connection from a URL/DSN and a service credential."""
    kwargs: dict[str, Any] = {
        "application_name": application_name,
        "connect_timeout": connect_timeout,
    }
    if password:
        kwargs["password"] = password

    conn = psycopg2.connect(dsn, **kwargs)
    conn.set_session(autocommit=True)
    return conn


class PostgresConnectionPool(BaseConnectionPool):
    """Connection pool for a PostgreSQL database identified by a URL."""

    def __init__(
        self,
        dsn: str,
        password: str | None = None,
        **kwargs: Any,
    ):
        """
        Args:
            dsn: Connection URL or libpq DSN
            password: Service credential, passed separately from the URL
            **kwargs: Additional arguments for BaseConnectionPool
        """
        self.dsn = dsn
        self.password = password

        super().__init__(**kwargs)

    def _create_connection(self) -> psycopg2.extensions.connection:
        with trace_operation(
            "postgres_connect",
            kind=trace.SpanKind.CLIENT,
            pool_name=self.pool_name,
        ):
            return connect(self.dsn, self.password)

    def _is_connection_healthy(self, conn: psycopg2.extensions.connection) -> bool:
        if conn is None or conn.closed:
            return False

        try:
            with conn.cursor() as cursor:
                cursor.execute("SELECT 1")
                cursor.fetchone()
            return True
        except (psycopg2.Error, psycopg2.Warning):
            return False

    def _close_connection(self, conn: psycopg2.extensions.connection) -> None:
        if conn is not None and not conn.closed:
            conn.close()
