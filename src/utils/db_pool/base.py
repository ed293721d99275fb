"""
Base class for thread-safe database connection pooling.

Connections are created lazily up to max_size, health-checked on acquire
and recycled once they exceed their lifetime.
"""

import logging
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from queue import Empty, Queue
from typing import Any

from opentelemetry import trace
from prometheus_client import Counter, Gauge, Histogram

from src.utils.tracing import trace_operation

logger = logging.getLogger(__name__)


CONNECTION_POOL_SIZE = Gauge(
    "sync_db_connection_pool_size",
    "Open connections per pool",
    ["pool_name"],
)

CONNECTION_POOL_IDLE = Gauge(
    "sync_db_connection_pool_idle",
    "Idle connections per pool",
    ["pool_name"],
)

CONNECTION_POOL_ERRORS = Counter(
    "sync_db_connection_pool_errors_total",
    "Connection pool errors",
    ["pool_name", "error_type"],
)

CONNECTION_ACQUIRE_TIME = Histogram(
    "sync_db_connection_acquire_seconds",
    "Time to acquire a connection from the pool",
    ["pool_name"],
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0],
)


@dataclass
class PooledConnection:
    """A pooled connection with bookkeeping."""

    connection: Any
    created_at: float = field(default_factory=time.monotonic)
    use_count: int = 0

    def mark_used(self) -> None:
        self.use_count += 1


class ConnectionPoolError(Exception):
    """Base exception for connection pool errors."""

    pass


class PoolExhaustedError(ConnectionPoolError):
    """Raised when no connection becomes available within the timeout."""

    pass


class PoolClosedError(ConnectionPoolError):
    """Raised when acquiring from a closed pool."""

    pass


class BaseConnectionPool:
    """
    Base class for connection pools

    Subclasses implement _create_connection, _is_connection_healthy and
    _close_connection.
    """

    def __init__(
        self,
        max_size: int = 5,
        max_lifetime: int = 3600,
        acquire_timeout: float = 30.0,
        pool_name: str = "default",
    ):
        """
        Args:
            max_size: Maximum number of open connections
            max_lifetime: Seconds after which a connection is recycled
            acquire_timeout: Seconds to wait for a free connection
            pool_name: Name used in logs and metrics
        """
        self.max_size = max_size
        self.max_lifetime = max_lifetime
        self.acquire_timeout = acquire_timeout
        self.pool_name = pool_name

        self._idle: Queue[PooledConnection] = Queue(maxsize=max_size)
        self._open = 0
        self._lock = threading.Lock()
        self._closed = False

        logger.info(f"Initialized {self.__class__.__name__} '{pool_name}' (max={max_size})")

    def _create_connection(self) -> Any:
        raise NotImplementedError

    def _is_connection_healthy(self, conn: Any) -> bool:
        raise NotImplementedError

    def _close_connection(self, conn: Any) -> None:
        raise NotImplementedError

    def _new_pooled(self) -> PooledConnection | None:
        """Open a new connection if the pool has room, else None."""
        with self._lock:
            if self._open >= self.max_size:
                return None
            self._open += 1

        try:
            return PooledConnection(connection=self._create_connection())
        except Exception:
            with self._lock:
                self._open -= 1
            CONNECTION_POOL_ERRORS.labels(pool_name=self.pool_name, error_type="creation").inc()
            raise

    def _discard(self, pooled: PooledConnection) -> None:
        try:
            self._close_connection(pooled.connection)
        except Exception as e:
            logger.warning(f"Error closing connection in pool '{self.pool_name}': {e}")
        finally:
            with self._lock:
                self._open -= 1

    def _usable(self, pooled: PooledConnection) -> bool:
        if time.monotonic() - pooled.created_at > self.max_lifetime:
            return False
        try:
            return self._is_connection_healthy(pooled.connection)
        except Exception as e:
            logger.warning(f"Health check failed in pool '{self.pool_name}': {e}")
            CONNECTION_POOL_ERRORS.labels(pool_name=self.pool_name, error_type="health_check").inc()
            return False

    def _update_metrics(self) -> None:
        CONNECTION_POOL_SIZE.labels(pool_name=self.pool_name).set(self._open)
        CONNECTION_POOL_IDLE.labels(pool_name=self.pool_name).set(self._idle.qsize())

    def _checkout(self) -> PooledConnection:
        deadline = time.monotonic() + self.acquire_timeout

        while True:
            if self._closed:
                raise PoolClosedError(f"Connection pool '{self.pool_name}' is closed")

            try:
                pooled = self._idle.get_nowait()
            except Empty:
                pooled = self._new_pooled()
                if pooled is not None:
                    return pooled

                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise PoolExhaustedError(
                        f"No connection available in pool '{self.pool_name}' "
                        f"within {self.acquire_timeout}s"
                    )
                try:
                    pooled = self._idle.get(timeout=min(remaining, 0.5))
                except Empty:
                    continue

            if self._usable(pooled):
                return pooled

            logger.info(f"Recycling stale connection in pool '{self.pool_name}'")
            self._discard(pooled)

    @contextmanager
    def acquire(self) -> Iterator[Any]:
        """
        Acquire a connection from the pool.

        Connections that raised while checked out are discarded instead of
        being returned to the pool.

        Raises:
            PoolClosedError: If the pool is closed
            PoolExhaustedError: If no connection is available within the timeout
        """
        start_time = time.monotonic()

        with trace_operation(
            "db_pool_acquire",
            kind=trace.SpanKind.CLIENT,
            pool_name=self.pool_name,
        ):
            pooled = self._checkout()

        pooled.mark_used()
        CONNECTION_ACQUIRE_TIME.labels(pool_name=self.pool_name).observe(
            time.monotonic() - start_time
        )
        self._update_metrics()

        failed = False
        try:
            yield pooled.connection
        except Exception:
            failed = True
            raise
        finally:
            if failed or self._closed:
                self._discard(pooled)
            else:
                self._idle.put_nowait(pooled)
            self._update_metrics()

    def close(self) -> None:
        """Close all idle connections and refuse further acquires."""
        if self._closed:
            return

        self._closed = True
        while True:
            try:
                self._discard(self._idle.get_nowait())
            except Empty:
                break

        self._update_metrics()
        logger.info(f"Connection pool '{self.pool_name}' closed")

    def get_stats(self) -> dict[str, Any]:
        return {
            "pool_name": self.pool_name,
            "open_connections": self._open,
            "idle_connections": self._idle.qsize(),
            "max_size": self.max_size,
            "closed": self._closed,
        }
