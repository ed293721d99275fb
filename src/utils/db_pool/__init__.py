"""
Database connection pooling for the source and target PostgreSQL stores.
"""

from .base import (
    BaseConnectionPool,
    ConnectionPoolError,
    PoolClosedError,
    PooledConnection,
    PoolExhaustedError,
)
from .postgres import PostgresConnectionPool, connect

__all__ = [
    "BaseConnectionPool",
    "PostgresConnectionPool",
    "PooledConnection",
    "ConnectionPoolError",
    "PoolExhaustedError",
    "PoolClosedError",
    "connect",
]
