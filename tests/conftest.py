"""
Pytest configuration and fixtures for sync worker tests.
Provides in-memory source/target stores and shared test setup.
"""

import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Optional

import pytest
from prometheus_client import CollectorRegistry

from src.replication.connectors.source import DeletionLogEntry
from src.replication.errors import ColumnNotFoundError, TableNotFoundError
from src.replication.registry import TableRegistry, TableSpec
from src.replication.state import CursorStore
from src.utils.metrics import ReplicationMetrics
from src.utils.retry import RetryPolicy


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


@pytest.fixture(autouse=True)
def set_test_env_vars(monkeypatch: pytest.MonkeyPatch) -> None:
    """Set default test environment variables if not already set."""
    defaults = {
        "VAULT_ADDR": "http://localhost:8200",
        "VAULT_TOKEN": "dev-root-token",
    }

    for key, value in defaults.items():
        if key not in os.environ:
            monkeypatch.setenv(key, value)


class FakeSource:
    """
    In-memory source store.

    rows maps `schema:name` to a list of row dicts. A table's readable columns
    are the union of its rows' keys unless given explicitly.
    """

    def __init__(
        self,
        rows: Optional[dict[str, list[dict]]] = None,
        columns: Optional[dict[str, set[str]]] = None,
        deletion_log: Optional[list[DeletionLogEntry]] = None,
        deletion_log_key: str = "public:sync_deletions",
    ):
        self.rows = rows or {}
        self.columns = columns or {}
        self.deletion_log = deletion_log
        self.deletion_log_key = deletion_log_key
        self.failing_reads: set[str] = set()
        self.failing_marks = 0
        self.reads: list[tuple] = []

    def _columns_of(self, key: str) -> set[str]:
        if key in self.columns:
            return self.columns[key]
        found: set[str] = set()
        for row in self.rows.get(key, []):
            found.update(row)
        return found

    def probe_columns(self, schema: str, name: str, columns: list[str]) -> None:
        key = f"{schema}:{name}"
        if key == self.deletion_log_key:
            if self.deletion_log is None:
                raise TableNotFoundError(f"{schema}.{name} does not exist")
            return
        if key not in self.rows:
            raise TableNotFoundError(f"{schema}.{name} does not exist")
        missing = [c for c in columns if c not in self._columns_of(key)]
        if missing:
            raise ColumnNotFoundError(f"column {missing[0]} does not exist")

    def probe_column(self, table: TableSpec, column: str) -> None:
        self.probe_columns(table.schema, table.name, [column])

    def _check_read(self, table: TableSpec) -> None:
        if table.key in self.failing_reads:
            raise ConnectionError(f"read failed for {table.key}")

    def fetch_modified_since(self, table, field, since, offset, limit):
        self._check_read(table)
        self.reads.append(("modified_since", table.key, field, since, offset, limit))
        matching = [r for r in self.rows.get(table.key, []) if r.get(field) is not None and r[field] >= since]
        matching.sort(key=lambda r: (r[field], *(r[pk] for pk in table.primary_keys)))
        return [dict(r) for r in matching[offset:offset + limit]]

    def fetch_page(self, table, offset, limit):
        self._check_read(table)
        self.reads.append(("page", table.key, offset, limit))
        ordered = sorted(self.rows.get(table.key, []), key=lambda r: tuple(r[pk] for pk in table.primary_keys))
        return [dict(r) for r in ordered[offset:offset + limit]]

    def fetch_pending_deletions(self, schema, log_table, after_id, limit):
        pending = [
            e for e in (self.deletion_log or [])
            if e.processed_at is None and (after_id is None or e.id > after_id)
        ]
        pending.sort(key=lambda e: e.id)
        return pending[:limit]

    def mark_deletions_processed(self, schema, log_table, ids, processed_at):
        if self.failing_marks:
            self.failing_marks -= 1
            raise ConnectionError("update failed")
        count = 0
        for entry in self.deletion_log or []:
            if entry.id in ids:
                entry.processed_at = processed_at
                count += 1
        return count


class FakeTarget:
    """
    In-memory target store keyed by primary key tuple.

    failures: number of upcoming write calls that raise before succeeding.
    """

    def __init__(self, failures: int = 0):
        self.tables: dict[str, dict[tuple, dict]] = {}
        self.failures = failures
        self.always_fail = False
        self.calls: list[tuple] = []

    def _maybe_fail(self) -> None:
        if self.always_fail:
            raise ConnectionError("target unavailable")
        if self.failures:
            self.failures -= 1
            raise ConnectionError("transient target error")

    def upsert_rows(self, table: TableSpec, rows: list[dict]) -> int:
        self.calls.append(("upsert", table.key, len(rows)))
        self._maybe_fail()
        store = self.tables.setdefault(table.key, {})
        for row in rows:
            key = tuple(row[pk] for pk in table.primary_keys)
            store[key] = {**store.get(key, {}), **row}
        return len(rows)

    def delete_row(self, table: TableSpec, key: dict[str, Any]) -> int:
        self.calls.append(("delete", table.key, dict(key)))
        self._maybe_fail()
        store = self.tables.setdefault(table.key, {})
        return 1 if store.pop(tuple(key[pk] for pk in table.primary_keys), None) is not None else 0

    def rows(self, key: str) -> dict[tuple, dict]:
        return self.tables.get(key, {})


@pytest.fixture
def metrics_registry() -> CollectorRegistry:
    return CollectorRegistry()


@pytest.fixture
def replication_metrics(metrics_registry: CollectorRegistry) -> ReplicationMetrics:
    return ReplicationMetrics(registry=metrics_registry)


@pytest.fixture
def retry_policy() -> RetryPolicy:
    """Three attempts, no real sleeping."""
    return RetryPolicy(attempts=3, base_delay=0.5, sleep=lambda seconds: None)


@pytest.fixture
def orders_table() -> TableSpec:
    return TableSpec(name="orders", primary_keys=["id"], incremental_fields=["updated_at", "created_at"])


@pytest.fixture
def registry(orders_table: TableSpec) -> TableRegistry:
    return TableRegistry([orders_table])


@pytest.fixture
def cursor_store(tmp_path: Path) -> CursorStore:
    return CursorStore(tmp_path / "state" / ".sync-state.json")


@pytest.fixture
def now() -> datetime:
    return datetime(2024, 6, 1, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def fake_target() -> FakeTarget:
    return FakeTarget()


@pytest.fixture
def make_source():
    """Factory for FakeSource instances."""
    return FakeSource


@pytest.fixture
def make_target():
    """Factory for FakeTarget instances."""
    return FakeTarget


@pytest.fixture
def make_entry():
    """Factory for deletion log entries."""
    def _make(id: int, table_name: str, payload: Any) -> DeletionLogEntry:
        return DeletionLogEntry(id=id, table_name=table_name, payload=payload)
    return _make
