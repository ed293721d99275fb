"""
Cursor state for reconciliation.

Reconciliation progress is kept in one JSON file keyed by `schema:table`, so
operators can read it and hand-edit it (deleting a table's entry forces a
fresh backfill on the next pass).
"""

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Optional

from opentelemetry import trace
from prometheus_client import Counter

from src.utils.tracing import trace_operation

logger = logging.getLogger(__name__)


CURSOR_STATE_OPERATIONS = Counter(
    "sync_cursor_state_operations_total",
    "Cursor state file operations",
    ["operation", "status"],  # load/save, success/failed
)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class CursorRecord:
    """Reconciliation progress for one table."""

    cursor: Optional[datetime] = None
    initialized: bool = False
    last_synced_at: Optional[datetime] = None
    last_batch_count: int = 0
    full_scan: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "cursor": _format_timestamp(self.cursor),
            "initialized": self.initialized,
            "lastSyncedAt": _format_timestamp(self.last_synced_at),
            "lastBatchCount": self.last_batch_count,
            "fullScan": self.full_scan,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CursorRecord":
        """Parse a state-file entry; raises ValueError on malformed timestamps."""
        return cls(
            cursor=_parse_timestamp(data.get("cursor")),
            initialized=bool(data.get("initialized", False)),
            last_synced_at=_parse_timestamp(data.get("lastSyncedAt")),
            last_batch_count=int(data.get("lastBatchCount") or 0),
            full_scan=bool(data.get("fullScan", False)),
        )


class CursorStore:
    """
    Durable per-table cursor records.

    Loaded once at startup; each reconciliation pass updates its own table's
    record and the whole file is rewritten atomically.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._records: dict[str, CursorRecord] = {}
        self._lock = threading.Lock()

    def load(self) -> None:
        """
        Read the state file. A missing file means no progress yet; an
        unreadable file is logged and treated as empty.
        """
        with trace_operation("load_cursor_state", kind=trace.SpanKind.INTERNAL, path=self.path):
            if not self.path.exists():
                logger.info(f"No cursor state at {self.path}; starting fresh")
                return

            try:
                with open(self.path, encoding="utf-8") as f:
                    raw = json.load(f)
                if not isinstance(raw, dict):
                    raise ValueError("state file must contain a JSON object")
            except (OSError, ValueError) as e:
                logger.warning(f"Failed to load cursor state from {self.path}: {e}")
                CURSOR_STATE_OPERATIONS.labels(operation="load", status="failed").inc()
                return

            records = {}
            for key, value in raw.items():
                try:
                    records[key] = CursorRecord.from_dict(value)
                except (TypeError, ValueError, AttributeError) as e:
                    logger.warning(f"Ignoring malformed cursor state for {key}: {e}")

            with self._lock:
                self._records = records

            CURSOR_STATE_OPERATIONS.labels(operation="load", status="success").inc()
            logger.info(f"Loaded cursor state for {len(records)} table(s) from {self.path}")

    def get(self, key: str) -> CursorRecord:
        """Record for `schema:table`, or an empty record."""
        with self._lock:
            return self._records.get(key) or CursorRecord()

    def update(self, key: str, record: CursorRecord) -> None:
        with self._lock:
            self._records[key] = record

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._records)

    def save(self) -> None:
        """
        Write all records to disk (temp file + rename).

        Raises:
            OSError: If the file cannot be written
        """
        with trace_operation("save_cursor_state", kind=trace.SpanKind.INTERNAL, path=self.path):
            with self._lock:
                data = {key: record.to_dict() for key, record in sorted(self._records.items())}

                try:
                    self.path.parent.mkdir(parents=True, exist_ok=True)
                    fd, tmp_path = tempfile.mkstemp(
                        dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
                    )
                    try:
                        with os.fdopen(fd, "w", encoding="utf-8") as f:
                            json.dump(data, f, indent=2)
                            f.write("\n")
                        os.replace(tmp_path, self.path)
                    except BaseException:
                        Path(tmp_path).unlink(missing_ok=True)
                        raise
                except OSError as e:
                    CURSOR_STATE_OPERATIONS.labels(operation="save", status="failed").inc()
                    logger.error(f"Failed to persist cursor state to {self.path}: {e}")
                    raise

            CURSOR_STATE_OPERATIONS.labels(operation="save", status="success").inc()
            logger.debug(f"Persisted cursor state for {len(data)} table(s)")

    def record_pass(
        self,
        key: str,
        rows: int,
        full_scan: bool,
        now: Optional[datetime] = None,
    ) -> CursorRecord:
        """
        Record a successful reconciliation pass and persist it.

        The cursor becomes `now` (None for full scans). lastSyncedAt is kept
        strictly increasing per key even if the clock does not advance.
        """
        now = self._next_synced_at(key, now)
        record = CursorRecord(
            cursor=None if full_scan else now,
            initialized=True,
            last_synced_at=now,
            last_batch_count=rows,
            full_scan=full_scan,
        )
        self.update(key, record)
        self.save()
        return record

    def record_run(self, key: str, rows: int, now: Optional[datetime] = None) -> CursorRecord:
        """Record a run that has no cursor of its own (the deletion log) and persist it."""
        now = self._next_synced_at(key, now)
        record = CursorRecord(initialized=True, last_synced_at=now, last_batch_count=rows)
        self.update(key, record)
        self.save()
        return record

    def _next_synced_at(self, key: str, now: Optional[datetime]) -> datetime:
        now = now or datetime.now(UTC)
        previous = self.get(key).last_synced_at
        if previous is not None and now <= previous:
            now = previous + timedelta(microseconds=1)
        return now
