"""
Deletion log processor.

The source records every deleted row in a tombstone table (default
public.sync_deletions). Each reconciliation cycle replays unprocessed entries
as deletes on the target and marks them processed.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Callable, Optional

from opentelemetry import trace

from src.utils.retry import RetryPolicy
from src.utils.tracing import trace_operation

from .config import DeletionLogOptions
from .connectors.source import DeletionLogEntry
from .errors import MissingPrimaryKeyError, TableNotFoundError
from .registry import TableRegistry
from .state import CursorStore

logger = logging.getLogger(__name__)

LOG_COLUMNS = ["id", "table_name", "payload", "processed_at"]


@dataclass
class DeletionRunResult:
    applied: int = 0
    skipped: int = 0
    failed: int = 0
    marked: int = 0
    aborted: bool = False

    @property
    def succeeded(self) -> bool:
        return not self.aborted


class DeletionLogProcessor:
    """
    Replays the deletion log against the target.

    Entries are paged by id (keyset), so entries whose delete keeps failing
    are passed over within a run and picked up again on the next one.
    """

    def __init__(
        self,
        source: Any,
        target: Any,
        registry: TableRegistry,
        cursor_store: CursorStore,
        retry_policy: RetryPolicy,
        options: Optional[DeletionLogOptions] = None,
        batch_size: int = 500,
        shutdown_event: Optional[threading.Event] = None,
        metrics: Any = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.source = source
        self.target = target
        self.registry = registry
        self.cursor_store = cursor_store
        self.retry_policy = retry_policy
        self.options = options or DeletionLogOptions()
        self.batch_size = batch_size
        self.shutdown_event = shutdown_event or threading.Event()
        self.metrics = metrics
        self.clock = clock
        self.available: Optional[bool] = None

    @property
    def key(self) -> str:
        return self.options.key

    def probe(self) -> bool:
        """Check once whether the log table exists in the source."""
        if not self.options.enabled:
            logger.info("Deletion log disabled by configuration")
            self.available = False
            return False

        try:
            self.source.probe_columns(self.options.schema, self.options.table, LOG_COLUMNS)
        except TableNotFoundError:
            logger.warning(f"[{self.key}] Deletion log table not found in source; deletes rely on realtime only")
            self.available = False
            return False
        except Exception as e:
            logger.warning(f"[{self.key}] Deletion log unusable ({e}); deletes rely on realtime only")
            self.available = False
            return False

        logger.info(f"[{self.key}] Deletion log enabled")
        self.available = True
        return True

    def run(self) -> Optional[DeletionRunResult]:
        """
        Process every pending entry.

        Returns:
            DeletionRunResult, or None when the log is unavailable
        """
        if self.available is None:
            self.probe()
        if not self.available:
            return None

        result = DeletionRunResult()

        with trace_operation("process_deletion_log", kind=trace.SpanKind.INTERNAL, table=self.key) as span:
            after_id: Optional[int] = None

            while not self.shutdown_event.is_set():
                try:
                    entries = self.source.fetch_pending_deletions(
                        self.options.schema, self.options.table, after_id, self.batch_size
                    )
                except Exception as e:
                    logger.error(
                        f"[{self.key}] Failed to read deletion log: {e}",
                        extra={"table_name": self.key, "operation": "read_deletions"},
                    )
                    result.aborted = True
                    break

                if not entries:
                    break

                processed_ids = [entry.id for entry in entries if self._apply(entry, result)]
                after_id = entries[-1].id

                if processed_ids and not self._mark_processed(processed_ids, result):
                    result.aborted = True
                    break

                if len(entries) < self.batch_size:
                    break

            span.set_attribute("applied", result.applied)
            span.set_attribute("failed", result.failed)

        if self.metrics is not None:
            self.metrics.record_deletion("applied", result.applied)
            self.metrics.record_deletion("skipped", result.skipped)
            self.metrics.record_deletion("failed", result.failed)

        if result.applied:
            logger.info(f"[{self.key}] Processed {result.applied} deletion entries")

        if not result.aborted:
            try:
                self.cursor_store.record_run(self.key, result.applied, now=self.clock())
            except OSError:
                result.aborted = True

        return result

    def _apply(self, entry: DeletionLogEntry, result: DeletionRunResult) -> bool:
        """Returns True when the entry can be marked processed."""
        payload = entry.payload
        if not isinstance(payload, dict) or not payload:
            logger.warning(f"[{self.key}] Skipping log {entry.id}: payload missing or invalid")
            result.skipped += 1
            return True

        table = self.registry.lookup(entry.table_name)
        if table is None:
            logger.warning(f"[{self.key}] Skipping log {entry.id}: unknown table {entry.table_name}")
            result.skipped += 1
            return True

        if not table.active:
            logger.warning(f"[{self.key}] Skipping log {entry.id}: table {table.key} is inactive")
            result.skipped += 1
            return True

        try:
            key = table.key_for(payload)
        except MissingPrimaryKeyError as e:
            logger.warning(f"[{self.key}] Skipping log {entry.id}: {e}")
            result.skipped += 1
            return True

        outcome = self.retry_policy.run(
            lambda: self.target.delete_row(table, key),
            f"[{table.key}] delete for log {entry.id}",
        )
        if not outcome.ok:
            logger.error(
                f"[{self.key}] Failed to delete {table.key} row for log {entry.id}: {outcome.error}",
                extra={"table_name": table.key, "operation": "delete"},
            )
            result.failed += 1
            return False

        result.applied += 1
        return True

    def _mark_processed(self, ids: list[int], result: DeletionRunResult) -> bool:
        outcome = self.retry_policy.run(
            lambda: self.source.mark_deletions_processed(
                self.options.schema, self.options.table, ids, self.clock()
            ),
            f"[{self.key}] mark {len(ids)} entries processed",
        )
        if not outcome.ok:
            logger.error(
                f"[{self.key}] Failed to mark logs processed: {outcome.error}",
                extra={"table_name": self.key, "operation": "mark_processed"},
            )
            return False

        result.marked += len(ids)
        return True
