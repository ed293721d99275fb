"""
Reconciliation engine.

Periodically re-reads recently modified rows from the source and upserts them
into the target, so anything the realtime path missed converges within the
look-back window. Tables without a usable incremental field are fully scanned.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Callable, Optional

from opentelemetry import trace

from src.utils.logging import ContextLogger
from src.utils.retry import RetryPolicy
from src.utils.tracing import add_span_attributes, trace_operation

from .config import ReconciliationOptions
from .deletions import DeletionLogProcessor, DeletionRunResult
from .registry import TableRegistry, TableSpec
from .state import CursorRecord, CursorStore

logger = logging.getLogger(__name__)


@dataclass
class TableResult:
    """Outcome of one table's pass."""

    table: str
    mode: str
    success: bool
    rows: int = 0
    duration: float = 0.0
    error: Optional[str] = None


@dataclass
class ReconciliationReport:
    started_at: datetime
    tables: list[TableResult] = field(default_factory=list)
    deletions: Optional[DeletionRunResult] = None
    interrupted: bool = False

    @property
    def succeeded(self) -> bool:
        tables_ok = all(result.success for result in self.tables)
        deletions_ok = self.deletions is None or self.deletions.succeeded
        return tables_ok and deletions_ok and not self.interrupted

    @property
    def total_rows(self) -> int:
        return sum(result.rows for result in self.tables)


class _PassAborted(Exception):
    pass


class ReconciliationEngine:
    """
    Sequential sweep over every active, reconcile-enabled table followed by
    the deletion log.

    A table's cursor is only written after its pass completes; any read
    failure or exhausted upsert leaves it untouched so the next pass retries
    the same window.
    """

    def __init__(
        self,
        source: Any,
        target: Any,
        registry: TableRegistry,
        cursor_store: CursorStore,
        retry_policy: RetryPolicy,
        options: Optional[ReconciliationOptions] = None,
        deletion_processor: Optional[DeletionLogProcessor] = None,
        shutdown_event: Optional[threading.Event] = None,
        metrics: Any = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.source = source
        self.target = target
        self.registry = registry
        self.cursor_store = cursor_store
        self.retry_policy = retry_policy
        self.options = options or ReconciliationOptions()
        self.deletion_processor = deletion_processor
        self.shutdown_event = shutdown_event or threading.Event()
        self.metrics = metrics
        self.clock = clock

    def compute_since(self, record: CursorRecord, now: datetime) -> datetime:
        """
        Lower bound of the incremental window.

        The look-back start always wins over a later stored cursor; a table
        never reconciled before starts at the initial backfill window.
        """
        lookback_start = now - timedelta(milliseconds=self.options.lookback_ms)

        if record.cursor is not None:
            since = record.cursor
        elif record.initialized:
            since = lookback_start
        else:
            since = now - timedelta(milliseconds=self.options.initial_backfill_ms)

        return min(lookback_start, since)

    def reconcile_all(self) -> ReconciliationReport:
        """Reconcile every table, then process the deletion log."""
        report = ReconciliationReport(started_at=self.clock())

        self.registry.resolve_pending(self.source, self.retry_policy)

        with trace_operation("reconcile_all", kind=trace.SpanKind.INTERNAL) as span:
            for table in self.registry.reconcile_tables():
                if self.shutdown_event.is_set():
                    report.interrupted = True
                    break
                report.tables.append(self.reconcile_table(table))

            if self.deletion_processor is not None and not self.shutdown_event.is_set():
                report.deletions = self.deletion_processor.run()

            if self.shutdown_event.is_set():
                report.interrupted = True

            span.set_attribute("tables", len(report.tables))
            span.set_attribute("rows", report.total_rows)

        failed = [r.table for r in report.tables if not r.success]
        if failed:
            logger.warning(f"Reconciliation finished with failures: {', '.join(failed)}")
        else:
            logger.info(
                f"Reconciliation finished: {len(report.tables)} table(s), {report.total_rows} row(s)"
            )

        return report

    def reconcile_table(self, table: TableSpec) -> TableResult:
        """Run one table's pass and persist its cursor on success."""
        log = ContextLogger(__name__, table_name=table.key, operation="reconcile")
        started = time.monotonic()
        result = TableResult(table=table.key, mode=table.mode, success=False)

        with trace_operation(
            "reconcile_table",
            kind=trace.SpanKind.INTERNAL,
            table=table.key,
            mode=table.mode,
        ) as span:
            try:
                if table.full_scan:
                    rows = self._full_scan(table, log)
                else:
                    rows = self._incremental(table, log)

                self.cursor_store.record_pass(table.key, rows, full_scan=table.full_scan, now=self.clock())
                result.success = True
                result.rows = rows
            except _PassAborted as e:
                result.error = str(e)
            except OSError as e:
                result.error = f"cursor not persisted: {e}"
                log.error(f"Failed to persist cursor: {e}")
            except Exception as e:
                result.error = str(e)
                log.error(f"Read failed, pass aborted: {type(e).__name__}: {e}")

            span.set_attribute("rows", result.rows)
            span.set_attribute("success", result.success)

        result.duration = time.monotonic() - started

        if self.metrics is not None:
            self.metrics.record_reconciliation_run(
                table.key, table.mode, result.success, result.duration, result.rows
            )

        if result.success and result.rows:
            log.info(f"Reconciled {result.rows} row(s) ({table.mode})")

        return result

    def _incremental(self, table: TableSpec, log: ContextLogger) -> int:
        now = self.clock()
        since = self.compute_since(self.cursor_store.get(table.key), now)
        log.debug(f"Incremental pass on {table.incremental_field} since {since.isoformat()}")
        add_span_attributes(field=table.incremental_field, since=since.isoformat())

        return self._page(
            table,
            lambda offset: self.source.fetch_modified_since(
                table, table.incremental_field, since, offset, self.options.batch_size
            ),
            log,
        )

    def _full_scan(self, table: TableSpec, log: ContextLogger) -> int:
        log.debug(f"Full scan ordered by {', '.join(table.primary_keys)}")
        return self._page(
            table,
            lambda offset: self.source.fetch_page(table, offset, self.options.batch_size),
            log,
        )

    def _page(self, table: TableSpec, fetch: Callable[[int], list[dict]], log: ContextLogger) -> int:
        offset = 0
        total = 0

        while True:
            if self.shutdown_event.is_set():
                log.info("Shutdown requested; pass interrupted")
                raise _PassAborted("interrupted by shutdown")

            rows = fetch(offset)
            if not rows:
                break

            outcome = self.retry_policy.run(
                lambda: self.target.upsert_rows(table, rows),
                f"[{table.key}] upsert batch at offset {offset}",
            )
            if not outcome.ok:
                log.error(
                    f"Upsert failed after {outcome.attempts} attempt(s), pass aborted: {outcome.error}",
                    operation="upsert",
                )
                raise _PassAborted(f"upsert failed: {outcome.error}")

            total += len(rows)
            offset += len(rows)

            if len(rows) < self.options.batch_size:
                break

        return total
