"""
Metrics for replication operations.

Tracks realtime events, reconciliation passes, deletion log processing and
realtime channel health.
"""

import logging
import time
from typing import Optional

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    CollectorRegistry,
    REGISTRY,
)

logger = logging.getLogger(__name__)


class ReplicationMetrics:
    """
    Metrics for the replication worker

    One instance per process; pass a private CollectorRegistry in tests.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """
        Initialize replication metrics

        Args:
            registry: Custom Prometheus registry (default: global REGISTRY)
        """
        self.registry = registry or REGISTRY

        # Realtime path
        self.events_total = Counter(
            "sync_realtime_events_total",
            "Realtime change events handled",
            ["table_name", "change_type", "status"],  # applied, failed, skipped
            registry=self.registry,
        )

        self.event_queue_depth = Gauge(
            "sync_realtime_queue_depth",
            "Events waiting in the realtime queue",
            registry=self.registry,
        )

        self.channel_state_changes_total = Counter(
            "sync_realtime_channel_state_changes_total",
            "Realtime channel state transitions",
            ["table_name", "state"],
            registry=self.registry,
        )

        # Reconciliation path
        self.reconciliation_runs_total = Counter(
            "sync_reconciliation_runs_total",
            "Reconciliation passes per table",
            ["table_name", "mode", "status"],
            registry=self.registry,
        )

        self.reconciliation_duration_seconds = Histogram(
            "sync_reconciliation_duration_seconds",
            "Duration of reconciliation passes in seconds",
            ["table_name"],
            buckets=(0.1, 0.5, 1, 5, 10, 30, 60, 120, 300, 600),
            registry=self.registry,
        )

        self.rows_reconciled_total = Counter(
            "sync_reconciliation_rows_total",
            "Rows re-applied to the target by reconciliation",
            ["table_name"],
            registry=self.registry,
        )

        self.reconciliation_last_success_timestamp = Gauge(
            "sync_reconciliation_last_success_timestamp",
            "Unix time of the last successful pass",
            ["table_name"],
            registry=self.registry,
        )

        # Deletion log
        self.deletions_total = Counter(
            "sync_deletion_log_entries_total",
            "Deletion log entries handled",
            ["status"],  # applied, skipped, failed
            registry=self.registry,
        )

    def record_event(self, table_name: str, change_type: str, status: str) -> None:
        self.events_total.labels(
            table_name=table_name,
            change_type=change_type,
            status=status,
        ).inc()

    def record_channel_state(self, table_name: str, state: str) -> None:
        self.channel_state_changes_total.labels(table_name=table_name, state=state).inc()

    def record_reconciliation_run(
        self,
        table_name: str,
        mode: str,
        success: bool,
        duration: float,
        rows: Optional[int] = None,
    ) -> None:
        """
        Record a reconciliation pass

        Args:
            table_name: Table key (schema:name)
            mode: "incremental" or "full"
            success: Whether the pass completed
            duration: Duration in seconds
            rows: Rows re-applied (optional)
        """
        status = "success" if success else "failed"

        self.reconciliation_runs_total.labels(
            table_name=table_name,
            mode=mode,
            status=status,
        ).inc()

        self.reconciliation_duration_seconds.labels(table_name=table_name).observe(duration)

        if success:
            self.reconciliation_last_success_timestamp.labels(table_name=table_name).set(time.time())

        if rows:
            self.rows_reconciled_total.labels(table_name=table_name).inc(rows)

        logger.debug(
            f"Recorded reconciliation run: table={table_name}, mode={mode}, "
            f"status={status}, duration={duration:.2f}s, rows={rows if rows is not None else 'N/A'}"
        )

    def record_deletion(self, status: str, count: int = 1) -> None:
        if count:
            self.deletions_total.labels(status=status).inc(count)
