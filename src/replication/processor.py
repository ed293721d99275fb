"""
Event processor.

A single drain thread applies realtime events to the target in the order they
were received.
"""

import logging
import queue
import threading
from datetime import UTC, datetime
from typing import Any, Optional

from opentelemetry import trace

from src.utils.logging import ContextLogger
from src.utils.retry import RetryPolicy
from src.utils.tracing import trace_operation

from .errors import MissingPrimaryKeyError
from .events import ChangeEvent

logger = logging.getLogger(__name__)

_STOP = object()


class EventProcessor:
    """
    FIFO consumer of the shared event queue.

    INSERT and UPDATE upsert the new row; DELETE removes the row keyed by the
    old row's primary key. Each apply runs through the retry policy; an event
    that still fails is logged and dropped.
    """

    def __init__(
        self,
        target: Any,
        retry_policy: RetryPolicy,
        event_queue: Optional[queue.Queue] = None,
        metrics: Any = None,
    ):
        self.target = target
        self.retry_policy = retry_policy
        self.queue: queue.Queue = event_queue if event_queue is not None else queue.Queue()
        self.metrics = metrics
        self.last_realtime_event_at: dict[str, datetime] = {}
        self._accepting = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def accepting(self) -> bool:
        return self._accepting.is_set()

    def start(self) -> None:
        self._accepting.set()
        self._thread = threading.Thread(target=self._drain, name="event-processor", daemon=True)
        self._thread.start()
        logger.info("Event processor started")

    def submit(self, event: ChangeEvent) -> bool:
        """Queue an event. Returns False once the processor has been stopped."""
        if not self._accepting.is_set():
            return False
        self.queue.put(event)
        if self.metrics is not None:
            self.metrics.event_queue_depth.set(self.queue.qsize())
        return True

    def stop(self) -> None:
        """Refuse new events and let the drain thread finish what is queued."""
        if not self._accepting.is_set():
            return
        self._accepting.clear()
        self.queue.put(_STOP)

    def join(self, grace: float) -> bool:
        """
        Wait at most grace seconds for the drain thread.

        Returns:
            True if the thread finished
        """
        if self._thread is None:
            return True
        self._thread.join(grace)
        if self._thread.is_alive():
            logger.warning(
                f"Event processor still busy after {grace}s; "
                f"{self.queue.qsize()} event(s) left unapplied"
            )
            return False
        return True

    def _drain(self) -> None:
        while True:
            item = self.queue.get()
            try:
                if item is _STOP:
                    break
                self.process(item)
            finally:
                self.queue.task_done()
                if self.metrics is not None:
                    self.metrics.event_queue_depth.set(self.queue.qsize())

        logger.info("Event processor stopped")

    def process(self, event: ChangeEvent) -> bool:
        """
        Apply one event to the target.

        Returns:
            True if the event was applied
        """
        table = event.table
        change_type = event.change_type.value
        operation = "delete" if event.is_delete else "upsert"
        log = ContextLogger(__name__, table_name=table.key, operation=operation)

        try:
            key = event.primary_key()
        except MissingPrimaryKeyError as e:
            log.warning(f"Skipping {change_type} event: {e}")
            self._record(table.key, change_type, "skipped")
            return False

        if event.is_delete:
            def apply():
                return self.target.delete_row(table, key)
        else:
            def apply():
                return self.target.upsert_rows(table, [event.row])

        with trace_operation(
            "apply_event",
            kind=trace.SpanKind.CONSUMER,
            table=table.key,
            change_type=change_type,
        ) as span:
            result = self.retry_policy.run(apply, f"[{table.key}] realtime {change_type}")
            span.set_attribute("attempts", result.attempts)

        if not result.ok:
            log.error(
                f"Failed to apply {change_type} for key {key} after "
                f"{result.attempts} attempt(s): {result.error}"
            )
            self._record(table.key, change_type, "failed")
            return False

        self.last_realtime_event_at[table.key] = datetime.now(UTC)
        self._record(table.key, change_type, "applied")
        log.debug(f"Applied {change_type} for key {key}")
        return True

    def _record(self, table_name: str, change_type: str, status: str) -> None:
        if self.metrics is not None:
            self.metrics.record_event(table_name, change_type, status)
