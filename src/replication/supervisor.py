"""
Process supervisor.

Builds the worker's shared context, starts the realtime and reconciliation
paths for the selected mode, and runs the shutdown sequence on SIGINT/SIGTERM.
"""

import logging
import queue
import signal
import threading
from dataclasses import dataclass, field
from typing import Any, Optional

from src.utils.db_pool import PostgresConnectionPool
from src.utils.retry import RetryPolicy

from .config import Settings
from .connectors import SourceConnector, TargetConnector
from .deletions import DeletionLogProcessor
from .processor import EventProcessor
from .realtime import RealtimeSubscriber
from .reconciler import ReconciliationEngine, ReconciliationReport
from .registry import TableRegistry
from .scheduler import ReconciliationScheduler
from .state import CursorStore

logger = logging.getLogger(__name__)


@dataclass
class WorkerContext:
    """Everything the worker's components share."""

    settings: Settings
    source: Any
    target: Any
    registry: TableRegistry
    cursor_store: CursorStore
    retry_policy: RetryPolicy
    shutdown_event: threading.Event
    event_queue: queue.Queue = field(default_factory=queue.Queue)
    metrics: Any = None
    pools: list = field(default_factory=list)


def build_context(settings: Settings, metrics: Any = None) -> WorkerContext:
    """Create pools, connectors and the cursor store for the given settings."""
    shutdown_event = threading.Event()

    source_pool = PostgresConnectionPool(
        settings.source.url, settings.source.service_key, pool_name="source"
    )
    target_pool = PostgresConnectionPool(
        settings.target.url, settings.target.service_key, pool_name="target"
    )

    return WorkerContext(
        settings=settings,
        source=SourceConnector(source_pool),
        target=TargetConnector(target_pool, page_size=settings.reconciliation.batch_size),
        registry=TableRegistry(settings.tables),
        cursor_store=CursorStore(settings.state_path),
        retry_policy=RetryPolicy(
            attempts=settings.retry_attempts,
            base_delay=settings.retry_base_delay,
            cancel_event=shutdown_event,
        ),
        shutdown_event=shutdown_event,
        metrics=metrics,
        pools=[source_pool, target_pool],
    )


class ProcessSupervisor:
    """
    Owns the worker's threads for one process lifetime.

    Usage:
        supervisor = ProcessSupervisor(build_context(settings))
        exit_code = supervisor.run()
    """

    def __init__(self, context: WorkerContext, install_signal_handlers: bool = True):
        self.context = context
        self.install_signal_handlers = install_signal_handlers

        settings = context.settings
        self.deletions = DeletionLogProcessor(
            source=context.source,
            target=context.target,
            registry=context.registry,
            cursor_store=context.cursor_store,
            retry_policy=context.retry_policy,
            options=settings.deletion_log,
            batch_size=settings.reconciliation.batch_size,
            shutdown_event=context.shutdown_event,
            metrics=context.metrics,
        )
        self.engine = ReconciliationEngine(
            source=context.source,
            target=context.target,
            registry=context.registry,
            cursor_store=context.cursor_store,
            retry_policy=context.retry_policy,
            options=settings.reconciliation,
            deletion_processor=self.deletions,
            shutdown_event=context.shutdown_event,
            metrics=context.metrics,
        )
        self.processor: Optional[EventProcessor] = None
        self.subscriber: Optional[RealtimeSubscriber] = None
        self.scheduler: Optional[ReconciliationScheduler] = None
        self._shutdown_lock = threading.Lock()
        self._stopped = False

    @property
    def settings(self) -> Settings:
        return self.context.settings

    def request_shutdown(self, signum: Optional[int] = None, frame: Any = None) -> None:
        """Signal handler: ask every thread to stop."""
        if not self.context.shutdown_event.is_set():
            name = signal.Signals(signum).name if signum else "request"
            logger.info(f"Shutting down ({name})...")
        self.context.shutdown_event.set()

    def startup(self) -> None:
        """Load cursors and resolve every table's mode against the source."""
        ctx = self.context
        logger.info(
            f"Starting sync worker: {len(ctx.registry)} table(s) from {self.settings.config_path}"
        )
        logger.info(
            f"Mode={self.settings.mode} realtime={self.settings.run_realtime} "
            f"loop={self.settings.run_reconciliation_loop}"
        )

        ctx.cursor_store.load()
        ctx.registry.resolve(ctx.source, ctx.retry_policy)
        self.deletions.probe()

        known = {table.key for table in ctx.registry} | {self.deletions.key}
        stale = [key for key in ctx.cursor_store.keys() if key not in known]
        if stale:
            logger.info(f"Keeping cursor state for unconfigured table(s): {', '.join(stale)}")

    def run(self) -> int:
        """
        Run the worker until shutdown (default mode) or for one pass.

        Returns:
            Process exit code
        """
        if self.install_signal_handlers:
            signal.signal(signal.SIGINT, self.request_shutdown)
            signal.signal(signal.SIGTERM, self.request_shutdown)

        try:
            self.startup()

            if self.settings.run_single_reconciliation:
                logger.info("Running single reconciliation pass...")
                report = self.engine.reconcile_all()
                if not report.succeeded:
                    logger.warning("Single reconciliation pass finished with failures")
                return 0

            started = False
            if self.settings.run_realtime:
                self._start_realtime()
                started = True
            else:
                logger.info("Realtime stream disabled")

            if self.settings.run_reconciliation_loop and self.settings.reconciliation.interval_ms > 0:
                self._start_loop()
                started = True
            else:
                logger.info("Periodic reconciliation loop disabled")

            if not started:
                logger.warning("Neither realtime nor the reconciliation loop is enabled; exiting")
                return 0

            logger.info("Worker ready. Press Ctrl+C to exit.")
            self._wait_for_shutdown()
            return 0
        finally:
            self.shutdown()

    def reconcile_cycle(self) -> ReconciliationReport:
        """One scheduled sweep, after which closed realtime channels are revived."""
        report = self.engine.reconcile_all()
        if self.subscriber is not None and not self.context.shutdown_event.is_set():
            self.subscriber.revive_closed()
        return report

    def shutdown(self) -> None:
        """
        Stop every thread, persist cursors and release connections.

        Safe to call more than once.
        """
        with self._shutdown_lock:
            if self._stopped:
                return
            self._stopped = True

        ctx = self.context
        ctx.shutdown_event.set()

        if self.processor is not None:
            self.processor.stop()

        if self.subscriber is not None:
            self.subscriber.unsubscribe_all()

        if self.scheduler is not None:
            try:
                self.scheduler.stop()
            except Exception as e:
                logger.warning(f"Error stopping scheduler: {e}")

        if self.processor is not None:
            self.processor.join(self.settings.shutdown_grace_seconds)

        try:
            ctx.cursor_store.save()
        except OSError as e:
            logger.error(f"Cursor state not persisted on shutdown: {e}")

        for pool in ctx.pools:
            try:
                logger.debug(f"Closing pool: {pool.get_stats()}")
                pool.close()
            except Exception as e:
                logger.warning(f"Error closing pool {getattr(pool, 'pool_name', pool)}: {e}")

        logger.info("Goodbye.")

    def _start_realtime(self) -> None:
        ctx = self.context
        self.processor = EventProcessor(
            target=ctx.target,
            retry_policy=ctx.retry_policy,
            event_queue=ctx.event_queue,
            metrics=ctx.metrics,
        )
        self.processor.start()

        tables = ctx.registry.realtime_tables()
        self.subscriber = RealtimeSubscriber(
            source=ctx.source,
            tables=tables,
            submit=self.processor.submit,
            shutdown_event=ctx.shutdown_event,
            metrics=ctx.metrics,
        )
        self.subscriber.start()

    def _start_loop(self) -> None:
        interval = self.settings.reconciliation.interval_ms / 1000
        self.scheduler = ReconciliationScheduler(interval_seconds=interval)
        self.scheduler.add_reconcile_job(self.reconcile_cycle)
        self.scheduler.start()
        for job in self.scheduler.list_jobs():
            logger.info(f"Reconciliation every {interval:g}s, next run at {job['next_run_time']}")

    def _wait_for_shutdown(self) -> None:
        # Short waits keep the main thread responsive to signals
        while not self.context.shutdown_event.wait(1.0):
            pass
