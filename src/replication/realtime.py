"""
Realtime subscriber.

One LISTEN subscription per active, realtime-enabled table, each on its own
daemon thread. Notifications are decoded into ChangeEvents and handed to the
event processor's queue; nothing is applied on the listener thread.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from src.utils.logging import ContextLogger

from .errors import ChannelClosedError, ChannelError, ChannelTimeoutError
from .events import ChangeEvent, PayloadError, parse_notification
from .registry import TableSpec

logger = logging.getLogger(__name__)


class ChannelState(str, Enum):
    CONNECTING = "CONNECTING"
    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"


@dataclass
class Subscription:
    """Listener thread state for one table."""

    table: TableSpec
    state: ChannelState = ChannelState.CONNECTING
    failures: int = 0
    thread: Optional[threading.Thread] = None
    revive: threading.Event = field(default_factory=threading.Event)


class RealtimeSubscriber:
    """
    Keeps one notification channel open per table.

    CHANNEL_ERROR and TIMED_OUT resubscribe on a fresh connection after a
    linear backoff (capped). CLOSED parks the subscription until
    revive_closed() is called.

    Args:
        source: SourceConnector (open_channel(table) -> NotifyChannel)
        tables: Tables to subscribe
        submit: Callable taking a ChangeEvent and returning False once the
            processor no longer accepts events
        shutdown_event: Ends every listener thread when set
        metrics: Optional ReplicationMetrics
        base_delay: Resubscribe delay unit in seconds
        max_delay: Upper bound for the resubscribe delay
        poll_timeout: Seconds each poll waits for notifications
    """

    def __init__(
        self,
        source: Any,
        tables: Iterable[TableSpec],
        submit: Callable[[ChangeEvent], bool],
        shutdown_event: threading.Event,
        metrics: Any = None,
        base_delay: float = 0.5,
        max_delay: float = 30.0,
        poll_timeout: float = 1.0,
    ):
        self.source = source
        self.submit = submit
        self.shutdown_event = shutdown_event
        self.metrics = metrics
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.poll_timeout = poll_timeout
        self._subscriptions = {table.key: Subscription(table) for table in tables}
        self._lock = threading.Lock()

    def start(self) -> None:
        """Start one listener thread per table."""
        for sub in self._subscriptions.values():
            sub.thread = threading.Thread(
                target=self._listen,
                args=(sub,),
                name=f"realtime-{sub.table.key}",
                daemon=True,
            )
            sub.thread.start()

        logger.info(f"Realtime subscriptions started for {len(self._subscriptions)} table(s)")

    def states(self) -> dict[str, ChannelState]:
        with self._lock:
            return {key: sub.state for key, sub in self._subscriptions.items()}

    def revive_closed(self) -> int:
        """Wake every subscription parked in CLOSED. Returns how many were revived."""
        revived = 0
        with self._lock:
            for sub in self._subscriptions.values():
                if sub.state is ChannelState.CLOSED and not sub.revive.is_set():
                    sub.revive.set()
                    revived += 1

        if revived:
            logger.info(f"Reviving {revived} closed realtime channel(s)")
        return revived

    def unsubscribe_all(self, timeout: float = 2.0) -> None:
        """
        Stop every listener thread and wait up to timeout seconds for each.

        Listener threads close their own channels; errors while closing are
        ignored. Requires shutdown_event to be set.
        """
        for sub in self._subscriptions.values():
            sub.revive.set()
            if sub.thread is not None and sub.thread.is_alive():
                sub.thread.join(timeout)
                if sub.thread.is_alive():
                    logger.warning(f"[{sub.table.key}] Realtime listener did not stop within {timeout}s")

    def _set_state(self, sub: Subscription, state: ChannelState) -> None:
        with self._lock:
            sub.state = state
        if self.metrics is not None:
            self.metrics.record_channel_state(sub.table.key, state.value)

    def _listen(self, sub: Subscription) -> None:
        log = ContextLogger(__name__, table_name=sub.table.key, operation="realtime")

        while not self.shutdown_event.is_set():
            if sub.state is ChannelState.CLOSED:
                if not sub.revive.wait(self.poll_timeout):
                    continue
                sub.revive.clear()
                if self.shutdown_event.is_set():
                    break
                sub.failures = 0

            self._subscribe_once(sub, log)

            if sub.state in (ChannelState.CHANNEL_ERROR, ChannelState.TIMED_OUT):
                sub.failures += 1
                delay = min(self.base_delay * sub.failures, self.max_delay)
                log.warning(f"Resubscribing in {delay:.1f}s (attempt {sub.failures})")
                self.shutdown_event.wait(delay)

        log.debug("Realtime listener stopped")

    def _subscribe_once(self, sub: Subscription, log: ContextLogger) -> None:
        channel = None
        self._set_state(sub, ChannelState.CONNECTING)

        try:
            channel = self.source.open_channel(sub.table)
            channel.open()
            self._set_state(sub, ChannelState.SUBSCRIBED)
            sub.failures = 0
            log.info(f"Realtime subscribed on channel {channel.channel}")

            while not self.shutdown_event.is_set():
                for payload in channel.poll(self.poll_timeout):
                    self._handle(sub.table, payload, log)

        except ChannelClosedError as e:
            self._set_state(sub, ChannelState.CLOSED)
            if not self.shutdown_event.is_set():
                log.warning(f"Realtime channel closed: {e}")
        except ChannelTimeoutError as e:
            self._set_state(sub, ChannelState.TIMED_OUT)
            log.warning(f"Realtime channel timed out: {e}")
        except ChannelError as e:
            self._set_state(sub, ChannelState.CHANNEL_ERROR)
            log.error(f"Realtime channel error: {e}")
        except Exception as e:
            self._set_state(sub, ChannelState.CHANNEL_ERROR)
            log.error(f"Realtime listener failed: {type(e).__name__}: {e}", exc_info=True)
        finally:
            if channel is not None:
                try:
                    channel.close()
                except Exception as e:
                    log.debug(f"Ignoring error while closing channel: {e}")

        if self.shutdown_event.is_set():
            self._set_state(sub, ChannelState.CLOSED)

    def _handle(self, table: TableSpec, payload: str, log: ContextLogger) -> None:
        try:
            event = parse_notification(table, payload)
        except PayloadError as e:
            log.warning(f"Dropping malformed notification: {e}")
            if self.metrics is not None:
                self.metrics.record_event(table.key, "UNKNOWN", "dropped")
            return

        if not self.submit(event):
            log.debug(f"Processor stopped; dropping {event.change_type.value} event")
