"""
Retry policy with linear backoff for source and target operations

Shared by the event processor, the reconciliation engine and the deletion
log processor:
- Fixed number of attempts (default 5)
- Linear backoff: attempt k waits base_delay * k before attempt k + 1
- Outcome returned as a RetryResult instead of raising
- Cancellable through a threading.Event (shutdown)

Usage:
    from src.utils.retry import RetryPolicy

    policy = RetryPolicy(attempts=5, base_delay=0.5)
    result = policy.run(lambda: target.upsert_rows(table, rows), "upsert orders")
    if not result.ok:
        logger.error(f"Upsert failed after {result.attempts} attempts: {result.error}")
"""

import logging
import threading
import time
from dataclasses import dataclass
from functools import wraps
from typing import Any, Callable, Generic, Optional, TypeVar

from prometheus_client import Counter

logger = logging.getLogger(__name__)

T = TypeVar("T")


RETRY_ATTEMPTS = Counter(
    "sync_retry_attempts_total",
    "Failed attempts seen by the retry policy",
    ["outcome"],  # retried, exhausted, cancelled
)


@dataclass
class RetryResult(Generic[T]):
    """Outcome of an operation run through a RetryPolicy."""

    ok: bool
    value: Optional[T] = None
    error: Optional[BaseException] = None
    attempts: int = 0

    def unwrap(self) -> T:
        """Return the value or raise the last error."""
        if self.ok:
            return self.value
        if self.error is not None:
            raise self.error
        raise RuntimeError("Operation failed without an error")


class RetryPolicy:
    """
    Fixed-attempt linear backoff

    Args:
        attempts: Maximum number of attempts (default: 5)
        base_delay: Delay unit in seconds (default: 0.5)
        cancel_event: When set, backoff sleeps end and no further attempt is made
        sleep: Sleep function (default: time.sleep, ignored when cancel_event is set)
    """

    def __init__(
        self,
        attempts: int = 5,
        base_delay: float = 0.5,
        cancel_event: Optional[threading.Event] = None,
        sleep: Callable[[float], Any] = time.sleep,
    ):
        if attempts < 1:
            raise ValueError(f"attempts must be >= 1, got {attempts}")
        if base_delay < 0:
            raise ValueError(f"base_delay must be >= 0, got {base_delay}")

        self.attempts = attempts
        self.base_delay = base_delay
        self.cancel_event = cancel_event
        self._sleep = sleep

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds after failed attempt number `attempt` (1-indexed)."""
        return self.base_delay * attempt

    def run(
        self,
        operation: Callable[[], T],
        description: str = "operation",
        give_up_on: tuple[type[BaseException], ...] = (),
    ) -> RetryResult[T]:
        """
        Run operation until it succeeds or attempts are exhausted

        Args:
            operation: Zero-argument callable
            description: Used in log lines
            give_up_on: Exception types that end the run at once, without retrying

        Returns:
            RetryResult with ok=True and the value, or ok=False and the last error
        """
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.attempts + 1):
            try:
                return RetryResult(ok=True, value=operation(), attempts=attempt)
            except Exception as e:
                last_error = e

                if isinstance(e, give_up_on):
                    return RetryResult(ok=False, error=e, attempts=attempt)

                if attempt == self.attempts:
                    RETRY_ATTEMPTS.labels(outcome="exhausted").inc()
                    logger.error(
                        f"{description} failed after {attempt} attempt(s): "
                        f"{type(e).__name__}: {e}"
                    )
                    break

                delay = self.delay_for(attempt)
                logger.warning(
                    f"{description} attempt {attempt}/{self.attempts} failed: "
                    f"{type(e).__name__}: {e}. Retrying in {delay:.2f}s..."
                )

                if self._wait(delay):
                    RETRY_ATTEMPTS.labels(outcome="cancelled").inc()
                    logger.warning(f"{description} retry cancelled by shutdown")
                    return RetryResult(ok=False, error=e, attempts=attempt)

                RETRY_ATTEMPTS.labels(outcome="retried").inc()

        return RetryResult(ok=False, error=last_error, attempts=self.attempts)

    def call(
        self,
        operation: Callable[[], T],
        description: str = "operation",
        give_up_on: tuple[type[BaseException], ...] = (),
    ) -> T:
        """Run operation through the policy and raise the last error on failure."""
        return self.run(operation, description, give_up_on).unwrap()

    def _wait(self, delay: float) -> bool:
        """Sleep for delay seconds. Returns True when cancelled."""
        if self.cancel_event is not None:
            return self.cancel_event.wait(delay)
        self._sleep(delay)
        return False


def retry_with_backoff(attempts: int = 5, base_delay: float = 0.5):
    """
    Decorator form of RetryPolicy.call

    Example:
        @retry_with_backoff(attempts=3, base_delay=1.0)
        def mark_processed(ids):
            source.mark_deletions_processed(ids)
    """
    policy = RetryPolicy(attempts=attempts, base_delay=base_delay)

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            func_name = getattr(func, "__name__", "function")
            return policy.call(lambda: func(*args, **kwargs), func_name)

        return wrapper
    return decorator
