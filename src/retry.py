import random
import threading
import time
from typing import Any, Callable, Optional, TypeVar

from logger import get_logger
from rpc import is_transient as default_is_transient

logger = get_logger(__name__)

T = TypeVar("T")


class RetryExhausted(Exception):
    """
    Every attempt failed with a transient error.
    """
    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class RetryAborted(Exception):
    """
    The stop event was set while waiting between attempts.
    """


class RetryPolicy:
    """
    Wraps a single call: transient errors are retried up to `max_attempts`
    total attempts, permanent errors are re-raised at once.

    Whether a failure is transient is decided by `is_transient`. The policy
    does not decide what happens after exhaustion; callers get RetryExhausted.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        is_transient: Callable[[BaseException], bool] = default_is_transient,
        initial_delay: float = 2.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        stop_event: Optional[threading.Event] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if initial_delay < 0 or max_delay < 0:
            raise ValueError("delays must be >= 0")
        if exponential_base <= 0:
            raise ValueError("exponential_base must be > 0")
        self.max_attempts = max_attempts
        self.is_transient = is_transient
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.stop_event = stop_event

    @classmethod
    def from_settings(cls, settings, stop_event: Optional[threading.Event] = None) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_attempts,
            initial_delay=settings.retry_initial_delay,
            max_delay=settings.retry_max_delay,
            stop_event=stop_event,
        )

    def compute_delay(self, attempt: int) -> float:
        """
        Delay after the `attempt`-th failure (0-based), jittered into [0.5, 1.5).
        """
        delay = min(self.initial_delay * (self.exponential_base ** attempt), self.max_delay)
        if self.jitter:
            delay *= 0.5 + random.random()
        return max(delay, 0.0)

    def _sleep(self, delay: float) -> None:
        if self.stop_event is None:
            time.sleep(delay)
        elif self.stop_event.wait(delay):
            raise RetryAborted("stop requested during backoff")

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        name = getattr(func, "__name__", repr(func))
        for attempt in range(self.max_attempts):
            try:
                return func(*args, **kwargs)
            except Exception as e:
                if not self.is_transient(e):
                    raise
                if attempt == self.max_attempts - 1:
                    raise RetryExhausted(self.max_attempts, e) from e
                delay = self.compute_delay(attempt)
                logger.warning(
                    "rpc_call_retry",
                    call=name,
                    attempt=attempt + 1,
                    max_attempts=self.max_attempts,
                    delay=round(delay, 3),
                    error=str(e),
                )
                self._sleep(delay)
        raise RuntimeError("unreachable retry state")
