"""
Bounded retry with backoff, shared by provider calls and bootstrap scripts.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar

from .errors import TransientProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")

BACKOFF_MODES = ("exponential", "linear", "fixed")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry policy: at most `max_attempts` calls with a growing delay between them.

    Delay after attempt n (1-based):
        exponential: initial_delay * factor ** (n - 1)
        linear:      initial_delay * n
        fixed:       initial_delay
    capped at max_delay.
    """
    max_attempts: int = 3
    initial_delay: float = 5.0
    backoff: str = "exponential"
    factor: float = 2.0
    max_delay: float = 60.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff not in BACKOFF_MODES:
            raise ValueError(f"Unknown backoff mode: {self.backoff}")

    @classmethod
    def exponential(cls, max_attempts: int = 3, initial_delay: float = 5.0, factor: float = 2.0) -> "RetryPolicy":
        return cls(max_attempts=max_attempts, initial_delay=initial_delay, backoff="exponential", factor=factor)

    @classmethod
    def linear(cls, max_attempts: int = 3, step: float = 5.0) -> "RetryPolicy":
        return cls(max_attempts=max_attempts, initial_delay=step, backoff="linear")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given failed attempt (1-based)."""
        if self.backoff == "exponential":
            delay = self.initial_delay * (self.factor ** (attempt - 1))
        elif self.backoff == "linear":
            delay = self.initial_delay * attempt
        else:
            delay = self.initial_delay
        return min(delay, self.max_delay)

    def run(
        self,
        func: Callable[[], T],
        retry_on: Tuple[Type[BaseException], ...] = (TransientProviderError,),
        on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> T:
        """
        Call `func` until it succeeds or the attempts are exhausted.

        Only exceptions listed in `retry_on` are retried; anything else
        propagates immediately. The last retryable exception is re-raised
        once attempts run out.

        Args:
            func: Zero-argument callable to invoke
            retry_on: Exception types that trigger a retry
            on_retry: Callback(attempt, error, delay) invoked before sleeping
            sleep: Sleep function (injectable for tests)

        Returns:
            Whatever `func` returns
        """
        attempt = 1
        while True:
            try:
                return func()
            except retry_on as e:
                if attempt >= self.max_attempts:
                    logger.warning(f"Giving up after {attempt} attempts: {e}")
                    raise

                delay = self.delay_for(attempt)
                if on_retry:
                    on_retry(attempt, e, delay)
                logger.debug(f"Attempt {attempt} failed ({e}), retrying in {delay}s...")
                sleep(delay)
                attempt += 1


def poll_until(
    check: Callable[[], bool],
    timeout: float,
    interval: float,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """
    Poll `check` every `interval` seconds until it returns True or `timeout` expires.

    Returns:
        True if the condition was met, False on timeout
    """
    deadline = clock() + timeout
    while True:
        if check():
            return True
        if clock() >= deadline:
            return False
        sleep(interval)
