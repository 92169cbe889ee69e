"""
Bounded retry and background execution for remote calls.

Every remote call site goes through ExecutionEngine so transient provider
errors are absorbed in exactly one place.
"""

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional, TypeVar

from errors import is_transient

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryStrategy:
    """Base retry policy: how often, how long, and for which errors."""

    def __init__(
        self,
        max_retries: int,
        timeout: float = 0,
        retry_on: Callable[[BaseException], bool] = is_transient,
    ):
        """
        Args:
            max_retries: Retries allowed after the first attempt
            timeout: Maximum total wall-clock seconds, 0 for no limit
            retry_on: Predicate deciding whether an error is retryable
        """
        self.max_retries = max_retries
        self.timeout = timeout
        self.retry_on = retry_on

    def can_retry(self, retry_count: int, error: BaseException) -> bool:
        if retry_count > self.max_retries:
            return False
        return self.retry_on(error)

    def wait_seconds(self, retry_count: int) -> float:
        raise NotImplementedError


class DefaultRetryStrategy(RetryStrategy):
    """Fixed wait between attempts."""

    def __init__(
        self,
        max_retries: int = 3,
        wait_interval: float = 2,
        timeout: float = 240,
        retry_on: Callable[[BaseException], bool] = is_transient,
    ):
        super().__init__(max_retries, timeout, retry_on)
        self.wait_interval = wait_interval

    def wait_seconds(self, retry_count: int) -> float:
        return self.wait_interval


class ExponentialRetryStrategy(RetryStrategy):
    """Wait 2^n - 1 seconds, capped, with no overall timeout."""

    def __init__(
        self,
        max_retries: int = 5,
        max_wait_interval: float = 10,
        retry_on: Callable[[BaseException], bool] = is_transient,
    ):
        super().__init__(max_retries, 0, retry_on)
        self.max_wait_interval = max_wait_interval

    def wait_seconds(self, retry_count: int) -> float:
        return min(2**retry_count - 1, self.max_wait_interval)


class NoRetryStrategy(RetryStrategy):
    """Single attempt."""

    def __init__(self, timeout: float = 240):
        super().__init__(0, timeout, lambda error: False)

    def wait_seconds(self, retry_count: int) -> float:
        return 0


def retry_any(error: BaseException) -> bool:
    """Retry predicate for actions where every failure is worth another try."""
    return True


class ExecutionEngine:
    """Runs tasks with a retry strategy, inline or on a background pool."""

    def __init__(
        self,
        max_workers: int = 8,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="fleet-exec"
        )
        self._sleep = sleep

    def execute_with_retry(
        self, task: Callable[[], T], strategy: Optional[RetryStrategy] = None
    ) -> T:
        """
        Run a task, retrying failures the strategy accepts.

        Args:
            task: Zero-argument callable
            strategy: Retry policy, DefaultRetryStrategy when omitted

        Returns:
            The task's result

        Raises:
            The last failure once retries or the time budget run out
        """
        strategy = strategy or DefaultRetryStrategy()
        started = time.monotonic()
        retry_count = 0

        while True:
            try:
                return task()
            except Exception as e:
                retry_count += 1
                if not strategy.can_retry(retry_count, e):
                    if retry_count > 1:
                        logger.warning(
                            f"Giving up after {retry_count} attempt(s): {e}"
                        )
                    raise

                delay = strategy.wait_seconds(retry_count)
                if strategy.timeout:
                    elapsed = time.monotonic() - started
                    if elapsed + delay > strategy.timeout:
                        logger.warning(
                            f"Retry budget of {strategy.timeout}s exhausted after {elapsed:.0f}s: {e}"
                        )
                        raise

                logger.info(
                    f"Retrying after error: {e}, attempt {retry_count}/{strategy.max_retries}, waiting {delay:.1f}s..."
                )
                self._sleep(delay)

    def execute_async(
        self, task: Callable[[], T], strategy: Optional[RetryStrategy] = None
    ) -> Future:
        """Fire-and-forget variant; the returned future carries the outcome."""
        return self._executor.submit(self.execute_with_retry, task, strategy)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
