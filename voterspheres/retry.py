"""
Retry logic with exponential backoff for handling transient failures.

Provides the backoff policy shared by source page fetches, warm jobs and
the resync scheduler, plus a circuit breaker used to stop calling a cache
backend that keeps failing.
"""

import functools
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Tuple, Type


class RetryError(Exception):
    """Raised when all retry attempts are exhausted."""
    pass


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Exponential backoff schedule with a bounded number of attempts.

    Attempts are counted from 1. ``delay_for(n)`` is the wait before
    attempt ``n + 1``; ``exhausted(n)`` is true once ``n`` attempts
    have been made and no further retry is allowed.
    """

    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0

    def delay_for(self, attempt: int) -> float:
        if attempt < 1:
            return 0.0
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        return min(delay, self.max_delay)

    def exhausted(self, attempt: int) -> bool:
        return attempt >= self.max_attempts


class JobState(str, Enum):
    """Lifecycle of a unit of retried background work."""

    QUEUED = "queued"
    ACTIVE = "active"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def next_state(
    current: JobState,
    succeeded: bool,
    attempts: int,
    policy: BackoffPolicy,
) -> Tuple[JobState, float]:
    """
    Resolve where an active unit of work goes after one attempt.

    Args:
        current: State the work is in (must be ACTIVE)
        succeeded: Outcome of the attempt
        attempts: Attempts made so far, including this one
        policy: Backoff schedule and retry ceiling

    Returns:
        (new state, seconds to wait before the work may run again)
    """
    if current != JobState.ACTIVE:
        raise ValueError(f"Cannot finish work in state {current.value}")
    if succeeded:
        return JobState.SUCCEEDED, 0.0
    if policy.exhausted(attempts):
        return JobState.FAILED, 0.0
    return JobState.QUEUED, policy.delay_for(attempts)


def exponential_backoff(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable] = None,
    retry_if: Optional[Callable[[Exception], bool]] = None,
    sleep: Callable[[float], None] = time.sleep,
):
    """
    Decorator for retrying functions with exponential backoff.

    Args:
        max_retries: Maximum number of retry attempts (0 = no retries)
        base_delay: Initial delay in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential calculation (delay *= base)
        exceptions: Tuple of exceptions to catch and retry
        on_retry: Optional callback function(attempt, exception, delay)
        retry_if: Optional predicate; exceptions it rejects are re-raised at once
        sleep: Sleep function (injectable for tests)

    Example:
        @exponential_backoff(max_retries=3, base_delay=1.0)
        def fetch_page(url):
            return requests.get(url)
    """
    policy = BackoffPolicy(
        max_attempts=max_retries + 1,
        base_delay=base_delay,
        max_delay=max_delay,
        exponential_base=exponential_base,
    )

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            attempt = 0
            while True:
                attempt += 1
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if retry_if is not None and not retry_if(e):
                        raise
                    if policy.exhausted(attempt):
                        raise RetryError(
                            f"Failed after {attempt} attempts: {str(e)}"
                        ) from e

                    current_delay = policy.delay_for(attempt)
                    if on_retry:
                        on_retry(attempt, e, current_delay)
                    sleep(current_delay)

        return wrapper
    return decorator


class CircuitBreaker:
    """
    Circuit breaker pattern to prevent repeated calls to failing services.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: Too many failures, requests are blocked
    - HALF_OPEN: Testing if service has recovered
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(self, failure_threshold: int = 5, recovery_timeout: int = 60):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            recovery_timeout: Seconds to wait before attempting recovery
        """
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout

        self.failure_count = 0
        self.last_failure_time: Optional[datetime] = None
        self.state = self.CLOSED
        self._lock = threading.Lock()

    def allow(self) -> bool:
        """Return True if a call may go through right now."""
        with self._lock:
            if self.state != self.OPEN:
                return True
            if self._should_attempt_reset():
                self.state = self.HALF_OPEN
                return True
            return False

    def _should_attempt_reset(self) -> bool:
        """Check if enough time has passed to attempt reset."""
        if self.last_failure_time is None:
            return True

        elapsed = (datetime.now() - self.last_failure_time).total_seconds()
        return elapsed >= self.recovery_timeout

    def record_success(self):
        """Reset circuit breaker on successful call."""
        with self._lock:
            self.failure_count = 0
            self.state = self.CLOSED

    def record_failure(self):
        """Record failure and potentially open circuit."""
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = datetime.now()

            if self.state == self.HALF_OPEN or self.failure_count >= self.failure_threshold:
                self.state = self.OPEN


def is_transient_error(exception: Exception) -> bool:
    """
    Determine if an exception is likely transient and should be retried.

    Args:
        exception: Exception to check

    Returns:
        True if error is likely transient (timeout, connection, 5xx)
    """
    status = getattr(getattr(exception, "response", None), "status_code", None)
    if isinstance(status, int):
        return should_retry_http_status(status)

    error_str = str(exception).lower()

    transient_keywords = [
        'timeout',
        'timed out',
        'connection',
        'temporary failure',
        'service unavailable',
        '503',
        '502',
        '500',
        '429',  # Rate limit
        'connection reset',
    ]

    return any(keyword in error_str for keyword in transient_keywords)


def should_retry_http_status(status_code: int) -> bool:
    """
    Check if HTTP status code indicates a retryable error.

    Args:
        status_code: HTTP status code

    Returns:
        True if should retry
    """
    retryable_codes = {
        408,  # Request Timeout
        429,  # Too Many Requests
        500,  # Internal Server Error
        502,  # Bad Gateway
        503,  # Service Unavailable
        504,  # Gateway Timeout
    }

    return status_code in retryable_codes
