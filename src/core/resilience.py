"""Retry and circuit-breaker policy for calls to the billing provider."""

import logging
import time
from threading import Lock
from typing import Any, Callable, TypeVar

import stripe
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from src.core.config import get_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class CircuitOpenError(Exception):
    """Raised when the breaker refuses a call during its cool-down window."""

    def __init__(self, retry_after_seconds: float) -> None:
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            "Circuit breaker is open. Service may be down. Please try again later."
        )


def is_retryable_error(error: BaseException) -> bool:
    """Decide whether a billing provider error is transient.

    Connection failures, timeouts and HTTP 429/5xx are transient. Every
    other 4xx (bad request, card errors, missing objects, auth) is terminal.
    """
    if isinstance(error, (stripe.APIConnectionError, stripe.RateLimitError)):
        return True
    if isinstance(error, (ConnectionError, TimeoutError)):
        return True
    if isinstance(error, stripe.StripeError):
        return error.http_status in RETRYABLE_STATUS_CODES
    return False


class CircuitBreaker:
    """Opens after ``threshold`` consecutive transient failures.

    While open, calls fail fast with CircuitOpenError until
    ``reset_seconds`` have passed since the last failure; the next call is
    then let through and closes the breaker on success.
    """

    def __init__(
        self,
        threshold: int = 5,
        reset_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.threshold = threshold
        self.reset_seconds = reset_seconds
        self._clock = clock
        self._failures = 0
        self._last_failure_at = 0.0
        self._open = False
        self._lock = Lock()

    @property
    def is_open(self) -> bool:
        with self._lock:
            return self._open

    def _before_call(self) -> None:
        with self._lock:
            if not self._open:
                return
            elapsed = self._clock() - self._last_failure_at
            if elapsed < self.reset_seconds:
                raise CircuitOpenError(self.reset_seconds - elapsed)
            # Half-open: allow one trial call.
            self._open = False
            self._failures = 0
            logger.info("Billing circuit breaker half-open, allowing trial call")

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            self._last_failure_at = self._clock()
            if self._failures >= self.threshold and not self._open:
                self._open = True
                logger.error(
                    "Billing circuit breaker opened after %d consecutive failures",
                    self._failures,
                )

    def call(self, fn: Callable[[], T]) -> T:
        """Run ``fn`` under the breaker."""
        self._before_call()
        try:
            result = fn()
        except Exception as e:
            if is_retryable_error(e):
                self.record_failure()
            raise
        self.record_success()
        return result

    def reset(self) -> None:
        with self._lock:
            self._open = False
            self._failures = 0
            self._last_failure_at = 0.0


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Billing call failed (attempt %d), retrying: %s",
        retry_state.attempt_number,
        error,
    )


class RetryPolicy:
    """Exponential backoff retry for transient billing provider errors."""

    def __init__(
        self,
        max_attempts: int = 4,
        min_wait_seconds: float = 1.0,
        max_wait_seconds: float = 10.0,
    ) -> None:
        self.max_attempts = max_attempts
        self.min_wait_seconds = min_wait_seconds
        self.max_wait_seconds = max_wait_seconds

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        settings = get_settings()
        return cls(
            max_attempts=settings.billing_max_attempts,
            min_wait_seconds=settings.billing_retry_min_seconds,
            max_wait_seconds=settings.billing_retry_max_seconds,
        )

    def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        retrying = Retrying(
            retry=retry_if_exception(is_retryable_error),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.min_wait_seconds,
                min=self.min_wait_seconds,
                max=self.max_wait_seconds,
            ),
            before_sleep=_log_retry,
            reraise=True,
        )
        return retrying(fn, *args, **kwargs)


# Global breaker shared by every billing call in the process
_billing_breaker: CircuitBreaker | None = None


def get_billing_breaker() -> CircuitBreaker:
    """Get or create the process-wide billing circuit breaker."""
    global _billing_breaker
    if _billing_breaker is None:
        settings = get_settings()
        _billing_breaker = CircuitBreaker(
            threshold=settings.circuit_breaker_threshold,
            reset_seconds=settings.circuit_breaker_reset_seconds,
        )
    return _billing_breaker
