"""Retry handler for verification agent calls with circuit breaker pattern."""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

from pydantic_ai.exceptions import ModelHTTPError, ModelRetry, UnexpectedModelBehavior


logger = logging.getLogger(__name__)

T = TypeVar("T")

HTTP_TOO_MANY_REQUESTS = 429
HTTP_SERVER_ERROR = 500


class ErrorRetryability(Enum):
    """Classification of whether an error should be retried."""

    RETRYABLE = "retryable"
    NON_RETRYABLE = "non_retryable"


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 2
    base_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 10.0
    circuit_breaker_threshold: int = 5
    circuit_breaker_cooldown: float = 60.0


class CircuitBreakerState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing if service recovered


class CircuitBreakerOpenError(RuntimeError):
    """Raised instead of calling the judge while the breaker is open."""


class CircuitBreaker:
    """Stops hammering the judge after repeated failures."""

    def __init__(self, threshold: int = 5, cooldown: float = 60.0) -> None:
        self.threshold = threshold
        self.cooldown = cooldown
        self.failure_count = 0
        self.last_failure_time = 0.0
        self.state = CircuitBreakerState.CLOSED

    def record_success(self) -> None:
        """Record a successful request."""
        self.failure_count = 0
        self.state = CircuitBreakerState.CLOSED

    def record_failure(self) -> None:
        """Record a failed request."""
        self.failure_count += 1
        self.last_failure_time = time.monotonic()

        if self.failure_count >= self.threshold:
            self.state = CircuitBreakerState.OPEN
            logger.warning(
                "circuit_breaker_opened",
                extra={"failure_count": self.failure_count, "cooldown": self.cooldown},
            )

    def can_attempt(self) -> bool:
        """Check if a request can be attempted."""
        if self.state == CircuitBreakerState.CLOSED:
            return True

        if self.state == CircuitBreakerState.OPEN:
            if time.monotonic() - self.last_failure_time >= self.cooldown:
                self.state = CircuitBreakerState.HALF_OPEN
                logger.info("circuit_breaker_half_open", extra={"cooldown_elapsed": True})
                return True
            return False

        # HALF_OPEN: let one attempt through to probe recovery
        return True


class AgentRetryHandler:
    """Exponential backoff plus circuit breaker around verification calls."""

    def __init__(self, config: RetryConfig | None = None) -> None:
        self.config = config or RetryConfig()
        self.circuit_breaker = CircuitBreaker(
            threshold=self.config.circuit_breaker_threshold,
            cooldown=self.config.circuit_breaker_cooldown,
        )

    def classify_error(self, exception: Exception) -> ErrorRetryability:
        """Classify an error to determine if it should be retried.

        Args:
            exception: The exception to classify

        Returns:
            ErrorRetryability indicating if the error is retryable
        """
        if isinstance(exception, ModelHTTPError):
            if exception.status_code == HTTP_TOO_MANY_REQUESTS or exception.status_code >= HTTP_SERVER_ERROR:
                return ErrorRetryability.RETRYABLE
            return ErrorRetryability.NON_RETRYABLE

        if isinstance(exception, TimeoutError | ConnectionError):
            return ErrorRetryability.RETRYABLE

        # Malformed model output usually succeeds on a second try
        if isinstance(exception, ModelRetry | UnexpectedModelBehavior):
            return ErrorRetryability.RETRYABLE

        error_str = str(exception).lower()

        if any(phrase in error_str for phrase in ["invalid api key", "unauthorized", "401", "403"]):
            return ErrorRetryability.NON_RETRYABLE

        if any(
            phrase in error_str
            for phrase in ["rate limit", "too many requests", "service unavailable", "timeout", "connection", "503"]
        ):
            return ErrorRetryability.RETRYABLE

        return ErrorRetryability.NON_RETRYABLE

    def calculate_delay(self, attempt: int) -> float:
        """Calculate exponential backoff delay for the given attempt (0-indexed)."""
        delay = self.config.base_delay * (self.config.backoff_multiplier**attempt)
        return min(delay, self.config.max_delay)

    async def execute_with_retry(self, func: Callable[..., Awaitable[T]], *args: object, **kwargs: object) -> T:
        """Execute an async function with retry logic.

        Cancellation is never retried or counted as a failure.

        Raises:
            CircuitBreakerOpenError: If the breaker is open
            Exception: The last error once retries are exhausted or the error is non-retryable
        """
        for attempt in range(self.config.max_attempts):
            if not self.circuit_breaker.can_attempt():
                logger.warning(
                    "circuit_breaker_blocked",
                    extra={"attempt": attempt, "state": self.circuit_breaker.state.value},
                )
                raise CircuitBreakerOpenError("Circuit breaker is open. Verification temporarily unavailable.")

            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                retryability = self.classify_error(e)
                logger.warning(
                    "verification_error",
                    extra={
                        "attempt": attempt + 1,
                        "max_attempts": self.config.max_attempts,
                        "error_type": type(e).__name__,
                        "error_message": str(e),
                        "retryable": retryability.value,
                    },
                )

                if retryability == ErrorRetryability.NON_RETRYABLE or attempt >= self.config.max_attempts - 1:
                    self.circuit_breaker.record_failure()
                    raise

                delay = self.calculate_delay(attempt)
                logger.info("verification_retry", extra={"attempt": attempt + 1, "delay_seconds": delay})
                await asyncio.sleep(delay)
            else:
                self.circuit_breaker.record_success()
                if attempt > 0:
                    logger.info("verification_retry_success", extra={"total_attempts": attempt + 1})
                return result

        raise RuntimeError("Retry loop exited without a result")  # max_attempts < 1
