"""Unit tests for the verification retry handler."""

import time
from unittest.mock import AsyncMock, patch

import pytest
from pydantic_ai.exceptions import ModelHTTPError, UnexpectedModelBehavior

from kin.agents.retry_handler import (
    AgentRetryHandler,
    CircuitBreaker,
    CircuitBreakerOpenError,
    CircuitBreakerState,
    ErrorRetryability,
    RetryConfig,
)


@pytest.fixture(autouse=True)
def mock_asyncio_sleep():
    """Mock asyncio.sleep to avoid actual delays in retry tests."""
    with patch("kin.agents.retry_handler.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
        yield mock_sleep


@pytest.mark.unit
class TestAgentRetryHandler:
    """Tests for retry logic with circuit breaker."""

    @pytest.fixture
    def retry_handler(self):
        """Create a retry handler with test configuration."""
        config = RetryConfig(
            max_attempts=3,
            base_delay=0.01,
            backoff_multiplier=2.0,
            circuit_breaker_threshold=2,
            circuit_breaker_cooldown=0.1,
        )
        return AgentRetryHandler(config)

    @pytest.mark.parametrize("status_code", [429, 500, 502, 503])
    def test_classify_model_http_error_retryable(self, retry_handler, status_code):
        error = ModelHTTPError(status_code=status_code, model_name="openai/gpt-4o-mini")
        assert retry_handler.classify_error(error) == ErrorRetryability.RETRYABLE

    @pytest.mark.parametrize("status_code", [400, 401, 403, 404])
    def test_classify_model_http_error_non_retryable(self, retry_handler, status_code):
        error = ModelHTTPError(status_code=status_code, model_name="openai/gpt-4o-mini")
        assert retry_handler.classify_error(error) == ErrorRetryability.NON_RETRYABLE

    def test_classify_timeout_retryable(self, retry_handler):
        """Per-call timeouts are worth another attempt."""
        assert retry_handler.classify_error(TimeoutError()) == ErrorRetryability.RETRYABLE

    def test_classify_malformed_output_retryable(self, retry_handler):
        error = UnexpectedModelBehavior("Exceeded maximum retries for output validation")
        assert retry_handler.classify_error(error) == ErrorRetryability.RETRYABLE

    def test_classify_error_retryable_rate_limit(self, retry_handler):
        """Test classification of rate limit errors as retryable."""
        error = Exception("Rate limit exceeded")
        assert retry_handler.classify_error(error) == ErrorRetryability.RETRYABLE

    def test_classify_error_retryable_network(self, retry_handler):
        """Test classification of network errors as retryable."""
        error = ConnectionError("Connection reset by peer")
        assert retry_handler.classify_error(error) == ErrorRetryability.RETRYABLE

    def test_classify_error_non_retryable_auth(self, retry_handler):
        """Test classification of auth errors as non-retryable."""
        error = Exception("Invalid API key")
        assert retry_handler.classify_error(error) == ErrorRetryability.NON_RETRYABLE

    def test_classify_error_non_retryable_validation(self, retry_handler):
        """Test classification of validation errors as non-retryable."""
        error = ValueError("Invalid input")
        assert retry_handler.classify_error(error) == ErrorRetryability.NON_RETRYABLE

    def test_calculate_delay_exponential_backoff(self, retry_handler):
        """Test exponential backoff calculation."""
        assert retry_handler.calculate_delay(0) == 0.01
        assert retry_handler.calculate_delay(1) == 0.02
        assert retry_handler.calculate_delay(2) == 0.04

    def test_calculate_delay_is_capped(self):
        handler = AgentRetryHandler(RetryConfig(base_delay=4.0, max_delay=10.0))
        assert handler.calculate_delay(5) == 10.0

    @pytest.mark.asyncio
    async def test_execute_with_retry_success_first_attempt(self, retry_handler):
        """Test successful execution on first attempt."""
        mock_func = AsyncMock(return_value="success")

        result = await retry_handler.execute_with_retry(mock_func, "image", task="workout")

        assert result == "success"
        mock_func.assert_awaited_once_with("image", task="workout")

    @pytest.mark.asyncio
    async def test_execute_with_retry_success_after_retries(self, retry_handler, mock_asyncio_sleep):
        """Test successful execution after retries."""
        mock_func = AsyncMock(side_effect=[Exception("Rate limit"), Exception("Rate limit"), "success"])

        result = await retry_handler.execute_with_retry(mock_func)

        assert result == "success"
        assert mock_func.call_count == 3
        assert [call.args[0] for call in mock_asyncio_sleep.await_args_list] == [0.01, 0.02]

    @pytest.mark.asyncio
    async def test_execute_with_retry_non_retryable_error_fails_immediately(self, retry_handler):
        """Test that non-retryable errors fail immediately without retries."""
        mock_func = AsyncMock(side_effect=ValueError("Invalid input"))

        with pytest.raises(ValueError, match="Invalid input"):
            await retry_handler.execute_with_retry(mock_func)

        assert mock_func.call_count == 1

    @pytest.mark.asyncio
    async def test_execute_with_retry_exhausts_retries(self, retry_handler):
        """Test that retries are exhausted for persistent failures."""
        mock_func = AsyncMock(side_effect=Exception("Rate limit"))

        with pytest.raises(Exception, match="Rate limit"):
            await retry_handler.execute_with_retry(mock_func)

        assert mock_func.call_count == 3

    @pytest.mark.asyncio
    async def test_execute_with_retry_logs_attempts(self, retry_handler):
        """Test that retry attempts are logged."""
        mock_func = AsyncMock(side_effect=[Exception("Rate limit"), "success"])

        with patch("kin.agents.retry_handler.logger") as mock_logger:
            result = await retry_handler.execute_with_retry(mock_func)

            assert result == "success"
            assert mock_logger.warning.called
            assert mock_logger.info.called


@pytest.mark.unit
class TestCircuitBreaker:
    """Tests for circuit breaker pattern."""

    @pytest.fixture
    def circuit_breaker(self):
        """Create a circuit breaker with test configuration."""
        return CircuitBreaker(threshold=2, cooldown=0.1)

    def test_circuit_breaker_starts_closed(self, circuit_breaker):
        """Test that circuit breaker starts in CLOSED state."""
        assert circuit_breaker.state == CircuitBreakerState.CLOSED
        assert circuit_breaker.can_attempt() is True

    def test_circuit_breaker_opens_after_threshold(self, circuit_breaker):
        """Test that circuit breaker opens after threshold failures."""
        circuit_breaker.record_failure()
        assert circuit_breaker.state == CircuitBreakerState.CLOSED
        assert circuit_breaker.can_attempt() is True

        circuit_breaker.record_failure()
        assert circuit_breaker.state == CircuitBreakerState.OPEN
        assert circuit_breaker.can_attempt() is False

    def test_circuit_breaker_half_open_after_cooldown(self, circuit_breaker):
        """Test that circuit breaker moves to HALF_OPEN after cooldown."""
        circuit_breaker.record_failure()
        circuit_breaker.record_failure()
        assert circuit_breaker.state == CircuitBreakerState.OPEN

        time.sleep(0.15)

        assert circuit_breaker.can_attempt() is True
        assert circuit_breaker.state == CircuitBreakerState.HALF_OPEN

    def test_circuit_breaker_closes_on_success(self, circuit_breaker):
        """Test that circuit breaker closes on successful request."""
        circuit_breaker.record_failure()
        circuit_breaker.record_failure()

        circuit_breaker.record_success()
        assert circuit_breaker.state == CircuitBreakerState.CLOSED
        assert circuit_breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_circuit_breaker_blocks_requests_when_open(self):
        """Test that circuit breaker blocks requests when open."""
        config = RetryConfig(
            max_attempts=3,
            base_delay=0.01,
            circuit_breaker_threshold=2,
            circuit_breaker_cooldown=10.0,
        )
        handler = AgentRetryHandler(config)

        # Each exhausted call counts as one breaker failure
        for _ in range(2):
            with pytest.raises(Exception, match="Rate limit"):
                await handler.execute_with_retry(AsyncMock(side_effect=Exception("Rate limit")))

        blocked = AsyncMock(return_value="never")

        with pytest.raises(CircuitBreakerOpenError, match="Circuit breaker is open"):
            await handler.execute_with_retry(blocked)

        assert blocked.call_count == 0
