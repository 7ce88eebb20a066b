"""Unit tests for sync.retry module."""

import pytest

from publish_confluence.errors import RetryExhaustedError, TransportError
from publish_confluence.sync.retry import backoff_delay, retry_with_backoff


class Sequence:
    """Coroutine factory that replays ``outcomes`` one per call."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self):
        outcome = self.outcomes[self.calls]
        self.calls += 1
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class TestBackoffDelay:
    """Test cases for backoff_delay function."""

    def test_first_attempt_runs_immediately(self):
        """backoff_delay should not wait before the first attempt by default."""
        assert backoff_delay(0) == 0.0

    def test_delays_double_after_first_retry(self):
        """backoff_delay should grow exponentially from the initial backoff."""
        assert [backoff_delay(n, initial_backoff=1.0) for n in range(1, 4)] == [1.0, 2.0, 4.0]

    def test_wait_first_delays_every_attempt(self):
        """backoff_delay with wait_first should yield 1s, 2s, 4s."""
        assert [backoff_delay(n, wait_first=True) for n in range(3)] == [1.0, 2.0, 4.0]


class TestRetryWithBackoff:
    """Test cases for retry_with_backoff function."""

    @pytest.mark.asyncio
    async def test_success_on_first_attempt(self, sleeps, fake_sleep):
        """retry_with_backoff should return the first result without sleeping."""
        operation = Sequence("done")

        result = await retry_with_backoff(operation, sleep=fake_sleep)

        assert result == "done"
        assert operation.calls == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_retries_on_listed_exception(self, sleeps, fake_sleep):
        """retry_with_backoff should retry exceptions in retry_on with 1s, 2s delays."""
        operation = Sequence(TransportError("down"), TransportError("down"), "done")

        result = await retry_with_backoff(operation, retry_on=(TransportError,), sleep=fake_sleep)

        assert result == "done"
        assert operation.calls == 3
        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_other_exceptions_propagate_immediately(self, fake_sleep):
        """retry_with_backoff should not retry exceptions outside retry_on."""
        operation = Sequence(KeyError("boom"), "never")

        with pytest.raises(KeyError):
            await retry_with_backoff(operation, retry_on=(TransportError,), sleep=fake_sleep)

        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_reraises_last_exception_when_exhausted(self, fake_sleep):
        """retry_with_backoff should re-raise the last error after max_attempts."""
        operation = Sequence(TransportError("first"), TransportError("second"), TransportError("third"))

        with pytest.raises(TransportError, match="third"):
            await retry_with_backoff(operation, retry_on=(TransportError,), sleep=fake_sleep)

        assert operation.calls == 3

    @pytest.mark.asyncio
    async def test_retries_while_condition_holds(self, sleeps, fake_sleep):
        """retry_with_backoff should retry results rejected by retry_condition."""
        operation = Sequence(None, None, "page")

        result = await retry_with_backoff(
            operation,
            retry_condition=lambda value: value is None,
            wait_first=True,
            sleep=fake_sleep,
        )

        assert result == "page"
        assert sleeps == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_condition_exhaustion_raises_retry_exhausted(self, fake_sleep):
        """retry_with_backoff should raise RetryExhaustedError carrying the last result."""
        operation = Sequence([], [], [])

        with pytest.raises(RetryExhaustedError) as exc_info:
            await retry_with_backoff(
                operation,
                retry_condition=lambda value: not value,
                sleep=fake_sleep,
                description="lookup",
            )

        assert exc_info.value.attempts == 3
        assert exc_info.value.last_result == []
        assert "lookup" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_rejects_invalid_attempt_count(self):
        """retry_with_backoff should refuse max_attempts below 1."""
        with pytest.raises(ValueError):
            await retry_with_backoff(Sequence("x"), max_attempts=0)
