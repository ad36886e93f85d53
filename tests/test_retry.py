import logging
from unittest.mock import MagicMock

import httpx
import pytest

from shopassist.errors import TransientCallFailure, ValidationError
from shopassist.services.retry import RetryPolicy, is_retryable_error, retry_with_backoff


class SleepRecorder:
    def __init__(self) -> None:
        self.delays = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def _status_error(code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "http://store/products")
    return httpx.HTTPStatusError("error", request=request, response=httpx.Response(code, request=request))


@pytest.mark.asyncio
async def test_succeeds_after_transient_failures() -> None:
    sleep = SleepRecorder()
    attempts = []

    async def flaky() -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise TransientCallFailure("503 from upstream", status_code=503)
        return "done"

    result = await retry_with_backoff(flaky, RetryPolicy(max_attempts=3, initial_delay=1.0, max_delay=10.0), sleep=sleep)
    assert result == "done"
    assert len(attempts) == 3
    assert sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_delays_capped_at_max() -> None:
    sleep = SleepRecorder()

    async def always_fails() -> None:
        raise TimeoutError("timed out")

    with pytest.raises(TimeoutError):
        await retry_with_backoff(always_fails, RetryPolicy(max_attempts=5, initial_delay=1.0, max_delay=3.0), sleep=sleep)
    assert sleep.delays == [1.0, 2.0, 3.0, 3.0]
    assert all(a <= b for a, b in zip(sleep.delays, sleep.delays[1:]))


@pytest.mark.asyncio
async def test_non_retryable_raises_immediately() -> None:
    sleep = SleepRecorder()
    fn = MagicMock(side_effect=ValidationError("bad"))

    async def call():
        return fn()

    with pytest.raises(ValidationError):
        await retry_with_backoff(call, RetryPolicy(max_attempts=3), sleep=sleep)
    assert fn.call_count == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_exhaustion_reraises_last_error() -> None:
    errors = [ConnectionError("first"), ConnectionError("second")]

    async def failing():
        raise errors.pop(0)

    with pytest.raises(ConnectionError, match="second"):
        await retry_with_backoff(failing, RetryPolicy(max_attempts=2, initial_delay=0), sleep=SleepRecorder())


@pytest.mark.parametrize(
    "error, expected",
    [
        (TransientCallFailure("x"), True),
        (TimeoutError(), True),
        (ConnectionError(), True),
        (_status_error(503), True),
        (_status_error(429), True),
        (_status_error(400), False),
        (_status_error(404), False),
        (httpx.ConnectTimeout("slow"), True),
        (ValueError("schema mismatch"), False),
        (RuntimeError("ETIMEDOUT talking to upstream"), True),
    ],
)
def test_is_retryable_error(error: BaseException, expected: bool) -> None:
    assert is_retryable_error(error) is expected


def test_policy_validation() -> None:
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError):
        RetryPolicy(backoff_multiplier=0.5)


@pytest.mark.asyncio
async def test_logs_before_each_backoff(caplog) -> None:
    attempts = []

    async def flaky() -> str:
        attempts.append(1)
        if len(attempts) == 1:
            raise ConnectionError("reset by peer")
        return "done"

    with caplog.at_level(logging.INFO, logger="shopassist.services.retry"):
        await retry_with_backoff(flaky, RetryPolicy(max_attempts=2, initial_delay=0.5), sleep=SleepRecorder())
    assert "Retrying" in caplog.text
    assert "0.5" in caplog.text
