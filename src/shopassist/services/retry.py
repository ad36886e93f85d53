import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import httpx
import openai
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ..errors import TransientCallFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})
_RETRYABLE_PATTERNS = (
    "timeout",
    "timed out",
    "network",
    "econnrefused",
    "etimedout",
    "rate limit",
    "429",
    "502",
    "503",
    "temporary",
)


def is_retryable_error(error: BaseException) -> bool:
    """Classify an error as transient (worth retrying) or terminal.

    Network/connection errors, timeouts and rate-limit or 5xx-class status
    signals are retryable. Authentication failures, bad requests and
    schema violations are not.
    """
    if isinstance(error, TransientCallFailure):
        return True
    if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError, openai.BadRequestError)):
        return False
    if isinstance(error, (openai.APITimeoutError, openai.APIConnectionError, openai.RateLimitError)):
        return True
    if isinstance(error, openai.APIStatusError):
        return error.status_code in RETRYABLE_STATUS_CODES
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in RETRYABLE_STATUS_CODES
    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError)):
        return True
    if isinstance(error, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
        return True
    message = str(error).lower()
    return any(pattern in message for pattern in _RETRYABLE_PATTERNS)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration: attempts, exponential delays (seconds), and classifier."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    is_retryable: Callable[[BaseException], bool] = is_retryable_error

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "call",
) -> T:
    """Run `fn` until it succeeds, backing off between retryable failures.

    Attempts are strictly sequential. The n-th retry waits
    `initial_delay * backoff_multiplier ** (n - 1)`, capped at `max_delay`.
    A non-retryable error, or the error from the last allowed attempt, is
    re-raised unchanged.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_exponential(
            multiplier=policy.initial_delay,
            exp_base=policy.backoff_multiplier,
            max=policy.max_delay,
        ),
        retry=retry_if_exception(lambda e: isinstance(e, Exception) and policy.is_retryable(e)),
        reraise=True,
        sleep=sleep,
        before_sleep=before_sleep_log(logger, logging.INFO),
    )
    try:
        async for attempt in retrying:
            with attempt:
                return await fn()
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.warning("%s failed: %s", label, e)
        raise
    raise RuntimeError("unreachable")  # pragma: no cover
