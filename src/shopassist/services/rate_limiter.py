"""Fixed-window rate limiting for chat admission control.

Each `RateLimitPolicy` keeps one record per identifier. A
`CompositeRateLimiter` runs several policies over the same identifier (for
example 30 requests/minute together with 100 requests/5 minutes) and only
admits a request when every policy admits it.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, Iterable, List, Optional

from ..errors import RateLimited

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitConfig:
    """Limits for one policy. Durations are in seconds."""

    name: str
    max_requests: int
    window_seconds: float
    block_seconds: float

    def __post_init__(self) -> None:
        if self.max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        if self.block_seconds < 0:
            raise ValueError("block_seconds must be >= 0")


@dataclass
class RateLimitRecord:
    count: int
    window_reset_at: float
    blocked_until: Optional[float] = None


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: float
    policy: str
    retry_after_seconds: Optional[int] = None


class RateLimitPolicy:
    """One fixed-window limiter with a block penalty once the limit is exceeded."""

    def __init__(self, config: RateLimitConfig, clock: Callable[[], float] = time.monotonic) -> None:
        self.config = config
        self._clock = clock
        self._records: Dict[str, RateLimitRecord] = {}
        self._lock = Lock()

    def check(self, identifier: str) -> RateLimitDecision:
        """Count a request for identifier and decide whether it is admitted."""
        with self._lock:
            now = self._clock()
            record = self._records.get(identifier)

            if record is not None and record.blocked_until is not None and record.blocked_until > now:
                return RateLimitDecision(
                    allowed=False,
                    remaining=0,
                    reset_at=record.window_reset_at,
                    policy=self.config.name,
                    retry_after_seconds=max(1, math.ceil(record.blocked_until - now)),
                )

            if record is None or now >= record.window_reset_at:
                record = RateLimitRecord(count=1, window_reset_at=now + self.config.window_seconds)
                self._records[identifier] = record
                return RateLimitDecision(
                    allowed=True,
                    remaining=self.config.max_requests - 1,
                    reset_at=record.window_reset_at,
                    policy=self.config.name,
                )

            record.count += 1
            if record.count > self.config.max_requests:
                record.blocked_until = now + self.config.block_seconds
                return RateLimitDecision(
                    allowed=False,
                    remaining=0,
                    reset_at=record.window_reset_at,
                    policy=self.config.name,
                    retry_after_seconds=max(1, math.ceil(self.config.block_seconds)),
                )

            return RateLimitDecision(
                allowed=True,
                remaining=self.config.max_requests - record.count,
                reset_at=record.window_reset_at,
                policy=self.config.name,
            )

    def sweep(self) -> int:
        """Drop records whose window and block have both expired. Returns the number removed."""
        with self._lock:
            now = self._clock()
            stale = [
                key
                for key, record in self._records.items()
                if record.window_reset_at < now
                and (record.blocked_until is None or record.blocked_until < now)
            ]
            for key in stale:
                del self._records[key]
            return len(stale)

    def reset(self, identifier: str) -> None:
        with self._lock:
            self._records.pop(identifier, None)

    def __len__(self) -> int:
        return len(self._records)


class CompositeRateLimiter:
    """Runs several policies over the same identifier; all must admit."""

    def __init__(self, policies: Iterable[RateLimitPolicy]) -> None:
        self.policies: List[RateLimitPolicy] = list(policies)
        if not self.policies:
            raise ValueError("at least one rate limit policy is required")

    def check(self, identifier: str) -> List[RateLimitDecision]:
        return [policy.check(identifier) for policy in self.policies]

    def admit(self, identifier: str) -> RateLimitDecision:
        """Admit a request or raise RateLimited with the most restrictive retry-after.

        Returns:
            RateLimitDecision: The admitting decision with the fewest remaining requests.

        Raises:
            RateLimited: If any policy rejects the request.
        """
        decisions = self.check(identifier)
        rejected = [d for d in decisions if not d.allowed]
        if rejected:
            worst = max(rejected, key=lambda d: d.retry_after_seconds or 0)
            logger.warning(
                "Rate limit exceeded identifier=%s policy=%s retry_after=%ss",
                identifier,
                worst.policy,
                worst.retry_after_seconds,
            )
            raise RateLimited(worst.retry_after_seconds or 1, policy=worst.policy)
        return min(decisions, key=lambda d: d.remaining)

    def sweep(self) -> int:
        removed = sum(policy.sweep() for policy in self.policies)
        if removed:
            logger.debug("Rate limiter sweep removed %d stale records", removed)
        return removed

    def reset(self, identifier: str) -> None:
        for policy in self.policies:
            policy.reset(identifier)

    async def run_sweeper(self, interval_seconds: float) -> None:
        """Periodically reclaim stale records until cancelled."""
        while True:
            await asyncio.sleep(interval_seconds)
            self.sweep()
