import logging
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

from ..errors import StoreError

logger = logging.getLogger(__name__)


class RedisCrudService:
    """Async CRUD operations against a Redis instance.

    Every operation raises StoreError when Redis is unreachable so callers
    can tell a missing key apart from a failed read.
    """

    def __init__(self, url: str) -> None:
        """Create a Redis client for the given URL (e.g. redis://localhost:6379/0)."""
        self._url = url
        self._client: Redis | None = None

    async def connect(self) -> None:
        """Establish connection to Redis. Idempotent."""
        if self._client is not None:
            return
        self._client = Redis.from_url(
            self._url,
            decode_responses=True,
        )
        try:
            await self._client.ping()
            logger.info("Redis connection established: %s", self._url.split("@")[-1])
        except RedisError as e:
            logger.warning("Redis ping failed: %s", e)
            await self._client.aclose()
            self._client = None
            raise StoreError(f"Redis unavailable: {e}") from e

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Redis connection closed")

    @property
    def client(self) -> Redis | None:
        """Return the underlying Redis client, or None if not connected."""
        return self._client

    def _require_client(self) -> Redis:
        if self._client is None:
            raise StoreError("Redis is not connected")
        return self._client

    async def get(self, key: str) -> str | None:
        """Return the value for key, or None if missing."""
        client = self._require_client()
        try:
            value: Any = await client.get(key)
        except RedisError as e:
            logger.warning("Redis get %s failed: %s", key, e)
            raise StoreError(f"Redis get failed: {e}") from e
        return value if value is None else str(value)

    async def set(
        self,
        key: str,
        value: str,
        ttl_seconds: int | None = None,
    ) -> None:
        """Set key to value. If ttl_seconds is set, the key will expire."""
        client = self._require_client()
        try:
            if ttl_seconds is not None and ttl_seconds > 0:
                await client.setex(key, ttl_seconds, value)
            else:
                await client.set(key, value)
        except RedisError as e:
            logger.warning("Redis set %s failed: %s", key, e)
            raise StoreError(f"Redis set failed: {e}") from e
