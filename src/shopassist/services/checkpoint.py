import json
import logging
from typing import Dict, Protocol

from ..errors import StoreError
from ..models import ConversationState
from .redis import RedisCrudService

logger = logging.getLogger(__name__)

CHECKPOINT_KEY_PREFIX = "checkpoint:"


class CheckpointStore(Protocol):
    """Durable mapping from session id to the latest ConversationState."""

    async def load(self, session_id: str) -> ConversationState:
        """Return the stored state, or a fresh empty one. Raises StoreError on failure."""
        ...

    async def save(self, session_id: str, state: ConversationState) -> None:
        """Persist state. Raises StoreError on failure."""
        ...


def dump_state(state: ConversationState) -> str:
    return json.dumps(state.to_dict(), ensure_ascii=False)


def load_state(raw: str) -> ConversationState:
    return ConversationState.from_dict(json.loads(raw))


class MemoryCheckpointStore:
    """In-process checkpoint store used when Redis is not configured.

    States are kept serialized so a caller mutating a loaded state never
    changes what is stored.
    """

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    async def load(self, session_id: str) -> ConversationState:
        raw = self._data.get(session_id)
        return ConversationState() if raw is None else load_state(raw)

    async def save(self, session_id: str, state: ConversationState) -> None:
        self._data[session_id] = dump_state(state)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._data


class RedisCheckpointStore:
    """Checkpoint store backed by Redis with a sliding TTL per session."""

    def __init__(self, redis_crud: RedisCrudService, ttl_seconds: int) -> None:
        self._redis = redis_crud
        self._ttl = ttl_seconds

    def _key(self, session_id: str) -> str:
        return f"{CHECKPOINT_KEY_PREFIX}{session_id}"

    async def load(self, session_id: str) -> ConversationState:
        """Load the checkpoint for session_id; missing keys yield a fresh state."""
        raw = await self._redis.get(self._key(session_id))
        if raw is None:
            return ConversationState()
        try:
            return load_state(raw)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Invalid checkpoint data for %s: %s", session_id, e)
            raise StoreError(f"Corrupt checkpoint for session {session_id}") from e

    async def save(self, session_id: str, state: ConversationState) -> None:
        """Persist the checkpoint for session_id with TTL."""
        try:
            payload = dump_state(state)
        except (TypeError, ValueError) as e:
            logger.warning("Checkpoint serialization failed for %s: %s", session_id, e)
            raise StoreError(f"Checkpoint serialization failed: {e}") from e
        await self._redis.set(self._key(session_id), payload, ttl_seconds=self._ttl)

    async def close(self) -> None:
        await self._redis.close()
