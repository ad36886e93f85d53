import sys
from pathlib import Path
from typing import Any, Dict, List, Tuple


_root = Path(__file__).resolve().parents[1]
_src = _root / "src"
if _src.exists() and str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

import pytest

from shopassist.models import Message


class FakeClock:
    """Manually advanced clock for rate limiter and breaker tests."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedModel:
    """ChatModel that replays a fixed list of replies (or raises queued exceptions)."""

    def __init__(self, replies: List[Any]) -> None:
        self.replies = list(replies)
        self.calls: List[List[Message]] = []

    async def complete(self, messages, tools, on_token=None) -> Message:
        self.calls.append(list(messages))
        if not self.replies:
            raise AssertionError("ScriptedModel ran out of replies")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        if on_token is not None and reply.text:
            await on_token(reply.text)
        return reply


class EventRecorder:
    """Collects (event, payload) pairs emitted by a run."""

    def __init__(self) -> None:
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    async def __call__(self, event: str, payload: Dict[str, Any]) -> None:
        self.events.append((event, payload))

    def of(self, name: str) -> List[Dict[str, Any]]:
        return [payload for event, payload in self.events if event == name]


async def no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()
