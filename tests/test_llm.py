from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from openai import NOT_GIVEN

from conftest import ScriptedModel, no_sleep
from shopassist.agent.llm import OpenAIChatModel, ResilientModel, parse_tool_arguments, to_openai_messages
from shopassist.errors import TransientCallFailure
from shopassist.models import Message, ToolCall
from shopassist.services.circuit_breaker import CircuitBreaker, CircuitState
from shopassist.services.retry import RetryPolicy


def _chunk(content=None, tool_calls=None):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content, tool_calls=tool_calls))])


def _tool_delta(index, id=None, name=None, arguments=None):
    return SimpleNamespace(index=index, id=id, function=SimpleNamespace(name=name, arguments=arguments))


class FakeStream:
    def __init__(self, chunks) -> None:
        self._chunks = list(chunks)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._chunks:
            raise StopAsyncIteration
        return self._chunks.pop(0)


def _client(chunks) -> MagicMock:
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=FakeStream(chunks))
    return client


@pytest.mark.asyncio
async def test_streams_text_tokens() -> None:
    client = _client([_chunk("Hello "), SimpleNamespace(choices=[]), _chunk("there")])
    tokens = []

    async def on_token(token: str) -> None:
        tokens.append(token)

    reply = await OpenAIChatModel(client, "gpt-4o-mini").complete([Message.user("hi")], [], on_token)
    assert reply.text == "Hello there"
    assert reply.tool_calls == []
    assert tokens == ["Hello ", "there"]
    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["tools"] is NOT_GIVEN
    assert kwargs["stream"] is True


@pytest.mark.asyncio
async def test_accumulates_tool_call_deltas() -> None:
    client = _client(
        [
            _chunk(tool_calls=[_tool_delta(0, id="call_1", name="search-products", arguments='{"que')]),
            _chunk(tool_calls=[_tool_delta(0, arguments='ry": "roses"}')]),
            _chunk(tool_calls=[_tool_delta(1, id="call_2", name="get-all-categories", arguments="")]),
        ]
    )
    tools = [{"type": "function", "function": {"name": "search-products"}}]
    reply = await OpenAIChatModel(client, "gpt-4o-mini").complete([Message.user("roses")], tools)
    assert reply.tool_calls == [
        ToolCall(id="call_1", name="search-products", arguments={"query": "roses"}),
        ToolCall(id="call_2", name="get-all-categories", arguments={}),
    ]
    assert client.chat.completions.create.call_args.kwargs["tool_choice"] == "auto"


def test_parse_tool_arguments_keeps_invalid_raw() -> None:
    assert parse_tool_arguments('{"a": 1}') == {"a": 1}
    assert parse_tool_arguments("") == {}
    assert parse_tool_arguments("{broken") == "{broken"


def test_to_openai_messages() -> None:
    converted = to_openai_messages(
        [
            Message(role="system", text="sys"),
            Message.assistant("", [ToolCall(id="c1", name="t", arguments={"x": 1})]),
            Message.tool("c1", "t", "result"),
        ]
    )
    assert converted[0] == {"role": "system", "content": "sys"}
    assert converted[1]["content"] is None
    assert converted[1]["tool_calls"][0]["function"]["arguments"] == '{"x": 1}'
    assert converted[2] == {"role": "tool", "tool_call_id": "c1", "content": "result"}


@pytest.mark.asyncio
async def test_resilient_model_counts_one_breaker_outcome_per_call(clock) -> None:
    model = ScriptedModel([TransientCallFailure("503"), TransientCallFailure("503"), Message.assistant("ok")])
    breaker = CircuitBreaker("llm", clock=clock)
    resilient = ResilientModel(model, breaker, RetryPolicy(max_attempts=3, initial_delay=0.1), sleep=no_sleep)
    reply = await resilient.complete([Message.user("hi")], [])
    assert reply.text == "ok"
    assert len(model.calls) == 3
    assert breaker.consecutive_failures == 0
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_resilient_model_does_not_retry_after_streaming(clock) -> None:
    class BreaksMidStream(ScriptedModel):
        async def complete(self, messages, tools, on_token=None):
            self.calls.append(list(messages))
            await on_token("Hel")
            raise TransientCallFailure("connection reset mid-stream")

    model = BreaksMidStream([])
    tokens = []

    async def on_token(token: str) -> None:
        tokens.append(token)

    resilient = ResilientModel(
        model, CircuitBreaker("llm", clock=clock), RetryPolicy(max_attempts=3, initial_delay=0.1), sleep=no_sleep
    )
    with pytest.raises(TransientCallFailure):
        await resilient.complete([Message.user("hi")], [], on_token)
    assert len(model.calls) == 1
    assert tokens == ["Hel"]
