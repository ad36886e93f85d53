import json

import pytest
from pydantic import BaseModel, Field

from conftest import no_sleep
from shopassist.agent.tools import ToolDefinition, ToolRegistry
from shopassist.errors import TransientCallFailure
from shopassist.models import CallerContext, ToolCall
from shopassist.services.retry import RetryPolicy

CONTEXT = CallerContext(session_id="s1", user_id="u1")


class QueryInput(BaseModel):
    query: str = Field(description="Search keywords")


async def echo(args, context):
    return {"echo": args["query"], "user": context.user_id}


def _registry(*definitions, retry_policy=None) -> ToolRegistry:
    return ToolRegistry(definitions, retry_policy=retry_policy, timeout_seconds=5, sleep=no_sleep)


def test_schemas_in_openai_format() -> None:
    registry = _registry(ToolDefinition(name="search", description=" Find things ", handler=echo, input_model=QueryInput))
    [schema] = registry.schemas()
    assert schema["type"] == "function"
    assert schema["function"]["name"] == "search"
    assert schema["function"]["description"] == "Find things"
    assert schema["function"]["parameters"]["required"] == ["query"]


@pytest.mark.parametrize("name", ["has space", "", "x" * 65, "dots.not.allowed"])
def test_rejects_invalid_names(name: str) -> None:
    with pytest.raises(ValueError):
        _registry(ToolDefinition(name=name, description="d", handler=echo, input_model=QueryInput))


def test_rejects_duplicates_and_missing_schema() -> None:
    tool = ToolDefinition(name="search", description="d", handler=echo, input_model=QueryInput)
    with pytest.raises(ValueError):
        _registry(tool, tool)
    with pytest.raises(ValueError):
        _registry(ToolDefinition(name="bare", description="d", handler=echo))


@pytest.mark.asyncio
async def test_dispatch_success_links_call_id() -> None:
    registry = _registry(ToolDefinition(name="search", description="d", handler=echo, input_model=QueryInput))
    result = await registry.dispatch(ToolCall(id="call_9", name="search", arguments={"query": "roses"}), CONTEXT)
    assert not result.error
    assert result.message.role == "tool"
    assert result.message.tool_call_id == "call_9"
    assert result.message.name == "search"
    assert result.data == {"echo": "roses", "user": "u1"}
    assert json.loads(result.message.text) == result.data


@pytest.mark.asyncio
async def test_unknown_tool_becomes_error_result() -> None:
    registry = _registry(ToolDefinition(name="search", description="d", handler=echo, input_model=QueryInput))
    result = await registry.dispatch(ToolCall(id="c1", name="teleport", arguments={}), CONTEXT)
    assert result.error
    assert result.message.tool_call_id == "c1"
    payload = json.loads(result.message.text)
    assert payload["error"]["code"] == "unknown_tool"
    assert 'Tool "teleport" not found' in payload["error"]["message"]
    assert payload["instruction"].startswith("Please apologize")


@pytest.mark.asyncio
async def test_handler_exception_becomes_error_result() -> None:
    async def broken(args, context):
        raise KeyError("boom")

    registry = _registry(ToolDefinition(name="search", description="d", handler=broken, input_model=QueryInput))
    result = await registry.dispatch(ToolCall(id="c1", name="search", arguments={"query": "x"}), CONTEXT)
    assert result.error
    assert result.definition.name == "search"
    assert json.loads(result.message.text)["error"]["code"] == "tool_execution_failed"


@pytest.mark.asyncio
@pytest.mark.parametrize("arguments", [{}, {"query": 5}, '{"query": "unterminated'])
async def test_invalid_arguments_not_executed(arguments) -> None:
    calls = []

    async def tracked(args, context):
        calls.append(args)
        return "ok"

    registry = _registry(ToolDefinition(name="search", description="d", handler=tracked, input_model=QueryInput))
    result = await registry.dispatch(ToolCall(id="c1", name="search", arguments=arguments), CONTEXT)
    assert result.error
    assert calls == []
    assert json.loads(result.message.text)["error"]["code"] == "invalid_arguments"


@pytest.mark.asyncio
async def test_json_schema_required_keys_checked() -> None:
    registry = _registry(
        ToolDefinition(
            name="mcp-tool",
            description="d",
            handler=echo,
            parameters={"type": "object", "properties": {"query": {"type": "string"}}, "required": ["query"]},
        )
    )
    bad = await registry.dispatch(ToolCall(id="c1", name="mcp-tool", arguments={}), CONTEXT)
    good = await registry.dispatch(ToolCall(id="c2", name="mcp-tool", arguments={"query": "q"}), CONTEXT)
    assert bad.error
    assert not good.error


@pytest.mark.asyncio
async def test_transient_failure_retried() -> None:
    attempts = []

    async def flaky(args, context):
        attempts.append(1)
        if len(attempts) == 1:
            raise TransientCallFailure("502 bad gateway", status_code=502)
        return "plain text result"

    registry = _registry(
        ToolDefinition(name="search", description="d", handler=flaky, input_model=QueryInput),
        retry_policy=RetryPolicy(max_attempts=2, initial_delay=0.1),
    )
    result = await registry.dispatch(ToolCall(id="c1", name="search", arguments={"query": "x"}), CONTEXT)
    assert not result.error
    assert len(attempts) == 2
    assert result.message.text == "plain text result"
    assert result.data is None


@pytest.mark.asyncio
async def test_dispatch_all_preserves_order() -> None:
    registry = _registry(ToolDefinition(name="search", description="d", handler=echo, input_model=QueryInput))
    calls = [ToolCall(id=f"c{i}", name="search", arguments={"query": str(i)}) for i in range(3)]
    calls.insert(1, ToolCall(id="cx", name="missing", arguments={}))
    started = []

    async def on_start(tool_call, definition):
        started.append((tool_call.id, definition.name if definition else None))

    results = await registry.dispatch_all(calls, CONTEXT, on_start=on_start)
    assert [r.message.tool_call_id for r in results] == ["c0", "cx", "c1", "c2"]
    assert started == [("c0", "search"), ("cx", None), ("c1", "search"), ("c2", "search")]
