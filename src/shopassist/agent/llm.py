import asyncio
import json
import logging
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, List, Protocol

from openai import NOT_GIVEN, AsyncOpenAI

from ..models import Message, ToolCall
from ..services.circuit_breaker import CircuitBreaker
from ..services.retry import RetryPolicy, retry_with_backoff

logger = logging.getLogger(__name__)

TokenCallback = Callable[[str], Awaitable[None]]


class ChatModel(Protocol):
    """A language-model endpoint that answers with text or tool calls."""

    async def complete(
        self,
        messages: List[Message],
        tools: List[Dict[str, Any]],
        on_token: TokenCallback | None = None,
    ) -> Message:
        ...


def to_openai_messages(messages: List[Message]) -> List[Dict[str, Any]]:
    """Convert conversation messages into the OpenAI chat format."""
    converted: List[Dict[str, Any]] = []
    for msg in messages:
        if msg.role == "tool":
            converted.append(
                {"role": "tool", "tool_call_id": msg.tool_call_id, "content": msg.text}
            )
        elif msg.role == "assistant" and msg.tool_calls:
            converted.append(
                {
                    "role": "assistant",
                    "content": msg.text or None,
                    "tool_calls": [
                        {
                            "id": tc.id,
                            "type": "function",
                            "function": {
                                "name": tc.name,
                                "arguments": tc.arguments
                                if isinstance(tc.arguments, str)
                                else json.dumps(tc.arguments),
                            },
                        }
                        for tc in msg.tool_calls
                    ],
                }
            )
        else:
            converted.append({"role": msg.role, "content": msg.text})
    return converted


def parse_tool_arguments(raw: str) -> Any:
    """Decode streamed tool arguments; undecodable input is kept raw so validation rejects it."""
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Model produced invalid tool arguments: %s", raw[:200])
        return raw


class OpenAIChatModel:
    """Streaming OpenAI chat-completions client with tool calling."""

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str,
        temperature: float = 0.0,
        timeout_seconds: float | None = None,
    ) -> None:
        self._client = client
        self._model = model
        self._temperature = temperature
        self._timeout = timeout_seconds

    async def complete(
        self,
        messages: List[Message],
        tools: List[Dict[str, Any]],
        on_token: TokenCallback | None = None,
    ) -> Message:
        """Run one chat completion and return the assistant message.

        Args:
            messages: Full model-facing history, system prompt first.
            tools: Tool schemas in OpenAI function format.
            on_token: Called with every text delta as it arrives.

        Returns:
            Message: Assistant message with text and any requested tool calls.
        """
        call = self._stream(messages, tools, on_token)
        if self._timeout is None:
            return await call
        return await asyncio.wait_for(call, timeout=self._timeout)

    async def _stream(
        self,
        messages: List[Message],
        tools: List[Dict[str, Any]],
        on_token: TokenCallback | None,
    ) -> Message:
        stream = await self._client.chat.completions.create(
            model=self._model,
            messages=to_openai_messages(messages),
            tools=tools if tools else NOT_GIVEN,
            tool_choice="auto" if tools else NOT_GIVEN,
            stream=True,
            temperature=self._temperature,
        )

        text = ""
        tool_calls_made: List[Dict[str, str]] = []
        async for chunk in stream:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta
            if delta.content:
                text += delta.content
                if on_token is not None:
                    await on_token(delta.content)
            if delta.tool_calls:
                for tool_call_delta in delta.tool_calls:
                    if tool_call_delta.index is None:
                        continue
                    while len(tool_calls_made) <= tool_call_delta.index:
                        tool_calls_made.append({"id": "", "name": "", "arguments": ""})
                    tc = tool_calls_made[tool_call_delta.index]
                    if tool_call_delta.id:
                        tc["id"] = tool_call_delta.id
                    if tool_call_delta.function:
                        if tool_call_delta.function.name:
                            tc["name"] = tool_call_delta.function.name
                        if tool_call_delta.function.arguments:
                            tc["arguments"] += tool_call_delta.function.arguments

        tool_calls = [
            ToolCall(id=tc["id"], name=tc["name"], arguments=parse_tool_arguments(tc["arguments"]))
            for tc in tool_calls_made
            if tc["name"]
        ]
        return Message.assistant(text, tool_calls)


class ResilientModel:
    """Wraps a ChatModel with the circuit breaker and retry policy.

    The breaker sees one outcome per logical call: a call that succeeds
    after retries is a success, one that exhausts its retries is a single
    failure. An attempt that already streamed tokens to the caller is not
    retried.
    """

    def __init__(
        self,
        model: ChatModel,
        breaker: CircuitBreaker,
        retry_policy: RetryPolicy,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.model = model
        self.breaker = breaker
        self.retry_policy = retry_policy
        self._sleep = sleep

    async def complete(
        self,
        messages: List[Message],
        tools: List[Dict[str, Any]],
        on_token: TokenCallback | None = None,
    ) -> Message:
        streamed = False

        async def forward(token: str) -> None:
            nonlocal streamed
            streamed = True
            await on_token(token)

        policy = replace(
            self.retry_policy,
            is_retryable=lambda e: not streamed and self.retry_policy.is_retryable(e),
        )
        return await self.breaker.call(
            lambda: retry_with_backoff(
                lambda: self.model.complete(messages, tools, forward if on_token else None),
                policy,
                sleep=self._sleep,
                label="model call",
            )
        )
