import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Type

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ..errors import AgentError, ToolArgumentsInvalid, UnknownTool
from ..models import CallerContext, Message, ToolCall
from ..services.retry import RetryPolicy, retry_with_backoff

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Dict[str, Any], CallerContext], Awaitable[Any]]
ToolStartHook = Callable[[ToolCall, "ToolDefinition | None"], Awaitable[None]]

TOOL_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
DEFAULT_STATUS_MESSAGE = "Thinking..."
MAX_ERROR_MESSAGE_LENGTH = 200


@dataclass(frozen=True)
class ToolDefinition:
    """A named capability the model can request.

    Arguments are validated against `input_model` when one is given,
    otherwise against the `required` list of the JSON `parameters` schema.
    """

    name: str
    description: str
    handler: ToolHandler
    input_model: Type[BaseModel] | None = None
    parameters: Mapping[str, Any] | None = None
    status_message: str = DEFAULT_STATUS_MESSAGE
    suggests_products: bool = False
    result_event: str | None = None

    def json_schema(self) -> Dict[str, Any]:
        if self.input_model is not None:
            return self.input_model.model_json_schema()
        return dict(self.parameters or {"type": "object", "properties": {}})

    def to_openai(self) -> Dict[str, Any]:
        """Return the tool in OpenAI function-calling format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description.strip(),
                "parameters": self.json_schema(),
            },
        }

    def validate_arguments(self, arguments: Any) -> Dict[str, Any]:
        """Validate model-supplied arguments.

        Raises:
            ToolArgumentsInvalid: If the arguments do not match the input schema.
        """
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise ToolArgumentsInvalid(f"Arguments for {self.name} must be an object")
        if self.input_model is not None:
            try:
                return self.input_model.model_validate(arguments).model_dump()
            except PydanticValidationError as e:
                raise ToolArgumentsInvalid(
                    f"Invalid arguments for {self.name}: {e.error_count()} validation error(s)"
                ) from e
        required = (self.parameters or {}).get("required", [])
        missing = [key for key in required if key not in arguments]
        if missing:
            raise ToolArgumentsInvalid(f"Missing required arguments for {self.name}: {', '.join(missing)}")
        return dict(arguments)


@dataclass
class ToolResult:
    """The tool-role message produced for one tool call, plus what the transport needs."""

    message: Message
    definition: ToolDefinition | None = None
    data: Any = None
    error: bool = False
    duration_ms: float = 0.0


def _error_content(code: str, message: str, tool: str) -> str:
    return json.dumps(
        {
            "error": {"code": code, "message": message, "tool": tool},
            "instruction": "Please apologize to the user and suggest they try again or rephrase their request.",
        }
    )


def _user_facing_error(e: BaseException) -> str:
    message = str(e)
    if message and len(message) < MAX_ERROR_MESSAGE_LENGTH:
        return message
    return "An unexpected error occurred"


def _render_output(output: Any) -> tuple[str, Any]:
    """Turn a handler's return value into message text and structured data."""
    if isinstance(output, str):
        try:
            return output, json.loads(output)
        except ValueError:
            return output, None
    return json.dumps(output, ensure_ascii=False, default=str), output


class ToolRegistry:
    """Immutable name → ToolDefinition map with the dispatch protocol.

    Definitions are validated when the registry is built; unknown names at
    dispatch time become a tool-result message, not an exception.
    """

    def __init__(
        self,
        definitions: Iterable[ToolDefinition],
        retry_policy: RetryPolicy | None = None,
        timeout_seconds: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        tools: Dict[str, ToolDefinition] = {}
        for definition in definitions:
            if not TOOL_NAME_PATTERN.match(definition.name):
                raise ValueError(f"Invalid tool name: {definition.name!r}")
            if definition.name in tools:
                raise ValueError(f"Duplicate tool name: {definition.name!r}")
            if definition.input_model is None and definition.parameters is None:
                raise ValueError(f"Tool {definition.name!r} declares no input schema")
            tools[definition.name] = definition
        self._tools: Mapping[str, ToolDefinition] = MappingProxyType(tools)
        self._retry_policy = retry_policy or RetryPolicy(max_attempts=1)
        self._timeout = timeout_seconds
        self._sleep = sleep
        logger.info("ToolRegistry initialized with %d tools: %s", len(tools), ", ".join(tools))

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> List[str]:
        return list(self._tools)

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def schemas(self) -> List[Dict[str, Any]]:
        """Return OpenAI tool schemas for every registered tool."""
        return [definition.to_openai() for definition in self._tools.values()]

    async def _invoke(self, definition: ToolDefinition, arguments: Dict[str, Any], context: CallerContext) -> Any:
        call = definition.handler(arguments, context)
        if self._timeout is None:
            return await call
        return await asyncio.wait_for(call, timeout=self._timeout)

    async def dispatch(self, tool_call: ToolCall, context: CallerContext) -> ToolResult:
        """Execute one tool call and always return a tool-role message for it.

        Args:
            tool_call: The call requested by the model.
            context: Caller identity passed through to the handler.

        Returns:
            ToolResult: The tool message linked to `tool_call.id`, with parsed
                output data when the handler succeeded.
        """
        definition = self._tools.get(tool_call.name)
        if definition is None:
            error = UnknownTool(tool_call.name)
            logger.warning("Unknown tool requested: %s (session=%s)", tool_call.name, context.session_id)
            return ToolResult(
                message=Message.tool(tool_call.id, tool_call.name, _error_content(error.code, str(error), tool_call.name)),
                error=True,
            )

        start = time.perf_counter()
        try:
            arguments = definition.validate_arguments(tool_call.arguments)
            logger.debug("Tool called: %s (session=%s)", definition.name, context.session_id)
            output = await retry_with_backoff(
                lambda: self._invoke(definition, arguments, context),
                self._retry_policy,
                sleep=self._sleep,
                label=f"tool {definition.name}",
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            duration_ms = (time.perf_counter() - start) * 1000
            code = e.code if isinstance(e, AgentError) else "tool_execution_failed"
            logger.error(
                "Tool execution failed: %s (session=%s, %.0fms): %s",
                definition.name,
                context.session_id,
                duration_ms,
                e,
            )
            return ToolResult(
                message=Message.tool(tool_call.id, definition.name, _error_content(code, _user_facing_error(e), definition.name)),
                definition=definition,
                error=True,
                duration_ms=duration_ms,
            )

        duration_ms = (time.perf_counter() - start) * 1000
        text, data = _render_output(output)
        logger.debug("Tool completed: %s (session=%s, %.0fms)", definition.name, context.session_id, duration_ms)
        return ToolResult(
            message=Message.tool(tool_call.id, definition.name, text),
            definition=definition,
            data=data,
            duration_ms=duration_ms,
        )

    async def dispatch_all(
        self,
        tool_calls: Iterable[ToolCall],
        context: CallerContext,
        on_start: ToolStartHook | None = None,
    ) -> List[ToolResult]:
        """Dispatch calls one after another, preserving the order the model emitted them.

        `on_start` is awaited with each call and its definition (None for an
        unknown tool) just before that call is dispatched.
        """
        results = []
        for tool_call in tool_calls:
            if on_start is not None:
                await on_start(tool_call, self._tools.get(tool_call.name))
            results.append(await self.dispatch(tool_call, context))
        return results
