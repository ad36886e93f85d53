"""Graph executor: the MODEL_TURN / TOOL_TURN / DONE state machine.

One run starts from a loaded ConversationState with the user's message
appended, alternates model and tool turns until the model answers without
requesting tools, and checkpoints the state after every transition.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List

from ..errors import AgentError, CircuitOpen, ModelCallFailed, StoreError, TurnLimitExceeded
from ..models import CallerContext, ConversationState, Message, ToolCall
from ..services.checkpoint import CheckpointStore
from .llm import ResilientModel
from .tools import DEFAULT_STATUS_MESSAGE, ToolDefinition, ToolRegistry, ToolResult

logger = logging.getLogger(__name__)

EventSink = Callable[[str, Dict[str, Any]], Awaitable[None]]

DEFAULT_MAX_MODEL_TURNS = 6
DEFAULT_HISTORY_WINDOW = 50


class Phase(Enum):
    MODEL_TURN = "MODEL_TURN"
    TOOL_TURN = "TOOL_TURN"
    DONE = "DONE"


@dataclass
class RunOutcome:
    """What a finished run produced."""

    state: ConversationState
    final_message: Message
    suggested_products: List[Dict[str, Any]] = field(default_factory=list)
    tool_names: List[str] = field(default_factory=list)
    persistence_degraded: bool = False

    @property
    def products(self) -> List[Any]:
        return [item for group in self.suggested_products for item in group["data"]]


def sanitize_history(messages: List[Message]) -> List[Message]:
    """Drop tool messages that do not answer the immediately preceding assistant turn.

    An assistant turn whose tool calls are not all answered (a run that
    died mid-step) loses its tool calls, and keeps only its text if any.
    """
    result: List[Message] = []
    i = 0
    while i < len(messages):
        msg = messages[i]
        if msg.role == "tool":
            logger.debug("Skipping orphaned tool result %s", msg.tool_call_id)
            i += 1
            continue
        if msg.role != "assistant" or not msg.tool_calls:
            result.append(msg)
            i += 1
            continue

        expected = [tc.id for tc in msg.tool_calls]
        j = i + 1
        answers: Dict[str, Message] = {}
        while j < len(messages) and messages[j].role == "tool":
            tool_msg = messages[j]
            if tool_msg.tool_call_id in expected and tool_msg.tool_call_id not in answers:
                answers[tool_msg.tool_call_id] = tool_msg
            else:
                logger.debug("Skipping orphaned tool result %s", tool_msg.tool_call_id)
            j += 1

        if len(answers) == len(expected):
            result.append(msg)
            result.extend(answers[call_id] for call_id in expected)
        elif msg.text:
            result.append(Message.assistant(msg.text))
        i = j
    return result


def trim_history(messages: List[Message], window: int) -> List[Message]:
    """Keep the last `window` messages without starting on a tool result."""
    if len(messages) <= window:
        return messages

    sliced = messages[-window:]
    start = 0
    while start < len(sliced) and sliced[start].role == "tool":
        start += 1
    if start < len(sliced):
        return sliced[start:]

    for index in range(len(messages) - 1, -1, -1):
        if messages[index].role == "user":
            return messages[index:]
    return sliced


class GraphExecutor:
    """Runs the model/tool loop for one session at a time."""

    def __init__(
        self,
        model: ResilientModel,
        tools: ToolRegistry,
        checkpoints: CheckpointStore,
        system_prompt: str,
        max_model_turns: int = DEFAULT_MAX_MODEL_TURNS,
        history_window: int = DEFAULT_HISTORY_WINDOW,
        today: Callable[[], date] = date.today,
    ) -> None:
        if max_model_turns < 1:
            raise ValueError("max_model_turns must be >= 1")
        self.model = model
        self.tools = tools
        self.checkpoints = checkpoints
        self.system_prompt = system_prompt
        self.max_model_turns = max_model_turns
        self.history_window = history_window
        self._today = today

    def build_system_prompt(self, context: CallerContext) -> str:
        user_name = context.user_name or "Valued Customer"
        return (
            f"{self.system_prompt}\n\n"
            "Current User Context:\n"
            f"- User Name: {user_name}\n"
            f"- Current Date: {self._today().isoformat()}"
        )

    def model_view(self, state: ConversationState, context: CallerContext) -> List[Message]:
        """The message list sent to the model: system prompt plus a sanitized window."""
        history = trim_history(sanitize_history(state.messages), self.history_window)
        return [Message(role="system", text=self.build_system_prompt(context)), *history]

    async def _checkpoint(self, session_id: str, state: ConversationState) -> bool:
        """Save state; a failed save is logged and reported, never raised."""
        try:
            # Shielded so a cancelled run still persists the step it completed.
            await asyncio.shield(self.checkpoints.save(session_id, state))
            return True
        except StoreError as e:
            logger.warning("Persistence degraded for session %s: %s", session_id, e)
            return False

    async def run(
        self,
        context: CallerContext,
        state: ConversationState,
        user_text: str,
        emit: EventSink,
        tool_log: List[str] | None = None,
    ) -> RunOutcome:
        """Execute one run for an already validated and admitted message.

        Args:
            context: Caller identity; `session_id` is the checkpoint key.
            state: The session's loaded state. Mutated in place.
            user_text: Sanitized user message.
            emit: Coroutine receiving outbound transport events.
            tool_log: Receives the name of every tool call as it is
                dispatched, including calls made before a failure.

        Returns:
            RunOutcome: The final assistant message and side data.

        Raises:
            CircuitOpen: The model endpoint is open; no call was made.
            ModelCallFailed: A model call failed after retries.
            TurnLimitExceeded: The run hit `max_model_turns`.
        """
        session_id = context.session_id
        state.model_call_count = 0
        state.append(Message.user(user_text))
        degraded = not await self._checkpoint(session_id, state)

        suggested: List[Dict[str, Any]] = []
        tool_names: List[str] = tool_log if tool_log is not None else []
        streamed = False
        phase = Phase.MODEL_TURN

        async def on_token(token: str) -> None:
            nonlocal streamed
            streamed = True
            await emit("chatStream", {"chunk": token})

        while phase is not Phase.DONE:
            if phase is Phase.MODEL_TURN:
                if state.model_call_count >= self.max_model_turns:
                    logger.warning(
                        "Max model turns exceeded session=%s turns=%d",
                        session_id,
                        state.model_call_count,
                    )
                    raise TurnLimitExceeded(self.max_model_turns)

                await emit("agentState", {"status": DEFAULT_STATUS_MESSAGE})
                streamed = False
                reply = await self._call_model(state, context, on_token)
                state.append(reply)
                state.model_call_count += 1
                degraded = not await self._checkpoint(session_id, state) or degraded
                phase = Phase.TOOL_TURN if reply.tool_calls else Phase.DONE

            elif phase is Phase.TOOL_TURN:
                results = await self._run_tools(state, context, emit, tool_names)
                state.append(*(result.message for result in results))
                degraded = not await self._checkpoint(session_id, state) or degraded
                for result in results:
                    await self._collect(result, suggested, emit)
                phase = Phase.MODEL_TURN

        final = state.last
        if final is None or final.role != "assistant":
            raise RuntimeError("Run finished without an assistant reply")
        if final.text and not streamed:
            await emit("chatStream", {"chunk": final.text})
        for group in suggested:
            await emit("suggestedProducts", group)

        return RunOutcome(
            state=state,
            final_message=final,
            suggested_products=suggested,
            tool_names=tool_names,
            persistence_degraded=degraded,
        )

    async def _call_model(self, state: ConversationState, context: CallerContext, on_token) -> Message:
        messages = self.model_view(state, context)
        logger.debug(
            "LLM call initiated session=%s context_size=%d llm_calls=%d",
            context.session_id,
            len(messages),
            state.model_call_count,
        )
        try:
            return await self.model.complete(messages, self.tools.schemas(), on_token)
        except (CircuitOpen, asyncio.CancelledError):
            raise
        except AgentError as e:
            raise ModelCallFailed(str(e)) from e
        except Exception as e:
            logger.error("LLM call failed session=%s: %s", context.session_id, e)
            raise ModelCallFailed(str(e)) from e

    async def _run_tools(
        self,
        state: ConversationState,
        context: CallerContext,
        emit: EventSink,
        tool_names: List[str],
    ) -> List[ToolResult]:
        """Dispatch every pending tool call in order; results are returned, not appended."""
        last = state.last
        if last is None or last.role != "assistant" or not last.tool_calls:
            raise RuntimeError("TOOL_TURN entered without pending tool calls")

        async def on_start(tool_call: ToolCall, definition: ToolDefinition | None) -> None:
            tool_names.append(tool_call.name)
            status = definition.status_message if definition else DEFAULT_STATUS_MESSAGE
            await emit("agentState", {"status": status})

        results = await self.tools.dispatch_all(last.tool_calls, context, on_start=on_start)

        answered = [result.message.tool_call_id for result in results]
        if answered != [tc.id for tc in last.tool_calls]:
            raise RuntimeError("Tool results do not match the pending tool calls")
        return results

    async def _collect(self, result: ToolResult, suggested: List[Dict[str, Any]], emit: EventSink) -> None:
        definition = result.definition
        if definition is None or result.error or result.data is None:
            return
        if definition.suggests_products and isinstance(result.data, (list, dict)):
            data = result.data if isinstance(result.data, list) else [result.data]
            if data:
                suggested.append({"toolName": definition.name, "data": data})
        if definition.result_event:
            await emit(definition.result_event, {"data": result.data})
