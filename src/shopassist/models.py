from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal

Role = Literal["system", "user", "assistant", "tool"]


@dataclass
class ToolCall:
    """A structured tool request emitted by the model."""

    id: str
    name: str
    # Decoded JSON object, or the raw string when the model sent malformed JSON.
    arguments: Any = field(default_factory=dict)


@dataclass
class Message:
    """One turn in a conversation.

    `tool_calls` is only set on assistant messages that request tools;
    `tool_call_id` is only set on tool messages and links the result back
    to the request that produced it.
    """

    role: Role
    text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None
    name: str | None = None

    @classmethod
    def user(cls, text: str) -> "Message":
        return cls(role="user", text=text)

    @classmethod
    def assistant(cls, text: str, tool_calls: List[ToolCall] | None = None) -> "Message":
        return cls(role="assistant", text=text, tool_calls=list(tool_calls or []))

    @classmethod
    def tool(cls, tool_call_id: str, name: str, text: str) -> "Message":
        return cls(role="tool", text=text, tool_call_id=tool_call_id, name=name)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"role": self.role, "text": self.text}
        if self.tool_calls:
            data["tool_calls"] = [
                {"id": tc.id, "name": tc.name, "arguments": tc.arguments}
                for tc in self.tool_calls
            ]
        if self.tool_call_id is not None:
            data["tool_call_id"] = self.tool_call_id
        if self.name is not None:
            data["name"] = self.name
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            role=data["role"],
            text=data.get("text", "") or "",
            tool_calls=[
                ToolCall(
                    id=tc["id"],
                    name=tc["name"],
                    arguments=tc.get("arguments") or {},
                )
                for tc in data.get("tool_calls", [])
            ],
            tool_call_id=data.get("tool_call_id"),
            name=data.get("name"),
        )


@dataclass
class ConversationState:
    """Per-session conversation state (message history and model call count)."""

    messages: List[Message] = field(default_factory=list)
    model_call_count: int = 0

    def append(self, *messages: Message) -> None:
        self.messages.extend(messages)

    @property
    def last(self) -> Message | None:
        return self.messages[-1] if self.messages else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "messages": [m.to_dict() for m in self.messages],
            "model_call_count": self.model_call_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationState":
        return cls(
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            model_call_count=int(data.get("model_call_count", 0)),
        )


@dataclass(frozen=True)
class CallerContext:
    """Identity of the caller, supplied by the transport and passed to tools."""

    session_id: str
    user_id: str | None = None
    user_name: str | None = None

    @property
    def rate_limit_key(self) -> str:
        return self.user_id or self.session_id
