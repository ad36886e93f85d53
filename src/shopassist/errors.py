"""Error taxonomy for the agent engine.

Errors that end a run carry a `code` and a `user_message` which the
transport forwards in the `chatEnd` event. Conditions that are absorbed
(tool failures, unknown tools, persistence problems) still have a class
here so they can be logged and reported uniformly.
"""

from typing import Any, Dict


class AgentError(Exception):
    """Base class for all agent engine errors."""

    code = "agent_error"
    user_message = "I apologize, but I encountered an error processing your request. Please try again or rephrase your question."

    def to_payload(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.user_message}


class ValidationError(AgentError):
    """Inbound message or session id failed validation."""

    code = "validation_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.user_message = message


class RateLimited(AgentError):
    """Admission rejected by the rate limiter."""

    code = "rate_limited"

    def __init__(self, retry_after_seconds: int, policy: str = "") -> None:
        super().__init__(f"Rate limit exceeded ({policy}), retry after {retry_after_seconds}s")
        self.retry_after_seconds = retry_after_seconds
        self.policy = policy
        self.user_message = (
            f"You're sending messages too quickly. Please wait {retry_after_seconds} seconds and try again."
        )

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload["retryAfter"] = self.retry_after_seconds
        return payload


class CircuitOpen(AgentError):
    """The model endpoint is considered unhealthy; no call was attempted."""

    code = "circuit_open"
    user_message = (
        "I'm experiencing some technical difficulties right now. Please try again in a moment, "
        "or feel free to browse our products directly."
    )


class TransientCallFailure(AgentError):
    """Network, timeout, or 5xx-class failure. Retryable."""

    code = "transient_failure"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ModelCallFailed(AgentError):
    """A model call failed terminally (retries exhausted or non-retryable)."""

    code = "model_call_failed"


class TurnLimitExceeded(AgentError):
    """The run reached the configured maximum number of model turns."""

    code = "turn_limit_exceeded"
    user_message = "I apologize, but I'm having trouble retrieving the information. Could you please rephrase your request?"

    def __init__(self, max_turns: int) -> None:
        super().__init__(f"Run exceeded {max_turns} model turns")
        self.max_turns = max_turns


class ToolExecutionFailure(AgentError):
    """A tool handler failed. Converted to a tool-result message, never fatal."""

    code = "tool_execution_failed"


class ToolArgumentsInvalid(ToolExecutionFailure):
    """Arguments supplied by the model do not match the tool's input schema."""

    code = "invalid_arguments"


class UnknownTool(AgentError):
    """The model requested a tool that is not registered."""

    code = "unknown_tool"

    def __init__(self, name: str) -> None:
        super().__init__(f'Tool "{name}" not found')
        self.name = name


class StoreError(AgentError):
    """The checkpoint store could not be read or written."""

    code = "store_error"


class PersistenceDegraded(AgentError):
    """Checkpointing failed; the run continues in memory."""

    code = "persistence_degraded"
