import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List

from openai import AsyncOpenAI

from ..errors import AgentError, RateLimited, StoreError, ValidationError
from ..models import CallerContext, ConversationState
from ..services.checkpoint import CheckpointStore, MemoryCheckpointStore
from ..services.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState
from ..services.metrics import MetricsCollector, RunRecord
from ..services.rate_limiter import CompositeRateLimiter, RateLimitConfig, RateLimitPolicy
from ..services.retry import RetryPolicy
from ..services.validator import validate_message, validate_session_id
from ..settings import Settings
from .executor import EventSink, GraphExecutor, RunOutcome
from .llm import ChatModel, OpenAIChatModel, ResilientModel
from .tools import ToolDefinition, ToolRegistry

logger = logging.getLogger(__name__)


class SessionLocks:
    """One asyncio.Lock per session so runs for a session never interleave."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, session_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._waiters[session_id] = self._waiters.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[session_id] -= 1
            if self._waiters[session_id] == 0:
                del self._waiters[session_id]
                del self._locks[session_id]

    def is_busy(self, session_id: str) -> bool:
        lock = self._locks.get(session_id)
        return lock is not None and lock.locked()


class AgentService:
    """Entry point for inbound chat messages.

    Validates, admits, serializes per session, runs the graph executor,
    records metrics and reports the outcome to the transport.
    """

    def __init__(
        self,
        executor: GraphExecutor,
        checkpoints: CheckpointStore,
        rate_limiter: CompositeRateLimiter,
        breaker: CircuitBreaker,
        metrics: MetricsCollector,
        max_message_length: int = 2000,
    ) -> None:
        self.executor = executor
        self.checkpoints = checkpoints
        self.rate_limiter = rate_limiter
        self.breaker = breaker
        self.metrics = metrics
        self.max_message_length = max_message_length
        self.locks = SessionLocks()

    async def _load(self, session_id: str) -> tuple[ConversationState, bool]:
        try:
            return await self.checkpoints.load(session_id), False
        except StoreError as e:
            logger.warning("Persistence degraded for session %s, starting fresh: %s", session_id, e)
            return ConversationState(), True

    async def handle_message(
        self,
        session_id: Any,
        text: Any,
        emit: EventSink,
        user_id: str | None = None,
        user_name: str | None = None,
    ) -> RunOutcome | None:
        """Process one inbound message and emit the run's events.

        Args:
            session_id: Transport-supplied session identifier.
            text: Raw user text.
            emit: Coroutine receiving `(event, payload)` pairs.
            user_id: Authenticated user id, if any.
            user_name: Display name used in the system prompt.

        Returns:
            RunOutcome | None: The outcome, or None if the run was rejected or failed.
        """
        try:
            session_id = validate_session_id(session_id)
            clean_text = validate_message(text, self.max_message_length)
            context = CallerContext(session_id=session_id, user_id=user_id, user_name=user_name)
            self.rate_limiter.admit(context.rate_limit_key)
        except (ValidationError, RateLimited) as e:
            logger.info("Message rejected session=%s code=%s: %s", session_id, e.code, e)
            await emit("chatEnd", {"status": "error", "error": e.user_message, **e.to_payload()})
            return None

        async with self.locks.hold(session_id):
            start = time.perf_counter()
            logger.info("Agent execution started session=%s user=%s", session_id, user_id)
            state, degraded = await self._load(session_id)
            outcome: RunOutcome | None = None
            invoked: List[str] = []
            try:
                outcome = await self.executor.run(context, state, clean_text, emit, tool_log=invoked)
            except AgentError as e:
                logger.error("Agent execution failed session=%s code=%s: %s", session_id, e.code, e)
                await emit("chatEnd", {"status": "error", "error": e.user_message, **e.to_payload()})
                return None
            finally:
                latency_ms = (time.perf_counter() - start) * 1000
                self.metrics.record(
                    RunRecord(
                        latency_ms=latency_ms,
                        model_call_count=state.model_call_count,
                        tool_names=invoked,
                        error=outcome is None,
                    )
                )

            outcome.persistence_degraded = outcome.persistence_degraded or degraded
            logger.info(
                "Agent execution completed session=%s duration=%.0fms llm_calls=%d",
                session_id,
                latency_ms,
                state.model_call_count,
            )
            await emit("chatEnd", {"status": "ok"})
            return outcome

    async def history(self, session_id: str) -> List[Dict[str, Any]]:
        """User and assistant messages with visible text, for restoring a chat view."""
        session_id = validate_session_id(session_id)
        state = await self.checkpoints.load(session_id)
        return [
            {"sender": "user" if m.role == "user" else "bot", "text": m.text}
            for m in state.messages
            if m.role in ("user", "assistant") and m.text.strip()
        ]

    def health(self) -> Dict[str, Any]:
        snapshot = self.metrics.snapshot()
        state = self.breaker.state
        return {
            "status": "healthy" if state != CircuitState.OPEN else "degraded",
            "circuitBreaker": {"state": state.value, "isHealthy": state != CircuitState.OPEN},
            "metrics": {
                "requestCount": snapshot["requestCount"],
                "errorRate": snapshot["errorRate"],
                "averageResponseTime": snapshot["averageResponseTime"],
                "averageLlmCalls": snapshot["averageLlmCalls"],
            },
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    def metrics_report(self) -> Dict[str, Any]:
        return {**self.metrics.snapshot(), "circuitBreaker": {"state": self.breaker.state.value}}


def build_rate_limiter(settings: Settings) -> CompositeRateLimiter:
    return CompositeRateLimiter(
        [
            RateLimitPolicy(
                RateLimitConfig(
                    name="chat",
                    max_requests=settings.chat_rate_limit_requests,
                    window_seconds=settings.chat_rate_limit_window_seconds,
                    block_seconds=settings.chat_rate_limit_block_seconds,
                )
            ),
            RateLimitPolicy(
                RateLimitConfig(
                    name="burst",
                    max_requests=settings.burst_rate_limit_requests,
                    window_seconds=settings.burst_rate_limit_window_seconds,
                    block_seconds=settings.burst_rate_limit_block_seconds,
                )
            ),
        ]
    )


def build_agent_service(
    settings: Settings,
    tools: List[ToolDefinition],
    model: ChatModel | None = None,
    checkpoints: CheckpointStore | None = None,
) -> AgentService:
    """Wire every component from settings. Each call builds fresh, independent instances."""
    if model is None:
        model = OpenAIChatModel(
            AsyncOpenAI(
                api_key=settings.openai_api_key,
                base_url=settings.openai_base_url,
                timeout=settings.llm_timeout_seconds,
            ),
            model=settings.model,
            temperature=settings.temperature,
            timeout_seconds=settings.llm_timeout_seconds,
        )
    checkpoints = checkpoints or MemoryCheckpointStore()
    breaker = CircuitBreaker(
        "llm",
        CircuitBreakerConfig(
            failure_threshold=settings.breaker_failure_threshold,
            cooldown_seconds=settings.breaker_cooldown_seconds,
        ),
    )
    resilient = ResilientModel(
        model,
        breaker,
        RetryPolicy(
            max_attempts=settings.llm_retry_max_attempts,
            initial_delay=settings.llm_retry_initial_delay_seconds,
            max_delay=settings.llm_retry_max_delay_seconds,
            backoff_multiplier=settings.llm_retry_backoff_multiplier,
        ),
    )
    registry = ToolRegistry(
        tools,
        retry_policy=RetryPolicy(
            max_attempts=settings.tool_retry_max_attempts,
            initial_delay=settings.tool_retry_initial_delay_seconds,
            max_delay=settings.tool_retry_max_delay_seconds,
        ),
        timeout_seconds=settings.storefront_timeout_seconds,
    )
    executor = GraphExecutor(
        model=resilient,
        tools=registry,
        checkpoints=checkpoints,
        system_prompt=settings.agent_system_prompt,
        max_model_turns=settings.max_model_turns,
        history_window=settings.history_window,
    )
    return AgentService(
        executor=executor,
        checkpoints=checkpoints,
        rate_limiter=build_rate_limiter(settings),
        breaker=breaker,
        metrics=MetricsCollector(settings.metrics_window_size),
        max_message_length=settings.max_message_length,
    )
