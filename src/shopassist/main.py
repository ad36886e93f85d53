import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager, suppress
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Set

import uvicorn
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .agent import AgentService, build_agent_service, build_storefront_tools, load_mcp_tools
from .agent.storefront import StorefrontClient
from .errors import StoreError, ValidationError
from .services.checkpoint import CheckpointStore, MemoryCheckpointStore, RedisCheckpointStore
from .services.redis import RedisCrudService
from .settings import Settings, get_settings


def setup_server_logging(level: str = "INFO") -> logging.Logger:
    """Configure and return the server logger."""
    logs_dir = Path("logs")
    logs_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("shopassist")
    if logger.handlers:
        return logger

    logger.setLevel(level)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    fh = RotatingFileHandler(logs_dir / "server.log", maxBytes=5_000_000, backupCount=3)
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    return logger


LOGGER = logging.getLogger("shopassist.server")


async def _connect_checkpoints(settings: Settings) -> CheckpointStore:
    """Use Redis when configured and reachable, otherwise keep checkpoints in memory."""
    if not settings.redis_url or not settings.redis_url.strip():
        LOGGER.info("No REDIS_URL configured; checkpoints kept in memory")
        return MemoryCheckpointStore()
    redis_crud = RedisCrudService(settings.redis_url.strip())
    try:
        await redis_crud.connect()
    except StoreError as e:
        LOGGER.warning("Checkpoint store (Redis) unavailable, falling back to memory: %s", e)
        return MemoryCheckpointStore()
    LOGGER.info("Checkpoint store (Redis) ready")
    return RedisCheckpointStore(redis_crud, ttl_seconds=settings.checkpoint_ttl_seconds)


def create_app(settings: Settings | None = None, service: AgentService | None = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Configuration; defaults to the environment-loaded singleton.
        service: A prebuilt AgentService. When omitted, the lifespan hook
            wires one from settings (storefront tools, MCP tools, checkpoint store).
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_server_logging(settings.log_level)
        storefront: StorefrontClient | None = None
        checkpoints: CheckpointStore | None = None

        agent_service = service
        if agent_service is None:
            storefront = StorefrontClient(
                base_url=settings.storefront_base_url,
                client_url=settings.client_url,
                timeout_seconds=settings.storefront_timeout_seconds,
            )
            tools = build_storefront_tools(storefront)
            commands = settings.mcp_commands()
            if commands:
                LOGGER.info("Loading MCP tools at startup...")
                try:
                    tools += await load_mcp_tools(commands, reserved_names=[t.name for t in tools])
                    LOGGER.info("MCP tools loaded successfully")
                except (OSError, ConnectionError, TimeoutError) as e:
                    LOGGER.warning("MCP tools partially or fully unavailable: %s", e)
                except Exception as e:
                    LOGGER.exception("Unexpected error loading MCP tools: %s", e)
            checkpoints = await _connect_checkpoints(settings)
            agent_service = build_agent_service(settings, tools, checkpoints=checkpoints)

        app.state.agent_service = agent_service
        sweeper = asyncio.create_task(
            agent_service.rate_limiter.run_sweeper(settings.rate_limit_sweep_interval_seconds)
        )

        yield

        LOGGER.info("Shutting down...")
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper
        if storefront is not None:
            await storefront.aclose()
        if isinstance(checkpoints, RedisCheckpointStore):
            await checkpoints.close()

    app = FastAPI(
        title="Storefront Shopping Assistant",
        version="0.1.0",
        debug=settings.debug,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _service(request: Request) -> AgentService:
        return request.app.state.agent_service

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Liveness check for load balancers."""
        return {"status": "ok"}

    @app.get("/agent/health")
    async def agent_health(request: Request) -> dict[str, Any]:
        """Circuit breaker state plus headline run metrics."""
        return _service(request).health()

    @app.get("/agent/metrics")
    async def agent_metrics(request: Request) -> dict[str, Any]:
        """Full metrics snapshot plus circuit breaker state."""
        return _service(request).metrics_report()

    @app.get("/agent/history/{session_id}")
    async def agent_history(session_id: str, request: Request) -> dict[str, Any]:
        """Restore the visible chat history of a session."""
        try:
            messages = await _service(request).history(session_id)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=e.user_message) from e
        except StoreError as e:
            LOGGER.warning("History restore failed for %s: %s", session_id, e)
            raise HTTPException(status_code=503, detail="Chat history is temporarily unavailable") from e
        return {"sessionId": session_id, "messages": messages}

    @app.websocket("/ws/chat")
    async def chat_ws(websocket: WebSocket) -> None:
        """WebSocket chat endpoint.

        Expected Input (JSON), one frame per user message:
            {
                "sessionId": str - session identifier (defaults to a connection id),
                "text": str - user message,
                "userId": str | None - authenticated user id,
                "userName": str | None - display name
            }

        Response Format:
            JSON frames {"event": str, "payload": dict} where event is one of
            agentState, chatStream, suggestedProducts, itemAddedToCart, chatEnd.
        """
        await websocket.accept()
        agent_service: AgentService = websocket.app.state.agent_service
        connection_id = uuid.uuid4().hex
        runs: Set[asyncio.Task] = set()

        async def emit(event: str, payload: Dict[str, Any]) -> None:
            await websocket.send_json({"event": event, "payload": payload})

        async def run(frame: Dict[str, Any]) -> None:
            try:
                await agent_service.handle_message(
                    frame.get("sessionId") or connection_id,
                    frame.get("text"),
                    emit,
                    user_id=str(frame["userId"]) if frame.get("userId") is not None else None,
                    user_name=frame.get("userName"),
                )
            except asyncio.CancelledError:
                LOGGER.info("Run cancelled for connection %s", connection_id)
                raise
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                LOGGER.exception("Unexpected error during agent run: %s", e)
                with suppress(WebSocketDisconnect, RuntimeError, OSError):
                    await emit("chatEnd", {"status": "error", "error": "An unexpected error occurred"})

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    frame = json.loads(raw)
                except json.JSONDecodeError as e:
                    LOGGER.error("Invalid WS payload (not JSON): %s", e)
                    await emit("chatEnd", {"status": "error", "error": "Invalid JSON payload"})
                    continue
                if not isinstance(frame, dict):
                    await emit("chatEnd", {"status": "error", "error": "Invalid JSON payload"})
                    continue
                task = asyncio.create_task(run(frame))
                runs.add(task)
                task.add_done_callback(runs.discard)
        except WebSocketDisconnect:
            LOGGER.info("WS disconnect %s", connection_id)
        finally:
            for task in list(runs):
                task.cancel()
            for task in list(runs):
                with suppress(asyncio.CancelledError):
                    await task

    return app


app = create_app()


def run() -> None:
    """Serve the application with uvicorn on the configured host and port."""
    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
