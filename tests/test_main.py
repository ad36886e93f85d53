from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from conftest import ScriptedModel
from shopassist.agent.service import build_agent_service
from shopassist.main import app, create_app, run
from shopassist.models import Message
from shopassist.settings import Settings


@pytest.fixture
def client():
    settings = Settings(_env_file=None, openai_api_key="test-key", llm_retry_max_attempts=1)
    model = ScriptedModel([Message.assistant("Ayubowan! How can I help you find a gift?")])
    service = build_agent_service(settings, tools=[], model=model)
    with TestClient(create_app(settings, service)) as test_client:
        yield test_client


def _receive_until_end(ws) -> list:
    frames = []
    while True:
        frame = ws.receive_json()
        frames.append(frame)
        if frame["event"] == "chatEnd":
            return frames


def test_health(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_agent_health(client: TestClient) -> None:
    body = client.get("/agent/health").json()
    assert body["circuitBreaker"]["state"] == "CLOSED"
    assert body["metrics"]["requestCount"] == 0


def test_chat_over_websocket_then_history(client: TestClient) -> None:
    with client.websocket_connect("/ws/chat") as ws:
        ws.send_json({"sessionId": "s1", "text": "hello", "userName": "Dilani"})
        frames = _receive_until_end(ws)

    events = [f["event"] for f in frames]
    assert events[0] == "agentState"
    assert "chatStream" in events
    assert frames[-1]["payload"] == {"status": "ok"}

    history = client.get("/agent/history/s1").json()
    assert history["sessionId"] == "s1"
    assert [m["sender"] for m in history["messages"]] == ["user", "bot"]

    metrics = client.get("/agent/metrics").json()
    assert metrics["requestCount"] == 1
    assert metrics["circuitBreaker"]["state"] == "CLOSED"


def test_websocket_rejects_invalid_frames(client: TestClient) -> None:
    with client.websocket_connect("/ws/chat") as ws:
        ws.send_text("not json")
        assert ws.receive_json()["payload"]["error"] == "Invalid JSON payload"
        ws.send_json({"sessionId": "s1", "text": ""})
        end = ws.receive_json()
        assert end["event"] == "chatEnd"
        assert end["payload"]["code"] == "validation_error"


def test_history_invalid_session(client: TestClient) -> None:
    response = client.get("/agent/history/bad id")
    assert response.status_code == 400


def test_startup_survives_mcp_loader_crash() -> None:
    settings = Settings(_env_file=None, openai_api_key="test-key", mcp_tool_server_cmds="python server.py")
    with patch("shopassist.main.load_mcp_tools", AsyncMock(side_effect=RuntimeError("handshake garbled"))) as loader:
        with TestClient(create_app(settings)) as test_client:
            assert test_client.get("/health").status_code == 200
            assert test_client.get("/agent/health").json()["status"] == "healthy"
    loader.assert_awaited_once()


def test_run_serves_on_configured_host_and_port() -> None:
    settings = Settings(_env_file=None, openai_api_key="test-key", host="127.0.0.1", port=9090, log_level="DEBUG")
    with patch("shopassist.main.get_settings", return_value=settings), patch("shopassist.main.uvicorn.run") as serve:
        run()
    serve.assert_called_once_with(app, host="127.0.0.1", port=9090, log_level="debug")
