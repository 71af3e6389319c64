#!/usr/bin/env python3
"""
Tests for the REST and WebSocket API.

The service is replaced with one built from in-memory components and a
scripted chat model, so no Postgres or Ollama is needed.

Run with: pytest iso_assistant/test_api.py -v
"""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from iso_assistant.api import main as api_main
from iso_assistant.api.main import app
from iso_assistant.api.middleware import auth
from iso_assistant.api.routes.chat import _forward_events, _stop_forwarder
from iso_assistant.api.services.agent_service import AgentService, get_agent_service, get_service
from iso_assistant.config import API_KEY_HEADER
from iso_assistant.conftest import FailingConversationLog, answer, passage, tool_call
from iso_assistant.events import TokenEvent
from iso_assistant.session import make_thread_id

HEADERS = {API_KEY_HEADER: "key-1"}


@pytest.fixture
def make_api(monkeypatch, make_orchestrator, relay):
    monkeypatch.setattr(auth, "API_KEYS", {"key-1": "user-1", "key-2": "user-2"})

    def factory(script, **kwargs):
        orchestrator, model = make_orchestrator(script, **kwargs)
        agent = AgentService.from_components(orchestrator, relay)
        app.dependency_overrides[get_agent_service] = lambda: agent
        app.dependency_overrides[get_service] = lambda: agent
        return agent, model

    yield factory
    app.dependency_overrides.clear()


# ============================================================================
# AUTHENTICATION
# ============================================================================


def test_missing_or_unknown_key_is_rejected(make_api):
    make_api([])
    with TestClient(app) as client:
        for headers in ({}, {API_KEY_HEADER: "wrong"}):
            response = client.post("/chat", json={"prompt": "hi"}, headers=headers)
            assert response.status_code == 401
            assert response.json() == {"error": "not_authenticated"}

        assert client.get("/api/conversations/history").status_code == 401


def test_websocket_without_key_is_closed(make_api):
    make_api([])
    with TestClient(app) as client:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws/chat?api_key=wrong"):
                pass
        assert exc_info.value.code == 4001


# ============================================================================
# CHAT
# ============================================================================


def test_chat_starts_turn_and_returns_interaction_id(make_api):
    agent, _ = make_api([answer("Capacity ", "auction.")])
    with TestClient(app) as client:
        response = client.post("/chat", json={"prompt": "What is the FCA?"}, headers=HEADERS)
        assert response.status_code == 202
        body = response.json()
        assert body["message"] == "started"
        assert body["thread_id"] == "default"

        client.portal.call(agent.orchestrator.wait_idle)

        history = client.get("/api/conversations/history", headers=HEADERS).json()
        assert history["thread_id"] == "default"
        assert [(t["speaker"], t["text"]) for t in history["turns"]] == [
            ("user", "What is the FCA?"),
            ("assistant", "Capacity auction."),
        ]
        assert history["turns"][1]["id"] == body["interaction_id"]
        assert all(t["thread_id"] == "default" for t in history["turns"])


def test_chat_sync_returns_answer_and_contexts(make_api, index):
    index.results = [passage("https://www.iso-ne.com/fcm", 0.9, text="The FCM procures capacity.")]
    make_api([tool_call("forward capacity market"), answer("It procures capacity.")])
    with TestClient(app) as client:
        response = client.post("/chat-sync", json={"prompt": "What is the FCM?"}, headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["response"] == "It procures capacity."
    assert body["contexts"] == ["The FCM procures capacity."]


def test_empty_prompt_is_invalid(make_api):
    make_api([])
    with TestClient(app) as client:
        response = client.post("/chat", json={"prompt": ""}, headers=HEADERS)
    assert response.status_code == 422


def test_busy_thread_returns_409(make_api):
    agent, model = make_api([answer("never")])
    agent.orchestrator._claim(make_thread_id("user-1"))

    with TestClient(app) as client:
        response = client.post("/chat", json={"prompt": "q"}, headers=HEADERS)
        other_thread = client.post("/chat-sync", json={"prompt": "q", "thread_id": "other"}, headers=HEADERS)

    assert response.status_code == 409
    assert response.json()["error"] == "thread_busy"
    assert other_thread.status_code == 200


def test_storage_failure_returns_503(make_api):
    make_api([answer("never")], log=FailingConversationLog({"append"}))
    with TestClient(app) as client:
        response = client.post("/chat", json={"prompt": "q"}, headers=HEADERS)
    assert response.status_code == 503
    assert response.json() == {"error": "storage_unavailable"}


def test_resume_with_nothing_unfinished(make_api):
    make_api([])
    with TestClient(app) as client:
        response = client.post("/chat/resume", json={}, headers=HEADERS)
    assert response.status_code == 404
    assert response.json() == {"error": "nothing_to_resume"}


# ============================================================================
# CONVERSATIONS
# ============================================================================


def test_history_is_per_user_and_delete_clears_thread(make_api):
    make_api([answer("one"), answer("two")])
    with TestClient(app) as client:
        client.post("/chat-sync", json={"prompt": "first"}, headers=HEADERS)
        client.post("/chat-sync", json={"prompt": "second"}, headers={API_KEY_HEADER: "key-2"})

        mine = client.get("/api/conversations/history", headers=HEADERS).json()
        assert [t["text"] for t in mine["turns"]] == ["first", "one"]

        limited = client.get("/api/conversations/history?limit=1", headers=HEADERS).json()
        assert [t["text"] for t in limited["turns"]] == ["one"]

        deleted = client.delete("/api/conversations", headers=HEADERS).json()
        assert deleted["deleted_turns"] == 2
        assert deleted["deleted_checkpoints"] > 0

        assert client.get("/api/conversations/history", headers=HEADERS).json()["turns"] == []
        theirs = client.get("/api/conversations/history", headers={API_KEY_HEADER: "key-2"}).json()
        assert len(theirs["turns"]) == 2


def test_history_limit_is_bounded(make_api):
    make_api([])
    with TestClient(app) as client:
        assert client.get("/api/conversations/history?limit=0", headers=HEADERS).status_code == 422
        assert client.get("/api/conversations/history?limit=500", headers=HEADERS).status_code == 422


# ============================================================================
# WEBSOCKET
# ============================================================================


def test_websocket_streams_turn_events(make_api):
    make_api([answer("Reserve ", "markets.")])
    with TestClient(app) as client:
        with client.websocket_connect("/ws/chat?api_key=key-1") as ws:
            hello = ws.receive_json()
            assert hello["type"] == "connection_established"
            assert hello["user_id"] == "user-1"
            assert hello["existing_messages"] == 0

            ws.send_json({"type": "chat_message", "message": "Explain reserves"})

            events = []
            while not events or events[-1]["kind"] != "end":
                events.append(ws.receive_json())

    assert [e["kind"] for e in events] == ["status", "token", "token", "end"]
    assert "".join(e["payload"] for e in events if e["kind"] == "token") == "Reserve markets."
    assert events[-1]["payload"] == "Reserve markets."
    assert len({e["interaction_id"] for e in events}) == 1


def test_websocket_reports_busy_thread(make_api):
    agent, _ = make_api([])
    agent.orchestrator._claim(make_thread_id("user-1"))
    with TestClient(app) as client:
        with client.websocket_connect("/ws/chat?api_key=key-1") as ws:
            ws.receive_json()
            ws.send_json({"type": "chat_message", "message": "hello"})
            error = ws.receive_json()

    assert error["type"] == "error"
    assert error["error"] == "thread_busy"


def test_websocket_rejects_invalid_chat_message(make_api):
    _, model = make_api([answer("never")])
    with TestClient(app) as client:
        with client.websocket_connect("/ws/chat?api_key=key-1") as ws:
            ws.receive_json()
            ws.send_json({"type": "chat_message", "message": "   "})
            blank = ws.receive_json()
            ws.send_json({"type": "chat_message", "message": "hi", "thread_id": 5})
            wrong_thread = ws.receive_json()

    for error in (blank, wrong_thread):
        assert error["type"] == "error"
        assert error["error"] == "invalid_message"
    assert model.calls == []


class FakeSocket:
    def __init__(self, error):
        self.error = error
        self.sent = []

    async def send_json(self, data):
        self.sent.append(data)
        raise self.error


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [WebSocketDisconnect(code=1006), RuntimeError("send failed")])
async def test_failed_forwarder_is_collected(relay, error):
    subscription = relay.subscribe("u1", stop_on_end=False)
    socket = FakeSocket(error)
    forwarder = asyncio.create_task(_forward_events(socket, subscription))

    await relay.publish("u1", TokenEvent(interaction_id=1, payload="tok"))
    for _ in range(3):
        await asyncio.sleep(0)
    assert forwarder.done()

    subscription.close()
    await _stop_forwarder(forwarder)

    assert len(socket.sent) == 1
    assert forwarder.exception() is error


@pytest.mark.asyncio
async def test_waiting_forwarder_is_cancelled(relay):
    subscription = relay.subscribe("u1", stop_on_end=False)
    forwarder = asyncio.create_task(_forward_events(FakeSocket(RuntimeError()), subscription))
    await asyncio.sleep(0)

    await _stop_forwarder(forwarder)

    assert forwarder.cancelled()
    subscription.close()


# ============================================================================
# HEALTH
# ============================================================================


def test_readiness_follows_health(make_api):
    agent, _ = make_api([])
    with TestClient(app) as client:
        agent.health = AsyncMock(return_value={"status": "ok", "postgres": None, "ollama": True})
        assert client.get("/api/health").json()["status"] == "ok"
        assert client.get("/api/health/ready").json() == {"ready": True}

        agent.health = AsyncMock(return_value={"status": "degraded", "postgres": None, "ollama": False})
        response = client.get("/api/health/ready")
        assert response.status_code == 503
        assert response.json()["ready"] is False


# ============================================================================
# LIFECYCLE
# ============================================================================


def test_lifespan_configures_logging_and_shuts_down(monkeypatch):
    configure = Mock()
    shutdown = AsyncMock()
    monkeypatch.setattr(api_main, "configure_logging", configure)
    monkeypatch.setattr(api_main.service, "shutdown", shutdown)

    with TestClient(app):
        configure.assert_called_once()
        shutdown.assert_not_awaited()

    shutdown.assert_awaited_once()
