"""
Tests for the terminal HTTP and WebSocket endpoints.
"""

import asyncio
import json
import os
import sys
import time
from contextlib import asynccontextmanager

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import FakeTransport, settle
from dashterm.api.terminals import StreamChannel, router
from dashterm.terminal.multiplexer import SessionMultiplexer
from dashterm.terminal.transport import Frame, FrameKind


class EchoTransport(FakeTransport):
    """Fake backend that echoes every command back as output."""

    async def send(self, frame: Frame) -> None:
        await super().send(frame)
        if frame.kind == FrameKind.DATA:
            await self.deliver(Frame.data(frame.session_id, f"echo: {frame.payload['data']}"))


def build_app(transport, config) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        mux = SessionMultiplexer(transport, config)
        await mux.start()
        app.state.multiplexer = mux
        yield
        await mux.stop()

    app = FastAPI(lifespan=lifespan)
    app.include_router(router)
    return app


@pytest.fixture
def echo_transport():
    return EchoTransport()


@pytest.fixture
def client(echo_transport, hub_config):
    with TestClient(build_app(echo_transport, hub_config)) as c:
        yield c


def create(client, workbranch_id="feature-login", **extra) -> str:
    response = client.post("/api/terminals", json={"workbranch_id": workbranch_id, **extra})
    assert response.status_code == 200, response.text
    return response.json()["session_id"]


def wait_for_history(client, session_id, count, timeout=2.0) -> list:
    deadline = time.monotonic() + timeout
    while True:
        history = client.get(f"/api/terminals/{session_id}/history").json()["history"]
        if len(history) >= count or time.monotonic() > deadline:
            return history
        time.sleep(0.01)


# ============================================================================
# HTTP
# ============================================================================

class TestSessionEndpoints:
    """Create, inspect and destroy sessions over HTTP."""

    def test_create_and_get(self, client):
        response = client.post("/api/terminals", json={"workbranch_id": "feature-login", "shell_kind": "powershell"})
        assert response.status_code == 200
        body = response.json()
        assert body["session"]["connection_state"] == "connected"
        assert body["session"]["shell_kind"] == "powershell"
        assert "output_history" not in body["session"]

        fetched = client.get(f"/api/terminals/{body['session_id']}")
        assert fetched.status_code == 200
        assert fetched.json()["id"] == body["session_id"]

    def test_create_rejects_bad_workbranch(self, client):
        response = client.post("/api/terminals", json={"workbranch_id": "../etc"})
        assert response.status_code == 400

    def test_create_rejects_cwd_escape(self, client):
        response = client.post("/api/terminals", json={"workbranch_id": "wb", "cwd": "../../etc"})
        assert response.status_code == 400

    def test_create_rejects_unknown_shell(self, client):
        response = client.post("/api/terminals", json={"workbranch_id": "wb", "shell_kind": "zsh"})
        assert response.status_code == 422

    def test_list_and_status(self, client):
        create(client, "alpha")
        create(client, "beta")

        sessions = client.get("/api/terminals").json()["sessions"]
        assert [s["workbranch_id"] for s in sessions] == ["alpha", "beta"]

        status = client.get("/api/terminals/status").json()
        assert status["running"] is True
        assert status["session_count"] == 2

        stats = client.get("/api/terminals/stats").json()
        assert stats["by_workbranch"] == {"alpha": 1, "beta": 1}

    def test_unknown_session_is_404(self, client):
        assert client.get("/api/terminals/missing").status_code == 404
        assert client.get("/api/terminals/missing/history").status_code == 404
        assert client.post("/api/terminals/missing/resize", json={"cols": 100, "rows": 30}).status_code == 404
        assert client.post("/api/terminals/missing/commands", json={"command": "git status"}).status_code == 404

    def test_destroy(self, client):
        sid = create(client)
        assert client.delete(f"/api/terminals/{sid}").json() == {"success": True, "destroyed": True}
        assert client.delete(f"/api/terminals/{sid}").json() == {"success": True, "destroyed": False}

    def test_destroy_by_workbranch(self, client):
        create(client, "alpha")
        create(client, "alpha")
        create(client, "beta")
        response = client.delete("/api/terminals/workbranch/alpha")
        assert response.json()["destroyed"] == 2
        assert len(client.get("/api/terminals").json()["sessions"]) == 1


class TestCommandEndpoints:
    """Validation, dispatch and the audit trail."""

    def test_validate_dry_run(self, client):
        verdict = client.post("/api/terminals/validate", json={"command": "git status; format c:"}).json()
        assert verdict["allowed"] is False
        assert verdict["reason"] == "dangerous-pattern"
        assert verdict["risk_level"] == "critical"
        assert verdict["guidance"]

    def test_allowed_command_produces_output(self, client):
        sid = create(client)
        result = client.post(f"/api/terminals/{sid}/commands", json={"command": "npm run dev"}).json()
        assert result["accepted"] is True
        assert result["verdict"]["sanitized_command"] == "npm run dev"

        history = wait_for_history(client, sid, 1)
        assert history == ["echo: npm run dev\n"]

    def test_denied_command_audited(self, client, echo_transport):
        sid = create(client)
        result = client.post(f"/api/terminals/{sid}/commands", json={"command": "rm -rf /"}).json()
        assert result["accepted"] is False
        assert echo_transport.frames(FrameKind.DATA) == []

        audit = client.get("/api/terminals/security/audit").json()
        assert audit["count"] == 1
        assert audit["entries"][0]["reason"] == "dangerous-pattern"
        assert audit["entries"][0]["session_id"] == sid

    def test_resize(self, client):
        sid = create(client)
        assert client.post(f"/api/terminals/{sid}/resize", json={"cols": 120, "rows": 40}).json() == {"accepted": True}
        assert client.post(f"/api/terminals/{sid}/resize", json={"cols": 0, "rows": 40}).json() == {"accepted": False}

    def test_lock_blocks_clear(self, client):
        sid = create(client)
        client.post(f"/api/terminals/{sid}/commands", json={"command": "git status"})
        wait_for_history(client, sid, 1)

        locked = client.post(f"/api/terminals/{sid}/lock", json={"locked": True}).json()
        assert locked["output_locked"] is True
        assert client.post(f"/api/terminals/{sid}/history/clear").json() == {"cleared": False}

        client.post(f"/api/terminals/{sid}/lock", json={"locked": False})
        assert client.post(f"/api/terminals/{sid}/history/clear").json() == {"cleared": True}
        assert client.get(f"/api/terminals/{sid}/history").json()["history"] == []


class TestHubNotRunning:
    """Endpoints answer 503 when no multiplexer is attached."""

    def test_503_without_multiplexer(self):
        app = FastAPI()
        app.include_router(router)
        with TestClient(app) as c:
            assert c.get("/api/terminals").status_code == 503


# ============================================================================
# WEBSOCKET
# ============================================================================

class TestStream:
    """Live stream: history, output, commands and keepalive."""

    def test_unknown_session_closes(self, client):
        with client.websocket_connect("/api/terminals/missing/stream") as ws:
            message = ws.receive_json()
            assert message["type"] == "error"

    def test_history_then_ping(self, client):
        sid = create(client)
        with client.websocket_connect(f"/api/terminals/{sid}/stream") as ws:
            assert ws.receive_json() == {"type": "history", "data": []}
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}

    def test_command_over_stream(self, client):
        sid = create(client)
        with client.websocket_connect(f"/api/terminals/{sid}/stream") as ws:
            ws.receive_json()
            ws.send_json({"type": "command", "command": "git status"})
            messages = [ws.receive_json(), ws.receive_json()]

        by_type = {m["type"]: m for m in messages}
        assert by_type["command_result"]["accepted"] is True
        assert by_type["output"]["data"] == "echo: git status\n"

    def test_denied_command_over_stream(self, client):
        sid = create(client)
        with client.websocket_connect(f"/api/terminals/{sid}/stream") as ws:
            ws.receive_json()
            ws.send_json({"type": "command", "command": "shutdown /s"})
            reply = ws.receive_json()

        assert reply["type"] == "command_result"
        assert reply["accepted"] is False
        assert "Guidance:" in reply["display"]
        assert "Blocked command: shutdown /s" in reply["display"]

    def test_invalid_json(self, client):
        sid = create(client)
        with client.websocket_connect(f"/api/terminals/{sid}/stream") as ws:
            ws.receive_json()
            ws.send_text("not json")
            assert ws.receive_json() == {"type": "error", "message": "Invalid JSON"}

    @pytest.mark.parametrize("raw", ["[]", "42", '"ping"', "null"])
    def test_non_object_message(self, client, raw):
        """A valid JSON value that is not an object gets an error frame; the stream stays open."""
        sid = create(client)
        with client.websocket_connect(f"/api/terminals/{sid}/stream") as ws:
            ws.receive_json()
            ws.send_text(raw)
            assert ws.receive_json() == {"type": "error", "message": "Expected a JSON object"}
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}


class TestStreamChannel:
    """History snapshot and live output leave no gap."""

    @pytest.mark.asyncio
    async def test_output_during_history_send_is_delivered(self, mux, transport):
        sid = await mux.create_session("wb")
        await transport.emit(Frame.data(sid, "before"))
        await settle()
        received = []

        async def send_text(text):
            message = json.loads(text)
            received.append(message)
            if message["type"] == "history":
                # Output arrives while the history frame is still being written
                await transport.emit(Frame.data(sid, "during-send"))
                await settle()

        channel = StreamChannel(send_text)
        await channel.attach(mux, sid)
        await settle()
        await transport.emit(Frame.data(sid, "after"))
        await settle()

        assert received == [
            {"type": "history", "data": ["before"]},
            {"type": "output", "data": "during-send"},
            {"type": "output", "data": "after"},
        ]
        assert mux.get_history(sid) == ["before", "during-send", "after"]

    @pytest.mark.asyncio
    async def test_detach_only_removes_own_sink(self, mux):
        sid = await mux.create_session("wb")
        first = StreamChannel(lambda text: asyncio.sleep(0))
        second = StreamChannel(lambda text: asyncio.sleep(0))
        await first.attach(mux, sid)
        await second.attach(mux, sid)

        first.detach(mux, sid)
        assert mux.get_stats()["attached_sinks"] == 1
        second.detach(mux, sid)
        assert mux.get_stats()["attached_sinks"] == 0


# ============================================================================
# APP
# ============================================================================

class TestMainApp:
    """The production app module."""

    def test_health_without_lifespan(self):
        from main import app

        client = TestClient(app)
        assert client.get("/health").json() == {"status": "ok", "running": False}
        assert client.get("/").json() == {"message": "DashTerm Backend is Running"}

    def test_build_transport(self, monkeypatch, hub_config):
        from main import build_transport
        from dashterm.terminal.backends import LocalShellTransport, WebSocketTransport

        monkeypatch.delenv("DASHTERM_BACKEND_URL", raising=False)
        assert isinstance(build_transport(hub_config), LocalShellTransport)

        monkeypatch.setenv("DASHTERM_BACKEND_URL", "ws://127.0.0.1:9/terminals")
        transport = build_transport(hub_config)
        assert isinstance(transport, WebSocketTransport)
        assert transport.url == "ws://127.0.0.1:9/terminals"
