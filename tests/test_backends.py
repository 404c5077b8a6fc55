"""
Tests for the transport frame codec and the execution backends.
"""

import asyncio
import json
import os
import shutil
import signal
import sys
from unittest.mock import patch

import pytest
import websockets

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import wait_for_state
from dashterm.terminal.backends import (
    LocalShellTransport,
    WebSocketTransport,
    get_environment,
    get_shell_command,
)
from dashterm.terminal.errors import TransportError
from dashterm.terminal.models import ConnectionState, ShellKind
from dashterm.terminal.multiplexer import SessionMultiplexer
from dashterm.terminal.transport import Frame, FrameKind


class TestFrames:
    """JSON codec for transport frames."""

    def test_from_json(self):
        frame = Frame.from_json('{"kind": "data", "session_id": "s1", "payload": {"data": "hi"}}')
        assert frame.kind == FrameKind.DATA
        assert frame.payload == {"data": "hi"}

    @pytest.mark.parametrize("raw", ["not json", '{"kind": "nope", "session_id": "s"}', '{"kind": "data"}'])
    def test_malformed_frames(self, raw):
        with pytest.raises(TransportError):
            Frame.from_json(raw)

    def test_close_frame_extras(self):
        frame = Frame.close("s1", "process-exited", exit_code=3)
        assert json.loads(frame.to_json())["payload"] == {"reason": "process-exited", "exit_code": 3}


class TestShellSetup:
    """Shell command lines and session environment."""

    def test_bash_command(self):
        assert get_shell_command(ShellKind.BASH) == ("bash", ["--login"])

    def test_cmd_command(self):
        assert get_shell_command(ShellKind.CMD) == ("cmd.exe", ["/K"])

    def test_environment(self):
        env = get_environment("s1", "wb", "/work", project_id="p1", extra={"NODE_ENV": "test"})
        assert env["SESSION_ID"] == "s1"
        assert env["WORKBRANCH_ID"] == "wb"
        assert env["WORKSPACE_ROOT"] == "/work"
        assert env["PROJECT_ID"] == "p1"
        assert env["TERM"] == "xterm-256color"
        assert env["NODE_ENV"] == "test"

    def test_environment_cannot_override_session_or_loader_vars(self):
        env = get_environment(
            "s1", "wb", "/work", project_id="p1",
            extra={"SESSION_ID": "spoofed", "PROJECT_ID": "other", "LD_PRELOAD": "/tmp/x.so", "PATH": "/evil", "NODE_ENV": "test"},
        )
        assert env["SESSION_ID"] == "s1"
        assert env["PROJECT_ID"] == "p1"
        assert env.get("LD_PRELOAD") == os.environ.get("LD_PRELOAD")
        assert env.get("PATH") == os.environ.get("PATH")
        assert env["NODE_ENV"] == "test"

    def test_environment_without_project(self):
        assert "PROJECT_ID" not in get_environment("s1", "wb", "/work")


@pytest.mark.skipif(shutil.which("bash") is None, reason="bash not installed")
class TestLocalShellTransport:
    """End-to-end through a real local shell."""

    @pytest.mark.asyncio
    async def test_echo_round_trip(self, hub_config):
        hub_config.handshake_timeout = 5.0
        mux = SessionMultiplexer(LocalShellTransport(hub_config.workspace_root), hub_config)
        await mux.start()
        try:
            sid = await mux.create_session("wb")
            assert mux.get_session(sid).connection_state == ConnectionState.CONNECTED

            await mux.send_command(sid, "echo dashterm-ready")
            for _ in range(200):
                if "dashterm-ready" in "".join(mux.get_history(sid)):
                    break
                await asyncio.sleep(0.02)
            assert "dashterm-ready" in "".join(mux.get_history(sid))
        finally:
            await mux.stop()

    @pytest.mark.asyncio
    async def test_destroy_kills_shell_that_ignores_sigterm(self, hub_config):
        """Release gives up after close_timeout, but the shell is still killed."""
        stubborn = ("bash", ["-c", "trap '' TERM; while true; do sleep 0.05; done"])
        hub_config.handshake_timeout = 5.0
        transport = LocalShellTransport(hub_config.workspace_root, kill_timeout=5.0)
        mux = SessionMultiplexer(transport, hub_config)
        await mux.start()
        try:
            with patch("dashterm.terminal.backends.get_shell_command", return_value=stubborn):
                sid = await mux.create_session("wb")
            shell = transport._shells[sid]

            assert await mux.destroy_session(sid) is True
            assert sid not in mux.registry
            assert sid not in transport._shells

            exit_code = await asyncio.wait_for(shell.process.wait(), timeout=2.0)
            assert exit_code == -signal.SIGKILL
            await asyncio.sleep(0.05)
            assert shell.reader.done()
        finally:
            await mux.stop()

    @pytest.mark.asyncio
    async def test_send_before_open(self, tmp_path):
        transport = LocalShellTransport(str(tmp_path))
        with pytest.raises(TransportError):
            await transport.send(Frame.data("s1", "ls\n"))

    @pytest.mark.asyncio
    async def test_probe_unknown_session(self, tmp_path):
        assert await LocalShellTransport(str(tmp_path)).probe("missing") is False


class TestWebSocketTransport:
    """JSON frames over a websocket to a remote terminal service."""

    @pytest.mark.asyncio
    async def test_round_trip_and_transport_loss(self, hub_config):
        connections = []

        async def backend(ws):
            connections.append(ws)
            async for message in ws:
                frame = Frame.from_json(message)
                if frame.kind == FrameKind.INIT:
                    await ws.send(Frame(kind=FrameKind.INIT, session_id=frame.session_id, payload={"pid": 1}).to_json())
                elif frame.kind == FrameKind.DATA:
                    await ws.send(Frame.data(frame.session_id, "remote: " + frame.payload["data"]).to_json())

        async with websockets.serve(backend, "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            transport = WebSocketTransport(f"ws://127.0.0.1:{port}")
            mux = SessionMultiplexer(transport, hub_config)
            await mux.start()
            try:
                sid = await mux.create_session("wb")
                assert mux.get_session(sid).connection_state == ConnectionState.CONNECTED

                await mux.send_command(sid, "git status")
                for _ in range(100):
                    if mux.get_history(sid):
                        break
                    await asyncio.sleep(0.01)
                assert mux.get_history(sid) == ["remote: git status\n"]

                # Dropping the socket closes every session opened over it
                await connections[0].close()
                for _ in range(100):
                    if len(connections) > 1:
                        break
                    await asyncio.sleep(0.02)

                states = [t.to_state for t in mux.registry.transitions(sid)]
                assert ConnectionState.DISCONNECTED in states
                await wait_for_state(mux, sid, ConnectionState.CONNECTED)
            finally:
                await mux.stop()

    @pytest.mark.asyncio
    async def test_connect_failure(self):
        transport = WebSocketTransport("ws://127.0.0.1:9", connect_timeout=1.0)

        async def deliver(frame):
            pass

        with pytest.raises(TransportError):
            await transport.open(deliver)
