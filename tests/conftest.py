"""
Shared fixtures for the DashTerm test suite.
"""

import asyncio
import os
import sys
from typing import List, Optional, Set

import pytest
import pytest_asyncio

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dashterm.core.config import TerminalHubConfig
from dashterm.terminal.errors import TransportError
from dashterm.terminal.models import ConnectionState
from dashterm.terminal.multiplexer import SessionMultiplexer
from dashterm.terminal.transport import Frame, FrameKind, Transport


class FakeTransport(Transport):
    """Records outbound frames and acks init frames like a healthy backend."""

    def __init__(self, auto_ack: bool = True):
        self.auto_ack = auto_ack
        self.sent: List[Frame] = []
        self.fail_kinds: Set[FrameKind] = set()
        self.hang_kinds: Set[FrameKind] = set()
        self.probe_result = True
        self.deliver = None
        self.opened = False
        self.closed = False

    async def open(self, deliver):
        self.deliver = deliver
        self.opened = True

    async def send(self, frame: Frame) -> None:
        if frame.kind in self.fail_kinds:
            raise TransportError(f"simulated {frame.kind.value} failure")
        if frame.kind in self.hang_kinds:
            # A backend that stopped reading
            await asyncio.Event().wait()
        self.sent.append(frame)
        if frame.kind == FrameKind.INIT and self.auto_ack:
            await self.deliver(Frame(kind=FrameKind.INIT, session_id=frame.session_id, payload={"pid": 4242}))

    async def probe(self, session_id: str) -> bool:
        return self.probe_result

    async def close(self) -> None:
        self.closed = True

    async def emit(self, frame: Frame) -> None:
        """Push an inbound frame as if the backend sent it."""
        await self.deliver(frame)

    def frames(self, kind: FrameKind, session_id: Optional[str] = None) -> List[Frame]:
        return [
            f for f in self.sent
            if f.kind == kind and (session_id is None or f.session_id == session_id)
        ]


async def settle(delay: float = 0.02) -> None:
    """Let the demux task and short timers run."""
    await asyncio.sleep(delay)


async def wait_for_state(mux: SessionMultiplexer, session_id: str, state: ConnectionState, timeout: float = 2.0) -> None:
    """Poll until a session reaches a connection state."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        session = mux.registry.get(session_id)
        if session is not None and session.connection_state == state:
            return
        await asyncio.sleep(0.01)
    session = mux.registry.get(session_id)
    current = session.connection_state.value if session else "destroyed"
    raise AssertionError(f"{session_id} never reached {state.value} (currently {current})")


@pytest.fixture
def hub_config(tmp_path) -> TerminalHubConfig:
    """Config with short timers so tests run fast."""
    return TerminalHubConfig(
        max_sessions=3,
        max_history_per_session=50,
        handshake_timeout=0.2,
        reconnect_base_delay=0.01,
        reconnect_backoff_factor=1.5,
        reconnect_max_delay=0.05,
        max_reconnect_attempts=3,
        resize_debounce=0.03,
        health_probe_interval=60.0,
        probe_timeout=0.05,
        probe_failure_threshold=2,
        cleanup_interval=60.0,
        close_timeout=0.2,
        kill_timeout=0.1,
        send_timeout=0.2,
        workspace_root=str(tmp_path),
    )


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest_asyncio.fixture
async def mux(transport, hub_config):
    multiplexer = SessionMultiplexer(transport, hub_config)
    await multiplexer.start()
    yield multiplexer
    await multiplexer.stop()
