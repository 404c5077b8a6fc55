"""
Execution Backends

Transport implementations the multiplexer can drive.

LocalShellTransport
    Spawns one shell process per session with asyncio subprocess pipes and
    streams its output back as data frames. Good for a single-machine
    dashboard.

WebSocketTransport
    Speaks JSON frames over one websocket to a remote terminal service.

Usage:
    transport = LocalShellTransport(workspace_root="/work")
    mux = SessionMultiplexer(transport, config)
"""

import asyncio
import contextlib
import os
import platform
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from dashterm.core.logger import get_logger

from .errors import TransportError
from .models import ShellKind
from .security import validate_environment_variable
from .transport import Frame, FrameHandler, FrameKind, Transport

logger = get_logger("backend")


# ============================================================================
# SHELL SETUP
# ============================================================================

def get_shell_command(shell_kind: ShellKind) -> Tuple[str, List[str]]:
    """
    Get the shell executable and arguments for a session.

    Returns:
        Tuple of (shell_path, shell_args).
    """
    is_windows = platform.system() == "Windows"
    if shell_kind == ShellKind.POWERSHELL:
        return ("powershell.exe" if is_windows else "pwsh"), ["-NoLogo", "-NoExit"]
    if shell_kind == ShellKind.CMD:
        return "cmd.exe", ["/K"]
    return "bash", ["--login"]


def get_environment(
    session_id: str,
    workbranch_id: str,
    workspace_root: str,
    project_id: Optional[str] = None,
    extra: Optional[Dict[str, str]] = None,
) -> dict:
    """
    Get environment variables for a session's shell.

    Extra variables with a protected or reserved name are dropped, and the
    session variables are written last so they cannot be overridden.
    """
    env = {
        **os.environ,
        "TERM": "xterm-256color",
        "COLORTERM": "truecolor",
    }
    for name, value in (extra or {}).items():
        if validate_environment_variable(name):
            env[name] = value
        else:
            logger.warning(f"[BACKEND] 🚫 Ignoring protected environment variable {name!r} for {session_id}")

    env.update(
        WORKBRANCH_ID=workbranch_id,
        SESSION_ID=session_id,
        WORKSPACE_ROOT=workspace_root,
    )
    if project_id:
        env["PROJECT_ID"] = project_id
    return env


@dataclass
class ShellProcess:
    """
    A running session shell.

    Attributes:
        process: The asyncio subprocess.
        reader: Task pumping stdout into data frames.
        cols: Last size requested for the viewport.
        rows: Last size requested for the viewport.
    """
    process: asyncio.subprocess.Process
    reader: Optional[asyncio.Task] = None
    cols: int = 80
    rows: int = 24


# ============================================================================
# LOCAL SHELL BACKEND
# ============================================================================

class LocalShellTransport(Transport):
    """
    Runs each session as a local shell process.

    Pipes are not a TTY, so resize frames only record the requested size.
    """

    def __init__(self, workspace_root: Optional[str] = None, read_size: int = 1024, kill_timeout: float = 1.0):
        self.workspace_root = workspace_root or os.getcwd()
        self.read_size = read_size
        self.kill_timeout = kill_timeout
        self._deliver: Optional[FrameHandler] = None
        self._shells: Dict[str, ShellProcess] = {}

    async def open(self, deliver: FrameHandler) -> None:
        self._deliver = deliver
        logger.info(f"[BACKEND] 🖥️ Local shell backend ready (root={self.workspace_root})")

    async def send(self, frame: Frame) -> None:
        if self._deliver is None:
            raise TransportError("Transport is not open")

        if frame.kind == FrameKind.INIT:
            await self._spawn(frame)
        elif frame.kind == FrameKind.DATA:
            await self._write(frame)
        elif frame.kind == FrameKind.RESIZE:
            shell = self._shells.get(frame.session_id)
            if shell is None:
                raise TransportError(f"No shell for session {frame.session_id}")
            shell.cols = int(frame.payload.get("cols", shell.cols))
            shell.rows = int(frame.payload.get("rows", shell.rows))
            logger.debug(f"[BACKEND] ↔️ {frame.session_id} viewport {shell.cols}x{shell.rows}")
        elif frame.kind == FrameKind.CLOSE:
            await self._terminate(frame.session_id)
        else:
            raise TransportError(f"Unsupported outbound frame: {frame.kind.value}")

    async def probe(self, session_id: str) -> bool:
        shell = self._shells.get(session_id)
        return shell is not None and shell.process.returncode is None

    async def close(self) -> None:
        for session_id in list(self._shells):
            await self._terminate(session_id)
        self._deliver = None
        logger.info("[BACKEND] 🛑 Local shell backend closed")

    # ------------------------------------------------------------------

    async def _spawn(self, frame: Frame) -> None:
        session_id = frame.session_id
        payload = frame.payload

        if session_id in self._shells:
            await self._terminate(session_id)

        try:
            shell_kind = ShellKind(payload.get("shell", ShellKind.BASH.value))
        except ValueError:
            await self._deliver(Frame.error(session_id, f"Unsupported shell: {payload.get('shell')}", fatal=True))
            return

        shell, shell_args = get_shell_command(shell_kind)
        env = get_environment(
            session_id=session_id,
            workbranch_id=payload.get("workbranch_id", ""),
            workspace_root=self.workspace_root,
            project_id=payload.get("project_id"),
            extra=payload.get("env") or None,
        )
        cwd = payload.get("cwd") or self.workspace_root

        try:
            process = await asyncio.create_subprocess_exec(
                shell, *shell_args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=cwd,
                env=env,
            )
        except (OSError, ValueError) as e:
            logger.error(f"[BACKEND] ❌ Failed to start {shell} for {session_id}: {e}")
            await self._deliver(Frame.error(session_id, f"Failed to start {shell}: {e}", fatal=True))
            return

        entry = ShellProcess(
            process=process,
            cols=int(payload.get("cols", 80)),
            rows=int(payload.get("rows", 24)),
        )
        self._shells[session_id] = entry
        entry.reader = asyncio.create_task(self._pump(session_id, process))

        logger.info(f"[BACKEND] 🚀 Started {shell} for {session_id} (pid={process.pid}, cwd={cwd})")
        await self._deliver(Frame(kind=FrameKind.INIT, session_id=session_id, payload={"pid": process.pid}))

    async def _pump(self, session_id: str, process: asyncio.subprocess.Process) -> None:
        """Read output from the shell until it exits."""
        while True:
            chunk = await process.stdout.read(self.read_size)
            if not chunk or self._deliver is None:
                break
            await self._deliver(Frame.data(session_id, chunk.decode("utf-8", errors="replace")))

        exit_code = await process.wait()
        # Only report exits the multiplexer did not ask for
        current = self._shells.get(session_id)
        if current is not None and current.process is process:
            del self._shells[session_id]
            logger.info(f"[BACKEND] {session_id} shell exited with code {exit_code}")
            if self._deliver is not None:
                await self._deliver(Frame.close(session_id, "process-exited", exit_code=exit_code))

    async def _write(self, frame: Frame) -> None:
        shell = self._shells.get(frame.session_id)
        if shell is None or shell.process.stdin is None:
            raise TransportError(f"No shell for session {frame.session_id}")
        try:
            shell.process.stdin.write(str(frame.payload.get("data", "")).encode("utf-8"))
            await shell.process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise TransportError(f"Shell for {frame.session_id} is gone: {e}") from e

    async def _terminate(self, session_id: str) -> None:
        shell = self._shells.pop(session_id, None)
        if shell is None:
            return

        process = shell.process
        try:
            if process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.terminate()
                try:
                    await asyncio.wait_for(process.wait(), timeout=self.kill_timeout)
                except asyncio.TimeoutError:
                    logger.warning(f"[BACKEND] ⏰ {session_id} did not exit, killing")
                    with contextlib.suppress(ProcessLookupError):
                        process.kill()
                    await process.wait()
        finally:
            # Also runs when the caller gives up waiting and cancels us
            if process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
            if shell.reader is not None and not shell.reader.done():
                shell.reader.cancel()
        logger.info(f"[BACKEND] 🧹 Released shell for {session_id}")


# ============================================================================
# WEBSOCKET BACKEND
# ============================================================================

class WebSocketTransport(Transport):
    """
    JSON frames over a single websocket to a remote terminal service.

    The socket is (re)connected lazily on send. When it drops, every session
    that was opened over it receives a close frame so the multiplexer can
    run its reconnect policy.
    """

    def __init__(self, url: str, connect_timeout: float = 10.0):
        self.url = url
        self.connect_timeout = connect_timeout
        self._deliver: Optional[FrameHandler] = None
        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._connect_lock = asyncio.Lock()
        self._open_sessions: set = set()

    async def open(self, deliver: FrameHandler) -> None:
        self._deliver = deliver
        await self._ensure_connected()

    async def _ensure_connected(self):
        async with self._connect_lock:
            if self._ws is not None and self._reader is not None and not self._reader.done():
                return self._ws
            try:
                self._ws = await asyncio.wait_for(websockets.connect(self.url), timeout=self.connect_timeout)
            except (OSError, WebSocketException, asyncio.TimeoutError) as e:
                self._ws = None
                raise TransportError(f"Cannot connect to {self.url}: {e}") from e
            self._reader = asyncio.create_task(self._read_loop(self._ws))
            logger.info(f"[BACKEND] 🔌 Connected to {self.url}")
            return self._ws

    async def _read_loop(self, ws) -> None:
        try:
            async for message in ws:
                try:
                    frame = Frame.from_json(message)
                except TransportError as e:
                    logger.warning(f"[BACKEND] ⚠️ Dropping frame: {e}")
                    continue
                if frame.kind == FrameKind.CLOSE:
                    self._open_sessions.discard(frame.session_id)
                if self._deliver is not None:
                    await self._deliver(frame)
        except ConnectionClosed as e:
            logger.warning(f"[BACKEND] 🔌 Connection to {self.url} lost: {e}")
        finally:
            lost = list(self._open_sessions)
            self._open_sessions.clear()
            if self._deliver is not None:
                for session_id in lost:
                    await self._deliver(Frame.close(session_id, "transport-lost"))

    async def send(self, frame: Frame) -> None:
        if self._deliver is None:
            raise TransportError("Transport is not open")
        ws = await self._ensure_connected()
        try:
            await ws.send(frame.to_json())
        except (ConnectionClosed, OSError) as e:
            raise TransportError(f"Send failed: {e}") from e

        if frame.kind == FrameKind.INIT:
            self._open_sessions.add(frame.session_id)
        elif frame.kind == FrameKind.CLOSE:
            self._open_sessions.discard(frame.session_id)

    async def probe(self, session_id: str) -> bool:
        if session_id not in self._open_sessions or self._ws is None:
            return False
        try:
            pong = await self._ws.ping()
            await pong
        except (ConnectionClosed, OSError):
            return False
        return True

    async def close(self) -> None:
        self._deliver = None
        if self._ws is not None:
            await self._ws.close()
        if self._reader is not None:
            self._reader.cancel()
            await asyncio.gather(self._reader, return_exceptions=True)
        self._ws = None
        self._open_sessions.clear()
        logger.info(f"[BACKEND] 🛑 Disconnected from {self.url}")
