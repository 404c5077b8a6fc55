"""
Session Multiplexer

Routes many terminal sessions over one shared transport.

Responsibilities:
- Session lifecycle: create (evicting the oldest when full), handshake,
  reconnect with exponential backoff, destroy
- Outbound: every command passes the CommandValidator; only allowed verdicts
  are written, and only by _write_command
- Inbound: a single demux task appends output to the registry and hands it
  to the session's output sink, in arrival order
- Resize debouncing, periodic health probes, idle cleanup

Usage:
    mux = SessionMultiplexer(LocalShellTransport(root), TerminalHubConfig())
    await mux.start()
    sid = await mux.create_session("feature-login", ShellKind.BASH)
    result = await mux.send_command(sid, "npm run dev")
"""

import asyncio
import inspect
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple, Union

from dashterm.core.config import TerminalHubConfig
from dashterm.core.logger import get_logger, truncate_for_log
from dashterm.utils.debounced_logger import DebouncedLogger

from .errors import (
    InvalidSessionRequestError,
    InvalidTransitionError,
    SessionConflictError,
    SessionNotFoundError,
    TransportError,
)
from .models import (
    AuditEntry,
    CommandDispatchResult,
    ConnectionState,
    Session,
    ShellKind,
    ValidationVerdict,
)
from .patterns import PatternCatalog
from .registry import SessionRegistry
from .security import CommandValidator, PathSanitizer, validate_environment_variable, validate_workbranch_id
from .timers import SessionTimers
from .transport import Frame, FrameKind, Transport

logger = get_logger("mux")

OutputSink = Callable[[str], Any]

RECONNECT_TIMER = "reconnect"
RESIZE_TIMER = "resize"
PROBE_TIMER = "probe"


@dataclass
class _ResizeState:
    applied: Tuple[int, int]
    pending: Optional[Tuple[int, int]] = None


class SessionMultiplexer:
    """
    Owns the transport and drives every session's connection state.

    Collaborators are injected; nothing here is a module-level singleton,
    so several multiplexers can coexist (one per test, for example).
    """

    def __init__(
        self,
        transport: Transport,
        config: Optional[TerminalHubConfig] = None,
        validator: Optional[CommandValidator] = None,
        registry: Optional[SessionRegistry] = None,
        sanitizer: Optional[PathSanitizer] = None,
    ):
        self.config = config or TerminalHubConfig()
        self.transport = transport
        self.validator = validator or CommandValidator(PatternCatalog.default())
        self.registry = registry or SessionRegistry(
            max_sessions=self.config.max_sessions,
            max_history=self.config.max_history_per_session,
        )
        self.sanitizer = sanitizer or PathSanitizer()
        self.timers = SessionTimers()

        self._sinks: Dict[str, OutputSink] = {}
        self._session_locks: Dict[str, asyncio.Lock] = {}
        self._session_params: Dict[str, Dict[str, Any]] = {}
        self._pending_init: Dict[str, asyncio.Future] = {}
        self._resize: Dict[str, _ResizeState] = {}
        self._probe_failures: Dict[str, int] = {}
        self._audit: Deque[AuditEntry] = deque(maxlen=self.config.audit_log_size)

        self._lifecycle_lock = asyncio.Lock()
        self._inbound: Optional[asyncio.Queue] = None
        self._demux_task: Optional[asyncio.Task] = None
        self._cleanup_task: Optional[asyncio.Task] = None
        self._running = False
        self._quiet = DebouncedLogger(logger, debounce_seconds=5.0)

    # ========================================================================
    # START / STOP
    # ========================================================================

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._inbound = asyncio.Queue()
        await self.transport.open(self._enqueue)
        self._demux_task = asyncio.create_task(self._demux_loop(), name="mux-demux")
        self._cleanup_task = asyncio.create_task(self._cleanup_loop(), name="mux-cleanup")
        self._running = True
        logger.info(
            f"[MUX] ✅ Started (max_sessions={self.config.max_sessions}, "
            f"history={self.config.max_history_per_session})"
        )

    async def stop(self) -> None:
        if not self._running:
            return
        destroyed = await self.destroy_all()
        self._running = False

        for task in (self._cleanup_task, self._demux_task):
            if task is not None:
                task.cancel()
        await asyncio.gather(
            *(t for t in (self._cleanup_task, self._demux_task) if t is not None),
            return_exceptions=True,
        )
        await self.timers.cancel_all()
        await self.transport.close()
        logger.info(f"[MUX] 🛑 Stopped ({destroyed} session(s) released)")

    # ========================================================================
    # SESSION LIFECYCLE
    # ========================================================================

    async def create_session(
        self,
        workbranch_id: str,
        shell_kind: Union[ShellKind, str] = ShellKind.BASH,
        title: Optional[str] = None,
        cwd: Optional[str] = None,
        project_id: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        cols: Optional[int] = None,
        rows: Optional[int] = None,
    ) -> str:
        """
        Open a new session and run its first handshake.

        The handshake is bounded by ``handshake_timeout``; a failed handshake
        does not raise, it leaves the session disconnected with a reconnect
        scheduled (or in ERROR when the backend reports a fatal failure).

        Returns:
            The new session id.

        Raises:
            InvalidSessionRequestError: Bad workbranch id, shell or env name.
            PathTraversalError: ``cwd`` escapes the workspace root.
            TransportError: The multiplexer is not running.
        """
        if not self._running:
            raise TransportError("Multiplexer is not running")

        if not validate_workbranch_id(workbranch_id):
            raise InvalidSessionRequestError(f"Invalid workbranch id: {workbranch_id!r}")
        try:
            shell_kind = ShellKind(shell_kind)
        except ValueError as e:
            raise InvalidSessionRequestError(f"Unsupported shell: {shell_kind!r}") from e

        env = dict(env or {})
        bad_names = [name for name in env if not validate_environment_variable(name)]
        if bad_names:
            raise InvalidSessionRequestError(f"Invalid or protected environment variable name(s): {bad_names}")

        root = self.config.workspace_root
        resolved_cwd = self.sanitizer.require(cwd, root) if cwd else self.sanitizer.require(root, root)

        cols = cols or self.config.default_cols
        rows = rows or self.config.default_rows

        async with self._lifecycle_lock:
            while self.registry.count() >= self.config.max_sessions:
                oldest = self.registry.oldest()
                if oldest is None:
                    break
                logger.info(f"[MUX] ♻️ At capacity, evicting oldest session {oldest.id}")
                await self._release_session(oldest.id, reason="evicted")

            session_id = self.registry.create(
                workbranch_id,
                shell_kind,
                title=title,
                cwd=resolved_cwd,
                project_id=project_id,
            )
            self._session_locks[session_id] = asyncio.Lock()
            self._resize[session_id] = _ResizeState(applied=(cols, rows))
            self._session_params[session_id] = {
                "shell": shell_kind.value,
                "workbranch_id": workbranch_id,
                "project_id": project_id,
                "title": title or f"Terminal - {workbranch_id}",
                "cwd": resolved_cwd,
                "cols": cols,
                "rows": rows,
                "env": env,
            }

        await self._connect(session_id)
        return session_id

    async def destroy_session(self, session_id: str) -> bool:
        """
        Release the backend and remove the session. Idempotent.

        Returns:
            True if a live session was destroyed, False if it was already gone.
        """
        async with self._lifecycle_lock:
            return await self._release_session(session_id, reason="destroyed")

    async def destroy_sessions_by_workbranch(self, workbranch_id: str) -> int:
        destroyed = 0
        for session_id in self.registry.ids_for_workbranch(workbranch_id):
            if await self.destroy_session(session_id):
                destroyed += 1
        if destroyed:
            logger.info(f"[MUX] 🧹 Destroyed {destroyed} session(s) for workbranch {workbranch_id}")
        return destroyed

    async def destroy_all(self) -> int:
        destroyed = 0
        for session_id in self.registry.ids():
            if await self.destroy_session(session_id):
                destroyed += 1
        return destroyed

    async def _release_session(self, session_id: str, reason: str) -> bool:
        # Caller holds _lifecycle_lock
        self.timers.cancel_session(session_id)

        lock = self._session_locks.get(session_id)
        if lock is None and session_id not in self.registry:
            return False

        async with (lock or asyncio.Lock()):
            pending = self._pending_init.pop(session_id, None)
            if pending is not None and not pending.done():
                pending.set_exception(SessionNotFoundError(session_id))

            existed = session_id in self.registry
            if existed:
                try:
                    await asyncio.wait_for(
                        self._write_frame(Frame.close(session_id, reason)),
                        timeout=self.config.close_timeout,
                    )
                except (TransportError, asyncio.TimeoutError) as e:
                    logger.warning(f"[MUX] ⚠️ Backend release for {session_id} failed: {e}")

            self.registry.destroy(session_id)
            # Timers scheduled while we waited for the lock
            self.timers.cancel_session(session_id)
            self._sinks.pop(session_id, None)
            self._session_params.pop(session_id, None)
            self._resize.pop(session_id, None)
            self._probe_failures.pop(session_id, None)
            self._session_locks.pop(session_id, None)

        if existed:
            logger.info(f"[MUX] 🗑️ Session {session_id} {reason}")
        return existed

    # ========================================================================
    # HANDSHAKE / RECONNECT
    # ========================================================================

    async def _connect(self, session_id: str) -> bool:
        """Run one handshake for a session in CONNECTING. True on success."""
        try:
            token = self.registry.claim_transition(session_id)
        except SessionConflictError:
            logger.debug(f"[MUX] Handshake already in flight for {session_id}")
            return False
        except SessionNotFoundError:
            return False

        failure: Optional[TransportError] = None
        try:
            future = asyncio.get_running_loop().create_future()
            self._pending_init[session_id] = future
            try:
                init = Frame(
                    kind=FrameKind.INIT,
                    session_id=session_id,
                    payload=dict(self._session_params.get(session_id, {})),
                )
                # One budget covers both the init write and the ack
                ack = await asyncio.wait_for(self._handshake(init, future), timeout=self.config.handshake_timeout)
            except asyncio.TimeoutError:
                failure = TransportError(f"handshake timed out after {self.config.handshake_timeout}s")
            except TransportError as e:
                failure = e
            finally:
                if self._pending_init.get(session_id) is future:
                    del self._pending_init[session_id]

            if failure is None:
                self.registry.update_state(session_id, ConnectionState.CONNECTED, token, "handshake acked")
                self.registry.reset_reconnect_attempts(session_id)
                self._probe_failures[session_id] = 0
                self.timers.start(session_id, PROBE_TIMER, lambda: self._probe_loop(session_id))
                logger.info(f"[MUX] 🔗 {session_id} connected {ack or ''}".rstrip())
                return True

            target = ConnectionState.ERROR if failure.fatal else ConnectionState.DISCONNECTED
            self.registry.update_state(session_id, target, token, str(failure))
        except SessionNotFoundError:
            # Destroyed while the handshake was in flight
            return False
        finally:
            self.registry.release_transition(session_id, token)

        if failure.fatal:
            logger.error(f"[MUX] ❌ {session_id} failed permanently: {failure}")
            self.timers.cancel_session(session_id)
        else:
            logger.warning(f"[MUX] ⚠️ {session_id} handshake failed: {failure}")
            self._schedule_reconnect(session_id)
        return False

    async def _handshake(self, init: Frame, ack: asyncio.Future) -> Any:
        await self._write_frame(init)
        return await ack

    def _schedule_reconnect(self, session_id: str) -> None:
        session = self.registry.get(session_id)
        if session is None or session.connection_state != ConnectionState.DISCONNECTED:
            return

        attempts = session.reconnect_attempts
        if attempts >= self.config.max_reconnect_attempts:
            self._fail_session(session_id, f"gave up after {attempts} reconnect attempt(s)")
            return

        delay = self.config.reconnect_delay(attempts)
        self.registry.increment_reconnect_attempts(session_id)
        logger.info(f"[MUX] 🔄 Reconnecting {session_id} in {delay:.1f}s (attempt {attempts + 1}/{self.config.max_reconnect_attempts})")
        self.timers.schedule(session_id, RECONNECT_TIMER, delay, lambda: self._reconnect(session_id))

    async def _reconnect(self, session_id: str) -> None:
        session = self.registry.get(session_id)
        if session is None or session.connection_state != ConnectionState.DISCONNECTED:
            return
        try:
            self.registry.update_state(session_id, ConnectionState.CONNECTING, detail="reconnect")
        except (SessionConflictError, SessionNotFoundError, InvalidTransitionError) as e:
            logger.debug(f"[MUX] Reconnect of {session_id} skipped: {e}")
            return
        await self._connect(session_id)

    def _mark_disconnected(self, session_id: str, detail: str) -> None:
        """Move a CONNECTED session to DISCONNECTED and schedule a reconnect."""
        try:
            with self.registry.exclusive_transition(session_id) as token:
                session = self.registry.get(session_id)
                if session is None or session.connection_state != ConnectionState.CONNECTED:
                    return
                self.registry.update_state(session_id, ConnectionState.DISCONNECTED, token, detail)
        except (SessionConflictError, SessionNotFoundError):
            return

        logger.warning(f"[MUX] 🔌 {session_id} disconnected: {detail}")
        self.timers.cancel(session_id, PROBE_TIMER)
        self._schedule_reconnect(session_id)

    def _fail_session(self, session_id: str, detail: str) -> None:
        try:
            self.registry.update_state(session_id, ConnectionState.ERROR, detail=detail)
        except (SessionConflictError, SessionNotFoundError, InvalidTransitionError) as e:
            logger.debug(f"[MUX] Could not move {session_id} to error: {e}")
            return
        self.timers.cancel_session(session_id)
        logger.error(f"[MUX] ❌ {session_id} in error state: {detail}")

    # ========================================================================
    # OUTBOUND
    # ========================================================================

    async def send_command(self, session_id: str, text: Any) -> CommandDispatchResult:
        """
        Validate a command and, if allowed, write it to the session.

        Denied commands are returned with their verdict and recorded in the
        audit log; they never reach the backend.

        Raises:
            SessionNotFoundError: Unknown or destroyed session (allowed commands only).
            TransportError: Session not connected or the write failed.
        """
        verdict = self.validator.validate(text)
        if not verdict.allowed:
            self._record_denial(session_id, text, verdict)
            return CommandDispatchResult(accepted=False, verdict=verdict)

        await self._write_command(session_id, verdict)
        return CommandDispatchResult(accepted=True, verdict=verdict)

    async def _write_command(self, session_id: str, verdict: ValidationVerdict) -> None:
        # The only writer of data frames.
        if not verdict.allowed or verdict.sanitized_command is None:
            raise ValueError("Refusing to write a command without an allowing verdict")

        lock = self._session_locks.get(session_id)
        if lock is None:
            raise SessionNotFoundError(session_id)

        async with lock:
            session = self.registry.get(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            if session.connection_state != ConnectionState.CONNECTED:
                raise TransportError(f"Session {session_id} is {session.connection_state.value}")

            line_ending = "\r\n" if session.shell_kind == ShellKind.CMD else "\n"
            try:
                await asyncio.wait_for(
                    self.transport.send(Frame.data(session_id, verdict.sanitized_command + line_ending)),
                    timeout=self.config.send_timeout,
                )
            except asyncio.TimeoutError:
                detail = f"write timed out after {self.config.send_timeout}s"
                self._mark_disconnected(session_id, detail)
                raise TransportError(f"Session {session_id}: {detail}")
            except TransportError as e:
                self._mark_disconnected(session_id, f"write failed: {e}")
                raise
            self.registry.record_command(session_id)

        logger.info(f"[MUX] ▶️ {session_id}: {truncate_for_log(verdict.sanitized_command)}")

    async def _write_frame(self, frame: Frame) -> None:
        # Control frames only; commands go through _write_command.
        if frame.kind == FrameKind.DATA:
            raise ValueError("Data frames must be written through _write_command")
        await self.transport.send(frame)

    def _record_denial(self, session_id: Optional[str], command: Any, verdict: ValidationVerdict) -> None:
        shown = command if isinstance(command, str) else repr(command)
        self._audit.append(AuditEntry(
            timestamp=datetime.now(timezone.utc),
            session_id=session_id,
            command=truncate_for_log(shown, 200),
            reason=verdict.reason,
            risk_level=verdict.risk_level,
            matched_rule=verdict.matched_rule,
        ))
        logger.warning(
            f"[MUX] 🚫 Denied for {session_id} ({verdict.reason.value}, {verdict.risk_level.value}): "
            f"{truncate_for_log(shown)}"
        )

    # ========================================================================
    # RESIZE
    # ========================================================================

    async def resize(self, session_id: str, cols: int, rows: int) -> bool:
        """
        Request a viewport size. Debounced; only the latest request in a
        burst is applied, and only if it differs enough from the last one.

        Returns:
            False if the size is out of range (1..1000) and was ignored.
        """
        if session_id not in self.registry:
            raise SessionNotFoundError(session_id)
        if not (1 <= cols <= 1000 and 1 <= rows <= 1000):
            logger.debug(f"[MUX] Ignoring out-of-range resize {cols}x{rows} for {session_id}")
            return False

        state = self._resize.get(session_id)
        if state is None:
            raise SessionNotFoundError(session_id)
        state.pending = (cols, rows)
        self.timers.schedule(session_id, RESIZE_TIMER, self.config.resize_debounce, lambda: self._apply_resize(session_id))
        return True

    async def _apply_resize(self, session_id: str) -> None:
        state = self._resize.get(session_id)
        lock = self._session_locks.get(session_id)
        if state is None or state.pending is None or lock is None:
            return

        cols, rows = state.pending
        state.pending = None
        last_cols, last_rows = state.applied
        if abs(cols - last_cols) < self.config.resize_min_col_delta and abs(rows - last_rows) < self.config.resize_min_row_delta:
            logger.debug(f"[MUX] Resize {cols}x{rows} for {session_id} below threshold, skipped")
            return

        async with lock:
            session = self.registry.get(session_id)
            if session is None:
                return
            params = self._session_params.get(session_id)

            if session.connection_state != ConnectionState.CONNECTED:
                # Picked up by the next handshake
                state.applied = (cols, rows)
                if params is not None:
                    params.update(cols=cols, rows=rows)
                return

            try:
                await asyncio.wait_for(
                    self._write_frame(Frame(
                        kind=FrameKind.RESIZE,
                        session_id=session_id,
                        payload={"cols": cols, "rows": rows},
                    )),
                    timeout=self.config.resize_timeout,
                )
            except (TransportError, asyncio.TimeoutError) as e:
                self._quiet.warning(f"[MUX] ⚠️ Resize failed for {session_id}")
                logger.debug(f"[MUX] Resize error for {session_id}: {e!r}")
                return

            state.applied = (cols, rows)
            if params is not None:
                params.update(cols=cols, rows=rows)
        logger.debug(f"[MUX] ↔️ {session_id} resized to {cols}x{rows}")

    # ========================================================================
    # INBOUND
    # ========================================================================

    async def _enqueue(self, frame: Frame) -> None:
        if self._inbound is not None:
            await self._inbound.put(frame)

    async def _demux_loop(self) -> None:
        while True:
            frame = await self._inbound.get()
            try:
                await self._dispatch(frame)
            except Exception as e:
                logger.error(f"[MUX] ❌ Failed to handle {frame.kind.value} frame for {frame.session_id}: {e}")

    async def _dispatch(self, frame: Frame) -> None:
        session_id = frame.session_id
        payload = frame.payload

        if frame.kind == FrameKind.DATA:
            await self._deliver_output(session_id, str(payload.get("data", "")))

        elif frame.kind == FrameKind.INIT:
            future = self._pending_init.get(session_id)
            if future is not None and not future.done():
                future.set_result(payload)
            else:
                logger.debug(f"[MUX] Unsolicited init ack for {session_id}")

        elif frame.kind == FrameKind.CLOSE:
            reason = payload.get("reason") or "closed by backend"
            future = self._pending_init.get(session_id)
            if future is not None and not future.done():
                future.set_exception(TransportError(f"backend closed during handshake: {reason}"))
            else:
                self._mark_disconnected(session_id, f"backend closed: {reason}")

        elif frame.kind == FrameKind.ERROR:
            message = payload.get("message") or "backend error"
            fatal = bool(payload.get("fatal", False))
            future = self._pending_init.get(session_id)
            if future is not None and not future.done():
                future.set_exception(TransportError(message, fatal=fatal))
            elif fatal:
                self._fail_session(session_id, message)
            else:
                self._mark_disconnected(session_id, message)

        elif frame.kind == FrameKind.RESIZE:
            logger.debug(f"[MUX] Resize ack for {session_id}")

    async def _deliver_output(self, session_id: str, chunk: str) -> None:
        if not self.registry.append_output(session_id, chunk):
            logger.debug(f"[MUX] Dropping output for unknown session {session_id}")
            return

        sink = self._sinks.get(session_id)
        if sink is None:
            return
        try:
            result = sink(chunk)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self._quiet.warning(f"[MUX] ⚠️ Output sink for {session_id} failed")
            logger.debug(f"[MUX] Sink error for {session_id}: {e!r}")

    def register_output_sink(self, session_id: str, sink: OutputSink) -> None:
        """Attach the live output consumer for a session, replacing any previous one."""
        if session_id not in self.registry:
            raise SessionNotFoundError(session_id)
        self._sinks[session_id] = sink
        logger.debug(f"[MUX] Sink attached to {session_id}")

    def unregister_output_sink(self, session_id: str, sink: Optional[OutputSink] = None) -> bool:
        """
        Detach the output consumer. With ``sink`` given, only detach if it
        is still the registered one.
        """
        current = self._sinks.get(session_id)
        if current is None or (sink is not None and current is not sink):
            return False
        del self._sinks[session_id]
        return True

    # ========================================================================
    # HEALTH / CLEANUP
    # ========================================================================

    async def _probe_loop(self, session_id: str) -> None:
        while True:
            await asyncio.sleep(self.config.health_probe_interval)
            session = self.registry.get(session_id)
            if session is None or session.connection_state != ConnectionState.CONNECTED:
                return

            try:
                alive = await asyncio.wait_for(
                    self.transport.probe(session_id),
                    timeout=self.config.probe_timeout,
                )
            except (TransportError, asyncio.TimeoutError):
                alive = False

            if alive:
                self._probe_failures[session_id] = 0
                continue

            failures = self._probe_failures.get(session_id, 0) + 1
            self._probe_failures[session_id] = failures
            self._quiet.warning(f"[MUX] ⚠️ Health probe failed for {session_id}")
            if failures >= self.config.probe_failure_threshold:
                self._mark_disconnected(session_id, f"{failures} consecutive probe failures")
                return

    async def cleanup_stale_sessions(self) -> int:
        """Destroy sessions that are idle past ``idle_timeout`` or in ERROR."""
        stale = self.registry.stale_session_ids(self.config.idle_timeout)
        for session_id in stale:
            await self.destroy_session(session_id)
        if stale:
            logger.info(f"[MUX] 🧹 Cleaned up {len(stale)} stale session(s)")
        return len(stale)

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.cleanup_interval)
            try:
                await self.cleanup_stale_sessions()
            except Exception as e:
                logger.error(f"[MUX] ❌ Cleanup sweep failed: {e}")

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_session(self, session_id: str) -> Session:
        return self.registry.require(session_id)

    def list_sessions(self) -> List[Session]:
        return self.registry.list_active()

    def get_history(self, session_id: str) -> List[str]:
        return list(self.registry.require(session_id).output_history)

    def clear_history(self, session_id: str) -> bool:
        """Clear a session's output unless it is locked. True if cleared."""
        return self.registry.clear_output(session_id)

    def set_output_locked(self, session_id: str, locked: bool) -> Session:
        return self.registry.set_output_locked(session_id, locked)

    def get_audit_log(self, limit: Optional[int] = None) -> List[AuditEntry]:
        entries = list(self._audit)
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    def get_stats(self) -> dict:
        stats = self.registry.stats()
        stats["blocked_commands"] = len(self._audit)
        stats["attached_sinks"] = len(self._sinks)
        return stats

    def get_status(self) -> dict:
        sessions = self.registry.list_active()
        return {
            "running": self._running,
            "session_count": len(sessions),
            "active_sessions": [
                s.model_dump(mode="json", exclude={"output_history"}) for s in sessions
            ],
        }
