"""
Session Registry

Owns every live terminal session record. All mutation goes through this
class; callers (the multiplexer, the API) only ever receive frozen Session
snapshots.

Design:
- In-memory dict keyed by session id, insertion ordered.
- A threading.Lock guards the table. No method awaits, so the lock is never
  held across a suspension point and the registry is safe to call from the
  event loop and from worker threads alike.
- Capacity is enforced by evicting the oldest session, never by refusing
  a create.
- At most one connection-state transition may be claimed per session; a
  second claimant gets SessionConflictError instead of racing.
"""

import itertools
import threading
import time
import uuid
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Deque, Dict, Iterator, List, Optional, Union

from dashterm.core.logger import get_logger

from .errors import InvalidSessionRequestError, SessionConflictError, SessionNotFoundError
from .models import ConnectionState, Session, ShellKind
from .security import validate_workbranch_id
from .state_machine import StateTransition, check_transition

logger = get_logger("registry")

MAX_TRANSITION_LOG = 50


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _SessionRecord:
    """Mutable record; only touched while the registry lock is held."""
    id: str
    seq: int
    workbranch_id: str
    shell_kind: ShellKind
    title: str
    history: Deque[str]
    cwd: Optional[str] = None
    project_id: Optional[str] = None
    created_at: datetime = field(default_factory=_now)
    last_active_at: datetime = field(default_factory=_now)
    connection_state: ConnectionState = ConnectionState.CONNECTING
    reconnect_attempts: int = 0
    output_locked: bool = False
    command_count: int = 0
    total_output: int = 0
    transition_token: Optional[str] = None
    transitions: Deque[StateTransition] = field(default_factory=lambda: deque(maxlen=MAX_TRANSITION_LOG))

    def snapshot(self) -> Session:
        return Session(
            id=self.id,
            workbranch_id=self.workbranch_id,
            shell_kind=self.shell_kind,
            title=self.title,
            cwd=self.cwd,
            project_id=self.project_id,
            created_at=self.created_at,
            last_active_at=self.last_active_at,
            connection_state=self.connection_state,
            output_history=tuple(self.history),
            reconnect_attempts=self.reconnect_attempts,
            output_locked=self.output_locked,
            command_count=self.command_count,
            total_output=self.total_output,
        )


class SessionRegistry:
    """
    Bounded table of terminal sessions.

    Args:
        max_sessions: Live sessions allowed before the oldest is evicted.
        max_history: Output chunks retained per session (FIFO).
    """

    def __init__(
        self,
        max_sessions: int = 6,
        max_history: int = 1000,
    ):
        if max_sessions < 1:
            raise ValueError("max_sessions must be >= 1")
        if max_history < 1:
            raise ValueError("max_history must be >= 1")
        self.max_sessions = max_sessions
        self.max_history = max_history
        self._sessions: Dict[str, _SessionRecord] = {}
        self._lock = threading.Lock()
        self._seq = itertools.count(1)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(
        self,
        workbranch_id: str,
        shell_kind: Union[ShellKind, str] = ShellKind.BASH,
        title: Optional[str] = None,
        cwd: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> str:
        """
        Register a new session in the CONNECTING state.

        Evicts the oldest record first when the table is full. That only
        drops the record; it owns no backend. The multiplexer releases the
        oldest session through its own destroy path before calling create,
        so under it this fallback never fires.

        Returns:
            The new session id (never reused within this process).

        Raises:
            InvalidSessionRequestError: Bad workbranch id or shell kind.
        """
        if not validate_workbranch_id(workbranch_id):
            raise InvalidSessionRequestError(f"Invalid workbranch id: {workbranch_id!r}")
        try:
            shell_kind = ShellKind(shell_kind)
        except ValueError as e:
            raise InvalidSessionRequestError(f"Unsupported shell: {shell_kind!r}") from e

        evicted: List[Session] = []
        with self._lock:
            seq = next(self._seq)
            session_id = f"{workbranch_id}_{int(time.time() * 1000)}_{seq}"

            while len(self._sessions) >= self.max_sessions:
                oldest = min(self._sessions.values(), key=lambda r: (r.created_at, r.seq))
                del self._sessions[oldest.id]
                evicted.append(oldest.snapshot())

            self._sessions[session_id] = _SessionRecord(
                id=session_id,
                seq=seq,
                workbranch_id=workbranch_id,
                shell_kind=shell_kind,
                title=title or f"Terminal - {workbranch_id}",
                cwd=cwd,
                project_id=project_id,
                history=deque(maxlen=self.max_history),
            )
            count = len(self._sessions)

        for snapshot in evicted:
            logger.warning(f"[REGISTRY] ♻️ Capacity reached, evicted oldest session {snapshot.id}")

        logger.info(f"[REGISTRY] ➕ Created {session_id} ({shell_kind.value}) [{count}/{self.max_sessions}]")
        return session_id

    def destroy(self, session_id: str) -> Optional[Session]:
        """
        Remove a session. Idempotent.

        Returns:
            Final snapshot of the removed session, or None if it was absent.
        """
        with self._lock:
            record = self._sessions.pop(session_id, None)
        if record is None:
            return None
        logger.info(f"[REGISTRY] 🗑️ Destroyed {session_id}")
        return record.snapshot()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            record = self._sessions.get(session_id)
            return record.snapshot() if record else None

    def require(self, session_id: str) -> Session:
        """Like get, but raises SessionNotFoundError."""
        session = self.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def list_active(self) -> List[Session]:
        """All sessions, in insertion order."""
        with self._lock:
            return [r.snapshot() for r in self._sessions.values()]

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    def ids_for_workbranch(self, workbranch_id: str) -> List[str]:
        with self._lock:
            return [r.id for r in self._sessions.values() if r.workbranch_id == workbranch_id]

    def oldest(self) -> Optional[Session]:
        with self._lock:
            if not self._sessions:
                return None
            return min(self._sessions.values(), key=lambda r: (r.created_at, r.seq)).snapshot()

    def count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __len__(self) -> int:
        return self.count()

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def transitions(self, session_id: str) -> List[StateTransition]:
        with self._lock:
            record = self._sessions.get(session_id)
            return list(record.transitions) if record else []

    def stale_session_ids(self, idle_seconds: float, now: Optional[datetime] = None) -> List[str]:
        """Sessions idle longer than idle_seconds, or stuck in ERROR."""
        now = now or _now()
        with self._lock:
            return [
                r.id for r in self._sessions.values()
                if r.connection_state == ConnectionState.ERROR
                or (now - r.last_active_at).total_seconds() > idle_seconds
            ]

    def stats(self) -> dict:
        """Counts by state, workbranch and shell, plus totals."""
        with self._lock:
            records = list(self._sessions.values())

        by_state: Dict[str, int] = {s.value: 0 for s in ConnectionState}
        by_workbranch: Dict[str, int] = {}
        by_shell: Dict[str, int] = {}
        for r in records:
            by_state[r.connection_state.value] += 1
            by_workbranch[r.workbranch_id] = by_workbranch.get(r.workbranch_id, 0) + 1
            by_shell[r.shell_kind.value] = by_shell.get(r.shell_kind.value, 0) + 1

        oldest = min(records, key=lambda r: (r.created_at, r.seq), default=None)
        newest = max(records, key=lambda r: (r.created_at, r.seq), default=None)
        return {
            "total_sessions": len(records),
            "max_sessions": self.max_sessions,
            "by_state": by_state,
            "by_workbranch": by_workbranch,
            "by_shell": by_shell,
            "total_commands": sum(r.command_count for r in records),
            "total_output": sum(r.total_output for r in records),
            "oldest_session": oldest.id if oldest else None,
            "newest_session": newest.id if newest else None,
        }

    # ------------------------------------------------------------------
    # State transitions (single writer)
    # ------------------------------------------------------------------

    def claim_transition(self, session_id: str) -> str:
        """
        Claim the single in-flight transition slot for a session.

        Raises:
            SessionNotFoundError: Unknown session.
            SessionConflictError: Another transition is already in flight.
        """
        with self._lock:
            record = self._get_record(session_id)
            if record.transition_token is not None:
                raise SessionConflictError(session_id)
            token = uuid.uuid4().hex
            record.transition_token = token
            return token

    def release_transition(self, session_id: str, token: str) -> None:
        with self._lock:
            record = self._sessions.get(session_id)
            if record is not None and record.transition_token == token:
                record.transition_token = None

    @contextmanager
    def exclusive_transition(self, session_id: str) -> Iterator[str]:
        """Hold the transition slot for the duration of the block."""
        token = self.claim_transition(session_id)
        try:
            yield token
        finally:
            self.release_transition(session_id, token)

    def update_state(
        self,
        session_id: str,
        new_state: ConnectionState,
        token: Optional[str] = None,
        detail: str = "",
    ) -> Session:
        """
        Move a session to a new connection state.

        Args:
            token: Required when a transition is claimed; must match the claim.

        Raises:
            SessionNotFoundError: Unknown session.
            SessionConflictError: A different holder has claimed the transition.
            InvalidTransitionError: Not allowed by the state machine.
        """
        new_state = ConnectionState(new_state)
        with self._lock:
            record = self._get_record(session_id)
            if record.transition_token is not None and record.transition_token != token:
                raise SessionConflictError(session_id, "state is being changed by another task")
            old_state = record.connection_state
            if old_state == new_state:
                return record.snapshot()
            check_transition(old_state, new_state, session_id)
            record.connection_state = new_state
            record.transitions.append(StateTransition(old_state, new_state, detail=detail))
            snapshot = record.snapshot()

        logger.debug(f"[REGISTRY] {session_id}: {old_state.value} → {new_state.value} {detail}".rstrip())
        return snapshot

    # ------------------------------------------------------------------
    # Output and bookkeeping
    # ------------------------------------------------------------------

    def append_output(self, session_id: str, chunk: str) -> bool:
        """Append a chunk to the bounded history. False if the session is gone."""
        with self._lock:
            record = self._sessions.get(session_id)
            if record is None:
                return False
            record.history.append(chunk)
            record.total_output += len(chunk)
            record.last_active_at = _now()
            return True

    def clear_output(self, session_id: str) -> bool:
        """
        Clear a session's history unless output is locked.

        Returns:
            True if the history was cleared.
        """
        with self._lock:
            record = self._get_record(session_id)
            if record.output_locked:
                logger.info(f"[REGISTRY] 🔒 Clear ignored for locked session {session_id}")
                return False
            record.history.clear()
            return True

    def set_output_locked(self, session_id: str, locked: bool) -> Session:
        with self._lock:
            record = self._get_record(session_id)
            record.output_locked = bool(locked)
            return record.snapshot()

    def record_command(self, session_id: str) -> None:
        with self._lock:
            record = self._get_record(session_id)
            record.command_count += 1
            record.last_active_at = _now()

    def touch(self, session_id: str) -> None:
        with self._lock:
            record = self._sessions.get(session_id)
            if record is not None:
                record.last_active_at = _now()

    def increment_reconnect_attempts(self, session_id: str) -> int:
        with self._lock:
            record = self._get_record(session_id)
            record.reconnect_attempts += 1
            return record.reconnect_attempts

    def reset_reconnect_attempts(self, session_id: str) -> None:
        with self._lock:
            record = self._sessions.get(session_id)
            if record is not None:
                record.reconnect_attempts = 0

    def _get_record(self, session_id: str) -> _SessionRecord:
        # Caller holds self._lock
        record = self._sessions.get(session_id)
        if record is None:
            raise SessionNotFoundError(session_id)
        return record
