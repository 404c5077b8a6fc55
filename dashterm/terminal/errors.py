"""
Terminal Errors

Exception types raised by the terminal hub. Denied commands are never
exceptions (they come back as a ValidationVerdict); these cover programming
errors, misconfiguration and lookups of sessions that no longer exist.
"""

from typing import Optional


class TerminalError(Exception):
    """Base class for every terminal hub error."""


class CatalogConfigurationError(TerminalError):
    """Raised at startup when the pattern catalog cannot be compiled."""
    def __init__(self, pattern: str, detail: str):
        self.pattern = pattern
        self.detail = detail
        super().__init__(f"Invalid catalog pattern {pattern!r}: {detail}")


class PathTraversalError(TerminalError):
    """Raised when a path escapes its trusted root."""
    def __init__(self, candidate: str, root: str, reason: str = "path-traversal"):
        self.candidate = candidate
        self.root = root
        self.reason = reason
        super().__init__(f"Path {candidate!r} rejected for root {root!r}: {reason}")


class SessionNotFoundError(TerminalError, KeyError):
    """Raised when an operation names a session that is not registered."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Unknown session: {session_id}")

    def __str__(self) -> str:
        return f"Unknown session: {self.session_id}"


class SessionConflictError(TerminalError):
    """Raised when a second state transition is attempted while one is in flight."""
    def __init__(self, session_id: str, detail: str = "transition already in flight"):
        self.session_id = session_id
        self.detail = detail
        super().__init__(f"Session {session_id}: {detail}")


class InvalidTransitionError(TerminalError):
    """Raised when a connection state transition is invalid."""
    def __init__(self, session_id: Optional[str], from_state: str, to_state: str, reason: str = "not allowed"):
        self.session_id = session_id
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason
        super().__init__(f"Cannot transition from {from_state} to {to_state}: {reason}")


class InvalidSessionRequestError(TerminalError, ValueError):
    """Raised when create-session parameters are malformed."""


class TransportError(TerminalError):
    """
    Raised when the shared transport cannot deliver a frame.

    ``fatal`` marks backend failures that retrying will not fix (e.g. the
    requested shell is not installed).
    """
    def __init__(self, message: str, fatal: bool = False):
        self.fatal = fatal
        super().__init__(message)
