"""
Terminal Module

Validated, multiplexed terminal sessions for the DashTerm backend.

Usage:
    from dashterm.terminal import CommandValidator, PatternCatalog

    validator = CommandValidator(PatternCatalog.default())
    verdict = validator.validate("npm run dev")

    # Sessions over a shared transport:
    from dashterm.terminal import SessionMultiplexer, LocalShellTransport

    mux = SessionMultiplexer(LocalShellTransport("/work"))
    await mux.start()
    sid = await mux.create_session("feature-login", "bash")
    await mux.send_command(sid, "git status")
"""

# Re-export models
from .models import (
    VerdictReason,
    RiskLevel,
    VerdictStage,
    ValidationVerdict,
    PathCheckResult,
    AuditEntry,
    ShellKind,
    ConnectionState,
    Session,
    CommandDispatchResult,
)

# Re-export errors
from .errors import (
    TerminalError,
    CatalogConfigurationError,
    PathTraversalError,
    SessionNotFoundError,
    SessionConflictError,
    InvalidTransitionError,
    InvalidSessionRequestError,
    TransportError,
)

# Re-export security
from .patterns import PatternCatalog, DangerCategory
from .security import (
    CommandValidator,
    PathSanitizer,
    SECURITY_MESSAGES,
    format_security_message,
    validate_workbranch_id,
    validate_environment_variable,
)

# Re-export sessions
from .state_machine import VALID_TRANSITIONS, can_transition
from .registry import SessionRegistry
from .timers import SessionTimers

# Re-export transport
from .transport import Frame, FrameKind, Transport
from .backends import LocalShellTransport, WebSocketTransport
from .multiplexer import SessionMultiplexer

__all__ = [
    # Models
    "VerdictReason",
    "RiskLevel",
    "VerdictStage",
    "ValidationVerdict",
    "PathCheckResult",
    "AuditEntry",
    "ShellKind",
    "ConnectionState",
    "Session",
    "CommandDispatchResult",
    # Errors
    "TerminalError",
    "CatalogConfigurationError",
    "PathTraversalError",
    "SessionNotFoundError",
    "SessionConflictError",
    "InvalidTransitionError",
    "InvalidSessionRequestError",
    "TransportError",
    # Security
    "PatternCatalog",
    "DangerCategory",
    "CommandValidator",
    "PathSanitizer",
    "SECURITY_MESSAGES",
    "format_security_message",
    "validate_workbranch_id",
    "validate_environment_variable",
    # Sessions
    "VALID_TRANSITIONS",
    "can_transition",
    "SessionRegistry",
    "SessionTimers",
    # Transport
    "Frame",
    "FrameKind",
    "Transport",
    "LocalShellTransport",
    "WebSocketTransport",
    "SessionMultiplexer",
]
