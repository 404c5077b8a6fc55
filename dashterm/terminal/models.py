"""
Terminal Hub Types

Pydantic models and enums shared by the validator, the session registry,
the multiplexer and the HTTP layer.
"""

from datetime import datetime
from enum import Enum
from typing import Optional, Tuple, List, Dict

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# VALIDATION
# ============================================================================

class VerdictReason(str, Enum):
    """Why a command was allowed or denied."""
    WHITELISTED = "whitelisted"
    DANGEROUS_PATTERN = "dangerous-pattern"
    NOT_WHITELISTED = "not-whitelisted"
    POWERSHELL_SYNTAX = "powershell-syntax"
    PATH_TRAVERSAL = "path-traversal"
    EMPTY_COMMAND = "empty-command"
    INVALID_INPUT = "invalid-input"


class RiskLevel(str, Enum):
    """Risk attached to a verdict. Allowed commands are always LOW."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class VerdictStage(str, Enum):
    """Pipeline step that produced the verdict."""
    INPUT = "input"
    SAFE_COMMAND = "safe-command"
    SHELL_PATTERN = "shell-pattern"
    DANGEROUS_PATTERN = "dangerous-pattern"
    BASE_COMMAND = "base-command"


class ValidationVerdict(BaseModel):
    """Immutable outcome of validating one command string."""
    model_config = ConfigDict(frozen=True)

    allowed: bool
    reason: VerdictReason
    risk_level: RiskLevel
    sanitized_command: Optional[str] = Field(None, description="Trimmed command, set only when allowed")
    guidance: str = Field("", description="Remediation hint; always populated on denial")
    message: str = ""
    stage: VerdictStage
    matched_rule: Optional[str] = Field(None, description="Catalog rule that decided the verdict")


class PathCheckResult(BaseModel):
    """Outcome of confining a candidate path to a trusted root."""
    model_config = ConfigDict(frozen=True)

    ok: bool
    canonical_path: Optional[str] = None
    reason: Optional[str] = None


class AuditEntry(BaseModel):
    """A denied command, kept in the multiplexer's bounded audit log."""
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    session_id: Optional[str]
    command: str
    reason: VerdictReason
    risk_level: RiskLevel
    matched_rule: Optional[str] = None


# ============================================================================
# SESSIONS
# ============================================================================

class ShellKind(str, Enum):
    """Shells a session can run."""
    POWERSHELL = "powershell"
    BASH = "bash"
    CMD = "cmd"


class ConnectionState(str, Enum):
    """Connection state of one session on the shared transport."""
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class Session(BaseModel):
    """
    Read-only snapshot of a registered session.

    The registry owns the live record; callers only ever see copies, so a
    snapshot never changes under them.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    workbranch_id: str
    shell_kind: ShellKind
    title: str
    cwd: Optional[str] = None
    project_id: Optional[str] = None
    created_at: datetime
    last_active_at: datetime
    connection_state: ConnectionState
    output_history: Tuple[str, ...] = ()
    reconnect_attempts: int = 0
    output_locked: bool = False
    command_count: int = 0
    total_output: int = 0


class CommandDispatchResult(BaseModel):
    """Result of send_command: the verdict and whether it reached the backend."""
    model_config = ConfigDict(frozen=True)

    accepted: bool
    verdict: ValidationVerdict


# ============================================================================
# HTTP REQUEST BODIES
# ============================================================================

class CreateSessionRequest(BaseModel):
    """Request to open a terminal session for a workbranch."""
    workbranch_id: str = Field(..., description="Workbranch the session belongs to")
    shell_kind: ShellKind = Field(ShellKind.BASH, description="Shell to launch")
    title: Optional[str] = Field(None, description="Tab title (defaults to 'Terminal - <workbranch>')")
    cwd: Optional[str] = Field(None, description="Working directory inside the workspace root")
    project_id: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict, description="Extra environment variables")


class CommandRequest(BaseModel):
    """Request to run a command in an existing session."""
    command: str = Field(..., description="The command to execute")


class ValidateRequest(BaseModel):
    """Dry-run validation of a command."""
    command: str


class ResizeRequest(BaseModel):
    """Terminal viewport size in character cells."""
    cols: int
    rows: int


class LockRequest(BaseModel):
    locked: bool


class SessionList(BaseModel):
    sessions: List[Session]
