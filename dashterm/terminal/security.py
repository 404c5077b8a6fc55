"""
Terminal Security Module

Command validation and path confinement for terminal sessions.
This is the security gate - every command must pass validation before the
multiplexer writes it to a backend.

Validation order is fixed:
    1. invalid / empty input
    2. safe full-command shapes (short-circuit allow)
    3. PowerShell-flavoured commands matching a safe shell shape
    4. dangerous shapes (deny)
    5. base-command allowlist (with npm / PowerShell script checks)

Reordering these steps changes which commands pass.
"""

import os
import re
from typing import Any, Dict, List, Optional, Tuple

from dashterm.core.logger import get_logger, truncate_for_log

from .errors import PathTraversalError
from .models import (
    PathCheckResult,
    RiskLevel,
    ValidationVerdict,
    VerdictReason,
    VerdictStage,
)
from .patterns import PatternCatalog

logger = get_logger("security")


# ============================================================================
# MESSAGES
# ============================================================================

SECURITY_MESSAGES: Dict[VerdictReason, Tuple[str, str]] = {
    # reason: (message, guidance)
    VerdictReason.PATH_TRAVERSAL: (
        "Command blocked: Path traversal detected",
        "Use absolute paths within the workspace or relative paths from project root",
    ),
    VerdictReason.DANGEROUS_PATTERN: (
        "Command blocked: Contains potentially dangerous operation",
        "Review the command for destructive operations like rm, del, or format",
    ),
    VerdictReason.NOT_WHITELISTED: (
        "Command blocked: Not in approved command list",
        "Only approved development commands are allowed for security",
    ),
    VerdictReason.POWERSHELL_SYNTAX: (
        "PowerShell command blocked: Unsafe syntax detected",
        "Use approved PowerShell operations: Get-Process, Stop-Process, Get-NetTCPConnection",
    ),
    VerdictReason.INVALID_INPUT: (
        "Command blocked: Invalid input",
        "Ensure the command is a valid string",
    ),
    VerdictReason.EMPTY_COMMAND: (
        "Command blocked: Empty command",
        "Provide a valid command to execute",
    ),
}

FALLBACK_MESSAGE = (
    "Command blocked for security reasons",
    "Contact support if you believe this command should be allowed",
)


def format_security_message(command: str, reason: VerdictReason) -> str:
    """
    Render a multi-line, human-readable denial for UI display.

    The blocked command is clipped to 100 characters.
    """
    message, guidance = SECURITY_MESSAGES.get(reason, FALLBACK_MESSAGE)
    shown = command if isinstance(command, str) else repr(command)
    return f"{message}\n\nGuidance: {guidance}\n\nBlocked command: {truncate_for_log(shown, 100)}"


# ============================================================================
# SMALL VALIDATORS
# ============================================================================

WORKBRANCH_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
WORKBRANCH_ID_MAX_LENGTH = 100
ENV_VAR_PATTERN = re.compile(r"^[A-Z_][A-Z0-9_]*$", re.IGNORECASE)
UNSAFE_ARG_CHARS = re.compile(r"[;&|`$(){}\[\]\\]")

PROTECTED_ENV_VARS = frozenset({
    "PATH", "PATHEXT", "COMSPEC", "IFS",
    "BASH_ENV", "ENV", "PROMPT_COMMAND", "SHELLOPTS", "BASHOPTS",
    "PSMODULEPATH",
    "NODE_OPTIONS", "PYTHONPATH", "PYTHONHOME", "PYTHONSTARTUP",
})
PROTECTED_ENV_PREFIXES = ("LD_", "DYLD_", "BASH_FUNC_", "GIT_", "NPM_CONFIG_")

# Set by the backend for every session
RESERVED_ENV_VARS = frozenset({"SESSION_ID", "WORKBRANCH_ID", "WORKSPACE_ROOT", "PROJECT_ID"})


def validate_workbranch_id(workbranch_id: Any) -> bool:
    """Workbranch ids are short identifiers: letters, digits, '-' and '_'."""
    if not isinstance(workbranch_id, str):
        return False
    return len(workbranch_id) < WORKBRANCH_ID_MAX_LENGTH and bool(WORKBRANCH_ID_PATTERN.match(workbranch_id))


def validate_environment_variable(name: Any) -> bool:
    """
    Check an environment variable name is safe to inject into a shell.

    Besides the name syntax, rejects variables that change which program a
    command resolves to or what a shell runs on startup, and the variables
    DashTerm sets for each session itself. Compared case-insensitively, as
    Windows resolves them.
    """
    if not isinstance(name, str) or not name:
        return False
    if not ENV_VAR_PATTERN.match(name):
        return False
    upper = name.upper()
    if upper in PROTECTED_ENV_VARS or upper in RESERVED_ENV_VARS:
        return False
    return not upper.startswith(PROTECTED_ENV_PREFIXES)


# ============================================================================
# COMMAND VALIDATOR
# ============================================================================

class CommandValidator:
    """
    Classifies command strings as allowed or denied.

    Pure over (command, catalog): no state is written after __init__, so one
    instance can be shared across sessions and threads.

    Usage:
        validator = CommandValidator(PatternCatalog.default())
        verdict = validator.validate("npm run dev")
        if not verdict.allowed:
            print(verdict.guidance)
    """

    def __init__(self, catalog: Optional[PatternCatalog] = None):
        self.catalog = catalog or PatternCatalog.default()

    # -- verdict builders ----------------------------------------------------

    @staticmethod
    def _allow(command: str, stage: VerdictStage, rule: Optional[str]) -> ValidationVerdict:
        return ValidationVerdict(
            allowed=True,
            reason=VerdictReason.WHITELISTED,
            risk_level=RiskLevel.LOW,
            sanitized_command=command,
            guidance="",
            message="Command allowed",
            stage=stage,
            matched_rule=rule,
        )

    @staticmethod
    def _deny(
        reason: VerdictReason,
        risk: RiskLevel,
        stage: VerdictStage,
        rule: Optional[str] = None,
    ) -> ValidationVerdict:
        message, guidance = SECURITY_MESSAGES.get(reason, FALLBACK_MESSAGE)
        return ValidationVerdict(
            allowed=False,
            reason=reason,
            risk_level=risk,
            sanitized_command=None,
            guidance=guidance,
            message=message,
            stage=stage,
            matched_rule=rule,
        )

    # -- pipeline ------------------------------------------------------------

    def validate(self, command: Any) -> ValidationVerdict:
        """
        Validate a command string.

        Args:
            command: Raw text from the UI. Non-strings are denied, never raised.

        Returns:
            A fresh ValidationVerdict. Denials always carry guidance.
        """
        if not isinstance(command, str):
            logger.warning(f"[SECURITY] ❌ Invalid command input: {type(command).__name__}")
            return self._deny(VerdictReason.INVALID_INPUT, RiskLevel.LOW, VerdictStage.INPUT)

        trimmed = command.strip()
        if not trimmed:
            return self._deny(VerdictReason.EMPTY_COMMAND, RiskLevel.LOW, VerdictStage.INPUT)

        # 1. Whitelisted shapes win outright
        safe = self.catalog.match_safe_command(trimmed)
        if safe:
            logger.debug(f"[SECURITY] ✅ Whitelisted ({safe.description}): {truncate_for_log(trimmed)}")
            return self._allow(trimmed, VerdictStage.SAFE_COMMAND, safe.description)

        # 2. PowerShell sub-language
        shell_flavoured = self.catalog.has_shell_markers(trimmed)
        if shell_flavoured:
            shell_rule = self.catalog.match_safe_shell(trimmed)
            if shell_rule:
                logger.debug(f"[SECURITY] ✅ PowerShell shape ({shell_rule.description}): {truncate_for_log(trimmed)}")
                return self._allow(trimmed, VerdictStage.SHELL_PATTERN, shell_rule.description)

        # 3. Dangerous shapes
        danger = self.catalog.match_dangerous(trimmed)
        if danger:
            logger.warning(
                f"[SECURITY] 🚫 Blocked ({danger.description}, {danger.risk_level.value}): "
                f"{truncate_for_log(trimmed)}"
            )
            return self._deny(danger.reason, danger.risk_level, VerdictStage.DANGEROUS_PATTERN, danger.description)

        # 4. Base command allowlist
        return self._check_base_command(trimmed, shell_flavoured)

    def _check_base_command(self, command: str, shell_flavoured: bool) -> ValidationVerdict:
        parts = command.split()
        base = parts[0].lower()

        if base == "npm":
            if self._is_npm_allowed(parts):
                return self._allow(command, VerdictStage.BASE_COMMAND, "npm script allowlist")
            logger.warning(f"[SECURITY] 🚫 npm script not allowed: {truncate_for_log(command)}")
            return self._deny(
                VerdictReason.NOT_WHITELISTED, RiskLevel.MEDIUM, VerdictStage.BASE_COMMAND, "npm script allowlist"
            )

        if base == "powershell.exe" or command.startswith((".\\scripts\\", "./scripts/")):
            if self._is_powershell_script_allowed(command):
                return self._allow(command, VerdictStage.BASE_COMMAND, "PowerShell script")
            logger.warning(f"[SECURITY] 🚫 PowerShell invocation rejected: {truncate_for_log(command)}")
            return self._deny(
                VerdictReason.POWERSHELL_SYNTAX, RiskLevel.MEDIUM, VerdictStage.BASE_COMMAND, "PowerShell script"
            )

        if self.catalog.is_base_command_allowed(base):
            return self._allow(command, VerdictStage.BASE_COMMAND, f"base command '{base}'")

        reason = VerdictReason.POWERSHELL_SYNTAX if shell_flavoured else VerdictReason.NOT_WHITELISTED
        logger.warning(f"[SECURITY] 🚫 Not in allowlist ({reason.value}): {base}")
        return self._deny(reason, RiskLevel.MEDIUM, VerdictStage.BASE_COMMAND)

    def _is_npm_allowed(self, parts: List[str]) -> bool:
        if len(parts) < 2:
            return False
        sub_command = parts[1].lower()
        if sub_command == "run" and len(parts) >= 3:
            return self.catalog.is_npm_script_allowed(parts[2])
        return self.catalog.is_npm_script_allowed(sub_command)

    def _is_powershell_script_allowed(self, command: str) -> bool:
        if command.startswith((".\\scripts\\", "./scripts/")):
            return command.split()[0].lower().endswith(".ps1")

        # powershell.exe may only run a .ps1 file with the usual flags
        has_flag = any(flag in command for flag in ("-ExecutionPolicy", "Bypass", "-File"))
        return has_flag and ".ps1" in command

    # -- helpers -------------------------------------------------------------

    def validate_file_extension(self, file_path: Any) -> bool:
        """Check the file's extension against the catalog's allowlist."""
        if not isinstance(file_path, str) or not file_path:
            return False
        _, ext = os.path.splitext(file_path)
        return self.catalog.is_extension_allowed(ext)

    def build_secure_command(
        self,
        base_command: str,
        args: Optional[List[str]] = None,
        working_dir: Optional[str] = None,
        workspace_root: Optional[str] = None,
    ) -> Optional[str]:
        """
        Assemble a command from a validated base and scrubbed arguments.

        Shell control characters are stripped from each argument. With a
        working directory the result is ``cd "<dir>" && <command>``, the dir
        confined to ``workspace_root``.

        Returns:
            The command string, or None if any part fails validation.
        """
        if not self.validate(base_command).allowed:
            return None

        command = base_command.strip()
        cleaned = [UNSAFE_ARG_CHARS.sub("", a) for a in (args or []) if isinstance(a, str)]
        cleaned = [a for a in cleaned if a]
        if cleaned:
            command = f"{command} {' '.join(cleaned)}"

        if working_dir:
            result = PathSanitizer().sanitize(working_dir, workspace_root or os.getcwd())
            if not result.ok:
                logger.warning(f"[SECURITY] 🚫 Working directory rejected: {working_dir}")
                return None
            command = f'cd "{result.canonical_path}" && {command}'

        if not self.validate(command).allowed:
            return None
        return command


# ============================================================================
# PATH SANITIZER
# ============================================================================

_SEPARATORS = re.compile(r"[\\/]")


def _has_parent_token(candidate: str) -> bool:
    """True if any path segment, with quotes stripped, is '..'."""
    for segment in _SEPARATORS.split(candidate):
        if segment.strip().strip("'\"").strip() == "..":
            return True
    return False


class PathSanitizer:
    """
    Confines candidate paths to a trusted root.

    Purely lexical: no existence checks and no symlink resolution, so paths
    that do not exist yet can be planned against.
    """

    def sanitize(self, candidate: Any, trusted_root: Any) -> PathCheckResult:
        if not isinstance(candidate, str) or not candidate.strip():
            return PathCheckResult(ok=False, reason="invalid-input")
        if not isinstance(trusted_root, str) or not trusted_root.strip():
            return PathCheckResult(ok=False, reason="invalid-input")

        # Pre-check on the raw text, before canonicalization gets a say
        if _has_parent_token(candidate):
            return PathCheckResult(ok=False, reason="path-traversal")

        root = os.path.normpath(os.path.abspath(trusted_root))
        canonical = os.path.normpath(os.path.join(root, candidate.strip()))

        prefix = root if root.endswith(os.sep) else root + os.sep
        if canonical == root or canonical.startswith(prefix):
            return PathCheckResult(ok=True, canonical_path=canonical)

        return PathCheckResult(ok=False, reason="path-traversal")

    def require(self, candidate: str, trusted_root: str) -> str:
        """Like sanitize, but returns the canonical path or raises PathTraversalError."""
        result = self.sanitize(candidate, trusted_root)
        if not result.ok:
            logger.warning(f"[SECURITY] 🚫 Path rejected ({result.reason}): {candidate!r}")
            raise PathTraversalError(str(candidate), str(trusted_root), result.reason or "path-traversal")
        return result.canonical_path
