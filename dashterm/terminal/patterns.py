"""
Command Pattern Catalog

Regex tables used by the command validator. Everything here is data: the
tables are compiled once by PatternCatalog and never mutated afterwards.
Changing what is allowed is a deployment change to this file, not a runtime
API.

Matching is heuristic. There is no shell grammar behind it, so both false
positives (an unusual but harmless shape) and false negatives (a disguised
destructive command that matches no dangerous shape) are possible.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, List, Optional, Sequence, Tuple

from .errors import CatalogConfigurationError
from .models import RiskLevel, VerdictReason


class DangerCategory(str, Enum):
    """Grouping of dangerous shapes; decides severity and reason."""
    PATH_TRAVERSAL = "path-traversal"
    DESTRUCTIVE = "destructive"
    POWER_CONTROL = "power-control"
    CHAINED = "chained"
    SUBSTITUTION = "substitution"
    REDIRECT = "redirect"


# category -> (risk level, verdict reason)
CATEGORY_POLICY = {
    DangerCategory.PATH_TRAVERSAL: (RiskLevel.HIGH, VerdictReason.PATH_TRAVERSAL),
    DangerCategory.DESTRUCTIVE: (RiskLevel.CRITICAL, VerdictReason.DANGEROUS_PATTERN),
    DangerCategory.POWER_CONTROL: (RiskLevel.CRITICAL, VerdictReason.DANGEROUS_PATTERN),
    DangerCategory.CHAINED: (RiskLevel.HIGH, VerdictReason.DANGEROUS_PATTERN),
    DangerCategory.SUBSTITUTION: (RiskLevel.HIGH, VerdictReason.DANGEROUS_PATTERN),
    DangerCategory.REDIRECT: (RiskLevel.HIGH, VerdictReason.DANGEROUS_PATTERN),
}


# =============================================================================
# BUILDING BLOCKS
# =============================================================================

# Argument tail for whitelisted shapes: anything except shell control
# characters, so "git status; rm -rf x" never matches the git shape.
_ARGS = r"[^;&|`$<>\r\n]*"

# Double-quoted path without a parent-directory token.
_QUOTED_PATH = r'"(?![^"]*\.\.)[^"]*"'

_NPM_SCRIPT = r"(?:run\s+)?(?:dev|start|build|test|lint|format)"

# Shell-specific shapes may not smuggle a destructive verb.
_NO_DESTRUCTIVE = r"(?!.*\b(?:rm|del|format|shutdown|reboot|halt)\b)"

# PowerShell argument tail: pipes and variables are part of the language,
# statement separators and redirects are not.
_PS_ARGS = r"[^;&`<>\r\n]*"


# =============================================================================
# DANGEROUS PATTERNS (checked in order, first match wins)
# =============================================================================

DANGEROUS_PATTERNS: List[Tuple[str, str, DangerCategory, bool]] = [
    # (pattern, description, category, ignore_case)

    # Destructive filesystem operations
    (r"rm\s+-rf", "Recursive force delete", DangerCategory.DESTRUCTIVE, True),
    (r"del\s+/[sq]", "Windows quiet/recursive delete", DangerCategory.DESTRUCTIVE, True),
    (r"format\s+[c-z]:", "Disk format", DangerCategory.DESTRUCTIVE, True),

    # System power control
    (r"shutdown|reboot|halt", "System power control", DangerCategory.POWER_CONTROL, True),

    # Parent-directory traversal
    (r"\.\./", "Parent directory traversal (/)", DangerCategory.PATH_TRAVERSAL, False),
    (r"\.\.\\", "Parent directory traversal (\\)", DangerCategory.PATH_TRAVERSAL, False),
    (r"['\"]\.\.['\"]", "Quoted parent directory", DangerCategory.PATH_TRAVERSAL, False),

    # Destructive verbs behind chaining, pipes and substitution
    (r";\s*(?:rm|del|format)", "Chained destructive command (;)", DangerCategory.CHAINED, True),
    (r"\|\s*(?:rm|del|format)", "Piped destructive command", DangerCategory.CHAINED, True),
    (r"&&\s*(?:rm|del|format)", "Chained destructive command (&&)", DangerCategory.CHAINED, True),
    (r">\s*nul.*(?:rm|del|format)", "Redirect followed by destructive command", DangerCategory.REDIRECT, True),
    (r"`.*(?:rm|del|format).*`", "Backtick substitution of destructive command", DangerCategory.SUBSTITUTION, True),
    (r"\$\(.*(?:rm|del|format).*\)", "Subshell substitution of destructive command", DangerCategory.SUBSTITUTION, True),
]


# =============================================================================
# SAFE FULL-COMMAND PATTERNS (whitelist, short-circuits validation)
# =============================================================================

SAFE_COMMAND_PATTERNS: List[Tuple[str, str, bool]] = [
    # (pattern, description, ignore_case)
    (rf'^cd\s+"(?!\.)(?![^"]*\.\.)[^"]+"$', "Change directory (quoted path)", False),
    (rf"^cd\s+{_QUOTED_PATH}\s*&&\s*npm\s+{_NPM_SCRIPT}(?:\s+--{_ARGS})?$", "Change directory then run npm script", False),
    (rf"^npm\s+{_NPM_SCRIPT}(?:\s+--{_ARGS})?$", "npm script", False),
    (rf"^git\s+(?:status|add|commit|push|pull|branch|checkout)(?:\s+{_ARGS})?$", "git workflow command", False),

    # PowerShell and launcher shapes ignore case
    (rf"^powershell\.exe{_NO_DESTRUCTIVE}{_PS_ARGS}Get-NetTCPConnection{_PS_ARGS}$", "Port query via powershell.exe", True),
    (r"^taskkill\s+/F\s+/PID\s+\d+$", "Kill process by PID", True),
    (rf"^Get-Process{_NO_DESTRUCTIVE}[^;&`<>]*\|\s*Where-Object[^;&`<>]*$", "Filtered process query", True),
    (rf"^Stop-Process{_NO_DESTRUCTIVE}[^;&|`<>]*-Id[^;&|`<>]*-Force$", "Stop process by id", True),
    (rf"^Set-Location\s+{_QUOTED_PATH}$", "Set location (quoted path)", True),
    (rf"^explorer\s+{_QUOTED_PATH}$", "Open folder in explorer", True),
    (rf"^code\s+{_QUOTED_PATH}$", "Open folder in editor", True),
    (r"^claude$", "Launch claude CLI", True),
    (r"^node\s+[^\s;&|`$<>]+\.js$", "Run node script", True),
    (r"^python\s+[^\s;&|`$<>]+\.py$", "Run python script", True),
]


# =============================================================================
# SAFE SHELL-SPECIFIC PATTERNS (PowerShell sub-language)
# =============================================================================

SAFE_SHELL_PATTERNS: List[Tuple[str, str, bool]] = [
    (rf"^Get-Process{_NO_DESTRUCTIVE}.*\|.*Where-Object", "Filtered process query", True),
    (rf"^Stop-Process{_NO_DESTRUCTIVE}.*-Id.*-Force$", "Stop process by id", True),
    (rf"^Get-NetTCPConnection{_NO_DESTRUCTIVE}.*-LocalPort", "Port query", True),
    (rf"^{_NO_DESTRUCTIVE}\$\w+\s*=\s*Get-\w+.*;\s*if\s*\(\$\w+\).*Stop-Process", "Conditional stop of queried process", True),
    (rf"^taskkill\s+/F\s+/PID{_NO_DESTRUCTIVE}.*Get-NetTCPConnection", "Kill process found by port", True),
    (rf"^Get-Process{_NO_DESTRUCTIVE}.*\|.*Select-Object", "Projected process query", True),
    (rf"^Set-Location\s+{_QUOTED_PATH}$", "Set location (quoted path)", True),
    (rf"^explorer\s+{_QUOTED_PATH}$", "Open folder in explorer", True),
    (rf"^code\s+{_QUOTED_PATH}$", "Open folder in editor", True),
]

# Substrings that mark a command as PowerShell-flavoured. The first entry is
# matched case-insensitively, the rest exactly.
SHELL_MARKERS: Tuple[str, ...] = ("powershell", "$", "Get-", "Stop-Process")


# =============================================================================
# ALLOWLISTS
# =============================================================================

ALLOWED_BASE_COMMANDS: FrozenSet[str] = frozenset({
    "npm", "yarn", "pnpm", "node",
    "git",
    "powershell.exe", "cmd.exe",
    "cd", "claude", "explorer", "code", "taskkill",
    "echo", "dir", "ls",
    "python", "py",
    "typescript", "tsc",
})

ALLOWED_NPM_SCRIPTS: FrozenSet[str] = frozenset({
    "dev", "start", "build", "test", "test:coverage",
    "install", "run", "compile", "watch", "lint",
    "type-check", "format", "clean", "preview", "serve",
})

ALLOWED_EXTENSIONS: FrozenSet[str] = frozenset({
    ".ps1", ".js", ".ts", ".json", ".md", ".txt", ".yml", ".yaml",
})


# =============================================================================
# CATALOG
# =============================================================================

@dataclass(frozen=True)
class DangerRule:
    """A compiled dangerous shape with its policy."""
    pattern: re.Pattern
    description: str
    category: DangerCategory
    risk_level: RiskLevel
    reason: VerdictReason


@dataclass(frozen=True)
class SafeRule:
    """A compiled whitelisted shape."""
    pattern: re.Pattern
    description: str


def _compile(pattern: str, flags: int = 0) -> re.Pattern:
    try:
        return re.compile(pattern, flags)
    except (re.error, TypeError) as e:
        raise CatalogConfigurationError(str(pattern), str(e)) from e


class PatternCatalog:
    """
    Immutable, pre-compiled set of validation rules.

    Construct once at startup and share freely: nothing on the instance
    changes after __init__, so concurrent validators need no locking.
    Malformed pattern data raises CatalogConfigurationError here, before any
    session exists.
    """

    def __init__(
        self,
        dangerous: Sequence[Tuple[str, str, DangerCategory, bool]],
        safe_commands: Sequence[Tuple[str, str, bool]],
        safe_shell: Sequence[Tuple[str, str, bool]],
        shell_markers: Sequence[str],
        base_commands: Sequence[str],
        npm_scripts: Sequence[str],
        extensions: Sequence[str],
    ):
        dangerous_rules = []
        for pattern, description, category, ignore_case in dangerous:
            try:
                category = DangerCategory(category)
            except ValueError as e:
                raise CatalogConfigurationError(str(pattern), f"unknown category {category!r}") from e
            risk, reason = CATEGORY_POLICY[category]
            dangerous_rules.append(DangerRule(
                pattern=_compile(pattern, re.IGNORECASE if ignore_case else 0),
                description=description,
                category=category,
                risk_level=risk,
                reason=reason,
            ))

        self._dangerous: Tuple[DangerRule, ...] = tuple(dangerous_rules)
        self._safe_commands: Tuple[SafeRule, ...] = tuple(
            SafeRule(_compile(p, re.IGNORECASE if i else 0), d) for p, d, i in safe_commands
        )
        self._safe_shell: Tuple[SafeRule, ...] = tuple(
            SafeRule(_compile(p, re.IGNORECASE if i else 0), d) for p, d, i in safe_shell
        )

        if not shell_markers:
            raise CatalogConfigurationError("<shell_markers>", "at least one marker is required")
        self._shell_markers: Tuple[str, ...] = tuple(shell_markers)
        self._base_commands: FrozenSet[str] = frozenset(c.lower() for c in base_commands)
        self._npm_scripts: FrozenSet[str] = frozenset(s.lower() for s in npm_scripts)
        self._extensions: FrozenSet[str] = frozenset(e.lower() for e in extensions)

    @classmethod
    def default(cls) -> "PatternCatalog":
        """Build the catalog shipped with DashTerm."""
        return cls(
            dangerous=DANGEROUS_PATTERNS,
            safe_commands=SAFE_COMMAND_PATTERNS,
            safe_shell=SAFE_SHELL_PATTERNS,
            shell_markers=SHELL_MARKERS,
            base_commands=ALLOWED_BASE_COMMANDS,
            npm_scripts=ALLOWED_NPM_SCRIPTS,
            extensions=ALLOWED_EXTENSIONS,
        )

    # -- lookups -------------------------------------------------------------

    def match_safe_command(self, command: str) -> Optional[SafeRule]:
        for rule in self._safe_commands:
            if rule.pattern.search(command):
                return rule
        return None

    def match_safe_shell(self, command: str) -> Optional[SafeRule]:
        for rule in self._safe_shell:
            if rule.pattern.search(command):
                return rule
        return None

    def match_dangerous(self, command: str) -> Optional[DangerRule]:
        for rule in self._dangerous:
            if rule.pattern.search(command):
                return rule
        return None

    def has_shell_markers(self, command: str) -> bool:
        first, *rest = self._shell_markers
        if first.lower() in command.lower():
            return True
        return any(marker in command for marker in rest)

    def is_base_command_allowed(self, base: str) -> bool:
        base = base.lower()
        if base in self._base_commands:
            return True
        return base.endswith(".exe") and base[:-len(".exe")] in self._base_commands

    def is_npm_script_allowed(self, name: str) -> bool:
        return name.lower() in self._npm_scripts

    def is_extension_allowed(self, extension: str) -> bool:
        return extension.lower() in self._extensions

    @property
    def dangerous_rules(self) -> Tuple[DangerRule, ...]:
        return self._dangerous

    @property
    def base_commands(self) -> FrozenSet[str]:
        return self._base_commands
