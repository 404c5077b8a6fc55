"""
DashTerm Logging

Every module logs through a ``dashterm.*`` logger configured once by
``setup_logging()`` in main.py.

Terminal traffic is operator-typed text. Anything echoed into a log line
goes through ``truncate_for_log`` first, which escapes control characters
and ANSI sequences (so a command cannot forge extra log lines or recolour
the console) and clips long values.

Environment:
    DASHTERM_ENV        development (default) | production
    DASHTERM_LOG_LEVEL  explicit level, overrides the DASHTERM_ENV default

Usage:
    from dashterm.core.logger import get_logger, truncate_for_log

    logger = get_logger("mux")
    logger.info(f"[MUX] ▶️ {session_id}: {truncate_for_log(command)}")
"""

import logging
import os
import re
import sys
from typing import Optional

# ============================================================================
# ENVIRONMENT
# ============================================================================

def is_dev_mode() -> bool:
    """True unless DASHTERM_ENV names a non-development environment."""
    return os.getenv("DASHTERM_ENV", "development").lower() in ("development", "dev", "local")

IS_DEV = is_dev_mode()


def _resolve_level(explicit: Optional[str] = None) -> int:
    name = (explicit or os.getenv("DASHTERM_LOG_LEVEL") or "").upper()
    if name and isinstance(logging.getLevelName(name), int):
        return logging.getLevelName(name)
    return logging.DEBUG if IS_DEV else logging.INFO

# ============================================================================
# LOG-SAFE TEXT
# ============================================================================

_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")
_CONTROL = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")


def truncate_for_log(content: str, max_length: int = 100) -> str:
    """
    Make terminal text safe to embed in a log line.

    ANSI escape sequences are dropped, newlines and other control
    characters are shown escaped, and the result is clipped to
    ``max_length`` characters with a ``...`` suffix.
    """
    text = _ANSI_ESCAPE.sub("", content)
    text = text.replace("\r", "\\r").replace("\n", "\\n")
    text = _CONTROL.sub(lambda m: f"\\x{ord(m.group()):02x}", text)
    if len(text) <= max_length:
        return text
    return text[:max_length] + "..."

# ============================================================================
# PRODUCTION FILTER
# ============================================================================

class SensitiveDataFilter(logging.Filter):
    """
    Production-only guard on ``dashterm.*`` records.

    A record mentioning a credential keyword is replaced wholesale, since the
    operator may have typed the secret into a terminal. Oversized records are
    clipped to MAX_CONTENT_LENGTH.
    """

    SENSITIVE = re.compile(r"api_key|secret|password|token|bearer|authorization", re.IGNORECASE)
    MAX_CONTENT_LENGTH = 500

    def filter(self, record: logging.LogRecord) -> bool:
        if IS_DEV:
            return True

        message = record.getMessage()
        if self.SENSITIVE.search(message):
            record.msg, record.args = "[REDACTED - contains sensitive data]", ()
        elif len(message) > self.MAX_CONTENT_LENGTH:
            record.msg, record.args = message[:self.MAX_CONTENT_LENGTH] + "...", ()
        return True

# ============================================================================
# SETUP
# ============================================================================

# Third-party loggers that are chatty at DEBUG/INFO
QUIET_LOGGERS = ("httpx", "httpcore", "asyncio", "websockets", "uvicorn.access")


def setup_logging(level: Optional[str] = None) -> logging.Logger:
    """
    Configure logging for the whole process. Call once, at startup.

    Args:
        level: Optional level name; falls back to DASHTERM_LOG_LEVEL, then
            to DEBUG in development and INFO in production.

    Returns:
        The ``dashterm`` root logger.
    """
    resolved = _resolve_level(level)
    logging.basicConfig(
        level=resolved,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
        force=True,
    )

    root = logging.getLogger("dashterm")
    root.setLevel(resolved)
    if not IS_DEV:
        # Logger filters do not apply to child loggers; handler filters do
        for handler in logging.getLogger().handlers:
            handler.addFilter(SensitiveDataFilter())

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    mode = "DEVELOPMENT" if IS_DEV else "PRODUCTION"
    root.info(f"🔧 Logging initialized ({mode} mode, level={logging.getLevelName(resolved)})")
    return root


def get_logger(name: str) -> logging.Logger:
    """
    Namespaced logger, e.g. ``get_logger("registry")`` -> ``dashterm.registry``.

    Messages carry a bracketed component tag:
        logger.info("[REGISTRY] ➕ Created ...")
    """
    return logging.getLogger(f"dashterm.{name}")
