"""
Debounced logging.

Resize storms, flapping health probes and a dead output sink emit the same
warning many times a second. Wrap the module logger once and log the
repetitive messages through the wrapper:

    quiet = DebouncedLogger(logger, debounce_seconds=5.0)
    quiet.warning(f"[MUX] ⚠️ Resize failed for {session_id}")

The first message of a burst is emitted, repeats inside the window are
counted, and the next emit after the window reports how many were dropped.
"""
import logging
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

_Key = Tuple[str, str]


@dataclass
class _Window:
    last_emit: float
    suppressed: int = 0


class DebouncedLogger:
    """Logger wrapper that rate-limits identical (level, message) pairs."""

    def __init__(self, logger: logging.Logger, debounce_seconds: float = 1.0):
        self.logger = logger
        self.debounce_seconds = debounce_seconds
        self._windows: Dict[_Key, _Window] = {}

    def suppressed_count(self, level: str, message: str) -> int:
        """Repeats swallowed since the message was last emitted."""
        window = self._windows.get((level.upper(), message))
        return window.suppressed if window else 0

    def log(self, level: str, message: str, *args, **kwargs):
        key = (level.upper(), message)
        now = time.monotonic()
        window: Optional[_Window] = self._windows.get(key)

        if window is not None and now - window.last_emit < self.debounce_seconds:
            window.suppressed += 1
            return

        if window is None:
            self._prune(now)
        dropped = window.suppressed if window else 0
        self._windows[key] = _Window(last_emit=now)
        if dropped:
            message = f"{message} (suppressed {dropped} similar logs)"
        getattr(self.logger, level.lower())(message, *args, **kwargs)

    def _prune(self, now: float) -> None:
        # Expired windows only; their keys start fresh on the next log
        expired = [key for key, w in self._windows.items() if now - w.last_emit >= self.debounce_seconds]
        for key in expired:
            del self._windows[key]

    @property
    def tracked(self) -> int:
        return len(self._windows)

    def debug(self, message: str, *args, **kwargs):
        self.log("DEBUG", message, *args, **kwargs)

    def info(self, message: str, *args, **kwargs):
        self.log("INFO", message, *args, **kwargs)

    def warning(self, message: str, *args, **kwargs):
        self.log("WARNING", message, *args, **kwargs)

    def error(self, message: str, *args, **kwargs):
        self.log("ERROR", message, *args, **kwargs)
