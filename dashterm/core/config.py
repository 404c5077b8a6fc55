"""
Terminal hub configuration.

All knobs of the session multiplexer live on one validated pydantic model.
Values come from ``DASHTERM_*`` environment variables (``main.py`` loads a
``.env`` file first) and fall back to the defaults below. A bad value fails
at startup with a pydantic ``ValidationError`` instead of surfacing later
inside a background task.
"""

import os
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, model_validator


ENV_PREFIX = "DASHTERM_"


class TerminalHubConfig(BaseModel):
    """Limits, timeouts and backoff policy for the session multiplexer."""

    # Capacity
    max_sessions: int = Field(6, gt=0, description="Live sessions before the oldest is evicted")
    max_history_per_session: int = Field(1000, gt=0, description="Output chunks kept per session")

    # Handshake / reconnect
    handshake_timeout: float = Field(5.0, gt=0, description="Seconds to wait for the backend init ack")
    reconnect_base_delay: float = Field(3.0, gt=0)
    reconnect_backoff_factor: float = Field(1.5, ge=1.0)
    reconnect_max_delay: float = Field(30.0, gt=0)
    max_reconnect_attempts: int = Field(10, ge=0)

    # Resize debouncing
    resize_debounce: float = Field(0.15, gt=0)
    resize_min_col_delta: int = Field(2, ge=0)
    resize_min_row_delta: int = Field(1, ge=0)
    resize_timeout: float = Field(5.0, gt=0)

    # Health probing
    health_probe_interval: float = Field(30.0, gt=0)
    probe_timeout: float = Field(15.0, gt=0)
    probe_failure_threshold: int = Field(3, gt=0)

    # Idle cleanup
    idle_timeout: float = Field(1800.0, gt=0, description="Seconds of inactivity before a session is reaped")
    cleanup_interval: float = Field(300.0, gt=0)

    # Session defaults
    default_cols: int = Field(80, ge=1, le=1000)
    default_rows: int = Field(24, ge=1, le=1000)
    close_timeout: float = Field(2.0, gt=0, description="Seconds to wait for the backend to release a session")
    kill_timeout: float = Field(1.0, gt=0, description="Grace period between SIGTERM and SIGKILL for local shells")
    send_timeout: float = Field(10.0, gt=0, description="Seconds a command write may block before the session is dropped")
    audit_log_size: int = Field(500, gt=0)
    workspace_root: str = Field(default_factory=os.getcwd)

    @model_validator(mode="after")
    def _check_delays(self) -> "TerminalHubConfig":
        if self.reconnect_max_delay < self.reconnect_base_delay:
            raise ValueError("reconnect_max_delay must be >= reconnect_base_delay")
        if self.close_timeout <= self.kill_timeout:
            raise ValueError("close_timeout must be > kill_timeout")
        return self

    def reconnect_delay(self, attempt: int) -> float:
        """Backoff delay before reconnect ``attempt`` (0-based)."""
        delay = self.reconnect_base_delay * (self.reconnect_backoff_factor ** attempt)
        return min(delay, self.reconnect_max_delay)

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None, **overrides: Any) -> "TerminalHubConfig":
        """
        Build a config from ``DASHTERM_<FIELD>`` variables.

        Args:
            environ: Mapping to read from (defaults to ``os.environ``).
            **overrides: Explicit values that win over the environment.
        """
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None and raw != "":
                values[name] = raw
        values.update(overrides)
        return cls(**values)
