"""
DashTerm Core Module

Provides centralized logging and configuration.
"""

from dashterm.core.logger import (
    setup_logging,
    get_logger,
    truncate_for_log,
    IS_DEV,
)

from dashterm.core.config import TerminalHubConfig

__all__ = [
    # Logging
    "setup_logging",
    "get_logger",
    "truncate_for_log",
    "IS_DEV",
    # Config
    "TerminalHubConfig",
]
