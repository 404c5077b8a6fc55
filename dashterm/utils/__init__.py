"""
DashTerm Utilities
"""

from dashterm.utils.debounced_logger import DebouncedLogger

__all__ = ["DebouncedLogger"]
