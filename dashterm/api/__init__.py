"""
DashTerm API Module

HTTP and WebSocket routers.
"""

from dashterm.api.terminals import router as terminals_router, get_multiplexer

__all__ = [
    "terminals_router",
    "get_multiplexer",
]
