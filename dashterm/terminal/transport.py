"""
Terminal Transport

The duplex channel between the multiplexer and an execution backend. Every
frame carries a session id; many sessions share one transport.

Frame kinds:
    init    open a session (outbound) / backend ready ack (inbound)
    data    command text (outbound) / terminal output (inbound)
    resize  apply a new viewport size
    close   tear a session down / backend process exited
    error   backend failure; payload "fatal" decides if retry is pointless
"""

import json
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable, Dict

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import TransportError


class FrameKind(str, Enum):
    INIT = "init"
    DATA = "data"
    RESIZE = "resize"
    CLOSE = "close"
    ERROR = "error"


class Frame(BaseModel):
    """One tagged message on the shared transport."""
    model_config = ConfigDict(frozen=True)

    kind: FrameKind
    session_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw: str) -> "Frame":
        try:
            return cls.model_validate_json(raw)
        except (ValidationError, json.JSONDecodeError, ValueError) as e:
            raise TransportError(f"Malformed frame: {e}") from e

    # Convenience constructors
    @classmethod
    def data(cls, session_id: str, text: str) -> "Frame":
        return cls(kind=FrameKind.DATA, session_id=session_id, payload={"data": text})

    @classmethod
    def close(cls, session_id: str, reason: str = "", **extra: Any) -> "Frame":
        return cls(kind=FrameKind.CLOSE, session_id=session_id, payload={"reason": reason, **extra})

    @classmethod
    def error(cls, session_id: str, message: str, fatal: bool = False) -> "Frame":
        return cls(kind=FrameKind.ERROR, session_id=session_id, payload={"message": message, "fatal": fatal})


FrameHandler = Callable[[Frame], Awaitable[None]]


class Transport(ABC):
    """
    Shared duplex channel to an execution backend.

    Implementations deliver inbound frames, in arrival order, through the
    handler given to open(). Only the multiplexer may call send().
    """

    @abstractmethod
    async def open(self, deliver: FrameHandler) -> None:
        """Start the channel; inbound frames go to ``deliver``."""

    @abstractmethod
    async def send(self, frame: Frame) -> None:
        """Send one frame. Raises TransportError when the channel is down."""

    @abstractmethod
    async def probe(self, session_id: str) -> bool:
        """Liveness check for one session."""

    @abstractmethod
    async def close(self) -> None:
        """Shut the channel and release every backend resource."""
