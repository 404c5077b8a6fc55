"""
Terminal API

HTTP + WebSocket boundary for the dashboard's terminal widget.

Endpoints:
    POST   /api/terminals                       create a session
    GET    /api/terminals                       list sessions
    GET    /api/terminals/status                multiplexer status
    GET    /api/terminals/stats                 counts by state/workbranch/shell
    POST   /api/terminals/validate              dry-run command validation
    GET    /api/terminals/security/audit        recently blocked commands
    DELETE /api/terminals/workbranch/{id}       destroy a workbranch's sessions
    GET    /api/terminals/{sid}                 one session
    DELETE /api/terminals/{sid}                 destroy a session
    POST   /api/terminals/{sid}/commands        validate + run a command
    POST   /api/terminals/{sid}/resize          debounced resize
    GET    /api/terminals/{sid}/history         buffered output
    POST   /api/terminals/{sid}/history/clear   clear output (unless locked)
    POST   /api/terminals/{sid}/lock            lock/unlock output clearing
    WS     /api/terminals/{sid}/stream          live output + commands
"""

import asyncio
import json
from typing import Awaitable, Callable, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, WebSocket, WebSocketDisconnect

from dashterm.core.logger import get_logger
from dashterm.terminal.errors import (
    InvalidSessionRequestError,
    PathTraversalError,
    SessionNotFoundError,
    TransportError,
)
from dashterm.terminal.models import (
    CommandDispatchResult,
    CommandRequest,
    CreateSessionRequest,
    LockRequest,
    ResizeRequest,
    Session,
    ValidateRequest,
    ValidationVerdict,
)
from dashterm.terminal.multiplexer import SessionMultiplexer
from dashterm.terminal.security import format_security_message

logger = get_logger("api")

router = APIRouter(prefix="/api/terminals", tags=["terminals"])

WS_RECEIVE_TIMEOUT = 30


def get_multiplexer(request: Request) -> SessionMultiplexer:
    """Dependency: the multiplexer built in the app lifespan."""
    mux = getattr(request.app.state, "multiplexer", None)
    if mux is None:
        raise HTTPException(status_code=503, detail="Terminal hub is not running")
    return mux


def _summary(session: Session) -> dict:
    return session.model_dump(mode="json", exclude={"output_history"})


def _not_found(session_id: str) -> HTTPException:
    return HTTPException(status_code=404, detail=f"Session not found: {session_id}")


# ============================================================================
# Collection endpoints
# ============================================================================

@router.post("")
async def create_session(body: CreateSessionRequest, mux: SessionMultiplexer = Depends(get_multiplexer)):
    try:
        session_id = await mux.create_session(
            body.workbranch_id,
            body.shell_kind,
            title=body.title,
            cwd=body.cwd,
            project_id=body.project_id,
            env=body.env,
        )
    except (InvalidSessionRequestError, PathTraversalError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except TransportError as e:
        raise HTTPException(status_code=503, detail=str(e))

    session = mux.registry.get(session_id)
    if session is None:
        # Evicted or reaped before we could answer
        raise _not_found(session_id)
    logger.info(f"[API] Created session {session_id} for {body.workbranch_id}")
    return {"session_id": session_id, "session": _summary(session)}


@router.get("")
async def list_sessions(mux: SessionMultiplexer = Depends(get_multiplexer)):
    return {"sessions": [_summary(s) for s in mux.list_sessions()]}


@router.get("/status")
async def get_status(mux: SessionMultiplexer = Depends(get_multiplexer)):
    return mux.get_status()


@router.get("/stats")
async def get_stats(mux: SessionMultiplexer = Depends(get_multiplexer)):
    return mux.get_stats()


@router.post("/validate", response_model=ValidationVerdict)
async def validate_command(body: ValidateRequest, mux: SessionMultiplexer = Depends(get_multiplexer)):
    return mux.validator.validate(body.command)


@router.get("/security/audit")
async def get_audit_log(limit: Optional[int] = None, mux: SessionMultiplexer = Depends(get_multiplexer)):
    entries = mux.get_audit_log(limit)
    return {"count": len(entries), "entries": [e.model_dump(mode="json") for e in entries]}


@router.delete("/workbranch/{workbranch_id}")
async def destroy_workbranch_sessions(workbranch_id: str, mux: SessionMultiplexer = Depends(get_multiplexer)):
    destroyed = await mux.destroy_sessions_by_workbranch(workbranch_id)
    return {"success": True, "destroyed": destroyed}


# ============================================================================
# Per-session endpoints
# ============================================================================

@router.get("/{session_id}")
async def get_session(session_id: str, mux: SessionMultiplexer = Depends(get_multiplexer)):
    session = mux.registry.get(session_id)
    if session is None:
        raise _not_found(session_id)
    return _summary(session)


@router.delete("/{session_id}")
async def destroy_session(session_id: str, mux: SessionMultiplexer = Depends(get_multiplexer)):
    destroyed = await mux.destroy_session(session_id)
    return {"success": True, "destroyed": destroyed}


@router.post("/{session_id}/commands", response_model=CommandDispatchResult)
async def send_command(session_id: str, body: CommandRequest, mux: SessionMultiplexer = Depends(get_multiplexer)):
    try:
        return await mux.send_command(session_id, body.command)
    except SessionNotFoundError:
        raise _not_found(session_id)
    except TransportError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/{session_id}/resize")
async def resize_session(session_id: str, body: ResizeRequest, mux: SessionMultiplexer = Depends(get_multiplexer)):
    try:
        accepted = await mux.resize(session_id, body.cols, body.rows)
    except SessionNotFoundError:
        raise _not_found(session_id)
    return {"accepted": accepted}


@router.get("/{session_id}/history")
async def get_history(session_id: str, mux: SessionMultiplexer = Depends(get_multiplexer)):
    try:
        history = mux.get_history(session_id)
    except SessionNotFoundError:
        raise _not_found(session_id)
    return {"session_id": session_id, "history": history}


@router.post("/{session_id}/history/clear")
async def clear_history(session_id: str, mux: SessionMultiplexer = Depends(get_multiplexer)):
    try:
        cleared = mux.clear_history(session_id)
    except SessionNotFoundError:
        raise _not_found(session_id)
    return {"cleared": cleared}


@router.post("/{session_id}/lock")
async def set_output_lock(session_id: str, body: LockRequest, mux: SessionMultiplexer = Depends(get_multiplexer)):
    try:
        session = mux.set_output_locked(session_id, body.locked)
    except SessionNotFoundError:
        raise _not_found(session_id)
    return _summary(session)


# ============================================================================
# WebSocket Endpoint
# ============================================================================

class StreamChannel:
    """
    Outbound side of one stream socket.

    Every write goes through one lock, so the history frame always precedes
    live output and concurrent writers never interleave.
    """

    def __init__(self, send_text: Callable[[str], Awaitable[None]]):
        self._send_text = send_text
        self._lock = asyncio.Lock()
        self._sink: Optional[Callable[[str], Awaitable[None]]] = None

    async def send(self, payload: dict) -> None:
        async with self._lock:
            await self._send_text(json.dumps(payload))

    async def _output(self, chunk: str) -> None:
        await self.send({"type": "output", "data": chunk})

    async def attach(self, mux: SessionMultiplexer, session_id: str) -> None:
        """Snapshot history and register the live sink, then send the snapshot."""
        # No await between snapshot and registration: every chunk lands in exactly one of them
        history = mux.get_history(session_id)
        self._sink = self._output
        mux.register_output_sink(session_id, self._sink)
        await self.send({"type": "history", "data": history})

    def detach(self, mux: SessionMultiplexer, session_id: str) -> None:
        if self._sink is not None:
            mux.unregister_output_sink(session_id, self._sink)
            self._sink = None


@router.websocket("/{session_id}/stream")
async def session_stream(websocket: WebSocket, session_id: str):
    """
    Live terminal stream.

    Server -> client: history (once), output, command_result, error, pong, keepalive
    Client -> server: ping, command {"command"}, resize {"cols", "rows"}
    """
    await websocket.accept()
    mux: Optional[SessionMultiplexer] = getattr(websocket.app.state, "multiplexer", None)
    if mux is None or session_id not in mux.registry:
        await websocket.send_text(json.dumps({"type": "error", "message": f"Session not found: {session_id}"}))
        await websocket.close(code=4404)
        return

    channel = StreamChannel(websocket.send_text)
    try:
        await channel.attach(mux, session_id)
        logger.info(f"[WS] Stream attached to {session_id}")

        while True:
            try:
                data = await asyncio.wait_for(websocket.receive_text(), timeout=WS_RECEIVE_TIMEOUT)
            except asyncio.TimeoutError:
                await channel.send({"type": "keepalive"})
                continue

            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                await channel.send({"type": "error", "message": "Invalid JSON"})
                continue
            if not isinstance(message, dict):
                await channel.send({"type": "error", "message": "Expected a JSON object"})
                continue

            msg_type = message.get("type")
            if msg_type == "ping":
                await channel.send({"type": "pong"})
            elif msg_type == "command":
                command = message.get("command", "")
                try:
                    result = await mux.send_command(session_id, command)
                except (SessionNotFoundError, TransportError) as e:
                    await channel.send({"type": "error", "message": str(e)})
                    continue
                reply = {"type": "command_result", **result.model_dump(mode="json")}
                if not result.accepted:
                    reply["display"] = format_security_message(command, result.verdict.reason)
                await channel.send(reply)
            elif msg_type == "resize":
                try:
                    await mux.resize(session_id, int(message.get("cols", 0)), int(message.get("rows", 0)))
                except (SessionNotFoundError, TypeError, ValueError) as e:
                    await channel.send({"type": "error", "message": str(e)})

    except WebSocketDisconnect:
        pass
    except SessionNotFoundError:
        await websocket.close(code=4404)
    except Exception as e:
        logger.error(f"[WS] WebSocket error for {session_id}: {e}")
    finally:
        channel.detach(mux, session_id)
        logger.info(f"[WS] Stream detached from {session_id}")
