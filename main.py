from dotenv import load_dotenv
load_dotenv()  # Load .env file before anything else

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from dashterm.api.terminals import router as terminals_router
from dashterm.core.config import TerminalHubConfig
from dashterm.core.logger import get_logger, setup_logging
from dashterm.terminal.backends import LocalShellTransport, WebSocketTransport
from dashterm.terminal.multiplexer import SessionMultiplexer
from dashterm.terminal.patterns import PatternCatalog
from dashterm.terminal.security import CommandValidator
from dashterm.terminal.transport import Transport

logger = get_logger("main")


def build_transport(config: TerminalHubConfig) -> Transport:
    """Remote terminal service if DASHTERM_BACKEND_URL is set, local shells otherwise."""
    url = os.getenv("DASHTERM_BACKEND_URL")
    if url:
        return WebSocketTransport(url)
    return LocalShellTransport(workspace_root=config.workspace_root, kill_timeout=config.kill_timeout)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    # Misconfiguration (bad env values, broken catalog) fails here, before any session exists
    config = TerminalHubConfig.from_env()
    validator = CommandValidator(PatternCatalog.default())
    mux = SessionMultiplexer(build_transport(config), config, validator=validator)
    await mux.start()
    app.state.multiplexer = mux
    try:
        yield
    finally:
        await mux.stop()
        app.state.multiplexer = None


app = FastAPI(title="DashTerm Backend", lifespan=lifespan)

# CORS
origins = [
    "http://localhost:5173",
    "http://localhost:5174",
    "http://localhost:3000",
]
extra_origins = os.getenv("DASHTERM_CORS_ORIGINS")
if extra_origins:
    origins.extend(o.strip() for o in extra_origins.split(",") if o.strip())

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(terminals_router)


@app.get("/")
def read_root():
    return {"message": "DashTerm Backend is Running"}


@app.get("/health")
def health():
    mux = getattr(app.state, "multiplexer", None)
    return {"status": "ok", "running": bool(mux and mux.running)}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=os.getenv("DASHTERM_HOST", "127.0.0.1"),
        port=int(os.getenv("DASHTERM_PORT", "8000")),
    )
