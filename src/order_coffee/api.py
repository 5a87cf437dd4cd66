"""
Order Coffee: FastAPI server that decides when the machine may suspend

Endpoints:
    POST /coffee, /chill          - set/clear the manual "coffee" activity
    POST /ollama-on, /ollama-off  - start/stop ollama.service and toggle "ollama"
    POST /api/activities/{name}/{on|off} - generic toggle for any activity
    GET  /status                  - flags, errors, countdown, last action
    GET  /health                  - heartbeat
    GET  /api/logs/recent         - in-memory log buffer
    GET  /api/events              - event audit trail
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__
from .app_state import AppState
from .config import Config
from .errors import ServiceUnavailable, UnknownActivity
from .logs import asyncio_exception_handler, log_lifecycle, logger, recent_logs


# Pydantic Models
class States(BaseModel):
    flags: dict[str, bool]
    errors: List[str] = []


class ApiResponse(BaseModel):
    status: str  # "active", "inactive" or "error"
    message: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    states: States


class StatusResponse(BaseModel):
    states: States
    busy: bool
    timer_active: bool
    timer_remaining_seconds: Optional[int] = None
    uptime: str
    port: int
    host: str
    last_action: Optional[str] = None
    last_action_time: Optional[datetime] = None


class HealthResponse(BaseModel):
    status: str = "ok"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: str = __version__


class LogEntry(BaseModel):
    timestamp: str
    level: str
    message: str


class LogsResponse(BaseModel):
    logs: List[LogEntry]
    count: int


class EventResponse(BaseModel):
    id: int
    event_type: str
    activity: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    created_at: str


def _states(state: AppState) -> States:
    snapshot = state.registry.snapshot()
    return States(flags=snapshot.flags, errors=snapshot.errors)


def create_app(config: Optional[Config] = None, state: Optional[AppState] = None) -> FastAPI:
    """Build the app. Pass `state` to inject fakes (tests)."""
    config = config or Config.from_env()
    state = state or AppState(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        asyncio.get_running_loop().set_exception_handler(asyncio_exception_handler)
        log_lifecycle("SERVER STARTED")
        logger.info(f"Starting order-coffee server v{__version__}")
        logger.info(f"Configuration: address={config.address}, timer={config.timer_minutes:g}min")
        await state.startup()
        yield
        log_lifecycle("SERVER STOPPING")
        await state.shutdown()
        logger.info("Scheduler stopped")

    app = FastAPI(
        title="Order Coffee",
        description="State-managed HTTP server to control system suspension",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.coffee = state

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    async def toggle(name: str, on: bool, action: str, message: str):
        try:
            if on:
                busy = await state.activate(name, action)
            else:
                busy = await state.deactivate(name, action)
        except UnknownActivity as e:
            raise HTTPException(status_code=404, detail=str(e))
        except ServiceUnavailable as e:
            logger.error(f"{action} failed: {e}")
            body = ApiResponse(status="error", message=str(e), states=_states(state))
            return JSONResponse(status_code=503, content=body.model_dump(mode="json"))

        logger.info(f"{action} endpoint called - {message} (busy={busy})")
        return ApiResponse(
            status="active" if on else "inactive",
            message=message,
            states=_states(state),
        )

    # ============ Activity Endpoints ============

    @app.post("/coffee", response_model=ApiResponse)
    async def coffee():
        """Enable the coffee state (keep the machine awake)."""
        return await toggle("coffee", True, "coffee", "Coffee state enabled")

    @app.post("/chill", response_model=ApiResponse)
    async def chill():
        """Disable the coffee state."""
        return await toggle("coffee", False, "chill", "Coffee state disabled")

    @app.post("/ollama-on", response_model=ApiResponse)
    async def ollama_on():
        """Start ollama.service and enable the ollama state."""
        return await toggle("ollama", True, "ollama-on", "Ollama state enabled and service started")

    @app.post("/ollama-off", response_model=ApiResponse)
    async def ollama_off():
        """Stop ollama.service and disable the ollama state."""
        return await toggle("ollama", False, "ollama-off", "Ollama state disabled and service stopped")

    @app.post("/api/activities/{name}/{switch}", response_model=ApiResponse)
    async def toggle_activity(name: str, switch: str):
        """Generic toggle: switch is 'on' or 'off'."""
        switch = switch.lower()
        if switch not in ("on", "off"):
            raise HTTPException(status_code=400, detail=f"Unknown switch '{switch}'. Use 'on' or 'off'")
        on = switch == "on"
        return await toggle(
            name, on, f"{name}-{switch}",
            f"{name.capitalize()} state {'enabled' if on else 'disabled'}",
        )

    # ============ Reporting ============

    @app.get("/status", response_model=StatusResponse)
    async def status():
        """Current flags, errors, countdown and last action."""
        return state.status()

    @app.get("/health", response_model=HealthResponse)
    async def health():
        """Health check endpoint."""
        return HealthResponse()

    @app.get("/api/logs/recent", response_model=LogsResponse)
    async def get_recent_logs(limit: int = 50):
        """Recent server logs from the circular buffer (max 100)."""
        logs = recent_logs(limit)
        return {"logs": logs, "count": len(logs)}

    @app.get("/api/events", response_model=List[EventResponse])
    async def list_events(limit: int = 50):
        """Most recent audit events, newest first."""
        return await state.events.recent(min(max(limit, 1), 500))

    @app.get("/")
    async def root():
        """Root endpoint with API info."""
        return {
            "name": "order-coffee",
            "version": __version__,
            "description": "State-managed HTTP server to control system suspension",
            "docs": "/docs",
        }

    return app
