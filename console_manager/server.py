"""FastAPI control API over the console engine."""

import asyncio
import logging
import time
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware

from .models import InstanceStatus, StartOptions

logger = logging.getLogger(__name__)


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """Log slow requests for debugging."""

    def __init__(self, app, config: Optional[dict] = None):
        super().__init__(app)
        self.config = config or {}

        server_timeouts = self.config.get("timeouts", {}).get("server", {})
        self.slow_threshold = server_timeouts.get("slow_request_threshold_seconds", 1.0)

    async def dispatch(self, request: Request, call_next):
        start = time.monotonic()
        response = await call_next(request)
        elapsed = time.monotonic() - start

        if elapsed > self.slow_threshold:
            logger.warning(f"SLOW REQUEST: {request.method} {request.url.path} took {elapsed:.2f}s")

        return response


class StartConsoleRequest(BaseModel):
    """Request to start a session's terminal server."""
    project_path: str
    port: Optional[int] = None
    resume: bool = True
    direct_mode: bool = False
    force: bool = False
    existing_tmux_session: Optional[str] = None
    existing_tmux_pane: Optional[str] = None
    fork_session: bool = False


class StartShellRequest(BaseModel):
    """Request to serve a plain shell."""
    shell_session_id: str
    project_path: str
    shell_path: Optional[str] = None
    port: Optional[int] = None


def create_app(engine=None, config: Optional[dict] = None, lifespan=None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        engine: ConsoleEngine instance
        config: Configuration dictionary
        lifespan: Optional ASGI lifespan context manager

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(
        title="Console Manager",
        description="Terminal servers for long-running conversation sessions",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.config = config or {}
    app.add_middleware(RequestTimingMiddleware, config=config)
    app.state.engine = engine

    def require_engine():
        if not app.state.engine:
            raise HTTPException(status_code=503, detail="Console engine not configured")
        return app.state.engine

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.get("/processes")
    async def get_processes():
        """Latest status snapshot."""
        engine = require_engine()
        return engine.status_cache.snapshot().to_dict()

    @app.post("/processes/refresh")
    async def refresh_processes():
        """Run a poll cycle now."""
        engine = require_engine()
        snapshot = await engine.status_cache.refresh()
        if snapshot is None:
            return {"refreshed": False, "snapshot": engine.status_cache.snapshot().to_dict()}
        return {"refreshed": True, "snapshot": snapshot.to_dict()}

    @app.get("/processes/running-sessions")
    async def running_sessions():
        engine = require_engine()
        running = engine.status_cache.running_session_map()
        return {
            "sessions": {sid: process.to_dict() for sid, process in running.items()},
            "state_hash": engine.status_cache.state_hash,
        }

    @app.get("/sessions/{session_id}/console")
    async def console_status(session_id: str, project_path: str):
        """Whether a terminal server can be started for the session."""
        engine = require_engine()
        report = await asyncio.to_thread(engine.orchestrator.get_status, session_id, project_path)
        return report.to_dict()

    @app.post("/sessions/{session_id}/console")
    async def start_console(session_id: str, request: StartConsoleRequest):
        engine = require_engine()
        options = StartOptions(
            port=request.port,
            resume=request.resume,
            direct_mode=request.direct_mode,
            force=request.force,
            existing_tmux_session=request.existing_tmux_session,
            existing_tmux_pane=request.existing_tmux_pane,
            fork_session=request.fork_session,
        )
        result = await engine.orchestrator.start(session_id, request.project_path, options)
        return result.to_dict()

    @app.delete("/sessions/{session_id}/console")
    async def stop_console(session_id: str):
        engine = require_engine()
        result = await asyncio.to_thread(engine.orchestrator.stop, session_id)
        return result.to_dict()

    @app.get("/sessions/{session_id}/console/health")
    async def console_health(session_id: str):
        engine = require_engine()
        return await asyncio.to_thread(engine.orchestrator.check_session_health, session_id)

    @app.post("/sessions/{session_id}/kill")
    async def kill_session(session_id: str):
        """Kill every process associated with a session."""
        engine = require_engine()
        result = await asyncio.to_thread(engine.orchestrator.kill_all, session_id)
        return result.to_dict()

    @app.post("/processes/{pid}/kill")
    async def kill_process(pid: int):
        engine = require_engine()
        result = await asyncio.to_thread(engine.orchestrator.kill_process, pid)
        return result.to_dict()

    @app.get("/instances")
    async def list_instances(status: Optional[str] = None, limit: int = 50):
        """Recent instance records, optionally filtered by status."""
        engine = require_engine()
        if status:
            try:
                wanted = InstanceStatus(status)
            except ValueError:
                raise HTTPException(status_code=400, detail=f"Invalid status: {status}")
            records = engine.orchestrator.instances_by_status(wanted)[:limit]
        else:
            records = engine.orchestrator.recent_instances(limit)
        return {"instances": [r.to_dict() for r in records]}

    @app.get("/instances/active")
    async def active_instances():
        engine = require_engine()
        return {"instances": [r.to_dict() for r in engine.orchestrator.active_instances()]}

    @app.get("/sessions/{session_id}/instances")
    async def session_instances(session_id: str):
        engine = require_engine()
        return {"instances": [r.to_dict() for r in engine.orchestrator.instances_for_session(session_id)]}

    @app.post("/shells")
    async def start_shell(request: StartShellRequest):
        engine = require_engine()
        result = await engine.orchestrator.start_shell(
            request.shell_session_id,
            request.project_path,
            shell_path=request.shell_path,
            port=request.port,
        )
        return result.to_dict()

    @app.post("/maintenance/reconcile")
    async def reconcile():
        """Force a drift reconciliation pass against the latest snapshot."""
        engine = require_engine()
        updated = await asyncio.to_thread(engine.orchestrator.reconcile_drift, engine.status_cache.processes())
        return {"updated": updated}

    @app.post("/maintenance/audit")
    async def audit():
        """Force a deep health audit of tmux-backed instances."""
        engine = require_engine()
        dead = await asyncio.to_thread(engine.orchestrator.deep_health_audit)
        return {"marked_dead": dead}

    return app
