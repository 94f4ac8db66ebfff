"""
Autopilot Operator API - FastAPI Application

HTTP surface over the same operations the CLI offers: inspect and control
registered projects, read decision history, manage the reasoning credential
and cost limits, and stop the running orchestrator.

When served with `run_orchestrator=True` the scheduling loop runs as a
background task for the lifetime of the application and is stopped through
its ShutdownToken, so the in-flight project finishes first.

IMPORTANT:
- The credential is write-only over HTTP; responses carry a fingerprint
- Registry errors are returned with their structured code
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from . import __version__
from .config import ConfigError
from .orchestrator import ShutdownToken
from .project_registry import (
    InvalidTransitionError,
    ProjectAlreadyExistsError,
    ProjectNotFoundError,
    RegistryError,
)
from .runtime import Runtime

logger = logging.getLogger("autopilot_api")


# -----------------------------------------------------------------------------
# Request Models
# -----------------------------------------------------------------------------
class RegisterProjectRequest(BaseModel):
    config_path: str = Field(..., min_length=1, description="Path to the project YAML file")
    name: Optional[str] = Field(None, description="Override the name from the project file")


class ApprovePhaseRequest(BaseModel):
    phase: Optional[str] = Field(None, description="Phase to approve; defaults to the current phase")


class CredentialRequest(BaseModel):
    api_key: str = Field(..., min_length=1)


class CostLimitsRequest(BaseModel):
    daily_limit_usd: Optional[float] = Field(None, ge=0)
    weekly_limit_usd: Optional[float] = Field(None, ge=0)
    project_daily_limit_usd: Optional[float] = Field(None, ge=0)


def _registry_http_error(error: RegistryError) -> HTTPException:
    if isinstance(error, ProjectNotFoundError):
        status = 404
    elif isinstance(error, (ProjectAlreadyExistsError, InvalidTransitionError)):
        status = 409
    else:
        status = 400
    return HTTPException(status_code=status, detail=error.to_dict())


# -----------------------------------------------------------------------------
# Application Factory
# -----------------------------------------------------------------------------
def create_app(runtime: Runtime, run_orchestrator: bool = False, force_recovery: bool = False) -> FastAPI:
    token = ShutdownToken()
    state: Dict[str, Any] = {"task": None}

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if run_orchestrator:
            state["task"] = asyncio.create_task(
                runtime.orchestrator.run(token, force_recovery=force_recovery)
            )
            logger.info("Orchestrator started with API")
        yield
        task = state["task"]
        if task is not None:
            token.request("API shutdown")
            try:
                await task
            except Exception as e:
                logger.error(f"Orchestrator ended with error: {e}")

    app = FastAPI(
        title="Autopilot - Session Supervisor",
        description="Operator API for the session supervision engine",
        version=__version__,
        lifespan=lifespan,
    )

    # -------------------------------------------------------------------------
    # Health / Status
    # -------------------------------------------------------------------------
    @app.get("/health")
    async def health_check():
        task = state["task"]
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": __version__,
            "orchestrator_running": task is not None and not task.done(),
        }

    @app.get("/status")
    async def status():
        return runtime.orchestrator.status()

    # -------------------------------------------------------------------------
    # Projects
    # -------------------------------------------------------------------------
    @app.get("/projects")
    async def list_projects(status: Optional[str] = None):
        return {"projects": [p.to_dict() for p in runtime.registry.list_projects(status=status)]}

    @app.post("/projects", status_code=201)
    async def register_project(request: RegisterProjectRequest):
        try:
            record = runtime.register_project(request.config_path, request.name)
        except ConfigError as e:
            raise HTTPException(status_code=400, detail=e.to_dict())
        except RegistryError as e:
            raise _registry_http_error(e)
        return record.to_dict()

    @app.get("/projects/{name}")
    async def get_project(name: str):
        try:
            record = runtime.registry.require_project(name)
        except RegistryError as e:
            raise _registry_http_error(e)
        return {"project": record.to_dict(), "state": runtime.store.load_state(name)}

    @app.delete("/projects/{name}")
    async def unregister_project(name: str):
        try:
            record = runtime.registry.unregister_project(name)
        except RegistryError as e:
            raise _registry_http_error(e)
        return {"removed": record.name}

    @app.post("/projects/{name}/pause")
    async def pause_project(name: str):
        try:
            return runtime.registry.pause_project(name).to_dict()
        except RegistryError as e:
            raise _registry_http_error(e)

    @app.post("/projects/{name}/resume")
    async def resume_project(name: str):
        try:
            return runtime.registry.resume_project(name).to_dict()
        except RegistryError as e:
            raise _registry_http_error(e)

    @app.post("/projects/{name}/reset")
    async def reset_project(name: str):
        try:
            return runtime.registry.reset_project(name).to_dict()
        except RegistryError as e:
            raise _registry_http_error(e)

    @app.post("/projects/{name}/approve")
    async def approve_phase(name: str, request: Optional[ApprovePhaseRequest] = None):
        try:
            record = runtime.registry.require_project(name)
            phase = (request.phase if request else None) or record.current_phase
            return runtime.registry.approve_phase(name, phase).to_dict()
        except RegistryError as e:
            raise _registry_http_error(e)

    @app.get("/projects/{name}/decisions")
    async def project_decisions(name: str, limit: int = Query(20, ge=1, le=1000)):
        if runtime.registry.get_project(name) is None:
            raise _registry_http_error(ProjectNotFoundError(name))
        entries: List[Dict[str, Any]] = runtime.store.recent_entries(name, limit)
        return {"project": name, "decisions": entries}

    # -------------------------------------------------------------------------
    # Settings
    # -------------------------------------------------------------------------
    @app.put("/settings/credential")
    async def set_credential(request: CredentialRequest):
        try:
            info = runtime.credentials.set(request.api_key)
        except ConfigError as e:
            raise HTTPException(status_code=400, detail=e.to_dict())
        info["note"] = "Takes effect on the next start"
        return info

    @app.put("/settings/cost-limits")
    async def set_cost_limits(request: CostLimitsRequest):
        limits = runtime.governor.update_limits(
            daily_limit_usd=request.daily_limit_usd,
            weekly_limit_usd=request.weekly_limit_usd,
            project_daily_limit_usd=request.project_daily_limit_usd,
        )
        return {"limits": limits, "summary": runtime.governor.summary()}

    # -------------------------------------------------------------------------
    # Orchestrator
    # -------------------------------------------------------------------------
    @app.post("/orchestrator/stop")
    async def stop_orchestrator():
        task = state["task"]
        if task is None or task.done():
            return {"stopping": False, "detail": "Orchestrator is not running"}
        token.request("operator request")
        return {"stopping": True}

    return app
