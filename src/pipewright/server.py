"""pipewright server — FastAPI application for starting builds and approving gates.

Startup:
1. Load the pipeline definition
2. Open the SQLite database and initialize the build registry
3. Create the executor and mount the API router

Shutdown:
1. Abort the running build and wait for it to persist its record
2. Close the HTTP client and the database
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Literal

import aiosqlite
import httpx
from fastapi import APIRouter, FastAPI, HTTPException
from pydantic import BaseModel, Field

from pipewright.config import EngineSettings, load_pipeline, load_settings
from pipewright.pipeline import (
    BuildBusyError,
    BuildRecord,
    BuildRegistry,
    ConfigurationError,
    GateAuthorizationError,
    PipelineDefinition,
    PipelineExecutor,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["builds"])


class PipewrightServer:
    """Owns the database connection, registry and executor for one pipeline."""

    def __init__(self, pipeline_path: Path, settings: EngineSettings | None = None):
        self.pipeline_path = pipeline_path
        self.settings = settings or load_settings()
        self.definition: PipelineDefinition | None = None
        self.db: aiosqlite.Connection | None = None
        self.registry: BuildRegistry | None = None
        self.executor: PipelineExecutor | None = None
        self._http: httpx.AsyncClient | None = None

    async def start(self) -> None:
        self.definition = load_pipeline(self.pipeline_path)

        self.settings.data_dir.mkdir(parents=True, exist_ok=True)
        self.db = await aiosqlite.connect(str(self.settings.db_path))
        self.db.row_factory = aiosqlite.Row
        self.registry = BuildRegistry(self.db)
        await self.registry.initialize()

        self._http = httpx.AsyncClient(timeout=30.0)
        self.executor = PipelineExecutor(
            self.registry, settings=self.settings, http_client=self._http
        )
        logger.info(
            "pipewright server ready: pipeline '%s', data dir %s",
            self.definition.name,
            self.settings.data_dir,
        )

    async def stop(self) -> None:
        if self.executor is not None:
            await self.executor.shutdown()
        if self._http is not None:
            await self._http.aclose()
            self._http = None
        if self.db is not None:
            await self.db.close()
            self.db = None
        logger.info("pipewright server stopped")


# Module-level reference (configured at startup)
_server: PipewrightServer | None = None


def configure(server: PipewrightServer) -> None:
    """Configure the API router with the running server."""
    global _server
    _server = server


def _require_server() -> PipewrightServer:
    if _server is None or _server.executor is None or _server.registry is None:
        raise HTTPException(status_code=503, detail="Server not started")
    return _server


# ── Request Models ───────────────────────────────────────────────────────────


class BuildRequest(BaseModel):
    params: dict[str, str] = {}


class GateDecision(BaseModel):
    approver: str = Field(min_length=1)
    decision: Literal["approve", "abort"] = "approve"


# ── Builds ───────────────────────────────────────────────────────────────────


@router.post("/builds", status_code=202)
async def start_build(request: BuildRequest | None = None):
    """Start a build of the configured pipeline."""
    server = _require_server()
    assert server.definition is not None
    try:
        record, _ = await server.executor.launch_pipeline(
            server.definition, params=request.params if request else None
        )
    except BuildBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {"build_id": record.build_id, "status": record.status.value}


@router.get("/builds")
async def list_builds(limit: int = 50):
    server = _require_server()
    builds = await server.registry.list_builds(limit=limit)
    current = server.executor.current_build
    return {
        "builds": [
            _build_summary(current if current and current.build_id == b.build_id else b)
            for b in builds
        ]
    }


@router.get("/builds/{build_id}")
async def get_build(build_id: int):
    record = await _load_build(build_id)
    return record.model_dump(mode="json")


@router.get("/builds/{build_id}/stages")
async def get_build_stages(build_id: int):
    record = await _load_build(build_id)
    return {"build_id": record.build_id, "status": record.status.value, "stages": record.stage_summary()}


# ── Gates ────────────────────────────────────────────────────────────────────


@router.get("/gates")
async def list_gates():
    """Gates of the current build that are waiting for a decision."""
    server = _require_server()
    return {
        "gates": [
            {
                "path": g.path,
                "message": g.message,
                "timeout": g.timeout,
                "submitters": list(g.submitters),
                "created_at": g.created_at.isoformat(),
            }
            for g in server.executor.gates.pending()
        ]
    }


@router.post("/gates/{path:path}")
async def resolve_gate(path: str, decision: GateDecision):
    server = _require_server()
    gates = server.executor.gates
    try:
        if decision.decision == "approve":
            accepted = gates.approve(path, decision.approver)
        else:
            accepted = gates.abort(path, decision.approver)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"No gate at '{path}'")
    except GateAuthorizationError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {"path": path, "decision": decision.decision, "accepted": accepted}


# ── Helpers ──────────────────────────────────────────────────────────────────


async def _load_build(build_id: int) -> BuildRecord:
    server = _require_server()
    current = server.executor.current_build
    if current is not None and current.build_id == build_id:
        return current
    record = await server.registry.get_build(build_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Build #{build_id} not found")
    return record


def _build_summary(record: BuildRecord) -> dict:
    return {
        "build_id": record.build_id,
        "pipeline_name": record.pipeline_name,
        "status": record.status.value,
        "timed_out": record.timed_out,
        "started_at": record.started_at.isoformat() if record.started_at else None,
        "completed_at": record.completed_at.isoformat() if record.completed_at else None,
        "duration_seconds": record.duration_seconds,
        "error_message": record.error_message,
    }


# ── FastAPI App ──────────────────────────────────────────────────────────────


def create_app(pipeline_path: Path, settings: EngineSettings | None = None) -> FastAPI:
    """Create the FastAPI application for one pipeline definition."""
    server = PipewrightServer(pipeline_path, settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await server.start()
        configure(server)
        yield
        await server.stop()

    app = FastAPI(
        title="pipewright",
        version="0.1.0",
        description="Single-node CI/CD pipeline execution engine",
        lifespan=lifespan,
    )
    app.include_router(router)

    @app.get("/health")
    async def health():
        current = server.executor.current_build if server.executor else None
        return {
            "status": "ok",
            "pipeline": server.definition.name if server.definition else None,
            "current_build": current.build_id if current else None,
        }

    return app
