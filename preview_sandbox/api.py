"""
HTTP API - FastAPI routes over the sandbox orchestrator.

Every response carries a `success` flag. Orchestrator errors are mapped to
status codes in one place (ERROR_STATUS_CODES) instead of in each route.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from preview_sandbox import __version__
from preview_sandbox.config import Config, configure_logging, get_config
from preview_sandbox.schemas import CreateSandboxRequest, SandboxInfo
from preview_sandbox.sandbox.errors import (
    AlreadyStopped,
    BuildError,
    InvalidRequest,
    InvalidTransition,
    NotFound,
    PoolExhausted,
    ProviderError,
    RuntimeUnavailable,
    SandboxError,
)
from preview_sandbox.sandbox.orchestrator import SandboxOrchestrator

logger = logging.getLogger(__name__)

# Most specific first
ERROR_STATUS_CODES = (
    (NotFound, 404),
    (InvalidRequest, 400),
    (InvalidTransition, 409),
    (BuildError, 422),
    (PoolExhausted, 503),
    (RuntimeUnavailable, 503),
    (ProviderError, 502),
)

router = APIRouter(prefix="/api", tags=["sandbox"])


def get_orchestrator(request: Request) -> SandboxOrchestrator:
    return request.app.state.orchestrator


def _dump(info: SandboxInfo) -> Dict[str, Any]:
    return info.model_dump(mode="json", by_alias=True)


# =============================================================================
# ROUTES
# =============================================================================

@router.post("/sandbox/create")
async def create_sandbox(
    body: CreateSandboxRequest,
    orchestrator: SandboxOrchestrator = Depends(get_orchestrator),
):
    info = await orchestrator.create_sandbox(
        body.project_id,
        body.files,
        body.framework,
        preferred_port=body.preferred_port,
    )
    return {"success": True, "sandbox": _dump(info)}


@router.get("/sandbox/status/{sandbox_id}")
async def sandbox_status(sandbox_id: str, orchestrator: SandboxOrchestrator = Depends(get_orchestrator)):
    info = await orchestrator.get_status(sandbox_id)
    return {"success": True, "sandbox": _dump(info)}


@router.post("/sandbox/stop/{sandbox_id}")
async def stop_sandbox(sandbox_id: str, orchestrator: SandboxOrchestrator = Depends(get_orchestrator)):
    try:
        info = await orchestrator.stop(sandbox_id)
    except AlreadyStopped as e:
        return {"success": True, "alreadyStopped": True, "sandbox": _dump(e.sandbox) if e.sandbox else None}
    return {"success": True, "alreadyStopped": False, "sandbox": _dump(info)}


@router.post("/sandbox/restart/{sandbox_id}")
async def restart_sandbox(sandbox_id: str, orchestrator: SandboxOrchestrator = Depends(get_orchestrator)):
    info = await orchestrator.restart(sandbox_id)
    return {"success": True, "sandbox": _dump(info)}


@router.post("/sandbox/force-restart/{sandbox_id}")
async def force_restart_sandbox(sandbox_id: str, orchestrator: SandboxOrchestrator = Depends(get_orchestrator)):
    info = await orchestrator.force_restart(sandbox_id)
    return {"success": True, "sandbox": _dump(info)}


@router.get("/sandbox/list")
async def list_sandboxes(
    active: bool = Query(False, description="Only sandboxes that are creating, running or restarting"),
    orchestrator: SandboxOrchestrator = Depends(get_orchestrator),
):
    infos = await orchestrator.list_active() if active else await orchestrator.list()
    return {"success": True, "sandboxes": [_dump(i) for i in infos]}


@router.delete("/sandbox/{sandbox_id}")
async def delete_sandbox(sandbox_id: str, orchestrator: SandboxOrchestrator = Depends(get_orchestrator)):
    deleted = await orchestrator.delete(sandbox_id)
    return {"success": True, "deleted": deleted}


@router.get("/sandbox/debug/{sandbox_id}")
async def debug_sandbox(
    sandbox_id: str,
    tail: int = Query(100, ge=1, le=1000),
    orchestrator: SandboxOrchestrator = Depends(get_orchestrator),
):
    info = await orchestrator.get_status(sandbox_id)
    logs = await orchestrator.logs(sandbox_id, tail=tail)
    return {"success": True, "sandbox": _dump(info), "logs": logs}


@router.get("/sandbox/diagnose/{sandbox_id}")
async def diagnose_sandbox(sandbox_id: str, orchestrator: SandboxOrchestrator = Depends(get_orchestrator)):
    diagnosis = await orchestrator.diagnose(sandbox_id)
    return {"success": True, "diagnosis": diagnosis.to_dict()}


@router.post("/cleanup-sandboxes")
async def cleanup_sandboxes(orchestrator: SandboxOrchestrator = Depends(get_orchestrator)):
    cleaned = await orchestrator.cleanup()
    return {"success": True, "cleaned": cleaned}


# =============================================================================
# ERROR HANDLING
# =============================================================================

def status_code_for(error: SandboxError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


async def sandbox_error_handler(request: Request, exc: SandboxError) -> JSONResponse:
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    content: Dict[str, Any] = {"success": False, "error": str(exc)}
    if isinstance(exc, BuildError) and exc.build_log:
        content["buildLog"] = exc.build_log
    return JSONResponse(status_code=status_code, content=content)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    missing = [".".join(str(p) for p in e.get("loc", ())[1:]) for e in exc.errors()]
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": f"Invalid request: {', '.join(m for m in missing if m) or 'malformed body'}",
            "detail": jsonable_encoder(exc.errors()),
        },
    )


# =============================================================================
# APPLICATION
# =============================================================================

def create_app(orchestrator: Optional[SandboxOrchestrator] = None, config: Optional[Config] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        orchestrator: Orchestrator to serve; built from config when omitted
        config: Configuration used to build the orchestrator
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal orchestrator
        if orchestrator is None:
            settings = config or get_config()
            configure_logging(settings)
            orchestrator = SandboxOrchestrator.from_config(settings)
        app.state.orchestrator = orchestrator
        async with orchestrator:
            yield

    app = FastAPI(title="Preview Sandbox", version=__version__, lifespan=lifespan)
    app.include_router(router)
    app.add_exception_handler(SandboxError, sandbox_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app
