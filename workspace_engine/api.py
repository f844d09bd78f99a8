"""
FastAPI application for the workspace engine.
"""

from __future__ import annotations

import importlib.metadata
from collections.abc import AsyncGenerator, Generator
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import structlog
from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from .config import get_settings
from .context import Credentials, EngineContext, build_context
from .db.base import init_database
from .engine.lifecycle import AppController, OperationResult, WorkflowController, start_workspace
from .engine.updates import UpdateChecker, UpdateManager
from .errors import (
    APP_OPERATION_STATUSES,
    INVALID_APP,
    STATUS_OK,
    AuthenticationError,
    EngineError,
    ValidationError,
)
from .logging_config import configure_logging
from .schemas import ArtifactRef, OperationResponse

logger = structlog.get_logger()

BEARER_PREFIX = "Bearer "


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    settings = get_settings()
    configure_logging(settings)
    logger.info("engine_starting", environment=settings.environment)

    ctx = build_context(settings)
    init_database(ctx.db_engine)
    app.state.context = ctx

    checker: Optional[UpdateChecker] = None
    if settings.update_check_enabled:
        checker = UpdateChecker(
            UpdateManager(ctx), settings.update_check_interval_minutes * 60
        )
        await checker.start()

    yield

    logger.info("engine_stopping")
    if checker:
        await checker.stop()
    ctx.http_client.close()
    logger.info("engine_stopped")


app = FastAPI(
    title="Workspace Engine",
    description="Installs, runs and schedules workspace workflows and apps",
    version=importlib.metadata.version("workspace-engine"),
    lifespan=lifespan,
)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    status_code = 401 if isinstance(exc, AuthenticationError) else 400
    logger.warning("request_failed", path=request.url.path, code=exc.code, error=exc.message)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


# Dependencies
def get_context(request: Request) -> EngineContext:
    return request.app.state.context


def get_db(ctx: EngineContext = Depends(get_context)) -> Generator[Session, None, None]:
    """Session on the engine's record store."""
    db = ctx.session()
    try:
        yield db
    finally:
        db.close()


def get_bearer_token(authorization: Optional[str] = Header(default=None)) -> str:
    if not authorization or not authorization.startswith(BEARER_PREFIX):
        raise AuthenticationError("Missing bearer token.")
    return authorization


def get_credentials(
    bearer_token: str = Depends(get_bearer_token),
    ctx: EngineContext = Depends(get_context),
) -> Credentials:
    return ctx.credentials_for(bearer_token)


def render(result: OperationResult, message: str) -> JSONResponse:
    """Code/Message/Output body: report URL on success, the error otherwise."""
    if result.ok:
        body = OperationResponse(code=STATUS_OK, message=result.report or message, output=result.output)
        return JSONResponse(status_code=200, content=body.model_dump(by_alias=True))
    body = OperationResponse(
        code=result.error.code, message=result.error.message, output=result.output
    )
    return JSONResponse(status_code=400, content=body.model_dump(by_alias=True))


def ok(message: str = "", output: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return OperationResponse(code=STATUS_OK, message=message, output=output).model_dump(
        by_alias=True
    )


# Health and Info Endpoints
@app.get("/healthz")
def healthz() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/version")
def version() -> dict[str, str]:
    """Return the version of the application."""
    return {"version": importlib.metadata.version("workspace-engine")}


# Workflow Endpoints
@app.post("/api/workflows/execute", tags=["workflows"])
def execute_workflow(
    workflow: ArtifactRef,
    credentials: Credentials = Depends(get_credentials),
    ctx: EngineContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> JSONResponse:
    result = WorkflowController(ctx, db).run(workflow, credentials)
    return render(result, "The workflow has been executed.")


@app.post("/api/workflows/schedule", tags=["workflows"])
def schedule_workflow(
    workflow: ArtifactRef,
    credentials: Credentials = Depends(get_credentials),
    ctx: EngineContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    schedule = WorkflowController(ctx, db).schedule(workflow, credentials)
    return ok("The workflow has been scheduled.", schedule.to_dict())


@app.get("/api/workflows/history", tags=["workflows"])
def workflow_history(
    limit: int = 5,
    bearer_token: str = Depends(get_bearer_token),
    ctx: EngineContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return ok(output={"workflows": WorkflowController(ctx, db).history(limit)})


# App Endpoints
@app.get("/api/apps", tags=["apps"])
def list_apps(
    bearer_token: str = Depends(get_bearer_token),
    ctx: EngineContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    return ok(output={"apps": AppController(ctx, db).list_installed()})


@app.post("/api/apps/uninstall", tags=["apps"])
def uninstall_app(
    app_ref: ArtifactRef,
    credentials: Credentials = Depends(get_credentials),
    ctx: EngineContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> JSONResponse:
    result = AppController(ctx, db).uninstall(app_ref, credentials)
    return render(result, "The app has been uninstalled.")


@app.post("/api/apps/{operation}", tags=["apps"])
def handle_app(
    operation: str,
    app_ref: ArtifactRef,
    credentials: Credentials = Depends(get_credentials),
    ctx: EngineContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> JSONResponse:
    if operation not in APP_OPERATION_STATUSES or operation == "uninstall":
        raise ValidationError(INVALID_APP, f"Unknown app operation: {operation}")
    result = AppController(ctx, db).run(app_ref, credentials, operation)
    return render(result, f"The app operation {operation} has been completed.")


# Engine Endpoints
@app.get("/api/engine/runStartupTasks", tags=["engine"])
def run_startup_tasks(
    credentials: Credentials = Depends(get_credentials),
    ctx: EngineContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> JSONResponse:
    result = WorkflowController(ctx, db).run_startup_tasks(credentials)
    return render(result, result.status or "Startup tasks have been executed.")


@app.get("/api/engine/start", tags=["engine"])
def start(
    credentials: Credentials = Depends(get_credentials),
    ctx: EngineContext = Depends(get_context),
    db: Session = Depends(get_db),
) -> JSONResponse:
    result = start_workspace(ctx, db, credentials)
    return render(result, result.status)


@app.get("/api/engine/config", tags=["engine"])
def frontend_config(
    bearer_token: str = Depends(get_bearer_token),
    ctx: EngineContext = Depends(get_context),
) -> Dict[str, Any]:
    """Frontend section of workspace.yml; marks the frontend as launched."""
    frontend = ctx.workspace.frontend.model_dump()
    if not frontend["first_time_launched"]:
        ctx.config_manager.update("frontend.first_time_launched", True)
    return frontend
