"""FastAPI application entry point."""

import asyncio
import contextlib
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from deployflow.api.v1 import environments, executions, pipelines, templates
from deployflow.core.config import settings
from deployflow.core.logging import get_logger, setup_logging
from deployflow.db.persist import PersistenceSubscriber
from deployflow.pipeline.errors import (
    ApprovalError,
    ApprovalNotFoundError,
    EnvironmentBusyError,
    EnvironmentNotFoundError,
    ExecutionNotFoundError,
    ExecutionTerminalError,
    PipelineDefinitionError,
    PipelineError,
    PipelineInactiveError,
    PipelineNotFoundError,
    TemplateNotFoundError,
)
from deployflow.pipeline.service import DeploymentService

# Exception class → HTTP status; handlers are resolved along the MRO
ERROR_STATUS = {
    PipelineNotFoundError: 404,
    ExecutionNotFoundError: 404,
    ApprovalNotFoundError: 404,
    EnvironmentNotFoundError: 404,
    TemplateNotFoundError: 404,
    EnvironmentBusyError: 409,
    ExecutionTerminalError: 409,
    PipelineInactiveError: 409,
    PipelineDefinitionError: 422,
    ApprovalError: 422,
    PipelineError: 400,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle hooks."""
    setup_logging("DEBUG" if settings.APP_ENV == "development" else None)
    logger = get_logger("startup")
    logger.info("Application starting", env=settings.APP_ENV)

    service: DeploymentService = app.state.service
    if settings.PERSIST_EXECUTIONS:
        service.events.subscribe(PersistenceSubscriber(service.engine.get))

    monitor_task = None
    if settings.HEALTH_MONITOR_ENABLED:
        monitor_task = asyncio.create_task(service.monitor.run_forever(), name="health-monitor")

    yield

    logger.info("Application shutting down")
    if monitor_task is not None:
        monitor_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await monitor_task
    await service.shutdown()


async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    status_code = next(
        (ERROR_STATUS[cls] for cls in type(exc).__mro__ if cls in ERROR_STATUS), 400
    )
    content = {"detail": str(exc), "error": type(exc).__name__}
    if exc.execution_id:
        content["execution_id"] = exc.execution_id
    if isinstance(exc, EnvironmentBusyError):
        content["environment"] = exc.environment
        content["holder"] = exc.holder
    return JSONResponse(status_code=status_code, content=content)


def create_app(service: DeploymentService | None = None) -> FastAPI:
    app = FastAPI(
        title="DeployFlow API",
        description="Deployment pipeline execution engine",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.service = service or DeploymentService()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Restrict in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(PipelineError, pipeline_error_handler)

    api_prefix = "/api/v1"
    app.include_router(pipelines.router, prefix=api_prefix)
    app.include_router(executions.router, prefix=api_prefix)
    app.include_router(environments.router, prefix=api_prefix)
    app.include_router(templates.router, prefix=api_prefix)

    @app.get("/health", tags=["Health"])
    async def health_check() -> dict:
        """Public health-check endpoint."""
        running = app.state.service.engine.running()
        return {"status": "ok", "env": settings.APP_ENV, "running_executions": len(running)}

    return app


app = create_app()
