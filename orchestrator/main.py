"""Stress Orchestrator - API Application."""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from orchestrator.config import get_settings
from orchestrator.core.exceptions import (
    ConfigurationParseError,
    ExecutionAlreadyRunningError,
    InvalidEnginePathError,
    InvalidSessionError,
    InvalidSessionStateError,
    OrchestratorError,
    SessionNotFoundError,
    UseCaseNotFoundError,
)
from orchestrator.core.execution_supervisor import ExecutionSupervisor
from orchestrator.core.session_coordinator import SessionCoordinator
from orchestrator.dependencies import (
    get_supervisor,
    set_coordinator,
    set_data_store,
    set_supervisor,
)
from orchestrator.storage.data_store import DataStore

# Configure logging
logging.basicConfig(
    level=get_settings().log_level.upper(),
    format=get_settings().log_format,
    handlers=[logging.StreamHandler(sys.stdout)]
)
logger = logging.getLogger(__name__)

# HTTP status for each domain error; anything else is a 500
ERROR_STATUS_CODES = [
    (UseCaseNotFoundError, 404),
    (SessionNotFoundError, 404),
    (InvalidSessionError, 400),
    (ConfigurationParseError, 400),
    (InvalidEnginePathError, 400),
    (InvalidSessionStateError, 409),
    (ExecutionAlreadyRunningError, 409),
]


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Application lifespan manager."""
    settings = get_settings()
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")

    data_store = DataStore(settings.data_path)
    set_data_store(data_store)
    logger.info(f"Data store initialized at {settings.data_path}")

    if settings.use_cases_file:
        await data_store.import_use_cases(settings.use_cases_file)

    supervisor = ExecutionSupervisor(data_store, settings)
    set_supervisor(supervisor)
    set_coordinator(SessionCoordinator(data_store, supervisor))

    try:
        yield
    finally:
        reports = await get_supervisor().stop_all()
        if reports:
            logger.info(f"Stopped {len(reports)} running tests on shutdown")
        logger.info("Orchestrator shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="JMeter load test orchestration",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(OrchestratorError)
    async def orchestrator_exception_handler(request: Request, exc: OrchestratorError):
        status_code = next(
            (code for error_type, code in ERROR_STATUS_CODES if isinstance(exc, error_type)),
            500,
        )
        if status_code == 500:
            logger.error(f"Unhandled orchestrator error: {exc.message}", exc_info=exc)
        return JSONResponse(
            status_code=status_code,
            content={"detail": exc.message, "error": type(exc).__name__},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error", "error": str(exc)},
        )

    # Register routers
    from orchestrator.api.routes import use_cases, sessions, executions, system

    app.include_router(system.router, prefix="/api/v1/system", tags=["System"])
    app.include_router(use_cases.router, prefix="/api/v1/use-cases", tags=["Use Cases"])
    app.include_router(sessions.router, prefix="/api/v1/sessions", tags=["Sessions"])
    app.include_router(executions.router, prefix="/api/v1/executions", tags=["Executions"])

    # HTML reports produced by the engine
    app.mount(
        "/reports",
        StaticFiles(directory=settings.reports_path, check_dir=False),
        name="reports",
    )

    # Root endpoint
    @app.get("/")
    async def root():
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "status": "running",
        }

    # Health check endpoint
    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    return app


# Create the app instance
app = create_app()


def main():
    """Entry point for running the orchestrator."""
    settings = get_settings()

    # Configure logging level
    logging.getLogger().setLevel(settings.log_level.upper())

    logger.info(f"Starting orchestrator on {settings.host}:{settings.port}")

    uvicorn.run(
        "orchestrator.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
