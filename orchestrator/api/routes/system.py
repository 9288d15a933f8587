"""System management endpoints."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel, Field

from orchestrator.config import get_settings
from orchestrator.core.exceptions import InvalidEnginePathError
from orchestrator.core.execution_supervisor import check_engine_path
from orchestrator.dependencies import get_data_store, get_supervisor

logger = logging.getLogger(__name__)

router = APIRouter()


class SettingsUpdate(BaseModel):
    """Request model for changing the engine location."""
    jmeter_path: str = Field(..., min_length=1)
    jmeter_alternative_paths: Optional[list[str]] = None


class EnginePathCheck(BaseModel):
    """Request model for checking a candidate engine location."""
    path: str = Field(..., min_length=1)


def _engine_settings() -> dict:
    settings = get_settings()
    return {
        "jmeter_path": settings.jmeter_path,
        "jmeter_alternative_paths": settings.alternative_jmeter_paths,
        "jmeter_remote_enabled": settings.jmeter_remote_enabled,
        "jmeter_remote_host": settings.jmeter_remote_host,
    }


@router.get("/health")
async def health_check():
    """Check system health."""
    store = get_data_store()
    running = await get_supervisor().list_running()
    return {
        "status": "healthy",
        "components": {
            "api": "healthy",
            "database": "healthy" if store.db_path.exists() else "missing",
        },
        "running_executions": len(running),
    }


@router.get("/config")
async def get_config():
    """Get system configuration (non-sensitive)."""
    settings = get_settings()
    return {
        "app_name": settings.app_name,
        "app_version": settings.app_version,
        "data_path": str(settings.data_path),
        "jmeter_path": settings.jmeter_path,
        "jmeter_remote_enabled": settings.jmeter_remote_enabled,
        "run_timeout_seconds": settings.run_timeout_seconds,
        "default_duration_seconds": settings.default_duration_seconds,
        "loop_precedence": settings.loop_precedence.value,
    }


@router.get("/settings")
async def get_engine_settings():
    """Get the engine location used for new runs."""
    return _engine_settings()


@router.post("/settings")
async def update_engine_settings(request: SettingsUpdate):
    """Point new runs at another engine. Runs already in flight are unaffected."""
    path = request.jmeter_path.strip()
    problem = check_engine_path(path)
    if problem:
        raise InvalidEnginePathError(f"{problem}: {path}")

    settings = get_settings()
    settings.jmeter_path = path
    if request.jmeter_alternative_paths is not None:
        settings.jmeter_alternative_paths = ",".join(
            p.strip() for p in request.jmeter_alternative_paths if p.strip()
        )
    logger.info(f"JMeter path set to {path}")

    return {"message": "Settings updated successfully", **_engine_settings()}


@router.post("/validate-jmeter")
async def validate_engine_path(request: EnginePathCheck):
    """Check whether a path could be used as the engine without changing anything."""
    path = request.path.strip()
    problem = check_engine_path(path) if path else "Path is required"
    return {
        "valid": problem is None,
        "path": path,
        "message": problem or "JMeter path is valid",
    }


@router.get("/version")
async def get_version():
    """Get application version."""
    settings = get_settings()
    return {
        "name": settings.app_name,
        "version": settings.app_version,
    }
