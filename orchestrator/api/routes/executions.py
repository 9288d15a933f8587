"""Live execution endpoints."""

from __future__ import annotations

from fastapi import APIRouter

from orchestrator.dependencies import get_supervisor

router = APIRouter()


@router.get("/running")
async def list_running_executions():
    """List engine processes the supervisor currently owns."""
    running = await get_supervisor().list_running()

    return {
        "executions": running,
        "total": len(running),
    }
