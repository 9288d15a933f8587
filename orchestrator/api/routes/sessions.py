"""Test session endpoints."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from orchestrator.core.exceptions import SessionNotFoundError
from orchestrator.dependencies import get_coordinator

router = APIRouter()


class SessionCreate(BaseModel):
    """Request model for creating a test session."""
    name: str
    description: Optional[str] = None
    use_case_ids: list[str] = Field(default_factory=list)
    user_counts: dict[str, int] = Field(default_factory=dict)
    user_id: Optional[str] = None


@router.get("/")
async def list_sessions(user_id: Optional[str] = None):
    """List test sessions."""
    sessions = await get_coordinator().list_sessions(user_id=user_id)

    return {
        "sessions": [s.model_dump(mode="json") for s in sessions],
        "total": len(sessions),
    }


@router.get("/running")
async def list_running_sessions():
    """List sessions that are currently running."""
    sessions = await get_coordinator().running_sessions()

    return {
        "sessions": [s.model_dump(mode="json") for s in sessions],
        "total": len(sessions),
    }


@router.post("/", status_code=201)
async def create_session(request: SessionCreate):
    """Create a test session from existing use cases."""
    session = await get_coordinator().create(
        name=request.name,
        use_case_ids=request.use_case_ids,
        user_counts=request.user_counts,
        description=request.description,
        user_id=request.user_id,
    )
    return session.model_dump(mode="json")


@router.get("/{session_id}")
async def get_session(session_id: str):
    """Get a test session with its aggregated member status."""
    session = await get_coordinator().get_status(session_id)
    if session is None:
        raise SessionNotFoundError(f"Test session '{session_id}' not found")
    return session.model_dump(mode="json")


@router.post("/{session_id}/start", status_code=202)
async def start_session(session_id: str):
    """Start every use case of an IDLE session concurrently."""
    session = await get_coordinator().start(session_id)

    return {
        "message": "Test session started",
        "session_id": session_id,
        "use_case_count": session.use_case_count,
    }


@router.post("/{session_id}/stop")
async def stop_session(session_id: str):
    """Stop a running session and all its use cases."""
    coordinator = get_coordinator()
    if await coordinator.get_status(session_id) is None:
        raise SessionNotFoundError(f"Test session '{session_id}' not found")

    if not await coordinator.stop(session_id):
        raise HTTPException(
            status_code=409,
            detail=f"Test session '{session_id}' is not running",
        )

    return {"message": "Test session stopped", "session_id": session_id}
