"""Use case endpoints."""

from __future__ import annotations

import json
from typing import Optional, Union

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field, ValidationError

from common.models.use_case import UseCase
from common.utils import generate_use_case_id
from orchestrator.core.config_mutator import load_server_config, load_thread_group_config
from orchestrator.core.exceptions import UseCaseNotFoundError
from orchestrator.dependencies import get_data_store, get_supervisor

router = APIRouter()


class UseCaseCreate(BaseModel):
    """Request model for registering a use case."""
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    jmx_path: str
    csv_path: Optional[str] = None
    requires_csv: bool = False
    thread_group_config: Optional[Union[dict, str]] = None
    server_config: Optional[Union[dict, str]] = None
    priority: Optional[int] = None
    user_id: Optional[str] = None


class UseCaseUpdate(BaseModel):
    """Request model for editing a use case."""
    name: Optional[str] = None
    description: Optional[str] = None
    jmx_path: Optional[str] = Field(default=None, min_length=1)
    csv_path: Optional[str] = None
    requires_csv: Optional[bool] = None
    thread_group_config: Optional[Union[dict, str]] = None
    server_config: Optional[Union[dict, str]] = None
    priority: Optional[int] = None


class RunRequest(BaseModel):
    """Request model for starting a run."""
    user_count: int = Field(..., ge=1)


def _as_json_text(value: Union[dict, str, None]) -> Optional[str]:
    if isinstance(value, dict):
        return json.dumps(value)
    return value


async def _require_use_case(use_case_id: str) -> UseCase:
    use_case = await get_data_store().get_use_case(use_case_id)
    if use_case is None:
        raise UseCaseNotFoundError(f"Use case '{use_case_id}' not found", use_case_id)
    return use_case


@router.get("/")
async def list_use_cases(user_id: Optional[str] = None, status: Optional[str] = None):
    """List use cases."""
    store = get_data_store()
    use_cases = await store.list_use_cases(user_id=user_id, status=status)

    return {
        "use_cases": [uc.model_dump(mode="json") for uc in use_cases],
        "total": len(use_cases),
    }


@router.post("/", status_code=201)
async def create_use_case(request: UseCaseCreate):
    """Register a new use case."""
    # Reject malformed configuration up front rather than at run time
    load_thread_group_config(request.thread_group_config)
    load_server_config(request.server_config)

    use_case = UseCase(
        id=generate_use_case_id(),
        name=request.name,
        description=request.description,
        jmx_path=request.jmx_path,
        csv_path=request.csv_path,
        requires_csv=request.requires_csv,
        thread_group_config=_as_json_text(request.thread_group_config),
        server_config=_as_json_text(request.server_config),
        priority=request.priority,
        user_id=request.user_id,
    )
    await get_data_store().save_use_case(use_case)
    return use_case.model_dump(mode="json")


@router.get("/{use_case_id}")
async def get_use_case(use_case_id: str):
    """Get a use case and the state of its latest run."""
    use_case = await _require_use_case(use_case_id)
    return use_case.model_dump(mode="json")


@router.put("/{use_case_id}")
async def update_use_case(use_case_id: str, request: UseCaseUpdate):
    """Edit a use case that is not running; omitted fields are kept."""
    use_case = await _require_use_case(use_case_id)
    if get_supervisor().is_running(use_case_id):
        raise HTTPException(
            status_code=409,
            detail=f"Use case '{use_case_id}' is running; stop it first",
        )

    changes = request.model_dump(exclude_unset=True)
    if "name" in changes:
        if not changes["name"] or not changes["name"].strip():
            raise HTTPException(status_code=400, detail="Name cannot be empty")
        changes["name"] = changes["name"].strip()
    if "thread_group_config" in changes:
        load_thread_group_config(changes["thread_group_config"])
        changes["thread_group_config"] = _as_json_text(changes["thread_group_config"])
    if "server_config" in changes:
        load_server_config(changes["server_config"])
        changes["server_config"] = _as_json_text(changes["server_config"])

    try:
        updated = UseCase.model_validate({**use_case.model_dump(), **changes})
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    await get_data_store().save_use_case(updated)
    return updated.model_dump(mode="json")


@router.delete("/{use_case_id}")
async def delete_use_case(use_case_id: str):
    """Delete a use case that is not running."""
    await _require_use_case(use_case_id)
    if get_supervisor().is_running(use_case_id):
        raise HTTPException(
            status_code=409,
            detail=f"Use case '{use_case_id}' is running; stop it first",
        )

    await get_data_store().delete_use_case(use_case_id)
    return {"message": "Use case deleted", "use_case_id": use_case_id}


@router.post("/{use_case_id}/run", status_code=202)
async def run_use_case(use_case_id: str, request: RunRequest):
    """Start a run in the background."""
    await _require_use_case(use_case_id)
    get_supervisor().start(use_case_id, request.user_count)

    return {
        "message": "Test started",
        "use_case_id": use_case_id,
        "user_count": request.user_count,
    }


@router.post("/{use_case_id}/stop")
async def stop_use_case(use_case_id: str):
    """Stop a run; stray engine processes are swept even without a live run."""
    report = await get_supervisor().stop(use_case_id)

    return {
        "message": "Test stopped",
        "use_case_id": use_case_id,
        "confirmed": report.confirmed,
        "termination": report.model_dump(),
    }


@router.get("/{use_case_id}/log")
async def get_use_case_log(use_case_id: str):
    """Run history of a use case."""
    await _require_use_case(use_case_id)
    lines = get_data_store().read_log(use_case_id)
    return {"use_case_id": use_case_id, "lines": lines}
