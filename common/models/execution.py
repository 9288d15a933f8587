"""Execution models for test runs."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

from common.models.use_case import UseCaseStatus


class ExecutionOutcome(BaseModel):
    """Terminal result of one use case run."""
    use_case_id: str
    status: UseCaseStatus
    exit_code: Optional[int] = None
    duration_seconds: int = Field(default=0, description="Wall-clock run time")
    report_url: Optional[str] = Field(default=None, description="Relative URL of the HTML report")
    error: Optional[str] = None
    error_artifact: Optional[str] = Field(default=None, description="Path of the error report file")

    @property
    def succeeded(self) -> bool:
        return self.status == UseCaseStatus.SUCCESS
