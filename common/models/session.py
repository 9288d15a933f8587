"""Test session models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from common.models.use_case import UseCaseStatus


class SessionStatus(str, Enum):
    """Aggregated session status."""
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    PARTIAL_SUCCESS = "PARTIAL_SUCCESS"

    @property
    def is_terminal(self) -> bool:
        return self in (
            SessionStatus.SUCCESS,
            SessionStatus.FAILED,
            SessionStatus.PARTIAL_SUCCESS,
        )


class TestSession(BaseModel):
    """A group of use cases run concurrently."""
    id: str = Field(..., description="Unique session identifier")
    name: str = Field(..., description="Session name")
    description: Optional[str] = None

    # Members, ordered by priority ascending
    use_case_ids: list[str] = Field(default_factory=list)
    user_counts: dict[str, int] = Field(default_factory=dict)

    status: SessionStatus = Field(default=SessionStatus.IDLE)

    # Timing
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # Counters
    total_users: int = Field(default=0)
    use_case_count: int = Field(default=0)
    success_count: int = Field(default=0)
    failure_count: int = Field(default=0)

    # Per-member state
    use_case_statuses: dict[str, str] = Field(default_factory=dict)
    use_case_report_urls: dict[str, str] = Field(default_factory=dict)

    user_id: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.status == SessionStatus.RUNNING

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def member_is_terminal(self, use_case_id: str) -> bool:
        """Check whether a member has reached a terminal status."""
        status = self.use_case_statuses.get(use_case_id)
        if status is None:
            return False
        return UseCaseStatus(status).is_terminal

    @property
    def all_members_terminal(self) -> bool:
        return bool(self.use_case_ids) and all(
            self.member_is_terminal(uc_id) for uc_id in self.use_case_ids
        )

    @property
    def duration_seconds(self) -> int:
        """Elapsed run time of the session."""
        if self.started_at is None:
            return 0
        end_time = self.completed_at or datetime.now(self.started_at.tzinfo)
        return int((end_time - self.started_at).total_seconds())
