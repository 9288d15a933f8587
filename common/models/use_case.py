"""Use case models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class UseCaseStatus(str, Enum):
    """Use case run status."""
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    STOPPED = "STOPPED"

    @property
    def is_terminal(self) -> bool:
        return self in (UseCaseStatus.SUCCESS, UseCaseStatus.FAILED, UseCaseStatus.STOPPED)


class ThreadGroupConfig(BaseModel):
    """Thread group settings declared on a use case.

    Keys arrive in the camelCase form used by the UI. A field left as None
    was not supplied and leaves the test plan untouched.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    number_of_threads: Optional[int] = Field(default=None, alias="numberOfThreads")
    ramp_up_period: Optional[int] = Field(default=None, alias="rampUpPeriod")
    loop_count: Optional[int] = Field(default=None, alias="loopCount")
    infinite_loop: Optional[bool] = Field(default=None, alias="infiniteLoop")
    same_user_on_each_iteration: Optional[bool] = Field(default=None, alias="sameUserOnEachIteration")
    delay_thread_creation: Optional[bool] = Field(default=None, alias="delayThreadCreation")
    duration: Optional[int] = Field(default=None, ge=0, description="Duration in seconds")
    startup_delay: Optional[int] = Field(default=None, ge=0, alias="startupDelay")
    specify_thread_lifetime: Optional[bool] = Field(default=None, alias="specifyThreadLifetime")
    action_after_sampler_error: Optional[str] = Field(default=None, alias="actionAfterSamplerError")


class ServerConfig(BaseModel):
    """Target server settings declared on a use case."""
    model_config = ConfigDict(extra="ignore")

    server: Optional[str] = Field(default=None, description="Host name or IP")
    port: Optional[Union[int, str]] = Field(default=None)
    protocol: Optional[str] = Field(default=None, description="http or https")


class UseCase(BaseModel):
    """A single JMeter test unit and the state of its latest run."""
    id: str = Field(..., description="Unique use case identifier")
    name: str = Field(..., description="Use case name")
    description: Optional[str] = None

    # Artifacts
    jmx_path: str = Field(..., description="Path to the JMeter test plan")
    csv_path: Optional[str] = Field(default=None, description="Path to the CSV data file")
    requires_csv: bool = Field(default=False)

    # Declared configuration, kept as the raw JSON the UI submitted
    thread_group_config: Optional[str] = None
    server_config: Optional[str] = None

    # Run state
    status: UseCaseStatus = Field(default=UseCaseStatus.IDLE)
    user_count: Optional[int] = Field(default=None, ge=0)
    priority: Optional[int] = Field(default=None, description="Lower runs first")
    test_session_id: Optional[str] = None

    # Timing
    created_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    test_started_at: Optional[datetime] = None
    test_completed_at: Optional[datetime] = None
    test_duration_seconds: Optional[int] = None
    expected_duration_seconds: Optional[int] = None

    # Results
    last_report_url: Optional[str] = None
    error_message: Optional[str] = None

    user_id: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.status == UseCaseStatus.RUNNING

    @property
    def needs_csv(self) -> bool:
        """True when a data file has to be present before launch."""
        return self.requires_csv or bool(self.csv_path and self.csv_path.strip())
