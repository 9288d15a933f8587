"""Common data models for the Stress Orchestrator."""

from common.models.use_case import UseCase, UseCaseStatus, ThreadGroupConfig, ServerConfig
from common.models.session import TestSession, SessionStatus
from common.models.execution import ExecutionOutcome

__all__ = [
    "UseCase",
    "UseCaseStatus",
    "ThreadGroupConfig",
    "ServerConfig",
    "TestSession",
    "SessionStatus",
    "ExecutionOutcome",
]
