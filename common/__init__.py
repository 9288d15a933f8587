"""Common utilities and models shared across the orchestrator and CLI."""

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
