"""Orchestrator exception hierarchy."""

from __future__ import annotations

from typing import Optional


class OrchestratorError(Exception):
    """Base class for orchestrator errors."""

    def __init__(self, message: str, use_case_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.use_case_id = use_case_id


class ConfigurationParseError(OrchestratorError):
    """Per-use-case JSON configuration could not be parsed."""


class EngineNotFoundError(OrchestratorError):
    """No readable JMeter executable was found."""

    def __init__(self, message: str, candidates: list[str], use_case_id: Optional[str] = None):
        super().__init__(message, use_case_id)
        self.candidates = candidates


class InvalidEnginePathError(OrchestratorError):
    """A JMeter path supplied at run time cannot be used."""


class MissingArtifactError(OrchestratorError):
    """The test plan or a required data file does not exist."""

    def __init__(self, message: str, path: Optional[str], use_case_id: Optional[str] = None):
        super().__init__(message, use_case_id)
        self.path = path


class ProcessSpawnError(OrchestratorError):
    """I/O failure while launching or streaming the engine process."""


class ProcessTimeoutError(OrchestratorError):
    """The engine exceeded the hard wall-clock cap."""

    def __init__(self, message: str, timeout: float, use_case_id: Optional[str] = None):
        super().__init__(message, use_case_id)
        self.timeout = timeout


class CancellationError(OrchestratorError):
    """The run was stopped on request."""


class ExecutionAlreadyRunningError(OrchestratorError):
    """A run for this use case is already in flight."""


class UseCaseNotFoundError(OrchestratorError):
    """Referenced use case does not exist."""


class SessionNotFoundError(OrchestratorError):
    """Referenced test session does not exist."""


class InvalidSessionError(OrchestratorError):
    """Session definition is not valid."""


class InvalidSessionStateError(OrchestratorError):
    """Operation is not allowed in the session's current status."""
