"""Dependency injection for the orchestrator."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from orchestrator.storage.data_store import DataStore
    from orchestrator.core.execution_supervisor import ExecutionSupervisor
    from orchestrator.core.session_coordinator import SessionCoordinator

# These will be set by main.py during startup
_data_store = None
_supervisor = None
_coordinator = None


def set_data_store(store) -> None:
    """Set the global data store instance."""
    global _data_store
    _data_store = store


def set_supervisor(supervisor) -> None:
    """Set the global execution supervisor instance."""
    global _supervisor
    _supervisor = supervisor


def set_coordinator(coordinator) -> None:
    """Set the global session coordinator instance."""
    global _coordinator
    _coordinator = coordinator


def get_data_store() -> DataStore:
    """Get the global data store instance."""
    if _data_store is None:
        raise RuntimeError("Data store not initialized")
    return _data_store


def get_supervisor() -> ExecutionSupervisor:
    """Get the global execution supervisor instance."""
    if _supervisor is None:
        raise RuntimeError("Execution supervisor not initialized")
    return _supervisor


def get_coordinator() -> SessionCoordinator:
    """Get the global session coordinator instance."""
    if _coordinator is None:
        raise RuntimeError("Session coordinator not initialized")
    return _coordinator
