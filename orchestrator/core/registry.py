"""Registry of in-flight engine processes."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from common.utils import utcnow, elapsed_seconds
from orchestrator.core.exceptions import ExecutionAlreadyRunningError

logger = logging.getLogger(__name__)


@dataclass
class ExecutionHandle:
    """A live engine process owned by the supervisor."""
    use_case_id: str
    process: asyncio.subprocess.Process
    command: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    stop_requested: bool = False

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid

    @property
    def is_alive(self) -> bool:
        return self.process.returncode is None

    def to_dict(self) -> dict:
        return {
            "use_case_id": self.use_case_id,
            "pid": self.pid,
            "started_at": self.started_at.isoformat(),
            "elapsed_seconds": elapsed_seconds(self.started_at),
            "alive": self.is_alive,
            "stop_requested": self.stop_requested,
        }


class ExecutionRegistry:
    """Lock-guarded map of use case id to live execution handle.

    A run goes through ``reserve`` or ``begin_launch``, then ``register`` and
    ``release`` (natural completion), or is claimed by ``request_stop`` and then
    ``discard``-ed by the stop path. A stop that finds only a reservation leaves
    a pending cancel that lasts until ``end_launch``.
    """

    def __init__(self):
        self._handles: dict[str, ExecutionHandle] = {}
        self._launching: set[str] = set()
        self._cancelled: set[str] = set()
        self._lock = asyncio.Lock()

    def reserve(self, use_case_id: str) -> None:
        """Reserve the use case for a new run without yielding to the loop.

        Callers that schedule the run on a task reserve here first, so a stop
        arriving before the task gets to run still finds the reservation.
        Locked sections never await, so this cannot interleave with them.
        """
        if use_case_id in self._handles or use_case_id in self._launching:
            raise ExecutionAlreadyRunningError(
                f"Use case {use_case_id} is already running", use_case_id
            )
        self._launching.add(use_case_id)

    async def begin_launch(self, use_case_id: str) -> None:
        """Reserve the use case for a new run."""
        async with self._lock:
            self.reserve(use_case_id)

    async def launch_cancelled(self, use_case_id: str) -> bool:
        """Whether a stop claimed the reservation before a process was spawned."""
        async with self._lock:
            return use_case_id in self._cancelled

    async def end_launch(self, use_case_id: str) -> None:
        """Drop a reservation that never produced a registered process."""
        async with self._lock:
            self._launching.discard(use_case_id)
            self._cancelled.discard(use_case_id)

    async def register(self, handle: ExecutionHandle) -> bool:
        """Register a spawned process.

        Returns False when a stop arrived while the run was launching; the
        caller must then terminate the process itself.
        """
        async with self._lock:
            self._launching.discard(handle.use_case_id)
            if handle.use_case_id in self._cancelled:
                self._cancelled.discard(handle.use_case_id)
                handle.stop_requested = True
                return False
            self._handles[handle.use_case_id] = handle
            logger.debug(f"Registered {handle.use_case_id} (pid {handle.pid})")
            return True

    async def request_stop(self, use_case_id: str) -> Optional[ExecutionHandle]:
        """Claim a run for the stop path and return its handle, if any."""
        async with self._lock:
            handle = self._handles.get(use_case_id)
            if handle is not None:
                handle.stop_requested = True
            elif use_case_id in self._launching:
                self._cancelled.add(use_case_id)
            return handle

    async def release(self, handle: ExecutionHandle) -> bool:
        """Remove a handle after natural completion.

        Returns False when the stop path has claimed the run, in which case the
        handle stays for the stop path to discard.
        """
        async with self._lock:
            if handle.stop_requested:
                return False
            if self._handles.get(handle.use_case_id) is handle:
                del self._handles[handle.use_case_id]
            return True

    async def discard(self, handle: ExecutionHandle) -> None:
        """Remove a handle on the stop path."""
        async with self._lock:
            if self._handles.get(handle.use_case_id) is handle:
                del self._handles[handle.use_case_id]

    async def get(self, use_case_id: str) -> Optional[ExecutionHandle]:
        async with self._lock:
            return self._handles.get(use_case_id)

    def contains(self, use_case_id: str) -> bool:
        return use_case_id in self._handles or use_case_id in self._launching

    async def snapshot(self) -> list[dict]:
        """Point-in-time copy of the registry for diagnostics."""
        async with self._lock:
            return [handle.to_dict() for handle in self._handles.values()]

    def __len__(self) -> int:
        return len(self._handles)
