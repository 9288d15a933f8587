"""Escalating termination of engine processes.

Stopping a run walks a fixed sequence of stages, each with a bounded wait:

    SIGNAL -> GRACE_WAIT -> FORCE_KILL -> KILL_WAIT -> SWEEP -> VERIFY -> RETRY_SWEEP

A run without a live handle starts directly at SWEEP. The sweep finds stray
engine processes in the host process table by command-line signature, which
covers children orphaned from their process group and runs launched before a
restart.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
from enum import Enum
from typing import Callable, Optional

import psutil
from pydantic import BaseModel, Field

from orchestrator.core.registry import ExecutionHandle

logger = logging.getLogger(__name__)

ENGINE_MARKERS = ("jmeter", "apachejmeter")


class TerminationStage(str, Enum):
    """Stages of the termination state machine."""
    SIGNAL = "signal"
    GRACE_WAIT = "grace_wait"
    FORCE_KILL = "force_kill"
    KILL_WAIT = "kill_wait"
    SWEEP = "sweep"
    VERIFY = "verify"
    RETRY_SWEEP = "retry_sweep"
    DONE = "done"


class TerminationReport(BaseModel):
    """What the termination attempt did and what it left behind."""
    use_case_id: str
    had_handle: bool = False
    exited_gracefully: bool = False
    force_killed: bool = False
    swept_pids: list[int] = Field(default_factory=list)
    residual_pids: list[int] = Field(default_factory=list)
    stages: list[str] = Field(default_factory=list)

    @property
    def confirmed(self) -> bool:
        """True when no matching engine process was left running."""
        return not self.residual_pids


class ProcessSignature:
    """Command-line signature of the engine processes of one use case.

    Every run passes artifacts named ``<kind>_<use case id>_<stamp>`` to the
    engine, so the id pins the match to a single use case and leaves sibling
    runs alone.
    """

    def __init__(self, use_case_id: str, markers: tuple[str, ...] = ENGINE_MARKERS):
        self.use_case_id = use_case_id
        self.markers = markers
        self._artifact = re.compile(
            rf"(?:modified|result|report)_{re.escape(use_case_id)}_\d+"
        )

    def matches(self, cmdline: list[str]) -> bool:
        if not cmdline:
            return False
        text = " ".join(cmdline)
        lowered = text.lower()
        return any(marker in lowered for marker in self.markers) and bool(self._artifact.search(text))


def find_engine_processes(signature: ProcessSignature) -> list[psutil.Process]:
    """Scan the host process table for processes matching the signature."""
    own_pid = os.getpid()
    matches = []
    for proc in psutil.process_iter(["pid", "cmdline", "status"]):
        try:
            if proc.pid == own_pid or proc.info.get("status") == psutil.STATUS_ZOMBIE:
                continue
            if signature.matches(proc.info.get("cmdline") or []):
                matches.append(proc)
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
    return matches


def kill_processes(processes: list[psutil.Process], timeout: float) -> list[int]:
    """Kill processes and return the pids still alive after ``timeout``."""
    for proc in processes:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied:
            logger.warning(f"Access denied killing pid {proc.pid}")
    _, alive = psutil.wait_procs(processes, timeout=timeout)
    return [proc.pid for proc in alive]


def send_signal(handle: ExecutionHandle, force: bool = False) -> bool:
    """Signal the handle's process group, falling back to the process itself.

    Returns False when the process had already exited.
    """
    process = handle.process
    if process.returncode is not None:
        return False
    try:
        if os.name == "posix":
            os.killpg(process.pid, signal.SIGKILL if force else signal.SIGTERM)
            return True
    except (ProcessLookupError, PermissionError):
        pass
    try:
        if force:
            process.kill()
        else:
            process.terminate()
    except ProcessLookupError:
        return False
    return True


async def wait_for_exit(handle: ExecutionHandle, timeout: float) -> bool:
    """Wait up to ``timeout`` seconds for the process to exit."""
    try:
        await asyncio.wait_for(handle.process.wait(), timeout=timeout)
        return True
    except asyncio.TimeoutError:
        return False


class ProcessTerminator:
    """Run the termination state machine for one use case."""

    def __init__(
        self,
        grace_seconds: float = 5.0,
        kill_wait_seconds: float = 5.0,
        sweep_wait_seconds: float = 3.0,
        process_finder: Callable[[ProcessSignature], list] = find_engine_processes,
        process_killer: Callable[[list, float], list[int]] = kill_processes,
    ):
        self.grace_seconds = grace_seconds
        self.kill_wait_seconds = kill_wait_seconds
        self.sweep_wait_seconds = sweep_wait_seconds
        self.process_finder = process_finder
        self.process_killer = process_killer
        self._transitions = {
            TerminationStage.SIGNAL: self._signal,
            TerminationStage.GRACE_WAIT: self._grace_wait,
            TerminationStage.FORCE_KILL: self._force_kill,
            TerminationStage.KILL_WAIT: self._kill_wait,
            TerminationStage.SWEEP: self._sweep,
            TerminationStage.VERIFY: self._verify,
            TerminationStage.RETRY_SWEEP: self._retry_sweep,
        }

    async def terminate(
        self,
        use_case_id: str,
        handle: Optional[ExecutionHandle] = None,
    ) -> TerminationReport:
        report = TerminationReport(use_case_id=use_case_id, had_handle=handle is not None)
        signature = ProcessSignature(use_case_id)
        stage = TerminationStage.SIGNAL if handle is not None else TerminationStage.SWEEP

        while stage != TerminationStage.DONE:
            report.stages.append(stage.value)
            stage = await self._transitions[stage](handle, signature, report)

        logger.info(
            f"Termination of {use_case_id} finished: stages={report.stages} "
            f"swept={report.swept_pids} residual={report.residual_pids}"
        )
        return report

    async def force_kill(self, handle: ExecutionHandle) -> bool:
        """Kill a process outright and wait for it; used by the run timeout."""
        send_signal(handle, force=True)
        return await wait_for_exit(handle, self.kill_wait_seconds)

    async def _signal(self, handle, signature, report) -> TerminationStage:
        if not send_signal(handle):
            logger.debug(f"Process for {signature.use_case_id} already exited")
            return TerminationStage.SWEEP
        return TerminationStage.GRACE_WAIT

    async def _grace_wait(self, handle, signature, report) -> TerminationStage:
        if await wait_for_exit(handle, self.grace_seconds):
            report.exited_gracefully = True
            return TerminationStage.SWEEP
        logger.warning(
            f"Process for {signature.use_case_id} ignored SIGTERM for "
            f"{self.grace_seconds}s, escalating"
        )
        return TerminationStage.FORCE_KILL

    async def _force_kill(self, handle, signature, report) -> TerminationStage:
        report.force_killed = send_signal(handle, force=True)
        return TerminationStage.KILL_WAIT

    async def _kill_wait(self, handle, signature, report) -> TerminationStage:
        if not await wait_for_exit(handle, self.kill_wait_seconds):
            logger.warning(f"Process for {signature.use_case_id} still alive after SIGKILL")
        return TerminationStage.SWEEP

    async def _sweep(self, handle, signature, report) -> TerminationStage:
        processes = await asyncio.to_thread(self.process_finder, signature)
        if processes:
            pids = [proc.pid for proc in processes]
            logger.info(f"Sweeping stray engine processes for {signature.use_case_id}: {pids}")
            report.swept_pids.extend(pids)
            await asyncio.to_thread(self.process_killer, processes, self.sweep_wait_seconds)
        return TerminationStage.VERIFY

    async def _verify(self, handle, signature, report) -> TerminationStage:
        remaining = await asyncio.to_thread(self.process_finder, signature)
        if not remaining:
            return TerminationStage.DONE
        report.residual_pids = [proc.pid for proc in remaining]
        return TerminationStage.RETRY_SWEEP

    async def _retry_sweep(self, handle, signature, report) -> TerminationStage:
        remaining = await asyncio.to_thread(self.process_finder, signature)
        if remaining:
            report.swept_pids.extend(proc.pid for proc in remaining)
            await asyncio.to_thread(self.process_killer, remaining, self.sweep_wait_seconds)
            remaining = await asyncio.to_thread(self.process_finder, signature)

        report.residual_pids = [proc.pid for proc in remaining]
        if report.residual_pids:
            logger.critical(
                f"Engine processes for {signature.use_case_id} survived termination: "
                f"{report.residual_pids}"
            )
        return TerminationStage.DONE
