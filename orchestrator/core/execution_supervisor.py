"""Supervisor for single use case runs of the JMeter engine.

A run resolves the engine, validates the test artifacts, writes a mutated copy
of the test plan and then streams the engine's merged output to a per-run log
until it exits or hits the wall-clock cap. Every artifact name carries the use
case id and a millisecond stamp so concurrent and repeated runs never collide.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import traceback
from pathlib import Path
from typing import Optional

from common.models.execution import ExecutionOutcome
from common.models.use_case import UseCase, UseCaseStatus
from common.utils import elapsed_seconds, format_duration, run_stamp, utcnow
from orchestrator.config import Settings, get_settings
from orchestrator.core.config_mutator import ConfigMutator, load_thread_group_config
from orchestrator.core.exceptions import (
    CancellationError,
    ConfigurationParseError,
    EngineNotFoundError,
    ExecutionAlreadyRunningError,
    MissingArtifactError,
    OrchestratorError,
    ProcessSpawnError,
    ProcessTimeoutError,
    UseCaseNotFoundError,
)
from orchestrator.core.registry import ExecutionHandle, ExecutionRegistry
from orchestrator.core.termination import ProcessTerminator, TerminationReport
from orchestrator.storage.data_store import DataStore

logger = logging.getLogger(__name__)

# Install locations tried after the configured path and its alternatives
COMMON_JMETER_PATHS = [
    "/opt/jmeter/bin/jmeter.sh",
    "/opt/jmeter/bin/jmeter",
    "/usr/local/jmeter/bin/jmeter.sh",
    "/usr/local/jmeter/bin/jmeter",
    "/home/ubuntu/apache-jmeter-5.6.3/bin/jmeter.sh",
    "/home/ubuntu/apache-jmeter-5.6.3/bin/jmeter",
    "/opt/apache-jmeter-5.6.3/bin/jmeter.sh",
    "/opt/apache-jmeter-5.6.3/bin/jmeter",
    "/usr/share/jmeter/bin/jmeter.sh",
    "/usr/share/jmeter/bin/jmeter",
]

# Keep result files lean: CSV rows without response bodies
OUTPUT_FLAGS = [
    "-Jjmeter.save.saveservice.output_format=csv",
    "-Jjmeter.save.saveservice.response_data=false",
    "-Jjmeter.save.saveservice.samplerData=false",
    "-Jjmeter.save.saveservice.response_data.on_error=false",
    "-Jjmeter.save.saveservice.autoflush=true",
    "-Jjmeter.save.saveservice.print_field_names=false",
]

OUTPUT_CHUNK_SIZE = 64 * 1024


# File forms accepted for a JMeter path set at run time
ENGINE_SUFFIXES = (".jar", ".sh")
ENGINE_BINARY_NAME = "jmeter"


def _is_windows() -> bool:
    return os.name == "nt"


def check_engine_path(path: str) -> Optional[str]:
    """Return why ``path`` cannot serve as the engine, or None if it can."""
    candidate = Path(path)
    if not candidate.is_file():
        return "JMeter executable not found at the specified path"
    name = candidate.name.lower()
    if not name.endswith(ENGINE_SUFFIXES) and name != ENGINE_BINARY_NAME:
        return "File must be a JAR file (.jar), shell script (.sh), or jmeter executable"
    return None


class ExecutionSupervisor:
    """Launch, watch and stop engine runs, one per use case at a time."""

    def __init__(
        self,
        data_store: DataStore,
        settings: Optional[Settings] = None,
        mutator: Optional[ConfigMutator] = None,
        terminator: Optional[ProcessTerminator] = None,
    ):
        self.data_store = data_store
        self.settings = settings or get_settings()
        self.mutator = mutator or ConfigMutator(
            self.settings.engine_csv_dir,
            self.settings.loop_precedence,
        )
        self.terminator = terminator or ProcessTerminator(
            grace_seconds=self.settings.stop_grace_seconds,
            kill_wait_seconds=self.settings.stop_kill_wait_seconds,
            sweep_wait_seconds=self.settings.sweep_wait_seconds,
        )
        self.registry = ExecutionRegistry()
        self.common_jmeter_paths = list(COMMON_JMETER_PATHS)
        self._tasks: dict[str, asyncio.Task] = {}

    # ==================== Engine resolution ====================

    def jmeter_candidates(self) -> list[str]:
        """Engine paths in the order they are tried."""
        candidates = [
            self.settings.jmeter_path,
            *self.settings.alternative_jmeter_paths,
            *self.common_jmeter_paths,
        ]
        return [c for c in dict.fromkeys(candidates) if c]

    def resolve_engine_path(self, use_case_id: Optional[str] = None) -> str:
        """Return the first existing, readable engine executable."""
        candidates = self.jmeter_candidates()
        for candidate in candidates:
            path = Path(candidate)
            if path.is_file() and os.access(path, os.R_OK):
                logger.info(f"Using JMeter at: {candidate}")
                return candidate
            logger.debug(f"JMeter not found at: {candidate}")

        raise EngineNotFoundError(
            "JMeter executable not found. Checked: " + ", ".join(candidates),
            candidates,
            use_case_id,
        )

    def engine_invocation(self, engine_path: str) -> list[str]:
        """Command prefix that runs the engine according to its file type."""
        lowered = engine_path.lower()
        if lowered.endswith(".bat") and _is_windows():
            return ["cmd.exe", "/c", engine_path]
        if lowered.endswith(".jar"):
            return ["java", "-Xmx1024m", "-jar", engine_path]
        if lowered.endswith(".sh"):
            return ["bash", engine_path]
        return [engine_path]

    # ==================== Command building ====================

    def expected_duration(self, use_case: UseCase) -> int:
        """Configured test duration, or the default when none is declared."""
        try:
            config = load_thread_group_config(use_case.thread_group_config)
        except ConfigurationParseError as e:
            logger.warning(f"Using default duration for {use_case.id}: {e}")
            config = None
        if config is not None and config.duration is not None:
            return config.duration
        return self.settings.default_duration_seconds

    def ramp_up_seconds(self, duration_seconds: int) -> int:
        return max(self.settings.min_ramp_up_seconds, duration_seconds // 5)

    def build_command(
        self,
        engine_path: str,
        jmx_path: str,
        result_file: Path,
        report_dir: Path,
        user_count: int,
        duration_seconds: int,
        csv_path: Optional[str] = None,
    ) -> list[str]:
        """Build the non-GUI engine command line for one run."""
        cmd = self.engine_invocation(engine_path)
        cmd += [
            "-n",
            "-t", jmx_path,
            "-l", str(result_file),
            f"-Jusers={user_count}",
            "-e",
            "-o", str(report_dir),
            f"-Jrampup={self.ramp_up_seconds(duration_seconds)}",
        ]
        cmd += OUTPUT_FLAGS

        if csv_path and csv_path.strip():
            cmd.append(f"-JcsvPath={csv_path}")

        if self.settings.jmeter_remote_enabled and self.settings.jmeter_remote_host:
            cmd += ["-r", "-R", self.settings.jmeter_remote_host]

        return cmd

    # ==================== Validation ====================

    def validate_artifacts(self, use_case: UseCase) -> None:
        """Check the test plan and, when one is needed, the data file."""
        if not use_case.jmx_path or not Path(use_case.jmx_path).is_file():
            raise MissingArtifactError(
                f"JMX file not found: {use_case.jmx_path}",
                use_case.jmx_path,
                use_case.id,
            )
        if not use_case.needs_csv:
            return
        if not use_case.csv_path or not use_case.csv_path.strip():
            raise MissingArtifactError(
                "Use case requires a CSV file but none is configured",
                None,
                use_case.id,
            )
        if not Path(use_case.csv_path).is_file():
            raise MissingArtifactError(
                f"CSV file not found: {use_case.csv_path}",
                use_case.csv_path,
                use_case.id,
            )

    # ==================== Running ====================

    def is_running(self, use_case_id: str) -> bool:
        return self.registry.contains(use_case_id)

    async def list_running(self) -> list[dict]:
        return await self.registry.snapshot()

    def reserve(self, use_case_id: str) -> None:
        """Claim a use case ahead of ``run(..., reserved=True)``."""
        self.registry.reserve(use_case_id)

    def start(self, use_case_id: str, user_count: int) -> asyncio.Task:
        """Launch a run in the background and return its task."""
        if use_case_id in self._tasks:
            raise ExecutionAlreadyRunningError(
                f"Use case {use_case_id} is already running", use_case_id
            )
        self.reserve(use_case_id)

        task = asyncio.create_task(
            self.run(use_case_id, user_count, reserved=True),
            name=f"run-{use_case_id}",
        )
        self._tasks[use_case_id] = task
        task.add_done_callback(lambda t: self._task_done(use_case_id, t))
        return task

    def _task_done(self, use_case_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(use_case_id) is task:
            del self._tasks[use_case_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background run of {use_case_id} failed: {task.exception()}")

    async def run(
        self,
        use_case_id: str,
        user_count: int,
        reserved: bool = False,
    ) -> ExecutionOutcome:
        """Run a use case to completion and return its terminal outcome.

        With ``reserved`` the caller already holds the reservation from
        ``reserve``; the run then owns it and always gives it back.
        """
        if not reserved:
            await self.registry.begin_launch(use_case_id)
        try:
            use_case = await self.data_store.get_use_case(use_case_id)
            if use_case is None:
                raise UseCaseNotFoundError(f"Use case not found: {use_case_id}", use_case_id)

            if await self.registry.launch_cancelled(use_case_id):
                logger.info(f"Run of {use_case_id} stopped before launch")
                return ExecutionOutcome(use_case_id=use_case_id, status=UseCaseStatus.STOPPED)

            logger.info(f"Starting JMeter test for use case: {use_case_id} with {user_count} users")
            stamp = run_stamp()
            try:
                engine_path = self.resolve_engine_path(use_case_id)
                self.validate_artifacts(use_case)
            except (EngineNotFoundError, MissingArtifactError) as e:
                return await self._fail_before_launch(use_case, user_count, stamp, e)
            return await self._execute(use_case, user_count, engine_path, stamp)
        finally:
            await self.registry.end_launch(use_case_id)

    async def _fail_before_launch(
        self,
        use_case: UseCase,
        user_count: int,
        stamp: str,
        error: OrchestratorError,
    ) -> ExecutionOutcome:
        """Record a run that never reached RUNNING."""
        logger.error(f"Cannot start {use_case.id}: {error.message}")
        now = utcnow()
        use_case.user_count = user_count
        use_case.last_run_at = now
        use_case.test_completed_at = now
        use_case.test_duration_seconds = 0
        return await self._finish_failed(use_case, stamp, error, command=[], started_at=now)

    async def _execute(
        self,
        use_case: UseCase,
        user_count: int,
        engine_path: str,
        stamp: str,
    ) -> ExecutionOutcome:
        started_at = utcnow()
        duration = self.expected_duration(use_case)

        use_case.status = UseCaseStatus.RUNNING
        use_case.user_count = user_count
        use_case.last_run_at = started_at
        use_case.test_started_at = started_at
        use_case.test_completed_at = None
        use_case.test_duration_seconds = None
        use_case.expected_duration_seconds = duration
        use_case.error_message = None
        await self.data_store.save_use_case(use_case)
        self.data_store.write_log(use_case.id, f"Run {stamp} started with {user_count} users")

        results_dir = self.data_store.results_path
        result_file = results_dir / f"result_{use_case.id}_{stamp}.jtl"
        report_dir = self.data_store.reports_path / f"report_{use_case.id}_{stamp}"
        log_file = results_dir / f"jmeter_exec_{use_case.id}_{stamp}.log"

        modified_plan: Optional[Path] = None
        command: list[str] = []
        try:
            if report_dir.exists():
                shutil.rmtree(report_dir)
            report_dir.mkdir(parents=True)

            modified_plan = self._write_modified_plan(use_case, stamp)
            plan_path = str(modified_plan) if modified_plan else use_case.jmx_path

            command = self.build_command(
                engine_path,
                plan_path,
                result_file,
                report_dir,
                user_count,
                duration,
                use_case.csv_path,
            )
            logger.info(f"Executing JMeter command: {' '.join(command)}")
            exit_code = await self._spawn_and_wait(use_case, engine_path, command, log_file, started_at)

        except CancellationError:
            logger.info(f"Run of {use_case.id} ended by stop request")
            return ExecutionOutcome(
                use_case_id=use_case.id,
                status=UseCaseStatus.STOPPED,
                duration_seconds=elapsed_seconds(started_at),
            )
        except (ProcessSpawnError, ProcessTimeoutError) as e:
            return await self._finish_failed(use_case, stamp, e, command, started_at)
        except OSError as e:
            error = ProcessSpawnError(f"Failed to prepare run: {e}", use_case.id)
            error.__cause__ = e
            return await self._finish_failed(use_case, stamp, error, command, started_at)
        finally:
            self._remove_modified_plan(modified_plan)

        if exit_code == 0:
            report_url = f"/reports/{report_dir.name}/index.html"
            return await self._finish_success(use_case, started_at, report_url)

        error = ProcessSpawnError(f"JMeter exited with code: {exit_code}", use_case.id)
        return await self._finish_failed(use_case, stamp, error, command, started_at, exit_code)

    def _write_modified_plan(self, use_case: UseCase, stamp: str) -> Optional[Path]:
        """Write the mutated test plan, or return None to run the original."""
        target = self.data_store.results_path / f"modified_{use_case.id}_{stamp}.jmx"
        try:
            document = self.mutator.mutate_file(use_case.jmx_path, use_case, use_case.csv_path)
            target.write_text(document, encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Could not write modified test plan, using original: {e}")
            return None
        logger.info(f"Created modified JMX file: {target}")
        return target

    def _remove_modified_plan(self, path: Optional[Path]) -> None:
        if path is None:
            return
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to clean up modified JMX file {path}: {e}")

    async def _spawn_and_wait(
        self,
        use_case: UseCase,
        engine_path: str,
        command: list[str],
        log_file: Path,
        started_at,
    ) -> int:
        """Spawn the engine, stream its output and return the exit code."""
        engine_dir = Path(engine_path).parent
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=str(engine_dir) if engine_dir.is_dir() else None,
                start_new_session=not _is_windows(),
            )
        except OSError as e:
            raise ProcessSpawnError(f"Failed to launch JMeter: {e}", use_case.id) from e

        handle = ExecutionHandle(use_case.id, process, command, started_at)
        if not await self.registry.register(handle):
            logger.info(f"Stop requested while {use_case.id} was launching")
            await self.terminator.terminate(use_case.id, handle)
            await self._record_stopped(use_case.id, started_at)
            raise CancellationError("Stopped while launching", use_case.id)

        try:
            exit_code = await asyncio.wait_for(
                self._stream_output(process, log_file, use_case.id),
                timeout=self.settings.run_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error(
                f"JMeter run of {use_case.id} exceeded {self.settings.run_timeout_seconds}s, killing"
            )
            await self.terminator.force_kill(handle)
            if not await self.registry.release(handle):
                raise CancellationError("Run stopped on request", use_case.id)
            raise ProcessTimeoutError(
                f"JMeter test timed out after {self.settings.run_timeout_seconds} seconds",
                self.settings.run_timeout_seconds,
                use_case.id,
            )
        except OSError as e:
            await self.terminator.force_kill(handle)
            if not await self.registry.release(handle):
                raise CancellationError("Run stopped on request", use_case.id)
            raise ProcessSpawnError(f"Failed to stream JMeter output: {e}", use_case.id) from e

        if not await self.registry.release(handle):
            raise CancellationError("Run stopped on request", use_case.id)
        return exit_code

    async def _stream_output(
        self,
        process: asyncio.subprocess.Process,
        log_file: Path,
        use_case_id: str,
    ) -> int:
        """Copy the engine's merged output to the run log until it exits."""
        with open(log_file, "wb") as log:
            while True:
                chunk = await process.stdout.read(OUTPUT_CHUNK_SIZE)
                if not chunk:
                    break
                log.write(chunk)
                log.flush()
                logger.debug(f"[{use_case_id}] JMeter: {chunk.decode(errors='replace').rstrip()}")
        return await process.wait()

    # ==================== Finalization ====================

    async def _finish_success(
        self,
        use_case: UseCase,
        started_at,
        report_url: str,
    ) -> ExecutionOutcome:
        completed_at = utcnow()
        duration = elapsed_seconds(started_at, completed_at)

        use_case.status = UseCaseStatus.SUCCESS
        use_case.test_completed_at = completed_at
        use_case.test_duration_seconds = duration
        use_case.last_report_url = report_url
        use_case.error_message = None
        await self.data_store.save_use_case(use_case)
        self.data_store.write_log(use_case.id, f"Run succeeded in {format_duration(duration)}")

        logger.info(f"Test completed successfully for use case: {use_case.id} ({format_duration(duration)})")
        return ExecutionOutcome(
            use_case_id=use_case.id,
            status=UseCaseStatus.SUCCESS,
            exit_code=0,
            duration_seconds=duration,
            report_url=report_url,
        )

    async def _finish_failed(
        self,
        use_case: UseCase,
        stamp: str,
        error: OrchestratorError,
        command: list[str],
        started_at,
        exit_code: Optional[int] = None,
    ) -> ExecutionOutcome:
        completed_at = utcnow()
        duration = elapsed_seconds(started_at, completed_at)
        artifact = self._write_error_artifact(use_case, stamp, error, command, exit_code)

        use_case.status = UseCaseStatus.FAILED
        use_case.test_completed_at = completed_at
        use_case.test_duration_seconds = duration
        use_case.error_message = error.message
        await self.data_store.save_use_case(use_case)
        self.data_store.write_log(use_case.id, f"Run failed: {error.message}")

        logger.error(f"Test failed for use case: {use_case.id}: {error.message}")
        return ExecutionOutcome(
            use_case_id=use_case.id,
            status=UseCaseStatus.FAILED,
            exit_code=exit_code,
            duration_seconds=duration,
            error=error.message,
            error_artifact=str(artifact) if artifact else None,
        )

    def _write_error_artifact(
        self,
        use_case: UseCase,
        stamp: str,
        error: OrchestratorError,
        command: list[str],
        exit_code: Optional[int],
    ) -> Optional[Path]:
        lines = [
            "JMeter Test Execution Failed",
            f"Use Case ID: {use_case.id}",
            f"Use Case Name: {use_case.name}",
            f"Timestamp: {utcnow().isoformat()}",
            f"Error Type: {type(error).__name__}",
            f"Error: {error.message}",
        ]
        if command:
            lines.append(f"Command: {' '.join(command)}")
        if exit_code is not None:
            lines.append(f"Exit Code: {exit_code}")
        lines.append("")
        lines.append("Stack Trace:")
        lines.append("".join(traceback.format_exception(type(error), error, error.__traceback__)))

        try:
            return self.data_store.write_error_artifact(use_case.id, stamp, "\n".join(lines))
        except OSError as e:
            logger.error(f"Failed to write error log for {use_case.id}: {e}")
            return None

    # ==================== Stopping ====================

    async def stop(self, use_case_id: str) -> TerminationReport:
        """Stop a run and record the use case as STOPPED.

        Works without a live handle too: the host process table is swept for
        engine processes of this use case. A run that is reserved but has not
        spawned yet is cancelled before launch. Never raises for unknown ids.
        """
        logger.info(f"Stopping JMeter test for use case: {use_case_id}")
        handle = await self.registry.request_stop(use_case_id)
        if handle is None:
            logger.info(f"No registered process for {use_case_id}, sweeping process table")

        report = await self.terminator.terminate(use_case_id, handle)
        if handle is not None:
            await self.registry.discard(handle)

        await self._record_stopped(use_case_id, handle.started_at if handle else None)
        return report

    async def stop_all(self) -> list[TerminationReport]:
        """Stop every registered run, used on shutdown."""
        running = await self.registry.snapshot()
        return list(await asyncio.gather(*(self.stop(entry["use_case_id"]) for entry in running)))

    async def _record_stopped(self, use_case_id: str, started_at) -> None:
        use_case = await self.data_store.get_use_case(use_case_id)
        if use_case is None:
            logger.warning(f"Stopped unknown use case: {use_case_id}")
            return

        completed_at = utcnow()
        # Without a live process the last run's start time only counts while it is RUNNING
        if started_at is None and use_case.status == UseCaseStatus.RUNNING:
            started_at = use_case.test_started_at
        use_case.status = UseCaseStatus.STOPPED
        use_case.test_completed_at = completed_at
        use_case.test_duration_seconds = elapsed_seconds(started_at, completed_at)
        await self.data_store.save_use_case(use_case)
        self.data_store.write_log(use_case_id, "Run stopped on request")
        logger.info(f"Use case {use_case_id} marked STOPPED")
