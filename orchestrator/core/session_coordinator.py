"""Concurrent execution of use case groups (test sessions)."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from common.models.session import SessionStatus, TestSession
from common.models.use_case import UseCase, UseCaseStatus
from common.utils import generate_session_id, utcnow
from orchestrator.core.exceptions import (
    ExecutionAlreadyRunningError,
    InvalidSessionError,
    InvalidSessionStateError,
    OrchestratorError,
    SessionNotFoundError,
    UseCaseNotFoundError,
)
from orchestrator.core.execution_supervisor import ExecutionSupervisor
from orchestrator.storage.data_store import DataStore

logger = logging.getLogger(__name__)


def priority_order(use_cases: list[UseCase]) -> list[UseCase]:
    """Sort by priority ascending; use cases without one go last, order kept."""
    return sorted(
        use_cases,
        key=lambda uc: (uc.priority is None, uc.priority if uc.priority is not None else 0),
    )


def aggregate_status(success_count: int, failure_count: int) -> SessionStatus:
    """Terminal session status from the member counters."""
    if failure_count == 0:
        return SessionStatus.SUCCESS
    if success_count == 0:
        return SessionStatus.FAILED
    return SessionStatus.PARTIAL_SUCCESS


class SessionCoordinator:
    """Create, start and stop test sessions through the execution supervisor.

    Member outcomes arrive in any order from concurrent tasks; each one is
    folded into the persisted session under that session's lock.
    """

    def __init__(self, data_store: DataStore, supervisor: ExecutionSupervisor):
        self.data_store = data_store
        self.supervisor = supervisor
        self._locks: dict[str, asyncio.Lock] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    # ==================== Lifecycle ====================

    async def create(
        self,
        name: str,
        use_case_ids: list[str],
        user_counts: dict[str, int],
        description: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> TestSession:
        """Validate and persist a new IDLE session."""
        if not name or not name.strip():
            raise InvalidSessionError("Name is required")
        if not use_case_ids:
            raise InvalidSessionError("At least one use case ID is required")
        if len(set(use_case_ids)) != len(use_case_ids):
            raise InvalidSessionError("Use case IDs must be unique")

        for use_case_id in use_case_ids:
            count = user_counts.get(use_case_id)
            if count is None:
                raise InvalidSessionError(f"User count not specified for use case: {use_case_id}")
            if count <= 0:
                raise InvalidSessionError(f"User count must be positive for use case: {use_case_id}")

        found = await self.data_store.get_use_cases(use_case_ids)
        for use_case_id in use_case_ids:
            if use_case_id not in found:
                raise UseCaseNotFoundError(f"Use case not found: {use_case_id}", use_case_id)

        ordered = [uc.id for uc in priority_order([found[uc_id] for uc_id in use_case_ids])]
        member_counts = {uc_id: user_counts[uc_id] for uc_id in ordered}

        session = TestSession(
            id=generate_session_id(),
            name=name.strip(),
            description=description.strip() if description else "",
            use_case_ids=ordered,
            user_counts=member_counts,
            total_users=sum(member_counts.values()),
            use_case_count=len(ordered),
            user_id=user_id,
        )
        await self.data_store.save_session(session)
        logger.info(
            f"Created test session {session.id} with {session.use_case_count} use cases "
            f"and {session.total_users} total users"
        )
        return session

    async def start(self, session_id: str) -> TestSession:
        """Move an IDLE session to RUNNING and launch every member."""
        async with self._lock_for(session_id):
            session = await self.data_store.get_session(session_id)
            if session is None:
                raise SessionNotFoundError(f"Test session not found: {session_id}")
            if session.status != SessionStatus.IDLE:
                raise InvalidSessionStateError(
                    f"Test session {session_id} is not in IDLE status ({session.status.value})"
                )

            session.status = SessionStatus.RUNNING
            session.started_at = utcnow()
            session.use_case_statuses = {
                uc_id: UseCaseStatus.RUNNING.value for uc_id in session.use_case_ids
            }
            await self.data_store.save_session(session)

            members = await self.data_store.get_use_cases(session.use_case_ids)
            for use_case in members.values():
                use_case.test_session_id = session_id
                await self.data_store.save_use_case(use_case)

        # Members are reserved before the task exists, so an immediate stop reaches them
        refused = self._reserve_members(session)
        task = asyncio.create_task(self._run_session(session, refused), name=f"session-{session_id}")
        self._tasks[session_id] = task
        task.add_done_callback(lambda t: self._session_done(session_id, t))
        logger.info(f"Started test session {session_id} with {session.use_case_count} use cases")
        return session

    def _session_done(self, session_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(session_id) is task:
            del self._tasks[session_id]

    def _reserve_members(self, session: TestSession) -> dict[str, OrchestratorError]:
        """Reserve every member with the supervisor; returns the refusals."""
        refused = {}
        for use_case_id in session.use_case_ids:
            try:
                self.supervisor.reserve(use_case_id)
            except ExecutionAlreadyRunningError as e:
                refused[use_case_id] = e
        return refused

    async def _run_session(self, session: TestSession, refused: dict[str, OrchestratorError]) -> None:
        # Tasks are created in priority order, which fixes their launch order
        await asyncio.gather(*(
            self._run_member(session.id, uc_id, session.user_counts[uc_id], refused.get(uc_id))
            for uc_id in session.use_case_ids
        ))
        logger.info(f"All use cases of session {session.id} have finished")

    async def _run_member(
        self,
        session_id: str,
        use_case_id: str,
        user_count: int,
        refusal: Optional[OrchestratorError] = None,
    ) -> None:
        report_url = None
        try:
            if refusal is not None:
                raise refusal
            outcome = await self.supervisor.run(use_case_id, user_count, reserved=True)
            status = outcome.status
            report_url = outcome.report_url
        except OrchestratorError as e:
            logger.error(f"Use case {use_case_id} in session {session_id} could not run: {e.message}")
            status = UseCaseStatus.FAILED
        except Exception as e:
            logger.error(
                f"Use case {use_case_id} in session {session_id} crashed: {e}",
                exc_info=True,
            )
            status = UseCaseStatus.FAILED

        await self._record_outcome(session_id, use_case_id, status, report_url)

    async def _record_outcome(
        self,
        session_id: str,
        use_case_id: str,
        status: UseCaseStatus,
        report_url: Optional[str] = None,
    ) -> None:
        """Fold one member's terminal status into the session."""
        async with self._lock_for(session_id):
            session = await self.data_store.get_session(session_id)
            if session is None:
                logger.warning(f"Outcome for {use_case_id} references missing session {session_id}")
                return
            if session.is_terminal:
                logger.info(
                    f"Ignoring {status.value} for {use_case_id}: "
                    f"session {session_id} already {session.status.value}"
                )
                return
            if session.member_is_terminal(use_case_id):
                return

            session.use_case_statuses[use_case_id] = status.value
            if status == UseCaseStatus.SUCCESS:
                session.success_count += 1
            else:
                session.failure_count += 1
            if report_url:
                session.use_case_report_urls[use_case_id] = report_url

            if session.all_members_terminal:
                self._finalize(session)
            await self.data_store.save_session(session)

    def _finalize(self, session: TestSession) -> None:
        if session.is_terminal:
            return
        session.status = aggregate_status(session.success_count, session.failure_count)
        session.completed_at = utcnow()
        logger.info(
            f"Test session {session.id} completed with status {session.status.value}: "
            f"{session.success_count} succeeded, {session.failure_count} failed"
        )

    async def stop(self, session_id: str) -> bool:
        """Stop a RUNNING session. Returns False when it is missing or not running."""
        async with self._lock_for(session_id):
            session = await self.data_store.get_session(session_id)
            if session is None or session.status != SessionStatus.RUNNING:
                return False

            pending = [uc_id for uc_id in session.use_case_ids if not session.member_is_terminal(uc_id)]
            logger.info(f"Stopping test session {session_id}: {len(pending)} use cases still running")

            results = await asyncio.gather(
                *(self.supervisor.stop(uc_id) for uc_id in pending),
                return_exceptions=True,
            )
            for uc_id, result in zip(pending, results):
                if isinstance(result, Exception):
                    logger.error(f"Failed to stop use case {uc_id}: {result}")
                session.use_case_statuses[uc_id] = UseCaseStatus.FAILED.value
                session.failure_count += 1

            session.status = SessionStatus.FAILED
            session.completed_at = utcnow()
            await self.data_store.save_session(session)

        # Member runs wind down once stopped; their late outcomes are ignored
        task = self._tasks.get(session_id)
        if task is not None:
            await task
        logger.info(f"Test session {session_id} stopped")
        return True

    # ==================== Queries ====================

    async def get_status(self, session_id: str) -> Optional[TestSession]:
        return await self.data_store.get_session(session_id)

    async def list_sessions(self, user_id: Optional[str] = None) -> list[TestSession]:
        return await self.data_store.list_sessions(user_id=user_id)

    async def running_sessions(self) -> list[TestSession]:
        return await self.data_store.list_sessions(status=SessionStatus.RUNNING.value)

    async def wait(self, session_id: str) -> Optional[TestSession]:
        """Wait for a started session's members to finish, then return it."""
        task = self._tasks.get(session_id)
        if task is not None:
            await task
        return await self.get_status(session_id)
