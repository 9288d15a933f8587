"""Tests for concurrent test session execution."""

import asyncio
import sys

import pytest

from common.models.execution import ExecutionOutcome
from common.models.session import SessionStatus
from common.models.use_case import UseCase, UseCaseStatus
from orchestrator.core.exceptions import (
    ExecutionAlreadyRunningError,
    InvalidSessionError,
    InvalidSessionStateError,
    SessionNotFoundError,
    UseCaseNotFoundError,
)
from orchestrator.core.session_coordinator import (
    SessionCoordinator,
    aggregate_status,
    priority_order,
)
from orchestrator.core.termination import TerminationReport
from tests.conftest import SLOW_ENGINE


class FakeSupervisor:
    """Supervisor double returning scripted outcomes.

    Runs of use cases in ``hold`` block until ``release`` is set or the use
    case is stopped, so tests can act while members are still in flight.
    """

    def __init__(self, outcomes: dict, hold=(), busy=()):
        self.outcomes = outcomes
        self.hold = set(hold)
        self.busy = set(busy)
        self.release = asyncio.Event()
        self.reserved: list[str] = []
        self.started: list[str] = []
        self.user_counts: dict[str, int] = {}
        self.stopped: list[str] = []

    def reserve(self, use_case_id: str) -> None:
        if use_case_id in self.busy:
            raise ExecutionAlreadyRunningError(f"Use case {use_case_id} is already running", use_case_id)
        self.reserved.append(use_case_id)

    async def run(self, use_case_id: str, user_count: int, reserved: bool = False) -> ExecutionOutcome:
        self.started.append(use_case_id)
        self.user_counts[use_case_id] = user_count
        while use_case_id in self.hold and not self.release.is_set():
            if use_case_id in self.stopped:
                return ExecutionOutcome(use_case_id=use_case_id, status=UseCaseStatus.STOPPED)
            await asyncio.sleep(0.01)
        result = self.outcomes.get(use_case_id, UseCaseStatus.SUCCESS)
        if isinstance(result, Exception):
            raise result
        report_url = f"/reports/report_{use_case_id}_1/index.html" if result == UseCaseStatus.SUCCESS else None
        return ExecutionOutcome(use_case_id=use_case_id, status=result, report_url=report_url)

    async def stop(self, use_case_id: str) -> TerminationReport:
        self.stopped.append(use_case_id)
        return TerminationReport(use_case_id=use_case_id, had_handle=True, exited_gracefully=True)


async def _add_use_cases(data_store, *specs):
    for use_case_id, priority in specs:
        await data_store.save_use_case(UseCase(
            id=use_case_id,
            name=use_case_id.title(),
            jmx_path=f"/data/jmx/{use_case_id}.jmx",
            priority=priority,
        ))


async def _wait_for_starts(supervisor: FakeSupervisor, count: int) -> None:
    for _ in range(200):
        if len(supervisor.started) >= count:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"only {len(supervisor.started)} members started")


async def _wait_for_member(coordinator: SessionCoordinator, session_id: str, use_case_id: str) -> None:
    for _ in range(200):
        session = await coordinator.get_status(session_id)
        if session.member_is_terminal(use_case_id):
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"{use_case_id} never finished")


class TestHelpers:
    """Tests for ordering and aggregation helpers."""

    def test_priority_order(self):
        use_cases = [
            UseCase(id="a", name="a", jmx_path="x"),
            UseCase(id="b", name="b", jmx_path="x", priority=2),
            UseCase(id="c", name="c", jmx_path="x", priority=1),
            UseCase(id="d", name="d", jmx_path="x"),
        ]

        assert [uc.id for uc in priority_order(use_cases)] == ["c", "b", "a", "d"]

    @pytest.mark.parametrize("success,failure,expected", [
        (3, 0, SessionStatus.SUCCESS),
        (0, 3, SessionStatus.FAILED),
        (2, 1, SessionStatus.PARTIAL_SUCCESS),
    ])
    def test_aggregate_status(self, success, failure, expected):
        assert aggregate_status(success, failure) == expected


@pytest.mark.asyncio
class TestCreate:
    """Tests for session creation and validation."""

    async def test_create(self, data_store):
        await _add_use_cases(data_store, ("a", None), ("b", 2), ("c", 1))
        coordinator = SessionCoordinator(data_store, FakeSupervisor({}))

        session = await coordinator.create(
            "  Checkout mix ", ["a", "b", "c"], {"a": 50, "b": 100, "c": 25}, description="Peak"
        )

        assert session.status == SessionStatus.IDLE
        assert session.name == "Checkout mix"
        assert session.use_case_ids == ["c", "b", "a"]
        assert session.total_users == 175
        assert session.use_case_count == 3
        assert session.success_count == 0
        assert session.failure_count == 0

        stored = await data_store.get_session(session.id)
        assert stored.use_case_ids == ["c", "b", "a"]
        assert stored.created_at is not None

    @pytest.mark.parametrize("name,ids,counts", [
        ("", ["a"], {"a": 1}),
        ("   ", ["a"], {"a": 1}),
        ("s", [], {}),
        ("s", ["a", "a"], {"a": 1}),
        ("s", ["a", "b"], {"a": 1}),
        ("s", ["a"], {"a": 0}),
        ("s", ["a"], {"a": -5}),
    ])
    async def test_invalid_definitions(self, data_store, name, ids, counts):
        await _add_use_cases(data_store, ("a", None), ("b", None))
        coordinator = SessionCoordinator(data_store, FakeSupervisor({}))

        with pytest.raises(InvalidSessionError):
            await coordinator.create(name, ids, counts)

    async def test_unknown_use_case(self, data_store):
        await _add_use_cases(data_store, ("a", None))
        coordinator = SessionCoordinator(data_store, FakeSupervisor({}))

        with pytest.raises(UseCaseNotFoundError):
            await coordinator.create("s", ["a", "ghost"], {"a": 1, "ghost": 1})

        assert await data_store.list_sessions() == []


@pytest.mark.asyncio
class TestRun:
    """Tests for running sessions to completion."""

    async def test_partial_success(self, data_store):
        await _add_use_cases(data_store, ("a", None), ("b", None), ("c", None))
        supervisor = FakeSupervisor({"b": UseCaseStatus.FAILED})
        coordinator = SessionCoordinator(data_store, supervisor)
        session = await coordinator.create("mix", ["a", "b", "c"], {"a": 50, "b": 100, "c": 25})

        started = await coordinator.start(session.id)
        assert started.status == SessionStatus.RUNNING
        done = await coordinator.wait(session.id)

        assert done.status == SessionStatus.PARTIAL_SUCCESS
        assert done.success_count == 2
        assert done.failure_count == 1
        assert done.total_users == 175
        assert done.use_case_statuses == {"a": "SUCCESS", "b": "FAILED", "c": "SUCCESS"}
        assert set(done.use_case_report_urls) == {"a", "c"}
        assert done.started_at is not None
        assert done.completed_at is not None
        assert supervisor.user_counts == {"a": 50, "b": 100, "c": 25}

    async def test_all_succeed(self, data_store):
        await _add_use_cases(data_store, ("a", None), ("b", None))
        coordinator = SessionCoordinator(data_store, FakeSupervisor({}))
        session = await coordinator.create("ok", ["a", "b"], {"a": 1, "b": 1})

        await coordinator.start(session.id)
        done = await coordinator.wait(session.id)

        assert done.status == SessionStatus.SUCCESS
        assert done.success_count == 2

    async def test_all_fail(self, data_store):
        await _add_use_cases(data_store, ("a", None), ("b", None))
        supervisor = FakeSupervisor({"a": UseCaseStatus.FAILED, "b": UseCaseStatus.STOPPED})
        coordinator = SessionCoordinator(data_store, supervisor)
        session = await coordinator.create("bad", ["a", "b"], {"a": 1, "b": 1})

        await coordinator.start(session.id)
        done = await coordinator.wait(session.id)

        assert done.status == SessionStatus.FAILED
        assert done.failure_count == 2
        assert done.use_case_statuses["b"] == "STOPPED"

    async def test_members_launch_in_priority_order(self, data_store):
        await _add_use_cases(data_store, ("a", None), ("b", 2), ("c", 1))
        supervisor = FakeSupervisor({})
        coordinator = SessionCoordinator(data_store, supervisor)
        session = await coordinator.create("ordered", ["a", "b", "c"], {"a": 1, "b": 1, "c": 1})

        await coordinator.start(session.id)
        await coordinator.wait(session.id)

        assert supervisor.started == ["c", "b", "a"]

    async def test_members_tagged_with_session(self, data_store):
        await _add_use_cases(data_store, ("a", None))
        coordinator = SessionCoordinator(data_store, FakeSupervisor({}))
        session = await coordinator.create("tag", ["a"], {"a": 1})

        await coordinator.start(session.id)
        await coordinator.wait(session.id)

        assert (await data_store.get_use_case("a")).test_session_id == session.id

    async def test_member_errors_count_as_failures(self, data_store):
        await _add_use_cases(data_store, ("a", None), ("b", None), ("c", None))
        supervisor = FakeSupervisor({
            "a": ExecutionAlreadyRunningError("Use case a is already running", "a"),
            "b": RuntimeError("boom"),
        })
        coordinator = SessionCoordinator(data_store, supervisor)
        session = await coordinator.create("errors", ["a", "b", "c"], {"a": 1, "b": 1, "c": 1})

        await coordinator.start(session.id)
        done = await coordinator.wait(session.id)

        assert done.status == SessionStatus.PARTIAL_SUCCESS
        assert done.use_case_statuses == {"a": "FAILED", "b": "FAILED", "c": "SUCCESS"}

    async def test_counters_cover_every_member(self, data_store):
        ids = [f"uc_{i}" for i in range(10)]
        await _add_use_cases(data_store, *((uc_id, None) for uc_id in ids))
        outcomes = {uc_id: UseCaseStatus.FAILED for uc_id in ids[::3]}
        coordinator = SessionCoordinator(data_store, FakeSupervisor(outcomes))
        session = await coordinator.create("wide", ids, {uc_id: 10 for uc_id in ids})

        await coordinator.start(session.id)
        done = await coordinator.wait(session.id)

        assert done.success_count + done.failure_count == done.use_case_count == 10
        assert done.failure_count == 4
        assert done.total_users == 100
        assert done.all_members_terminal

    async def test_start_requires_idle(self, data_store):
        await _add_use_cases(data_store, ("a", None))
        coordinator = SessionCoordinator(data_store, FakeSupervisor({}))
        session = await coordinator.create("once", ["a"], {"a": 1})

        await coordinator.start(session.id)
        await coordinator.wait(session.id)

        with pytest.raises(InvalidSessionStateError):
            await coordinator.start(session.id)

    async def test_start_unknown_session(self, data_store):
        coordinator = SessionCoordinator(data_store, FakeSupervisor({}))

        with pytest.raises(SessionNotFoundError):
            await coordinator.start("session_missing")

    async def test_running_sessions(self, data_store):
        await _add_use_cases(data_store, ("a", None))
        supervisor = FakeSupervisor({}, hold={"a"})
        coordinator = SessionCoordinator(data_store, supervisor)
        session = await coordinator.create("live", ["a"], {"a": 1})

        await coordinator.start(session.id)
        await _wait_for_starts(supervisor, 1)
        assert [s.id for s in await coordinator.running_sessions()] == [session.id]

        supervisor.release.set()
        await coordinator.wait(session.id)
        assert await coordinator.running_sessions() == []

    async def test_members_reserved_before_start_returns(self, data_store):
        await _add_use_cases(data_store, ("a", None), ("b", None))
        supervisor = FakeSupervisor({})
        coordinator = SessionCoordinator(data_store, supervisor)
        session = await coordinator.create("reserved", ["a", "b"], {"a": 1, "b": 1})

        await coordinator.start(session.id)

        assert supervisor.reserved == ["a", "b"]
        assert supervisor.started == []
        await coordinator.wait(session.id)

    async def test_member_already_running_fails(self, data_store):
        await _add_use_cases(data_store, ("a", None), ("b", None))
        supervisor = FakeSupervisor({}, busy={"a"})
        coordinator = SessionCoordinator(data_store, supervisor)
        session = await coordinator.create("clash", ["a", "b"], {"a": 1, "b": 1})

        await coordinator.start(session.id)
        done = await coordinator.wait(session.id)

        assert supervisor.started == ["b"]
        assert done.status == SessionStatus.PARTIAL_SUCCESS
        assert done.use_case_statuses == {"a": "FAILED", "b": "SUCCESS"}


@pytest.mark.asyncio
class TestStop:
    """Tests for stopping sessions."""

    async def test_stop_running_session(self, data_store):
        await _add_use_cases(data_store, ("a", None), ("b", None), ("c", None))
        supervisor = FakeSupervisor({}, hold={"a", "b", "c"})
        coordinator = SessionCoordinator(data_store, supervisor)
        session = await coordinator.create("halt", ["a", "b", "c"], {"a": 1, "b": 1, "c": 1})

        await coordinator.start(session.id)
        await _wait_for_starts(supervisor, 3)

        assert await coordinator.stop(session.id) is True
        stopped = await coordinator.get_status(session.id)
        assert stopped.status == SessionStatus.FAILED
        assert stopped.failure_count == 3
        assert stopped.completed_at is not None
        assert sorted(supervisor.stopped) == ["a", "b", "c"]

        # Member outcomes reported after the stop are ignored
        done = await coordinator.wait(session.id)
        assert done.status == SessionStatus.FAILED
        assert done.success_count == 0
        assert done.failure_count == 3
        assert done.completed_at == stopped.completed_at

    async def test_stop_waits_for_member_runs(self, data_store):
        await _add_use_cases(data_store, ("a", None), ("b", None))
        supervisor = FakeSupervisor({}, hold={"a", "b"})
        coordinator = SessionCoordinator(data_store, supervisor)
        session = await coordinator.create("drain", ["a", "b"], {"a": 1, "b": 1})

        await coordinator.start(session.id)
        assert await coordinator.stop(session.id) is True

        # Stopped straight after start: every member was reached and has returned
        assert sorted(supervisor.stopped) == ["a", "b"]
        assert sorted(supervisor.started) == ["a", "b"]
        assert session.id not in coordinator._tasks

    async def test_stop_keeps_finished_members(self, data_store):
        await _add_use_cases(data_store, ("a", None), ("b", None))
        supervisor = FakeSupervisor({}, hold={"b"})
        coordinator = SessionCoordinator(data_store, supervisor)
        session = await coordinator.create("half", ["a", "b"], {"a": 1, "b": 1})
        await coordinator.start(session.id)
        await _wait_for_member(coordinator, session.id, "a")

        await coordinator.stop(session.id)

        stopped = await coordinator.get_status(session.id)
        assert supervisor.stopped == ["b"]
        assert stopped.success_count == 1
        assert stopped.failure_count == 1
        assert stopped.use_case_statuses == {"a": "SUCCESS", "b": "FAILED"}

    async def test_stop_terminal_session_is_noop(self, data_store):
        await _add_use_cases(data_store, ("a", None))
        coordinator = SessionCoordinator(data_store, FakeSupervisor({}))
        session = await coordinator.create("done", ["a"], {"a": 1})
        await coordinator.start(session.id)
        done = await coordinator.wait(session.id)

        assert await coordinator.stop(session.id) is False

        after = await coordinator.get_status(session.id)
        assert after.status == SessionStatus.SUCCESS
        assert after.completed_at == done.completed_at

    async def test_stop_idle_or_missing(self, data_store):
        await _add_use_cases(data_store, ("a", None))
        coordinator = SessionCoordinator(data_store, FakeSupervisor({}))
        session = await coordinator.create("idle", ["a"], {"a": 1})

        assert await coordinator.stop(session.id) is False
        assert await coordinator.stop("session_missing") is False
        assert (await coordinator.get_status(session.id)).status == SessionStatus.IDLE


@pytest.mark.asyncio
@pytest.mark.skipif(sys.platform == "win32", reason="bash fake engine")
class TestWithSupervisor:
    """Sessions driven by the real supervisor and a fake engine."""

    async def test_missing_plan_gives_partial_success(self, data_store, supervisor, fake_engine, make_use_case):
        fake_engine()
        await make_use_case("uc_good")
        await make_use_case("uc_broken", jmx_path="/nonexistent/plan.jmx")
        coordinator = SessionCoordinator(data_store, supervisor)
        session = await coordinator.create("real", ["uc_good", "uc_broken"], {"uc_good": 2, "uc_broken": 2})

        await coordinator.start(session.id)
        done = await coordinator.wait(session.id)

        assert done.status == SessionStatus.PARTIAL_SUCCESS
        assert done.use_case_statuses == {"uc_good": "SUCCESS", "uc_broken": "FAILED"}
        assert done.use_case_report_urls["uc_good"].startswith("/reports/report_uc_good_")
        assert (await data_store.get_use_case("uc_broken")).status == UseCaseStatus.FAILED

    async def test_stop_right_after_start_leaves_nothing_running(
        self, data_store, supervisor, fake_engine, make_use_case
    ):
        fake_engine(SLOW_ENGINE)
        await make_use_case("uc_one")
        await make_use_case("uc_two")
        coordinator = SessionCoordinator(data_store, supervisor)
        session = await coordinator.create("brief", ["uc_one", "uc_two"], {"uc_one": 1, "uc_two": 1})

        await coordinator.start(session.id)
        assert await coordinator.stop(session.id) is True

        assert await supervisor.list_running() == []
        for use_case_id in ("uc_one", "uc_two"):
            assert not supervisor.is_running(use_case_id)
            assert (await data_store.get_use_case(use_case_id)).status == UseCaseStatus.STOPPED

        stopped = await coordinator.get_status(session.id)
        assert stopped.status == SessionStatus.FAILED
        assert stopped.failure_count == 2
