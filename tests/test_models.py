"""Unit tests for Pydantic models."""

import pytest
from datetime import datetime, timedelta, timezone

from pydantic import ValidationError

from common.models.execution import ExecutionOutcome
from common.models.session import SessionStatus, TestSession
from common.models.use_case import ServerConfig, ThreadGroupConfig, UseCase, UseCaseStatus


class TestUseCaseModels:
    """Tests for use case models."""

    def test_use_case_defaults(self):
        use_case = UseCase(id="uc_1", name="Login", jmx_path="/data/jmx/login.jmx")

        assert use_case.status == UseCaseStatus.IDLE
        assert use_case.csv_path is None
        assert use_case.requires_csv is False
        assert use_case.priority is None
        assert use_case.is_running is False
        assert use_case.needs_csv is False

    def test_needs_csv(self):
        assert UseCase(id="a", name="a", jmx_path="x", requires_csv=True).needs_csv
        assert UseCase(id="b", name="b", jmx_path="x", csv_path="/data/users.csv").needs_csv
        assert not UseCase(id="c", name="c", jmx_path="x", csv_path="   ").needs_csv

    def test_negative_user_count_rejected(self):
        with pytest.raises(ValidationError):
            UseCase(id="a", name="a", jmx_path="x", user_count=-1)

    @pytest.mark.parametrize("status,terminal", [
        (UseCaseStatus.IDLE, False),
        (UseCaseStatus.RUNNING, False),
        (UseCaseStatus.SUCCESS, True),
        (UseCaseStatus.FAILED, True),
        (UseCaseStatus.STOPPED, True),
    ])
    def test_status_terminal(self, status, terminal):
        assert status.is_terminal is terminal

    def test_thread_group_config_aliases(self):
        config = ThreadGroupConfig.model_validate({
            "numberOfThreads": 10,
            "rampUpPeriod": 30,
            "infiniteLoop": True,
            "actionAfterSamplerError": "Stop Test",
            "unknownKey": "ignored",
        })

        assert config.number_of_threads == 10
        assert config.ramp_up_period == 30
        assert config.infinite_loop is True
        assert config.loop_count is None
        assert config.action_after_sampler_error == "Stop Test"

    def test_thread_group_config_field_names(self):
        config = ThreadGroupConfig(number_of_threads=4, duration=60)

        assert config.number_of_threads == 4
        assert config.duration == 60

    def test_thread_group_negative_duration_rejected(self):
        with pytest.raises(ValidationError):
            ThreadGroupConfig.model_validate({"duration": -1})

    def test_server_config(self):
        config = ServerConfig.model_validate({"server": "api.example.com", "port": "8443", "extra": 1})

        assert config.server == "api.example.com"
        assert config.port == "8443"
        assert config.protocol is None


class TestSessionModels:
    """Tests for test session models."""

    def test_session_defaults(self):
        session = TestSession(id="session_1", name="Nightly")

        assert session.status == SessionStatus.IDLE
        assert session.success_count == 0
        assert session.failure_count == 0
        assert session.is_running is False
        assert session.is_terminal is False
        assert session.duration_seconds == 0

    def test_member_terminal(self):
        session = TestSession(
            id="session_1",
            name="Nightly",
            use_case_ids=["a", "b"],
            use_case_statuses={"a": "SUCCESS", "b": "RUNNING"},
        )

        assert session.member_is_terminal("a")
        assert not session.member_is_terminal("b")
        assert not session.member_is_terminal("c")
        assert not session.all_members_terminal

        session.use_case_statuses["b"] = "STOPPED"
        assert session.all_members_terminal

    def test_empty_session_not_all_terminal(self):
        assert not TestSession(id="s", name="s").all_members_terminal

    @pytest.mark.parametrize("status,terminal", [
        (SessionStatus.IDLE, False),
        (SessionStatus.RUNNING, False),
        (SessionStatus.SUCCESS, True),
        (SessionStatus.FAILED, True),
        (SessionStatus.PARTIAL_SUCCESS, True),
    ])
    def test_status_terminal(self, status, terminal):
        assert status.is_terminal is terminal

    def test_duration(self):
        started = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        session = TestSession(
            id="s",
            name="s",
            started_at=started,
            completed_at=started + timedelta(minutes=2, seconds=5),
        )

        assert session.duration_seconds == 125


class TestExecutionOutcome:
    """Tests for run outcomes."""

    def test_succeeded(self):
        assert ExecutionOutcome(use_case_id="uc_1", status=UseCaseStatus.SUCCESS).succeeded
        assert not ExecutionOutcome(use_case_id="uc_1", status=UseCaseStatus.STOPPED).succeeded

    def test_serialization(self):
        outcome = ExecutionOutcome(
            use_case_id="uc_1",
            status=UseCaseStatus.FAILED,
            exit_code=1,
            error="JMeter exited with code: 1",
        )

        data = outcome.model_dump(mode="json")

        assert data["status"] == "FAILED"
        assert data["exit_code"] == 1
        assert data["report_url"] is None
