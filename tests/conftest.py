"""Pytest configuration and shared fixtures."""

import stat
import tempfile
import shutil
from pathlib import Path
from typing import Callable, Generator

import pytest

from common.models.use_case import UseCase
from orchestrator.config import Settings, init_settings
from orchestrator.core.execution_supervisor import ExecutionSupervisor
from orchestrator.core.termination import ProcessTerminator
from orchestrator.storage.data_store import DataStore


SAMPLE_JMX = """<?xml version="1.0" encoding="UTF-8"?>
<jmeterTestPlan version="1.2" properties="5.0" jmeter="5.6.3">
  <hashTree>
    <TestPlan guiclass="TestPlanGui" testclass="TestPlan" testname="Checkout" enabled="true">
      <boolProp name="TestPlan.functional_mode">false</boolProp>
    </TestPlan>
    <hashTree>
      <ThreadGroup guiclass="ThreadGroupGui" testclass="ThreadGroup" testname="Shoppers" enabled="true">
        <stringProp name="ThreadGroup.on_sample_error">continue</stringProp>
        <elementProp name="ThreadGroup.main_controller" elementType="LoopController" guiclass="LoopControlPanel" testclass="LoopController" testname="Loop Controller" enabled="true">
          <boolProp name="LoopController.continue_forever">false</boolProp>
          <stringProp name="LoopController.loops">1</stringProp>
        </elementProp>
        <stringProp name="ThreadGroup.num_threads">1</stringProp>
        <stringProp name="ThreadGroup.ramp_time">1</stringProp>
        <boolProp name="ThreadGroup.scheduler">false</boolProp>
        <stringProp name="ThreadGroup.duration"></stringProp>
        <stringProp name="ThreadGroup.delay"></stringProp>
      </ThreadGroup>
      <hashTree>
        <CSVDataSet guiclass="TestBeanGUI" testclass="CSVDataSet" testname="Users" enabled="true">
          <stringProp name="delimiter">,</stringProp>
          <stringProp name="filename">users.csv</stringProp>
          <boolProp name="recycle">true</boolProp>
        </CSVDataSet>
        <hashTree/>
        <HTTPSamplerProxy guiclass="HttpTestSampleGui" testclass="HTTPSamplerProxy" testname="Cart" enabled="true">
          <stringProp name="HTTPSampler.domain">localhost</stringProp>
          <stringProp name="HTTPSampler.port">80</stringProp>
          <stringProp name="HTTPSampler.protocol">http</stringProp>
          <stringProp name="HTTPSampler.path">/cart</stringProp>
        </HTTPSamplerProxy>
        <hashTree/>
        <CSVDataSet guiclass="TestBeanGUI" testclass="CSVDataSet" testname="Products" enabled="true">
          <stringProp name="filename">products.csv</stringProp>
        </CSVDataSet>
        <hashTree/>
      </hashTree>
    </hashTree>
  </hashTree>
</jmeterTestPlan>
"""

# Prints its arguments and the test plan it was given, then exits with $FAKE_EXIT
ECHO_ENGINE = """#!/bin/bash
echo "fake jmeter $@"
while [ $# -gt 0 ]; do
  if [ "$1" = "-t" ]; then cat "$2"; fi
  shift
done
exit ${FAKE_EXIT:-0}
"""

FAILING_ENGINE = """#!/bin/bash
echo "Error in NonGUIDriver"
exit 3
"""

SLOW_ENGINE = """#!/bin/bash
echo "Starting the test"
exec sleep 30
"""

STUBBORN_ENGINE = """#!/bin/bash
trap '' TERM
echo "Starting the test"
sleep 30
"""


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def data_store(temp_dir: Path) -> DataStore:
    """Create a DataStore instance with temporary directory."""
    return DataStore(temp_dir)


@pytest.fixture
def sample_jmx(temp_dir: Path) -> Path:
    """Sample test plan on disk."""
    path = temp_dir / "jmx" / "checkout.jmx"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(SAMPLE_JMX, encoding="utf-8")
    return path


@pytest.fixture
def fake_engine(temp_dir: Path) -> Callable[[str], Path]:
    """Factory writing an executable fake engine script."""

    def _make(body: str = ECHO_ENGINE, name: str = "fake-jmeter.sh") -> Path:
        bin_dir = temp_dir / "bin"
        bin_dir.mkdir(exist_ok=True)
        path = bin_dir / name
        path.write_text(body)
        path.chmod(path.stat().st_mode | stat.S_IXUSR)
        return path

    return _make


@pytest.fixture
def settings(temp_dir: Path) -> Settings:
    """Settings pointing at the temporary directory with short timeouts."""
    return init_settings(
        data_path=temp_dir,
        jmeter_path=str(temp_dir / "bin" / "fake-jmeter.sh"),
        csv_server_dir="/srv/jmeter/csv",
        run_timeout_seconds=10,
        stop_grace_seconds=2,
        stop_kill_wait_seconds=2,
        sweep_wait_seconds=0.5,
    )


@pytest.fixture
def terminator() -> ProcessTerminator:
    """Terminator that does not scan the host process table."""
    return ProcessTerminator(
        grace_seconds=2,
        kill_wait_seconds=2,
        sweep_wait_seconds=0.5,
        process_finder=lambda signature: [],
    )


@pytest.fixture
def supervisor(data_store: DataStore, settings: Settings, terminator: ProcessTerminator) -> ExecutionSupervisor:
    """Supervisor wired to the temporary data store and fake engine location."""
    sup = ExecutionSupervisor(data_store, settings, terminator=terminator)
    sup.common_jmeter_paths = []
    return sup


@pytest.fixture
def make_use_case(data_store: DataStore, sample_jmx: Path):
    """Factory persisting a use case that points at the sample test plan."""

    async def _make(use_case_id: str = "uc_checkout", **kwargs) -> UseCase:
        fields = {
            "id": use_case_id,
            "name": kwargs.pop("name", use_case_id.replace("_", " ").title()),
            "jmx_path": str(sample_jmx),
        }
        fields.update(kwargs)
        return await data_store.save_use_case(UseCase(**fields))

    return _make
