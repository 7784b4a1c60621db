"""Shared fixtures for engine tests."""

import asyncio
import json
import sys
from datetime import datetime
from typing import Dict, List, Optional

import pytest

from engine.src.config import Settings
from engine.src.models.step import (
    CriterionExecutionRecord,
    CriterionStatus,
    ScenarioExecutionRecord,
    Step,
    StepExecutionRecord,
    StepOutcome,
    StepStatus,
)
from engine.src.services.broadcaster import EventBroadcaster
from engine.src.services.errors import StatePersistenceError
from engine.src.services.recorder import StateRecorder
from engine.src.services.remote_command import RemoteCommand

class FakeStateStore:
    """In-memory state store with the same surface as StateStore."""

    def __init__(self):
        self.steps: Dict[str, List[Step]] = {}
        self.scenario_types: Dict[str, str] = {}
        self.settings: Dict[str, str] = {}
        self.step_records: Dict[tuple, StepExecutionRecord] = {}
        self.scenario_records: Dict[tuple, ScenarioExecutionRecord] = {}
        self.criterion_records: Dict[tuple, CriterionExecutionRecord] = {}
        self.saved_logs: List[tuple] = []
        self.writes: List[tuple] = []
        self.fail_writes = 0

    def add_scenario(self, scenario_id: str, steps: List[Step], scenario_type: str = "AUTOMATION"):
        self.steps[scenario_id] = steps
        self.scenario_types[scenario_id] = scenario_type

    def status(self, drill_id: str, step_id: str) -> Optional[StepStatus]:
        record = self.step_records.get((drill_id, step_id))
        return record.status if record else None

    def _check_write(self):
        if self.fail_writes > 0:
            self.fail_writes -= 1
            raise StatePersistenceError("database is unavailable")

    async def load_steps(self, scenario_id: str) -> List[Step]:
        return list(self.steps.get(scenario_id, []))

    async def find_scenario_id(self, step_id: str) -> Optional[str]:
        for scenario_id, steps in self.steps.items():
            if any(step.id == step_id for step in steps):
                return scenario_id
        return None

    async def get_scenario_type(self, scenario_id: str) -> Optional[str]:
        return self.scenario_types.get(scenario_id)

    async def get_setting(self, key: str) -> Optional[str]:
        return self.settings.get(key)

    async def get_step_statuses(self, drill_id: str, step_ids: List[str]) -> Dict[str, StepStatus]:
        return {
            step_id: self.step_records[(drill_id, step_id)].status
            for step_id in step_ids
            if (drill_id, step_id) in self.step_records
        }

    async def get_step_record(self, drill_id: str, step_id: str) -> Optional[StepExecutionRecord]:
        return self.step_records.get((drill_id, step_id))

    async def upsert_step(self, drill_id: str, step_id: str, **values) -> StepExecutionRecord:
        self._check_write()
        existing = self.step_records.get((drill_id, step_id))
        data = existing.model_dump() if existing else {"drill_id": drill_id, "step_id": step_id}
        data.update(values)
        record = StepExecutionRecord(**data)
        self.step_records[(drill_id, step_id)] = record
        self.writes.append(("step", step_id, record.status))
        return record

    async def save_step_log(self, drill_id: str, step_id: str, result_text: str):
        self.saved_logs.append((step_id, result_text))

    async def upsert_scenario(self, drill_id, scenario_id, final_status, final_reason):
        self._check_write()
        record = ScenarioExecutionRecord(
            drill_id=drill_id,
            scenario_id=scenario_id,
            final_status=final_status,
            final_reason=final_reason,
        )
        self.scenario_records[(drill_id, scenario_id)] = record
        return record

    async def upsert_criterion(self, drill_id, criterion_id, status, checked_by):
        self._check_write()
        record = CriterionExecutionRecord(
            drill_id=drill_id,
            criterion_id=criterion_id,
            status=CriterionStatus(status),
            checked_by=checked_by,
            checked_at=datetime.utcnow(),
        )
        self.criterion_records[(drill_id, criterion_id)] = record
        return record

    async def ping(self) -> bool:
        return True

class RecordingSubscriber:
    def __init__(self, fail: bool = False):
        self.messages: List[dict] = []
        self.closed = False
        self.fail = fail

    async def send_text(self, data: str):
        if self.fail:
            raise ConnectionError("socket closed")
        self.messages.append(json.loads(data))

    async def close(self, code: int = 1000):
        self.closed = True

    def types(self) -> List[str]:
        return [message["type"] for message in self.messages]

    def of_type(self, message_type: str) -> List[dict]:
        return [message for message in self.messages if message["type"] == message_type]

class FakeLogBuffer:
    def __init__(self):
        self.logs: Dict[tuple, str] = {}

    async def reset(self, drill_id: str, step_id: str):
        self.logs[(drill_id, step_id)] = ""

    async def append(self, drill_id: str, step_id: str, chunk: str):
        self.logs[(drill_id, step_id)] = self.logs.get((drill_id, step_id), "") + chunk

    async def get_logs(self, drill_id: str, step_ids: List[str]) -> Dict[str, str]:
        return {
            step_id: self.logs[(drill_id, step_id)]
            for step_id in step_ids
            if (drill_id, step_id) in self.logs
        }

    async def close(self):
        pass

class ScriptedExecutor:
    """Executor double whose outcome per step is set by the test."""

    def __init__(self, store: FakeStateStore, recorder: StateRecorder):
        self.store = store
        self.recorder = recorder
        self.results: Dict[str, StepStatus] = {}
        self.gates: Dict[str, asyncio.Event] = {}
        self.calls: List[str] = []
        self.cancelled: List[str] = []

    def hold(self, step_id: str) -> asyncio.Event:
        self.gates[step_id] = asyncio.Event()
        return self.gates[step_id]

    async def execute(self, drill_id: str, step: Step, owner=None) -> StepOutcome:
        self.calls.append(step.id)
        await self.recorder.start_step(drill_id, step.id, "AUTOMATION")
        if step.id in self.gates:
            await self.gates[step.id].wait()
        status = self.results.get(step.id, StepStatus.SUCCESS)
        error = None if status is StepStatus.SUCCESS else f"Execution failed with exit code 1."
        await self.recorder.finish_owned_step(drill_id, step.id, status, error or "ok", owner)
        return StepOutcome(step_id=step.id, status=status, error=error, exit_code=0 if error is None else 1)

    def cancel(self, drill_id: str, step_id: str) -> bool:
        # Held steps keep running until the test releases them
        self.cancelled.append(step_id)
        return False

def make_step(step_id: str, depends_on=(), scenario_id: str = "scn-1", **kwargs) -> Step:
    values = {
        "title": f"Step {step_id}",
        "command": "print('ok')",
        "host": "10.0.0.5",
        "user": "drill",
    }
    values.update(kwargs)
    return Step(id=step_id, scenario_id=scenario_id, depends_on=list(depends_on), **values)

def python_command_factory(step: Step, timeout: float, on_output=None) -> RemoteCommand:
    """Run the step's command as a local Python snippet instead of over SSH."""
    return RemoteCommand(
        [sys.executable, "-u", "-c", step.command],
        timeout,
        on_output=on_output,
        name=f"step {step.id}",
    )

async def wait_for(predicate, timeout: float = 5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)

@pytest.fixture
def settings():
    return Settings(
        persist_retry_attempts=2,
        persist_retry_backoff=0,
        log_save_interval=0.05,
        default_step_timeout=5,
        test_run_step_timeout=5,
        test_run_total_timeout=30,
        test_run_close_grace=0,
    )

@pytest.fixture
def store():
    return FakeStateStore()

@pytest.fixture
def broadcaster():
    return EventBroadcaster()

@pytest.fixture
def subscriber(broadcaster):
    sub = RecordingSubscriber()
    broadcaster.subscribe("execution/drill-1", sub)
    return sub

@pytest.fixture
def recorder(store, broadcaster, settings):
    return StateRecorder(store, broadcaster, settings)

@pytest.fixture
def log_buffer():
    return FakeLogBuffer()

@pytest.fixture
def scripted_executor(store, recorder):
    return ScriptedExecutor(store, recorder)
