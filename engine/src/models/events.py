"""
Wire messages for the live-update channels.

Topic A (``execution/{drill_id}``) carries ``{type, payload}`` events.
Topic B (``scenario_test/{scenario_id}``) carries ``{type, data}`` messages
where ``type`` is ``log`` or ``control``.
"""

from pydantic import BaseModel
from typing import Any, Dict, List, Literal, Optional
from enum import Enum

from engine.src.models.step import (
    StepExecutionRecord,
    ScenarioExecutionRecord,
    CriterionExecutionRecord,
)

class EventType(str, Enum):
    STEP_UPDATE = "STEP_UPDATE"
    SCENARIO_UPDATE = "SCENARIO_UPDATE"
    CRITERION_UPDATE = "CRITERION_UPDATE"
    LEVEL_START = "LEVEL_START"
    EXECUTION_PAUSED_ON_FAILURE = "EXECUTION_PAUSED_ON_FAILURE"
    EXECUTION_COMPLETE = "EXECUTION_COMPLETE"
    EXECUTION_ERROR = "EXECUTION_ERROR"
    STEP_LOG_UPDATE = "STEP_LOG_UPDATE"
    STATE_STALE = "STATE_STALE"

class ClientMessageType(str, Enum):
    RETRY_STEP = "RETRY_STEP"
    SKIP_STEP = "SKIP_STEP"
    ABORT_RUN = "ABORT_RUN"

class TestRunSignal(str, Enum):
    __test__ = False

    TEST_RUN_COMPLETE = "TEST_RUN_COMPLETE"
    TEST_RUN_FAILED = "TEST_RUN_FAILED"
    TEST_RUN_ABORTED = "TEST_RUN_ABORTED"

def execution_topic(drill_id: str) -> str:
    return f"execution/{drill_id}"

def scenario_test_topic(scenario_id: str) -> str:
    return f"scenario_test/{scenario_id}"

class ExecutionEvent(BaseModel):
    type: EventType
    payload: Dict[str, Any] = {}

    def to_json(self) -> str:
        return self.model_dump_json()

class TestRunMessage(BaseModel):
    __test__ = False

    type: Literal["log", "control"]
    data: str

    def to_json(self) -> str:
        return self.model_dump_json()

class ClientMessage(BaseModel):
    """Client-to-server message on either topic."""
    type: str
    payload: Dict[str, Any] = {}

    @property
    def step_id(self) -> Optional[str]:
        return self.payload.get("step_id")

    @property
    def scenario_id(self) -> Optional[str]:
        return self.payload.get("scenario_id")

# Event constructors

def step_update(record: StepExecutionRecord) -> ExecutionEvent:
    return ExecutionEvent(type=EventType.STEP_UPDATE, payload=record.model_dump(mode="json"))

def scenario_update(record: ScenarioExecutionRecord) -> ExecutionEvent:
    payload = record.model_dump(mode="json")
    payload.update({"id": record.scenario_id, "type": "scenario"})
    return ExecutionEvent(type=EventType.SCENARIO_UPDATE, payload=payload)

def criterion_update(record: CriterionExecutionRecord) -> ExecutionEvent:
    return ExecutionEvent(type=EventType.CRITERION_UPDATE, payload=record.model_dump(mode="json"))

def level_start(scenario_id: str, step_ids: List[str]) -> ExecutionEvent:
    return ExecutionEvent(
        type=EventType.LEVEL_START,
        payload={"step_ids": list(step_ids), "scenario_id": scenario_id},
    )

def paused_on_failure(step_id: str, error: Optional[str], **details: Any) -> ExecutionEvent:
    payload = {"step_id": step_id, "error": error}
    payload.update(details)
    return ExecutionEvent(type=EventType.EXECUTION_PAUSED_ON_FAILURE, payload=payload)

def execution_complete(scenario_id: str) -> ExecutionEvent:
    return ExecutionEvent(type=EventType.EXECUTION_COMPLETE, payload={"scenario_id": scenario_id})

def execution_error(error: str, scenario_id: Optional[str] = None) -> ExecutionEvent:
    return ExecutionEvent(
        type=EventType.EXECUTION_ERROR,
        payload={"error": error, "scenario_id": scenario_id},
    )

def step_log_update(step_id: str, chunk: str) -> ExecutionEvent:
    return ExecutionEvent(
        type=EventType.STEP_LOG_UPDATE,
        payload={"step_id": step_id, "log_chunk": chunk},
    )

def state_stale(entity: str, entity_id: str, error: str) -> ExecutionEvent:
    return ExecutionEvent(
        type=EventType.STATE_STALE,
        payload={"entity": entity, "id": entity_id, "error": error},
    )

def run_log_message(text: str) -> TestRunMessage:
    return TestRunMessage(type="log", data=text)

def run_control_message(signal: TestRunSignal) -> TestRunMessage:
    return TestRunMessage(type="control", data=signal.value)
