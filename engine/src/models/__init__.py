from engine.src.models.step import (
    AUTOMATION_ASSIGNEE,
    MANUAL_OVERRIDE_ASSIGNEE,
    StepStatus,
    CriterionStatus,
    Step,
    StepExecutionRecord,
    ScenarioExecutionRecord,
    CriterionExecutionRecord,
    StepOutcome,
)
from engine.src.models.events import (
    EventType,
    ClientMessageType,
    TestRunSignal,
    ExecutionEvent,
    TestRunMessage,
    ClientMessage,
    execution_topic,
    scenario_test_topic,
)

__all__ = [
    "AUTOMATION_ASSIGNEE",
    "MANUAL_OVERRIDE_ASSIGNEE",
    "StepStatus",
    "CriterionStatus",
    "Step",
    "StepExecutionRecord",
    "ScenarioExecutionRecord",
    "CriterionExecutionRecord",
    "StepOutcome",
    "EventType",
    "ClientMessageType",
    "TestRunSignal",
    "ExecutionEvent",
    "TestRunMessage",
    "ClientMessage",
    "execution_topic",
    "scenario_test_topic",
]
