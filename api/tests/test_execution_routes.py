"""Tests for the execution trigger routes."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from api.src.main import create_app
from engine.src.models.events import run_log_message
from engine.src.models.step import (
    CriterionExecutionRecord,
    CriterionStatus,
    ScenarioExecutionRecord,
    Step,
    StepExecutionRecord,
    StepStatus,
)
from engine.src.services.broadcaster import EventBroadcaster
from engine.src.services.errors import (
    DependencyCycleError,
    InvalidScenarioError,
    ScenarioNotFoundError,
    StatePersistenceError,
    TestRunAlreadyActiveError,
)

def step_record(status=StepStatus.SUCCESS, **kwargs):
    return StepExecutionRecord(drill_id="drill-1", step_id="s1", status=status, **kwargs)

@pytest.fixture
def orchestrator():
    orch = MagicMock()
    orch.broadcaster = EventBroadcaster()
    orch.store.load_steps = AsyncMock(return_value=[
        Step(id="s1", scenario_id="scn-1"),
        Step(id="s2", scenario_id="scn-1", depends_on=["s1"]),
    ])
    orch.store.ping = AsyncMock(return_value=True)
    orch.log_buffer.ping = AsyncMock(return_value=True)
    orch.scheduler.start = AsyncMock(return_value=True)
    orch.scheduler.active_runs.return_value = []
    orch.overrides.record_manual_step = AsyncMock(return_value=step_record(StepStatus.IN_PROGRESS))
    orch.overrides.force_override = AsyncMock(return_value=step_record(assignee="MANUAL_OVERRIDE"))
    orch.overrides.confirm_scenario = AsyncMock(return_value=ScenarioExecutionRecord(
        drill_id="drill-1", scenario_id="scn-1", final_status="Success", final_reason="ok"
    ))
    orch.overrides.evaluate_criterion = AsyncMock(return_value=CriterionExecutionRecord(
        drill_id="drill-1", criterion_id="c1", status=CriterionStatus.PASS, checked_by="alice"
    ))
    orch.overrides.live_logs = AsyncMock(return_value={"s1": "output"})
    orch.test_runs.start = AsyncMock()
    orch.test_runs.active_runs.return_value = []
    orch.test_runs.greeting.return_value = run_log_message("*** Connected. Ready to receive a test run from the API. ***")
    orch.shutdown = AsyncMock()
    return orch

@pytest.fixture
def client(orchestrator):
    with TestClient(create_app(orchestrator)) as client:
        yield client

def test_start_automatic_runs_all_steps(client, orchestrator):
    response = client.post("/api/execution/scenario/scn-1/start_automatic", json={"drill_id": "drill-1"})

    assert response.status_code == 202
    assert response.json()["scenario_id"] == "scn-1"
    orchestrator.scheduler.start.assert_awaited_once_with("drill-1", ["s1", "s2"], "scn-1")

def test_start_automatic_without_steps(client, orchestrator):
    orchestrator.store.load_steps.return_value = []

    response = client.post("/api/execution/scenario/scn-1/start_automatic", json={"drill_id": "drill-1"})

    assert response.status_code == 404
    orchestrator.scheduler.start.assert_not_awaited()

def test_start_while_running_conflicts(client, orchestrator):
    orchestrator.scheduler.start.return_value = False

    response = client.post("/api/execution/scenario/scn-1/start_automatic", json={"drill_id": "drill-1"})

    assert response.status_code == 409

def test_start_with_cycle_is_unprocessable(client, orchestrator):
    orchestrator.scheduler.start.side_effect = DependencyCycleError(["s1", "s2"])

    response = client.post("/api/execution/scenario/scn-1/start_automatic", json={"drill_id": "drill-1"})

    assert response.status_code == 422
    assert "s1, s2" in response.json()["detail"]

def test_rerun_subset(client, orchestrator):
    response = client.post(
        "/api/execution/scenario/scn-1/rerun",
        json={"drill_id": "drill-1", "steps_to_run": ["s2"]},
    )

    assert response.status_code == 202
    orchestrator.scheduler.start.assert_awaited_once_with("drill-1", ["s2"], "scn-1")

def test_rerun_requires_steps(client, orchestrator):
    response = client.post(
        "/api/execution/scenario/scn-1/rerun",
        json={"drill_id": "drill-1", "steps_to_run": []},
    )

    assert response.status_code == 422
    orchestrator.scheduler.start.assert_not_awaited()

def test_manual_step_update(client, orchestrator):
    response = client.post(
        "/api/execution/step",
        json={"drill_id": "drill-1", "step_id": "s1", "status": "InProgress", "assignee": "bob"},
    )

    assert response.status_code == 200
    assert response.json()["status"] == "InProgress"
    args = orchestrator.overrides.record_manual_step.await_args
    assert args.args == ("drill-1", "s1", StepStatus.IN_PROGRESS)
    assert args.kwargs["assignee"] == "bob"

def test_override_formats_reason(client, orchestrator):
    response = client.post(
        "/api/execution/step/override",
        json={"drill_id": "drill-1", "step_id": "s1", "new_status": "Completed-Success",
              "reason": "checked the replica", "user_name": "carol"},
    )

    assert response.status_code == 200
    assert response.json()["assignee"] == "MANUAL_OVERRIDE"
    orchestrator.overrides.force_override.assert_awaited_once_with(
        "drill-1", "s1", StepStatus.SUCCESS, "[MANUAL OVERRIDE by carol]: checked the replica"
    )

def test_override_default_reason(client, orchestrator):
    client.post(
        "/api/execution/step/override",
        json={"drill_id": "drill-1", "step_id": "s1", "new_status": "Completed-Skipped"},
    )

    reason = orchestrator.overrides.force_override.await_args.args[3]
    assert reason == "[MANUAL OVERRIDE by Admin]: No reason given."

def test_override_rejects_non_terminal_status(client, orchestrator):
    response = client.post(
        "/api/execution/step/override",
        json={"drill_id": "drill-1", "step_id": "s1", "new_status": "InProgress"},
    )

    assert response.status_code == 422
    orchestrator.overrides.force_override.assert_not_awaited()

def test_override_not_persisted(client, orchestrator):
    orchestrator.overrides.force_override.return_value = None

    response = client.post(
        "/api/execution/step/override",
        json={"drill_id": "drill-1", "step_id": "s1", "new_status": "Completed-Failure"},
    )

    assert response.status_code == 503

def test_confirm_scenario(client, orchestrator):
    response = client.post(
        "/api/execution/scenario",
        json={"drill_id": "drill-1", "scenario_id": "scn-1", "final_status": "Success", "final_reason": "ok"},
    )

    assert response.status_code == 200
    assert response.json()["final_status"] == "Success"

def test_evaluate_checkpoint(client, orchestrator):
    response = client.post(
        "/api/execution/checkpoint",
        json={"drill_id": "drill-1", "criterion_id": "c1", "status": "Pass", "checked_by": "alice"},
    )

    assert response.status_code == 200
    orchestrator.overrides.evaluate_criterion.assert_awaited_once_with("drill-1", "c1", CriterionStatus.PASS, "alice")

def test_live_logs(client, orchestrator):
    response = client.get("/api/execution/scenario/scn-1/live_logs", params={"drill_id": "drill-1"})

    assert response.status_code == 200
    assert response.json() == {"s1": "output"}

def test_live_logs_unknown_scenario(client, orchestrator):
    orchestrator.overrides.live_logs.side_effect = ScenarioNotFoundError("Scenario scn-9 has no steps")

    response = client.get("/api/execution/scenario/scn-9/live_logs", params={"drill_id": "drill-1"})

    assert response.status_code == 404

def test_live_logs_store_unavailable(client, orchestrator):
    orchestrator.overrides.live_logs.side_effect = StatePersistenceError("connection refused")

    response = client.get("/api/execution/scenario/scn-1/live_logs", params={"drill_id": "drill-1"})

    assert response.status_code == 503

def test_start_test_run(client, orchestrator):
    response = client.post("/api/scenarios/scn-1/test_run")

    assert response.status_code == 202
    orchestrator.test_runs.start.assert_awaited_once_with("scn-1")

@pytest.mark.parametrize("error, status_code", [
    (TestRunAlreadyActiveError("busy"), 409),
    (ScenarioNotFoundError("missing"), 404),
    (InvalidScenarioError("manual"), 400),
])
def test_test_run_errors(client, orchestrator, error, status_code):
    orchestrator.test_runs.start.side_effect = error

    response = client.post("/api/scenarios/scn-1/test_run")

    assert response.status_code == status_code

def test_shutdown_on_exit(orchestrator):
    with TestClient(create_app(orchestrator)):
        pass
    orchestrator.shutdown.assert_awaited_once()
