import logging
from typing import Dict

from fastapi import APIRouter, Depends, HTTPException

from api.src.dependencies import get_orchestrator
from api.src.models.requests import (
    AcceptedResponse,
    CriterionEvaluation,
    ManualStepUpdate,
    RerunRequest,
    ScenarioConfirmation,
    StartExecutionRequest,
    StepOverrideRequest,
)
from engine.src.models.step import (
    CriterionExecutionRecord,
    ScenarioExecutionRecord,
    StepExecutionRecord,
)
from engine.src.services.errors import (
    DependencyCycleError,
    InvalidScenarioError,
    ScenarioNotFoundError,
    StatePersistenceError,
    TestRunAlreadyActiveError,
)
from engine.src.services.orchestrator import Orchestrator
from engine.src.services.overrides import format_override_reason

logger = logging.getLogger(__name__)

router = APIRouter(tags=["execution"])

DEFAULT_OVERRIDE_USER = "Admin"
DEFAULT_OVERRIDE_REASON = "No reason given."

def _not_saved(entity: str):
    raise HTTPException(status_code=503, detail=f"{entity} could not be saved, state may be stale")

async def _start(orchestrator: Orchestrator, drill_id: str, step_ids, scenario_id: str) -> AcceptedResponse:
    try:
        started = await orchestrator.scheduler.start(drill_id, list(step_ids), scenario_id)
    except ScenarioNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except DependencyCycleError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except StatePersistenceError as e:
        logger.error(f"[Execution {drill_id}]: Could not start scenario {scenario_id}: {e}")
        raise HTTPException(status_code=503, detail="State store unavailable")

    if not started:
        raise HTTPException(status_code=409, detail=f"Scenario {scenario_id} is already running in drill {drill_id}")
    return AcceptedResponse(message="Execution accepted", drill_id=drill_id, scenario_id=scenario_id)

@router.post("/execution/scenario/{scenario_id}/start_automatic", status_code=202, response_model=AcceptedResponse)
async def start_automatic(
    scenario_id: str,
    body: StartExecutionRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Run every step of a scenario."""
    try:
        steps = await orchestrator.store.load_steps(scenario_id)
    except StatePersistenceError:
        raise HTTPException(status_code=503, detail="State store unavailable")
    if not steps:
        raise HTTPException(status_code=404, detail="No steps found for this scenario")

    return await _start(orchestrator, body.drill_id, [step.id for step in steps], scenario_id)

@router.post("/execution/scenario/{scenario_id}/rerun", status_code=202, response_model=AcceptedResponse)
async def rerun(
    scenario_id: str,
    body: RerunRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Run an explicit subset of a scenario's steps."""
    return await _start(orchestrator, body.drill_id, body.steps_to_run, scenario_id)

@router.post("/execution/step", response_model=StepExecutionRecord)
async def update_manual_step(
    body: ManualStepUpdate,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    try:
        record = await orchestrator.overrides.record_manual_step(
            body.drill_id,
            body.step_id,
            body.status,
            started_at=body.started_at,
            completed_at=body.completed_at,
            result_text=body.result_text,
            assignee=body.assignee,
        )
    except StatePersistenceError:
        record = None
    if record is None:
        _not_saved("Step")
    return record

@router.post("/execution/step/override", response_model=StepExecutionRecord)
async def override_step(
    body: StepOverrideRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Force a step's terminal status, resuming or pausing its run."""
    reason = format_override_reason(
        body.user_name or DEFAULT_OVERRIDE_USER,
        body.reason or DEFAULT_OVERRIDE_REASON,
    )
    record = await orchestrator.overrides.force_override(body.drill_id, body.step_id, body.new_status, reason)
    if record is None:
        _not_saved("Step")
    return record

@router.post("/execution/scenario", response_model=ScenarioExecutionRecord)
async def confirm_scenario(
    body: ScenarioConfirmation,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    record = await orchestrator.overrides.confirm_scenario(
        body.drill_id, body.scenario_id, body.final_status, body.final_reason
    )
    if record is None:
        _not_saved("Scenario")
    return record

@router.post("/execution/checkpoint", response_model=CriterionExecutionRecord)
async def evaluate_checkpoint(
    body: CriterionEvaluation,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    record = await orchestrator.overrides.evaluate_criterion(
        body.drill_id, body.criterion_id, body.status, body.checked_by
    )
    if record is None:
        _not_saved("Criterion")
    return record

@router.get("/execution/scenario/{scenario_id}/live_logs", response_model=Dict[str, str])
async def live_logs(
    scenario_id: str,
    drill_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Buffered output of a scenario's steps, for observers that joined mid-run."""
    try:
        return await orchestrator.overrides.live_logs(drill_id, scenario_id)
    except ScenarioNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StatePersistenceError as e:
        logger.error(f"[Execution {drill_id}]: Could not load steps of scenario {scenario_id}: {e}")
        raise HTTPException(status_code=503, detail="State store unavailable")

@router.post("/scenarios/{scenario_id}/test_run", status_code=202, response_model=AcceptedResponse)
async def start_test_run(
    scenario_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    try:
        await orchestrator.test_runs.start(scenario_id)
    except TestRunAlreadyActiveError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ScenarioNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidScenarioError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StatePersistenceError:
        raise HTTPException(status_code=503, detail="State store unavailable")

    return AcceptedResponse(message="Test run started", scenario_id=scenario_id)
