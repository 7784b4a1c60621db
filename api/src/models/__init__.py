from api.src.models.requests import (
    StartExecutionRequest,
    RerunRequest,
    ManualStepUpdate,
    StepOverrideRequest,
    ScenarioConfirmation,
    CriterionEvaluation,
    AcceptedResponse,
)

__all__ = [
    "StartExecutionRequest",
    "RerunRequest",
    "ManualStepUpdate",
    "StepOverrideRequest",
    "ScenarioConfirmation",
    "CriterionEvaluation",
    "AcceptedResponse",
]
