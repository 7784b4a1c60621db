from pydantic import BaseModel, Field, field_validator
from typing import List, Optional
from datetime import datetime

from engine.src.models.step import CriterionStatus, StepStatus

class StartExecutionRequest(BaseModel):
    drill_id: str

class RerunRequest(BaseModel):
    drill_id: str
    steps_to_run: List[str] = Field(min_length=1)

class ManualStepUpdate(BaseModel):
    drill_id: str
    step_id: str
    status: StepStatus
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result_text: Optional[str] = None
    assignee: Optional[str] = None

class StepOverrideRequest(BaseModel):
    drill_id: str
    step_id: str
    new_status: StepStatus
    reason: Optional[str] = None
    user_name: Optional[str] = None

    @field_validator("new_status")
    @classmethod
    def must_be_terminal(cls, value: StepStatus) -> StepStatus:
        if not value.is_terminal:
            raise ValueError("new_status must be Completed-Success, Completed-Skipped or Completed-Failure")
        return value

class ScenarioConfirmation(BaseModel):
    drill_id: str
    scenario_id: str
    final_status: str
    final_reason: Optional[str] = None

class CriterionEvaluation(BaseModel):
    drill_id: str
    criterion_id: str
    status: CriterionStatus
    checked_by: str

class AcceptedResponse(BaseModel):
    message: str
    drill_id: Optional[str] = None
    scenario_id: Optional[str] = None
