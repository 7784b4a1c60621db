"""
Step and execution record models.
"""

from pydantic import BaseModel
from typing import List, Optional
from datetime import datetime
from enum import Enum

# Assignee sentinels for records not written by a person
AUTOMATION_ASSIGNEE = "AUTOMATION"
MANUAL_OVERRIDE_ASSIGNEE = "MANUAL_OVERRIDE"

class StepStatus(str, Enum):
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    SUCCESS = "Completed-Success"
    FAILURE = "Completed-Failure"
    SKIPPED = "Completed-Skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.SUCCESS, StepStatus.FAILURE, StepStatus.SKIPPED)

    @property
    def satisfies_dependents(self) -> bool:
        """Whether dependents may run after a step ends in this status."""
        return self in (StepStatus.SUCCESS, StepStatus.SKIPPED)

class CriterionStatus(str, Enum):
    PASS = "Pass"
    FAIL = "Fail"

class Step(BaseModel):
    id: str
    scenario_id: str
    title: Optional[str] = None
    command: Optional[str] = None
    host: Optional[str] = None
    user: Optional[str] = None
    step_order: int = 0
    timeout_seconds: Optional[int] = None
    depends_on: List[str] = []

    @property
    def label(self) -> str:
        return f"{self.id} ({self.title})" if self.title else self.id

class StepExecutionRecord(BaseModel):
    drill_id: str
    step_id: str
    status: StepStatus
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result_text: Optional[str] = None
    assignee: Optional[str] = None

    class Config:
        from_attributes = True

class ScenarioExecutionRecord(BaseModel):
    drill_id: str
    scenario_id: str
    final_status: str
    final_reason: Optional[str] = None

    class Config:
        from_attributes = True

class CriterionExecutionRecord(BaseModel):
    drill_id: str
    criterion_id: str
    status: CriterionStatus
    checked_at: Optional[datetime] = None
    checked_by: Optional[str] = None

    class Config:
        from_attributes = True

class StepOutcome(BaseModel):
    """What the executor reports back to the scheduler for one step."""
    step_id: str
    status: StepStatus
    error: Optional[str] = None
    exit_code: Optional[int] = None
    timed_out: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status.satisfies_dependents
