"""
Operator actions on a run: retry, skip, force override, scenario and
criterion verdicts, manual step updates.
"""

import logging
from datetime import datetime
from typing import Dict, Optional

from engine.src.models.events import paused_on_failure
from engine.src.models.step import (
    MANUAL_OVERRIDE_ASSIGNEE,
    CriterionExecutionRecord,
    CriterionStatus,
    ScenarioExecutionRecord,
    StepExecutionRecord,
    StepStatus,
)
from engine.src.services.errors import (
    ExecutionNotPausedError,
    ScenarioNotFoundError,
    StepNotSkippableError,
)
from engine.src.services.live_logs import LiveLogBuffer
from engine.src.services.recorder import StateRecorder
from engine.src.services.scheduler import ExecutionContext, ExecutionScheduler

logger = logging.getLogger(__name__)

SKIPPED_RESULT_TEXT = "Skipped by user."

def format_override_reason(user: str, reason: str) -> str:
    return f"[MANUAL OVERRIDE by {user}]: {reason}"

class OverrideController:
    def __init__(
        self,
        store,
        scheduler: ExecutionScheduler,
        recorder: StateRecorder,
        log_buffer: Optional[LiveLogBuffer] = None,
    ):
        self.store = store
        self.scheduler = scheduler
        self.recorder = recorder
        self.log_buffer = log_buffer

    async def retry(self, drill_id: str, step_id: str, scenario_id: Optional[str] = None) -> bool:
        """Reset a failed step to Pending and resume the paused run from it."""
        ctx = (
            self.scheduler.get_context(drill_id, scenario_id)
            if scenario_id
            else self.scheduler.find_context_for_step(drill_id, step_id)
        )
        if ctx is None or not ctx.failed:
            raise ExecutionNotPausedError(f"Drill {drill_id} is not paused on a failure for step {step_id}")

        logger.info(f"[Execution {drill_id}]: Retrying step {step_id}")
        await self.recorder.reset_step(drill_id, step_id)
        return await self.scheduler.start(drill_id, [step_id], ctx.scenario_id)

    async def skip(self, drill_id: str, step_id: str) -> Optional[StepExecutionRecord]:
        """Mark a failed or still pending step as skipped and continue with its dependents."""
        ctx = self.scheduler.find_context_for_step(drill_id, step_id)
        if ctx is None:
            raise ExecutionNotPausedError(f"No active run of drill {drill_id} contains step {step_id}")

        async with ctx.lock:
            if not ctx.failed:
                raise ExecutionNotPausedError(f"Drill {drill_id} is not paused on a failure")
            if not await self._skippable(ctx, drill_id, step_id):
                raise StepNotSkippableError(
                    f"Step {step_id} of drill {drill_id} has neither failed nor is pending"
                )

            logger.info(f"[Execution {drill_id}]: Skipping step {step_id}")
            record = await self.recorder.finish_step(
                drill_id, step_id, StepStatus.SKIPPED, SKIPPED_RESULT_TEXT
            )
            ctx.settle(step_id)
            ctx.failed = False
            unlocked = ctx.enqueue(ctx.release(step_id))

        if unlocked:
            logger.info(f"[Execution {drill_id}]: Skip of {step_id} unlocked {unlocked}")
        self.scheduler.resume(ctx)
        return record

    async def _skippable(self, ctx: ExecutionContext, drill_id: str, step_id: str) -> bool:
        if step_id in ctx.released:
            return False
        if step_id in ctx.queue or ctx.in_degree.get(step_id, 0) > 0:
            return True
        existing = await self.store.get_step_record(drill_id, step_id)
        return existing is not None and existing.status is StepStatus.FAILURE

    async def force_override(
        self,
        drill_id: str,
        step_id: str,
        status: StepStatus,
        reason: str,
    ) -> Optional[StepExecutionRecord]:
        """Set a step's terminal status by hand, whether or not the run is paused."""
        status = StepStatus(status)
        if not status.is_terminal:
            raise ValueError(f"Override status must be terminal, got {status.value}")

        logger.info(f"[Execution {drill_id}]: Manually overriding step {step_id} to {status.value}. Reason: {reason}")

        ctx = self.scheduler.find_context_for_step(drill_id, step_id)
        if ctx is None:
            return await self._record_override(drill_id, step_id, status, reason)

        async with ctx.lock:
            if step_id in ctx.running:
                self.scheduler.executor.cancel(drill_id, step_id)
            ctx.settle(step_id)
            record = await self._record_override(drill_id, step_id, status, reason)
            if status.satisfies_dependents:
                if ctx.failed:
                    logger.info(f"[Execution {drill_id}]: Resetting failed flag due to manual override")
                ctx.failed = False
                ctx.enqueue(ctx.release(step_id))
            else:
                ctx.failed = True

        if status.satisfies_dependents:
            self.scheduler.resume(ctx)
        else:
            await self.recorder.publish(
                drill_id,
                paused_on_failure(step_id, reason, scenario_id=ctx.scenario_id, manual_override=True),
            )
        return record

    async def _record_override(self, drill_id, step_id, status, reason):
        return await self.recorder.finish_step(
            drill_id,
            step_id,
            status,
            reason,
            assignee=MANUAL_OVERRIDE_ASSIGNEE,
        )

    async def record_manual_step(
        self,
        drill_id: str,
        step_id: str,
        status: StepStatus,
        started_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None,
        result_text: Optional[str] = None,
        assignee: Optional[str] = None,
    ) -> Optional[StepExecutionRecord]:
        """Record progress of a step a person is carrying out."""
        status = StepStatus(status)
        existing = await self.store.get_step_record(drill_id, step_id)

        if existing is not None:
            started_at = started_at or existing.started_at
            completed_at = completed_at or existing.completed_at
            result_text = result_text if result_text is not None else existing.result_text
            assignee = assignee or existing.assignee

        if status is StepStatus.IN_PROGRESS:
            completed_at = None
            result_text = None

        logger.info(f"[Execution {drill_id}]: Manual update of step {step_id} to {status.value}")
        return await self.recorder.record_step(
            drill_id,
            step_id,
            status=status,
            started_at=started_at,
            completed_at=completed_at,
            result_text=result_text,
            assignee=assignee,
        )

    async def confirm_scenario(
        self,
        drill_id: str,
        scenario_id: str,
        final_status: str,
        final_reason: Optional[str] = None,
    ) -> Optional[ScenarioExecutionRecord]:
        logger.info(f"[Execution {drill_id}]: Confirming scenario {scenario_id} as {final_status}")
        return await self.recorder.record_scenario(drill_id, scenario_id, final_status, final_reason)

    async def evaluate_criterion(
        self,
        drill_id: str,
        criterion_id: str,
        status: CriterionStatus,
        checked_by: str,
    ) -> Optional[CriterionExecutionRecord]:
        logger.info(f"[Execution {drill_id}]: Criterion {criterion_id} evaluated as {CriterionStatus(status).value}")
        return await self.recorder.record_criterion(drill_id, criterion_id, status, checked_by)

    async def live_logs(self, drill_id: str, scenario_id: str) -> Dict[str, str]:
        """Buffered live output of every step of a scenario."""
        if self.log_buffer is None:
            return {}
        steps = await self.store.load_steps(scenario_id)
        if not steps:
            raise ScenarioNotFoundError(f"Scenario {scenario_id} has no steps")
        return await self.log_buffer.get_logs(drill_id, [step.id for step in steps])
