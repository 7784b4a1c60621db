"""
Persist-then-broadcast for execution records.

A record is broadcast only after the store has returned the updated row, so
observers never see state ahead of durable storage. Writes are retried; when
they still fail a STATE_STALE event tells observers to re-fetch.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Awaitable, Callable, Optional, Protocol, TypeVar

from engine.src.config import Settings, get_settings
from engine.src.models.events import (
    ExecutionEvent,
    criterion_update,
    execution_topic,
    scenario_update,
    state_stale,
    step_update,
)
from engine.src.models.step import (
    CriterionExecutionRecord,
    CriterionStatus,
    ScenarioExecutionRecord,
    StepExecutionRecord,
    StepStatus,
)
from engine.src.services.broadcaster import EventBroadcaster
from engine.src.services.errors import StatePersistenceError

logger = logging.getLogger(__name__)

T = TypeVar("T")

class StepOwner(Protocol):
    """The run a step executes for; a manual verdict takes the step away from it."""
    lock: asyncio.Lock

    def owns(self, step_id: str) -> bool: ...

@asynccontextmanager
async def owned_by(owner: Optional[StepOwner], step_id: str) -> AsyncIterator[bool]:
    """Hold the owner's lock and yield whether it still owns the step."""
    if owner is None:
        yield True
        return
    async with owner.lock:
        yield owner.owns(step_id)

class StateRecorder:
    def __init__(
        self,
        store,
        broadcaster: EventBroadcaster,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.store = store
        self.broadcaster = broadcaster
        self._attempts = max(1, settings.persist_retry_attempts)
        self._backoff = settings.persist_retry_backoff

    async def publish(self, drill_id: str, event: ExecutionEvent):
        await self.broadcaster.publish(execution_topic(drill_id), event)

    async def _persist(
        self,
        drill_id: str,
        entity: str,
        entity_id: str,
        write: Callable[[], Awaitable[T]],
        to_event: Callable[[T], ExecutionEvent],
    ) -> Optional[T]:
        last_error = None
        for attempt in range(1, self._attempts + 1):
            try:
                record = await write()
            except StatePersistenceError as e:
                last_error = e
                logger.error(
                    f"[Execution {drill_id}]: Failed to persist {entity} {entity_id} "
                    f"(attempt {attempt}/{self._attempts}): {e}"
                )
                if attempt < self._attempts:
                    await asyncio.sleep(self._backoff * attempt)
                continue
            await self.publish(drill_id, to_event(record))
            return record

        await self.publish(drill_id, state_stale(entity, entity_id, str(last_error)))
        return None

    async def record_step(self, drill_id: str, step_id: str, **values) -> Optional[StepExecutionRecord]:
        return await self._persist(
            drill_id,
            "step",
            step_id,
            lambda: self.store.upsert_step(drill_id, step_id, **values),
            step_update,
        )

    async def start_step(self, drill_id: str, step_id: str, assignee: str) -> Optional[StepExecutionRecord]:
        return await self.record_step(
            drill_id,
            step_id,
            status=StepStatus.IN_PROGRESS,
            started_at=datetime.utcnow(),
            completed_at=None,
            result_text="",
            assignee=assignee,
        )

    async def finish_step(
        self,
        drill_id: str,
        step_id: str,
        status: StepStatus,
        result_text: Optional[str],
        **values,
    ) -> Optional[StepExecutionRecord]:
        return await self.record_step(
            drill_id,
            step_id,
            status=status,
            completed_at=datetime.utcnow(),
            result_text=result_text,
            **values,
        )

    async def finish_owned_step(
        self,
        drill_id: str,
        step_id: str,
        status: StepStatus,
        result_text: Optional[str],
        owner: Optional[StepOwner] = None,
    ) -> Optional[StepExecutionRecord]:
        """
        Record an executor's terminal result unless a manual verdict has
        already settled the step. Returns None when the result is discarded.
        """
        async with owned_by(owner, step_id) as owned:
            if not owned:
                logger.info(
                    f"[Execution {drill_id}]: Step {step_id} was settled manually, "
                    f"discarding its {StepStatus(status).value} result"
                )
                return None
            return await self.finish_step(drill_id, step_id, status, result_text)

    async def reset_step(self, drill_id: str, step_id: str) -> Optional[StepExecutionRecord]:
        """Put a step back to Pending with no timestamps or output."""
        return await self.record_step(
            drill_id,
            step_id,
            status=StepStatus.PENDING,
            started_at=None,
            completed_at=None,
            result_text=None,
        )

    async def record_scenario(
        self,
        drill_id: str,
        scenario_id: str,
        final_status: str,
        final_reason: Optional[str],
    ) -> Optional[ScenarioExecutionRecord]:
        return await self._persist(
            drill_id,
            "scenario",
            scenario_id,
            lambda: self.store.upsert_scenario(drill_id, scenario_id, final_status, final_reason),
            scenario_update,
        )

    async def record_criterion(
        self,
        drill_id: str,
        criterion_id: str,
        status: CriterionStatus,
        checked_by: str,
    ) -> Optional[CriterionExecutionRecord]:
        return await self._persist(
            drill_id,
            "criterion",
            criterion_id,
            lambda: self.store.upsert_criterion(drill_id, criterion_id, status, checked_by),
            criterion_update,
        )
