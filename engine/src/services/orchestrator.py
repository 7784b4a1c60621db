"""
Orchestrator - owns every registry and service of the engine for one process.
"""

import logging
from typing import Optional

from pydantic import ValidationError

from engine.src.config import Settings, get_settings
from engine.src.db.database import async_session
from engine.src.models.events import (
    ClientMessage,
    ClientMessageType,
    execution_topic,
    scenario_test_topic,
)
from engine.src.services.broadcaster import EventBroadcaster
from engine.src.services.errors import (
    DependencyCycleError,
    ExecutionNotPausedError,
    ScenarioNotFoundError,
    StatePersistenceError,
    StepNotSkippableError,
)
from engine.src.services.executor import StepExecutor
from engine.src.services.live_logs import LiveLogBuffer
from engine.src.services.overrides import OverrideController
from engine.src.services.recorder import StateRecorder
from engine.src.services.remote_command import CommandFactory
from engine.src.services.scheduler import ExecutionScheduler
from engine.src.services.state_store import StateStore
from engine.src.services.test_run import TestRunner

logger = logging.getLogger(__name__)

class Orchestrator:
    def __init__(
        self,
        store,
        log_buffer: Optional[LiveLogBuffer] = None,
        settings: Optional[Settings] = None,
        command_factory: Optional[CommandFactory] = None,
        broadcaster: Optional[EventBroadcaster] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.log_buffer = log_buffer
        self.broadcaster = broadcaster or EventBroadcaster()
        self.recorder = StateRecorder(store, self.broadcaster, self.settings)
        self.executor = StepExecutor(
            store,
            self.recorder,
            self.broadcaster,
            log_buffer=log_buffer,
            settings=self.settings,
            command_factory=command_factory,
        )
        self.scheduler = ExecutionScheduler(store, self.executor, self.broadcaster)
        self.overrides = OverrideController(store, self.scheduler, self.recorder, log_buffer)
        self.test_runs = TestRunner(store, self.broadcaster, self.settings, command_factory)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "Orchestrator":
        """Build an orchestrator backed by the configured database and Redis."""
        settings = settings or get_settings()
        return cls(
            StateStore(async_session),
            log_buffer=LiveLogBuffer.from_url(settings.redis_url, settings.live_log_ttl),
            settings=settings,
        )

    async def handle_execution_message(self, drill_id: str, raw: str):
        """Handle a client message received on a drill's execution channel."""
        message = _parse(raw, execution_topic(drill_id))
        if message is None:
            return

        try:
            if message.type == ClientMessageType.RETRY_STEP.value and message.step_id:
                await self.overrides.retry(drill_id, message.step_id, message.scenario_id)
            elif message.type == ClientMessageType.SKIP_STEP.value and message.step_id:
                await self.overrides.skip(drill_id, message.step_id)
            else:
                logger.warning(f"[Execution {drill_id}]: Ignoring client message {message.type}")
        except (
            ExecutionNotPausedError,
            ScenarioNotFoundError,
            DependencyCycleError,
            StatePersistenceError,
            StepNotSkippableError,
        ) as e:
            logger.warning(f"[Execution {drill_id}]: Rejected {message.type}: {e}")

    async def handle_test_run_message(self, scenario_id: str, raw: str):
        """Handle a client message received on a scenario's test-run channel."""
        message = _parse(raw, scenario_test_topic(scenario_id))
        if message is None:
            return

        if message.type == ClientMessageType.ABORT_RUN.value:
            if not await self.test_runs.abort(scenario_id):
                logger.warning(f"[Test Run {scenario_id}]: Abort requested but no run is active")
        else:
            logger.warning(f"[Test Run {scenario_id}]: Ignoring client message {message.type}")

    async def shutdown(self):
        logger.info("Shutting down execution engine")
        await self.test_runs.shutdown()
        await self.scheduler.shutdown()
        if self.log_buffer:
            await self.log_buffer.close()

def _parse(raw: str, topic: str) -> Optional[ClientMessage]:
    try:
        return ClientMessage.model_validate_json(raw)
    except ValidationError as e:
        logger.warning(f"[{topic}] Invalid client message: {e}")
        return None
