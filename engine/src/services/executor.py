"""
Step executor - runs one automated step's command on its target host.
"""

import asyncio
import logging
from typing import Dict, Optional, Tuple

from engine.src.config import Settings, get_settings
from engine.src.models.events import execution_error, execution_topic, step_log_update
from engine.src.models.step import (
    AUTOMATION_ASSIGNEE,
    Step,
    StepOutcome,
    StepStatus,
)
from engine.src.services.broadcaster import EventBroadcaster
from engine.src.services.errors import (
    ConfigError,
    RemoteExitError,
    StatePersistenceError,
    StepExecutionError,
    StepTimeoutError,
)
from engine.src.services.live_logs import LiveLogBuffer
from engine.src.services.recorder import StateRecorder, StepOwner, owned_by
from engine.src.services.remote_command import (
    CommandFactory,
    RemoteCommand,
    raise_for_result,
    require_target,
    ssh_command_factory,
)

logger = logging.getLogger(__name__)

async def resolve_timeout(store, step: Step, fallback: int, settings: Optional[Settings] = None) -> int:
    """
    Effective timeout for a step: its own override, else the system default
    read fresh from the settings table, else the fallback.
    """
    if step.timeout_seconds and step.timeout_seconds > 0:
        return step.timeout_seconds

    settings = settings or get_settings()
    try:
        value = await store.get_setting(settings.step_timeout_setting_key)
    except StatePersistenceError as e:
        logger.warning(f"Could not read default step timeout, using {fallback}s: {e}")
        return fallback

    try:
        timeout = int(value) if value is not None else 0
    except (TypeError, ValueError):
        logger.warning(f"Invalid default step timeout {value!r}, using {fallback}s")
        return fallback
    return timeout if timeout > 0 else fallback

class StepExecutor:
    def __init__(
        self,
        store,
        recorder: StateRecorder,
        broadcaster: EventBroadcaster,
        log_buffer: Optional[LiveLogBuffer] = None,
        settings: Optional[Settings] = None,
        command_factory: Optional[CommandFactory] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.recorder = recorder
        self.broadcaster = broadcaster
        self.log_buffer = log_buffer
        self.command_factory = command_factory or ssh_command_factory(self.settings)
        self._commands: Dict[Tuple[str, str], RemoteCommand] = {}

    async def execute(self, drill_id: str, step: Step, owner: Optional[StepOwner] = None) -> StepOutcome:
        """
        Execute a single step.
        Persists InProgress, runs the command, persists the terminal record.
        When the owning run no longer holds the step (a manual override
        settled it), the command is stopped and its result is not recorded.
        """
        logger.info(f"[Execution {drill_id}]: Starting step {step.label} in scenario {step.scenario_id}")

        started = await self.recorder.start_step(drill_id, step.id, AUTOMATION_ASSIGNEE)
        if started is None:
            error = f"Database error starting step {step.id}"
            await self.broadcaster.publish(
                execution_topic(drill_id),
                execution_error(error, step.scenario_id),
            )
            return StepOutcome(step_id=step.id, status=StepStatus.FAILURE, error=error)

        if self.log_buffer:
            await self.log_buffer.reset(drill_id, step.id)

        timeout = await resolve_timeout(self.store, step, self.settings.default_step_timeout, self.settings)
        logger.info(f"[Execution {drill_id}]: Step {step.id} timeout set to {timeout}s")

        command: Optional[RemoteCommand] = None
        key = (drill_id, step.id)
        try:
            require_target(step)
            command = self.command_factory(step, timeout, self._output_handler(drill_id, step.id))
            self._commands[key] = command
            if owner is not None and not owner.owns(step.id):
                command.kill()
            result = await self._run(drill_id, step, command, owner)
            raise_for_result(result, step.id, timeout)
        except StepExecutionError as e:
            return await self._fail(drill_id, step, command, e, owner)
        finally:
            if command is not None and self._commands.get(key) is command:
                del self._commands[key]

        await self.recorder.finish_owned_step(drill_id, step.id, StepStatus.SUCCESS, command.output, owner)
        logger.info(f"[Execution {drill_id}]: Step {step.id} succeeded")
        return StepOutcome(step_id=step.id, status=StepStatus.SUCCESS, exit_code=0)

    def cancel(self, drill_id: str, step_id: str) -> bool:
        """Kill a step's running command. Returns False if none is running."""
        command = self._commands.get((drill_id, step_id))
        if command is None:
            return False
        killed = command.kill()
        if killed:
            logger.info(f"[Execution {drill_id}]: Killed running command of step {step_id}")
        return killed

    async def _run(self, drill_id: str, step: Step, command: RemoteCommand, owner: Optional[StepOwner] = None):
        autosave = asyncio.create_task(self._autosave(drill_id, step.id, command, owner))
        try:
            result = await command.run()
        finally:
            autosave.cancel()
            try:
                await autosave
            except asyncio.CancelledError:
                pass
        logger.info(
            f"[Execution {drill_id}]: Step {step.id} ended as {result.state.value} "
            f"(exit code {result.exit_code})"
        )
        return result

    async def _fail(
        self,
        drill_id: str,
        step: Step,
        command: Optional[RemoteCommand],
        error: StepExecutionError,
        owner: Optional[StepOwner] = None,
    ) -> StepOutcome:
        output = command.output if command else ""
        result_text = f"{output}\n{error}" if output else str(error)

        if isinstance(error, ConfigError):
            logger.error(f"[Execution {drill_id}]: {error}")
        else:
            logger.error(f"[Execution {drill_id}]: Step {step.id} failed: {error}")

        await self.recorder.finish_owned_step(drill_id, step.id, StepStatus.FAILURE, result_text, owner)
        return StepOutcome(
            step_id=step.id,
            status=StepStatus.FAILURE,
            error=str(error),
            exit_code=error.exit_code if isinstance(error, RemoteExitError) else None,
            timed_out=isinstance(error, StepTimeoutError),
        )

    def _output_handler(self, drill_id: str, step_id: str):
        topic = execution_topic(drill_id)

        async def on_output(chunk: str):
            if self.log_buffer:
                await self.log_buffer.append(drill_id, step_id, chunk)
            await self.broadcaster.publish(topic, step_log_update(step_id, chunk))

        return on_output

    async def _autosave(
        self,
        drill_id: str,
        step_id: str,
        command: RemoteCommand,
        owner: Optional[StepOwner] = None,
    ):
        """Save the running step's output to result_text when it changes."""
        saved = ""
        while True:
            await asyncio.sleep(self.settings.log_save_interval)
            output = command.output
            if output == saved:
                continue
            async with owned_by(owner, step_id) as owned:
                if not owned:
                    return
                try:
                    await self.store.save_step_log(drill_id, step_id, output)
                    saved = output
                except StatePersistenceError as e:
                    logger.error(f"[Execution {drill_id}]: Error auto-saving logs for step {step_id}: {e}")
