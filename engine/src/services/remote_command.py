"""
Run one command on a remote host over SSH.

Each RemoteCommand is a small state machine:

    CREATED -> SPAWNED -> STREAMING -> EXITED | KILLED
    CREATED -> SPAWN_FAILED
    CREATED | SPAWNED | STREAMING -> KILLED

Only the first terminal transition counts. Events that arrive afterwards
(a late exit after a kill, a stream error after a normal exit, a second kill)
are no-ops, so a step's outcome is decided exactly once and at most one kill
signal is sent.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from engine.src.config import Settings, get_settings
from engine.src.models.step import Step
from engine.src.services.errors import (
    ConfigError,
    RemoteExitError,
    SpawnError,
    StepTimeoutError,
)

logger = logging.getLogger(__name__)

OutputCallback = Callable[[str], Awaitable[None]]

READ_CHUNK_SIZE = 4096

class CommandState(str, Enum):
    CREATED = "created"
    SPAWNED = "spawned"
    STREAMING = "streaming"
    EXITED = "exited"
    KILLED = "killed"
    SPAWN_FAILED = "spawn_failed"

    @property
    def is_terminal(self) -> bool:
        return self in (CommandState.EXITED, CommandState.KILLED, CommandState.SPAWN_FAILED)

@dataclass
class CommandResult:
    state: CommandState
    output: str
    exit_code: Optional[int] = None
    timed_out: bool = False
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.state is CommandState.EXITED and self.exit_code == 0

class RemoteCommand:
    def __init__(
        self,
        argv: List[str],
        timeout: float,
        on_output: Optional[OutputCallback] = None,
        name: str = "command",
    ):
        self.argv = argv
        self.timeout = timeout
        self.name = name
        self.state = CommandState.CREATED
        self.exit_code: Optional[int] = None
        self.timed_out = False
        self.error: Optional[str] = None
        self.kill_signals = 0
        self._on_output = on_output
        self._output: List[str] = []
        self._process: Optional[asyncio.subprocess.Process] = None

    @property
    def output(self) -> str:
        return "".join(self._output)

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    def _transition(self, new_state: CommandState) -> bool:
        if self.state.is_terminal:
            logger.debug(f"[{self.name}] Ignoring {new_state.value} after {self.state.value}")
            return False
        self.state = new_state
        return True

    async def run(self) -> CommandResult:
        """Spawn the command, stream its output and wait for it to end."""
        if self.state is not CommandState.CREATED:
            return self.result()

        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            self.error = f"{e.strerror or e} (errno {e.errno})"
            self._transition(CommandState.SPAWN_FAILED)
            logger.error(f"[{self.name}] Failed to spawn {self.argv[0]}: {self.error}")
            return self.result()

        if self.state is CommandState.KILLED:
            # Killed while the process was being created
            self._send_kill()
            await self._process.wait()
            return self.result()

        self._transition(CommandState.SPAWNED)

        try:
            exit_code = await asyncio.wait_for(self._stream(), timeout=self.timeout)
        except asyncio.TimeoutError:
            if self.kill():
                self.timed_out = True
                logger.warning(f"[{self.name}] Timed out after {self.timeout}s, killed")
            await self._process.wait()
        else:
            self.exit_code = exit_code
            self._transition(CommandState.EXITED)

        return self.result()

    async def _stream(self) -> int:
        self._transition(CommandState.STREAMING)
        assert self._process.stdout is not None

        while True:
            try:
                chunk = await self._process.stdout.read(READ_CHUNK_SIZE)
            except OSError as e:
                # Stream teardown can race the exit; the exit code decides
                logger.warning(f"[{self.name}] Output stream error, waiting for exit: {e}")
                break
            if not chunk:
                break
            text = chunk.decode("utf-8", errors="replace")
            self._output.append(text)
            if self._on_output:
                await self._on_output(text)

        return await self._process.wait()

    def kill(self) -> bool:
        """Forcefully stop the command. Returns False if it had already ended."""
        if not self._transition(CommandState.KILLED):
            return False
        if self._process is not None:
            self._send_kill()
        return True

    def _send_kill(self):
        try:
            self._process.kill()
            self.kill_signals += 1
        except ProcessLookupError:
            pass

    def result(self) -> CommandResult:
        return CommandResult(
            state=self.state,
            output=self.output,
            exit_code=self.exit_code,
            timed_out=self.timed_out,
            error=self.error,
        )

def build_ssh_argv(
    user: str,
    host: str,
    command: str,
    settings: Optional[Settings] = None,
) -> List[str]:
    settings = settings or get_settings()
    argv = [settings.ssh_binary, f"{user}@{host}"]
    for option in settings.ssh_options:
        argv += ["-o", option]
    argv += ["-o", f"ConnectTimeout={settings.ssh_connect_timeout}", command]
    return argv

CommandFactory = Callable[[Step, float, Optional[OutputCallback]], RemoteCommand]

def ssh_command_factory(settings: Optional[Settings] = None) -> CommandFactory:
    def factory(step: Step, timeout: float, on_output: Optional[OutputCallback] = None) -> RemoteCommand:
        return RemoteCommand(
            build_ssh_argv(step.user, step.host, step.command, settings),
            timeout,
            on_output=on_output,
            name=f"step {step.id}",
        )
    return factory

def require_target(step: Step):
    """Raise ConfigError unless the step has a command, user and host."""
    missing = [
        field
        for field, value in (
            ("command", step.command),
            ("user", step.user),
            ("host", step.host),
        )
        if not value
    ]
    if missing:
        raise ConfigError(f"Configuration error: step {step.id} is missing {', '.join(missing)}.")

def raise_for_result(result: CommandResult, step_id: str, timeout: float):
    """Map a finished command to the step error it represents, if any."""
    if result.succeeded:
        return
    if result.state is CommandState.SPAWN_FAILED:
        raise SpawnError(f"Critical execution error: could not start remote command ({result.error}).")
    if result.timed_out:
        raise StepTimeoutError(
            f"Step {step_id} timed out after {timeout:g}s without exiting.",
            timeout,
        )
    if result.state is CommandState.KILLED:
        raise RemoteExitError(f"Step {step_id} was killed before it finished.", result.exit_code)
    raise RemoteExitError(
        f"Execution failed with exit code {result.exit_code}.",
        result.exit_code,
    )
