"""Tests for the remote command state machine, using local subprocesses."""

import asyncio
import sys

import pytest

from conftest import make_step
from engine.src.config import Settings
from engine.src.services.errors import (
    ConfigError,
    RemoteExitError,
    SpawnError,
    StepTimeoutError,
)
from engine.src.services.remote_command import (
    CommandResult,
    CommandState,
    RemoteCommand,
    build_ssh_argv,
    raise_for_result,
    require_target,
)

def python(code: str, timeout: float = 5, on_output=None) -> RemoteCommand:
    return RemoteCommand([sys.executable, "-u", "-c", code], timeout, on_output=on_output)

@pytest.mark.asyncio
async def test_successful_command_streams_output():
    chunks = []

    async def on_output(chunk):
        chunks.append(chunk)

    command = python("print('hello'); print('world')", on_output=on_output)
    result = await command.run()

    assert result.state is CommandState.EXITED
    assert result.exit_code == 0
    assert result.succeeded
    assert "hello" in result.output and "world" in result.output
    assert "".join(chunks) == result.output

@pytest.mark.asyncio
async def test_stderr_is_merged_into_output():
    result = await python("import sys; sys.stderr.write('oops\\n')").run()
    assert "oops" in result.output

@pytest.mark.asyncio
async def test_nonzero_exit_is_a_failure():
    result = await python("import sys; print('partial'); sys.exit(3)").run()

    assert result.state is CommandState.EXITED
    assert result.exit_code == 3
    assert not result.succeeded

    with pytest.raises(RemoteExitError) as exc_info:
        raise_for_result(result, "s1", 5)
    assert exc_info.value.exit_code == 3
    assert str(exc_info.value) == "Execution failed with exit code 3."

@pytest.mark.asyncio
async def test_timeout_kills_and_keeps_partial_output():
    command = python("import time; print('started'); time.sleep(30)", timeout=0.5)
    result = await command.run()

    assert result.state is CommandState.KILLED
    assert result.timed_out
    assert "started" in result.output
    assert command.kill_signals == 1

    with pytest.raises(StepTimeoutError) as exc_info:
        raise_for_result(result, "s1", 0.5)
    assert "timed out after 0.5s" in str(exc_info.value)

@pytest.mark.asyncio
async def test_missing_binary_is_spawn_failure():
    command = RemoteCommand(["/nonexistent/ssh-binary", "host"], 5)
    result = await command.run()

    assert result.state is CommandState.SPAWN_FAILED
    assert result.error
    with pytest.raises(SpawnError):
        raise_for_result(result, "s1", 5)

@pytest.mark.asyncio
async def test_kill_is_only_sent_once():
    command = python("import time; time.sleep(30)", timeout=30)
    task = asyncio.create_task(command.run())
    while command.pid is None:
        await asyncio.sleep(0.01)

    assert command.kill() is True
    assert command.kill() is False
    result = await task

    assert result.state is CommandState.KILLED
    assert not result.timed_out
    assert command.kill_signals == 1
    with pytest.raises(RemoteExitError):
        raise_for_result(result, "s1", 30)

@pytest.mark.asyncio
async def test_kill_after_exit_is_ignored():
    command = python("print('done')")
    result = await command.run()

    assert command.kill() is False
    assert command.state is CommandState.EXITED
    assert command.kill_signals == 0
    assert result.succeeded

@pytest.mark.asyncio
async def test_kill_before_run_never_spawns():
    command = python("print('never')")
    command.kill()
    result = await command.run()

    assert result.state is CommandState.KILLED
    assert command.pid is None
    assert result.output == ""

def test_late_transition_after_terminal_is_ignored():
    command = python("pass")
    command.state = CommandState.EXITED
    assert command._transition(CommandState.SPAWN_FAILED) is False
    assert command.state is CommandState.EXITED

def test_build_ssh_argv():
    settings = Settings(ssh_options=["StrictHostKeyChecking=no"], ssh_connect_timeout=7)
    argv = build_ssh_argv("root", "10.0.0.1", "uptime", settings)

    assert argv == [
        "ssh",
        "root@10.0.0.1",
        "-o", "StrictHostKeyChecking=no",
        "-o", "ConnectTimeout=7",
        "uptime",
    ]

def test_require_target_names_missing_fields():
    with pytest.raises(ConfigError) as exc_info:
        require_target(make_step("s1", command="", host=None))
    assert "command, host" in str(exc_info.value)

    require_target(make_step("s2"))

def test_success_result_raises_nothing():
    raise_for_result(CommandResult(state=CommandState.EXITED, output="", exit_code=0), "s1", 5)
