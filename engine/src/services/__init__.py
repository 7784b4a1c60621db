from engine.src.services.errors import (
    StepExecutionError,
    ConfigError,
    SpawnError,
    StepTimeoutError,
    RemoteExitError,
    StatePersistenceError,
    ScenarioNotFoundError,
    InvalidScenarioError,
    DependencyCycleError,
    ExecutionNotPausedError,
    TestRunAlreadyActiveError,
    StepNotSkippableError,
)
from engine.src.services.graph_builder import ExecutionGraph, build_graph
from engine.src.services.broadcaster import EventBroadcaster
from engine.src.services.remote_command import RemoteCommand, CommandState, CommandResult
from engine.src.services.recorder import StateRecorder
from engine.src.services.executor import StepExecutor, resolve_timeout
from engine.src.services.scheduler import ExecutionContext, ExecutionScheduler
from engine.src.services.overrides import OverrideController, format_override_reason
from engine.src.services.test_run import TestRunner
from engine.src.services.live_logs import LiveLogBuffer
from engine.src.services.state_store import StateStore
from engine.src.services.orchestrator import Orchestrator

__all__ = [
    "StepExecutionError",
    "ConfigError",
    "SpawnError",
    "StepTimeoutError",
    "RemoteExitError",
    "StatePersistenceError",
    "ScenarioNotFoundError",
    "InvalidScenarioError",
    "DependencyCycleError",
    "ExecutionNotPausedError",
    "TestRunAlreadyActiveError",
    "StepNotSkippableError",
    "ExecutionGraph",
    "build_graph",
    "EventBroadcaster",
    "RemoteCommand",
    "CommandState",
    "CommandResult",
    "StateRecorder",
    "StepExecutor",
    "resolve_timeout",
    "ExecutionContext",
    "ExecutionScheduler",
    "OverrideController",
    "format_override_reason",
    "TestRunner",
    "LiveLogBuffer",
    "StateStore",
    "Orchestrator",
]
