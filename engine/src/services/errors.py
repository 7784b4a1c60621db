"""
Errors raised by the execution engine.
"""

from typing import Iterable, Optional

class StepExecutionError(Exception):
    """A step's remote command could not complete successfully."""
    pass

class ConfigError(StepExecutionError):
    """Step is missing the command, target user or target host."""
    pass

class SpawnError(StepExecutionError):
    """The remote-command subprocess could not be created."""
    pass

class StepTimeoutError(StepExecutionError):
    """The remote command did not exit before its timeout and was killed."""

    def __init__(self, message: str, timeout: float):
        super().__init__(message)
        self.timeout = timeout

class RemoteExitError(StepExecutionError):
    """The remote command exited with a nonzero code."""

    def __init__(self, message: str, exit_code: Optional[int]):
        super().__init__(message)
        self.exit_code = exit_code

class StatePersistenceError(Exception):
    """Raised when the state store cannot read or write a record."""
    pass

class ScenarioNotFoundError(Exception):
    pass

class InvalidScenarioError(Exception):
    """Scenario cannot be used for the requested operation."""
    pass

class DependencyCycleError(Exception):
    """Scenario step dependencies contain a cycle."""

    def __init__(self, step_ids: Iterable[str]):
        self.step_ids = sorted(step_ids)
        super().__init__(f"Dependency cycle between steps: {', '.join(self.step_ids)}")

class ExecutionNotPausedError(Exception):
    """Retry/skip requested for a run that is not paused on a failure."""
    pass

class TestRunAlreadyActiveError(Exception):
    __test__ = False

class StepNotSkippableError(Exception):
    """Skip requested for a step that has not failed and is not pending."""
    pass
