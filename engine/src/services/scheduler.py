"""
Execution scheduler - runs a scenario's steps level by level.

One ExecutionContext exists per (drill, scenario) while a run is active.
All mutations of a context happen under its lock. A level is the whole ready
queue at one instant; its steps run concurrently and the next level starts
only after every step of the current one has settled.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from engine.src.models.events import (
    execution_complete,
    execution_error,
    execution_topic,
    level_start,
    paused_on_failure,
)
from engine.src.models.step import Step, StepOutcome, StepStatus
from engine.src.services.broadcaster import EventBroadcaster
from engine.src.services.errors import DependencyCycleError, ScenarioNotFoundError
from engine.src.services.graph_builder import build_graph

logger = logging.getLogger(__name__)

ContextKey = Tuple[str, str]

@dataclass
class ExecutionContext:
    drill_id: str
    scenario_id: str
    steps: Dict[str, Step]
    adjacency: Dict[str, List[str]]
    in_degree: Dict[str, int]
    queue: List[str] = field(default_factory=list)
    running: Set[str] = field(default_factory=set)
    released: Set[str] = field(default_factory=set)
    failed: bool = False
    draining: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def key(self) -> ContextKey:
        return (self.drill_id, self.scenario_id)

    def release(self, step_id: str) -> List[str]:
        """
        Mark a step as satisfied for its dependents.
        Returns the dependents whose in-degree reached zero. A step is only
        released once per graph build, so repeated calls unlock nothing.
        """
        if step_id in self.released:
            return []
        self.released.add(step_id)

        unlocked = []
        for dependent in self.adjacency.get(step_id, []):
            if self.in_degree.get(dependent, 0) <= 0:
                continue
            self.in_degree[dependent] -= 1
            if self.in_degree[dependent] == 0:
                unlocked.append(dependent)
        return unlocked

    def owns(self, step_id: str) -> bool:
        """Whether an executor result for the step still belongs to this run."""
        return step_id in self.running

    def settle(self, step_id: str):
        """
        Take a step out of the run after a manual verdict: it stops being
        running or queued, and no later release can enqueue it again.
        """
        self.running.discard(step_id)
        if step_id in self.queue:
            self.queue.remove(step_id)
        if step_id in self.in_degree:
            self.in_degree[step_id] = 0

    def enqueue(self, step_ids: List[str]) -> List[str]:
        added = []
        for step_id in step_ids:
            if step_id in self.queue or step_id in self.running:
                continue
            self.queue.append(step_id)
            added.append(step_id)
        return added

class ExecutionScheduler:
    def __init__(self, store, executor, broadcaster: EventBroadcaster):
        self.store = store
        self.executor = executor
        self.broadcaster = broadcaster
        self._contexts: Dict[ContextKey, ExecutionContext] = {}
        self._start_locks: Dict[ContextKey, asyncio.Lock] = {}
        self._tasks: Set[asyncio.Task] = set()

    def get_context(self, drill_id: str, scenario_id: str) -> Optional[ExecutionContext]:
        return self._contexts.get((drill_id, scenario_id))

    def find_context_for_step(self, drill_id: str, step_id: str) -> Optional[ExecutionContext]:
        """Find the active context of a drill whose scenario contains the step."""
        for (context_drill, _), ctx in self._contexts.items():
            if context_drill == drill_id and step_id in ctx.steps:
                return ctx
        return None

    def active_runs(self) -> List[Dict[str, object]]:
        return [
            {
                "drill_id": ctx.drill_id,
                "scenario_id": ctx.scenario_id,
                "running": sorted(ctx.running),
                "queued": list(ctx.queue),
                "failed": ctx.failed,
            }
            for ctx in self._contexts.values()
        ]

    async def start(self, drill_id: str, step_ids: List[str], scenario_id: Optional[str] = None) -> bool:
        """
        Start or resume execution of the given steps.
        Returns False when a non-failed run of the scenario is already active.
        """
        if not step_ids:
            raise ValueError("At least one step id is required")

        if scenario_id is None:
            scenario_id = await self.store.find_scenario_id(step_ids[0])
            if scenario_id is None:
                raise ScenarioNotFoundError(f"No scenario owns step {step_ids[0]}")

        key = (drill_id, scenario_id)
        start_lock = self._start_locks.setdefault(key, asyncio.Lock())
        async with start_lock:
            existing = self._contexts.get(key)
            if existing is not None and not existing.failed:
                logger.warning(
                    f"[Execution {drill_id}]: Scenario {scenario_id} is already running, ignoring start"
                )
                return False

            steps = await self.store.load_steps(scenario_id)
            if not steps:
                raise ScenarioNotFoundError(f"Scenario {scenario_id} has no steps")
            statuses = await self.store.get_step_statuses(drill_id, [step.id for step in steps])

            try:
                graph = build_graph(steps, step_ids, statuses)
            except DependencyCycleError as e:
                logger.error(f"[Execution {drill_id}]: Cannot run scenario {scenario_id}: {e}")
                await self.broadcaster.publish(
                    execution_topic(drill_id),
                    execution_error(str(e), scenario_id),
                )
                raise

            if existing is not None:
                async with existing.lock:
                    held = list(existing.queue)
                    existing.steps = graph.steps
                    existing.adjacency = graph.adjacency
                    existing.in_degree = graph.in_degree
                    existing.released = set()
                    existing.queue = []
                    existing.enqueue(graph.ready + held)
                    existing.failed = False
                ctx = existing
                logger.info(
                    f"[Execution {drill_id}]: Resuming scenario {scenario_id} with queue {ctx.queue}"
                )
            else:
                ctx = ExecutionContext(
                    drill_id=drill_id,
                    scenario_id=scenario_id,
                    steps=graph.steps,
                    adjacency=graph.adjacency,
                    in_degree=graph.in_degree,
                )
                ctx.enqueue(graph.ready)
                self._contexts[key] = ctx
                logger.info(
                    f"[Execution {drill_id}]: Starting scenario {scenario_id} with queue {ctx.queue}"
                )

        self.resume(ctx)
        return True

    def resume(self, ctx: ExecutionContext) -> asyncio.Task:
        """Schedule queue processing for a context in the background."""
        task = asyncio.create_task(self.process_queue(ctx))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Queue processing crashed: {task.exception()!r}")

    async def drain(self):
        """Wait until no queue processing is in flight."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self):
        for task in list(self._tasks):
            task.cancel()
        await self.drain()
        self._contexts.clear()

    async def process_queue(self, ctx: ExecutionContext):
        """Drain a context's ready queue one level at a time."""
        async with ctx.lock:
            if ctx.draining:
                return
            ctx.draining = True

        try:
            while True:
                async with ctx.lock:
                    level, complete = self._next_level(ctx)
                    if level is None:
                        ctx.draining = False

                if complete:
                    logger.info(f"[Execution {ctx.drill_id}]: Scenario {ctx.scenario_id} complete")
                    await self._publish(ctx, execution_complete(ctx.scenario_id))
                if level is None:
                    return

                logger.info(f"[Execution {ctx.drill_id}]: Starting level with steps {level}")
                await self._publish(ctx, level_start(ctx.scenario_id, level))
                outcomes = await asyncio.gather(*(self._run_step(ctx, step_id) for step_id in level))
                await self._settle_level(ctx, outcomes)
        except BaseException:
            ctx.draining = False
            raise

    def _next_level(self, ctx: ExecutionContext):
        """Pop the ready queue as the next level. Called with the context lock held."""
        if ctx.failed:
            logger.info(f"[Execution {ctx.drill_id}]: Scenario {ctx.scenario_id} paused on failure")
            return None, False

        if not ctx.queue:
            if ctx.running:
                return None, False
            if self._contexts.get(ctx.key) is ctx:
                del self._contexts[ctx.key]
            return None, True

        level = [step_id for step_id in ctx.queue if step_id in ctx.steps]
        ctx.queue = []
        ctx.running.update(level)
        if not level:
            return self._next_level(ctx)
        return level, False

    async def _run_step(self, ctx: ExecutionContext, step_id: str) -> StepOutcome:
        step = ctx.steps[step_id]
        try:
            return await self.executor.execute(ctx.drill_id, step, owner=ctx)
        except Exception as e:
            logger.exception(f"[Execution {ctx.drill_id}]: Unexpected error running step {step_id}")
            return StepOutcome(step_id=step_id, status=StepStatus.FAILURE, error=str(e))

    async def _settle_level(self, ctx: ExecutionContext, outcomes: List[StepOutcome]):
        failures = []
        async with ctx.lock:
            for outcome in outcomes:
                if outcome.step_id not in ctx.running:
                    # Already settled by a manual override
                    continue
                ctx.running.discard(outcome.step_id)
                if outcome.succeeded:
                    ctx.enqueue(ctx.release(outcome.step_id))
                else:
                    failures.append(outcome)
            if failures:
                ctx.failed = True

        for outcome in failures:
            logger.warning(
                f"[Execution {ctx.drill_id}]: Step {outcome.step_id} failed, pausing scenario {ctx.scenario_id}"
            )
            await self._publish(
                ctx,
                paused_on_failure(
                    outcome.step_id,
                    outcome.error,
                    scenario_id=ctx.scenario_id,
                    exit_code=outcome.exit_code,
                    timed_out=outcome.timed_out,
                ),
            )

    async def _publish(self, ctx: ExecutionContext, event):
        await self.broadcaster.publish(execution_topic(ctx.drill_id), event)
