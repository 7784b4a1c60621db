"""
Build the dependency graph for one run of a scenario.

The run covers a subset of the scenario's steps (all of them for a full
start, a few for a rerun). Edges from a predecessor outside the subset whose
persisted status is Completed-Success or Completed-Skipped are resolved at
build time; every other edge counts toward its target's in-degree.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Set

from engine.src.models.step import Step, StepStatus
from engine.src.services.errors import DependencyCycleError

logger = logging.getLogger(__name__)

@dataclass
class ExecutionGraph:
    steps: Dict[str, Step]
    adjacency: Dict[str, List[str]]
    in_degree: Dict[str, int]
    ready: List[str]

def build_graph(
    steps: List[Step],
    run_step_ids: Iterable[str],
    statuses: Mapping[str, StepStatus],
) -> ExecutionGraph:
    """
    Compute adjacency, in-degree and the initial ready queue.
    Raises DependencyCycleError if the scenario's dependencies contain a cycle.
    """
    by_id = {step.id: step for step in steps}
    run_ids: Set[str] = set()
    for step_id in run_step_ids:
        if step_id in by_id:
            run_ids.add(step_id)
        else:
            logger.warning(f"Requested step {step_id} is not part of the scenario, ignoring it")

    adjacency: Dict[str, List[str]] = {step.id: [] for step in steps}
    in_degree: Dict[str, int] = {step.id: 0 for step in steps}

    for step in steps:
        for predecessor in step.depends_on:
            if predecessor not in by_id:
                logger.debug(f"Dependency {predecessor} of step {step.id} is outside the scenario")
                continue
            if predecessor not in run_ids and _satisfied(statuses.get(predecessor)):
                continue
            adjacency[predecessor].append(step.id)
            in_degree[step.id] += 1

    plan_levels(adjacency, in_degree)
    ready = [step.id for step in steps if step.id in run_ids and in_degree[step.id] <= 0]

    blocked = [step_id for step_id in run_ids if in_degree[step_id] > 0 and not _reachable(adjacency, ready, step_id)]
    if blocked:
        logger.warning(f"Steps waiting on unfinished steps outside this run: {', '.join(sorted(blocked))}")

    return ExecutionGraph(
        steps=by_id,
        adjacency=adjacency,
        in_degree=in_degree,
        ready=ready,
    )

def plan_levels(adjacency: Mapping[str, List[str]], in_degree: Mapping[str, int]) -> List[List[str]]:
    """Group steps into Kahn levels. Raises DependencyCycleError on leftovers."""
    remaining = dict(in_degree)
    level = [step_id for step_id, degree in remaining.items() if degree <= 0]
    levels = []
    seen = 0

    while level:
        levels.append(level)
        seen += len(level)
        next_level = []
        for step_id in level:
            for dependent in adjacency.get(step_id, []):
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    next_level.append(dependent)
        level = next_level

    if seen < len(remaining):
        raise DependencyCycleError(
            step_id for step_id, degree in remaining.items() if degree > 0
        )
    return levels

def _satisfied(status) -> bool:
    return status is not None and StepStatus(status).satisfies_dependents

def _reachable(adjacency: Mapping[str, List[str]], sources: List[str], target: str) -> bool:
    stack = list(sources)
    visited = set()
    while stack:
        step_id = stack.pop()
        if step_id == target:
            return True
        if step_id in visited:
            continue
        visited.add(step_id)
        stack.extend(adjacency.get(step_id, []))
    return False
