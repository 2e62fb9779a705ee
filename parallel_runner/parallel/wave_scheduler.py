"""
Wave Scheduler
==============

Turns a set of work items with declared dependencies into an ordered list of
waves that can each run fully in parallel.

Key Features:
- Validates every dependency reference before planning
- Detects cycles with an iterative DFS (no recursion limit on deep chains)
- Levels items with Kahn's algorithm in O(V+E)
- Keeps scan order stable inside each wave
- Validates externally supplied plans
"""

from collections import deque
from dataclasses import dataclass, field
from typing import List, Dict, Optional
import logging

from parallel_runner.errors import AnalysisError
from parallel_runner.execution_plan import ExecutionPlan, Wave, WorkItem

logger = logging.getLogger(__name__)

# DFS colours
_UNVISITED = 0
_IN_PROGRESS = 1
_DONE = 2


@dataclass
class DependencyGraph:
    """
    Validated, acyclic dependency graph.

    Attributes:
        items: Work items in scan order
        dependencies: item_id -> de-duplicated dependency ids (declared order)
        dependents: item_id -> ids of items that depend on it (scan order)
    """
    items: List[WorkItem]
    dependencies: Dict[str, List[str]] = field(default_factory=dict)
    dependents: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def item_ids(self) -> List[str]:
        return [item.id for item in self.items]

    def get(self, item_id: str) -> Optional[WorkItem]:
        for item in self.items:
            if item.id == item_id:
                return item
        return None


class WaveScheduler:
    """
    Builds dependency graphs and computes execution waves.

    Planning either succeeds completely or raises AnalysisError; no partial
    plan is ever returned.
    """

    def build_graph(self, items: List[WorkItem]) -> DependencyGraph:
        """
        Build and validate the dependency graph.

        Args:
            items: Work items in scan order

        Returns:
            DependencyGraph

        Raises:
            AnalysisError: On duplicate ids, unknown dependency ids or cycles
        """
        seen = set()
        duplicates = []
        for item in items:
            if item.id in seen and item.id not in duplicates:
                duplicates.append(item.id)
            seen.add(item.id)
        if duplicates:
            raise AnalysisError(
                f"Duplicate work item ids: {', '.join(duplicates)}",
                kind="invalid_item",
            )

        dependencies: Dict[str, List[str]] = {}
        dependents: Dict[str, List[str]] = {item.id: [] for item in items}
        unknown = []

        for item in items:
            deps: List[str] = []
            for dep_id in item.dependencies:
                if dep_id not in seen:
                    unknown.append((item.id, dep_id))
                    continue
                if dep_id not in deps:
                    deps.append(dep_id)
            dependencies[item.id] = deps
            for dep_id in deps:
                dependents[dep_id].append(item.id)

        if unknown:
            listing = ", ".join(f"{item_id} -> {dep_id}" for item_id, dep_id in unknown)
            raise AnalysisError(
                f"Unknown dependency references: {listing}",
                kind="invalid_reference",
                references=unknown,
            )

        graph = DependencyGraph(items=list(items), dependencies=dependencies, dependents=dependents)

        cycle = self._find_cycle(graph)
        if cycle:
            raise AnalysisError(
                f"Circular dependencies detected: {' -> '.join(cycle)}",
                kind="cycle",
                cycle=cycle,
            )

        logger.debug(f"Built dependency graph with {len(items)} items")
        return graph

    def _find_cycle(self, graph: DependencyGraph) -> Optional[List[str]]:
        """
        Iterative DFS over dependency edges.

        Returns:
            The first cycle found as a closed path (first id repeated last),
            or None if the graph is acyclic
        """
        state: Dict[str, int] = {item_id: _UNVISITED for item_id in graph.dependencies}

        for root in graph.item_ids:
            if state[root] != _UNVISITED:
                continue

            path: List[str] = [root]
            stack = [iter(graph.dependencies[root])]
            state[root] = _IN_PROGRESS

            while stack:
                node = path[-1]
                dep_id = next(stack[-1], None)

                if dep_id is None:
                    state[node] = _DONE
                    stack.pop()
                    path.pop()
                    continue

                if state[dep_id] == _IN_PROGRESS:
                    start = path.index(dep_id)
                    return path[start:] + [dep_id]

                if state[dep_id] == _UNVISITED:
                    state[dep_id] = _IN_PROGRESS
                    path.append(dep_id)
                    stack.append(iter(graph.dependencies[dep_id]))

        return None

    def compute_waves(self, graph: DependencyGraph) -> List[Wave]:
        """
        Level the graph into waves.

        Items with no dependencies land in wave 0; every other item lands in
        1 + the highest wave of its dependencies. Within a wave, items keep
        scan order.

        Args:
            graph: Validated graph from build_graph()

        Returns:
            Waves numbered from 0
        """
        in_degree = {item_id: len(deps) for item_id, deps in graph.dependencies.items()}
        level: Dict[str, int] = {}

        queue = deque(item_id for item_id in graph.item_ids if in_degree[item_id] == 0)
        for item_id in queue:
            level[item_id] = 0

        while queue:
            item_id = queue.popleft()
            for dependent_id in graph.dependents[item_id]:
                level[dependent_id] = max(level.get(dependent_id, 0), level[item_id] + 1)
                in_degree[dependent_id] -= 1
                if in_degree[dependent_id] == 0:
                    queue.append(dependent_id)

        if len(level) != len(graph.items):
            # build_graph() rejects cycles, so this only happens for hand-built graphs
            stuck = [item_id for item_id in graph.item_ids if item_id not in level]
            raise AnalysisError(
                f"Circular dependencies detected among: {', '.join(stuck)}",
                kind="cycle",
                cycle=stuck,
            )

        wave_count = max(level.values()) + 1 if level else 0
        waves = [Wave(wave_number=n) for n in range(wave_count)]
        for item in graph.items:
            waves[level[item.id]].items.append(item)

        logger.info(f"Resolved {len(graph.items)} work items into {len(waves)} waves")
        logger.info(f"Wave sizes: {[len(w) for w in waves]}")
        return waves

    def build_plan(self, items: List[WorkItem]) -> ExecutionPlan:
        """
        Build a complete execution plan.

        Raises:
            AnalysisError: If the items cannot be planned
        """
        graph = self.build_graph(items)
        waves = self.compute_waves(graph)
        return ExecutionPlan(
            waves=waves,
            total_items=len(graph.items),
            estimated_parallelism=max((len(w) for w in waves), default=0),
        )

    def validate_plan(self, plan: ExecutionPlan) -> None:
        """
        Check that a plan is well formed.

        Every item must appear exactly once, every dependency must sit in a
        strictly earlier wave, and wave numbers must increase.

        Raises:
            AnalysisError: Describing every problem found
        """
        problems: List[str] = []
        placed: Dict[str, int] = {}

        for index, wave in enumerate(plan.waves):
            if index > 0 and wave.wave_number <= plan.waves[index - 1].wave_number:
                problems.append(f"wave {wave.wave_number} is out of order")
            for item in wave.items:
                if item.id in placed:
                    problems.append(f"{item.id} appears more than once")
                placed[item.id] = wave.wave_number

        for wave in plan.waves:
            for item in wave.items:
                for dep_id in item.dependencies:
                    if dep_id not in placed:
                        problems.append(f"{item.id} depends on unknown item {dep_id}")
                    elif placed[dep_id] >= wave.wave_number:
                        problems.append(
                            f"{item.id} (wave {wave.wave_number}) depends on "
                            f"{dep_id} (wave {placed[dep_id]})"
                        )

        if plan.total_items != len(placed):
            problems.append(f"total_items is {plan.total_items} but plan holds {len(placed)}")

        if problems:
            raise AnalysisError("Invalid execution plan", kind="invalid_item", details="; ".join(problems))

    def can_run_in_parallel(self, graph: DependencyGraph, first_id: str, second_id: str) -> bool:
        """Return True if neither item depends on the other, directly or transitively."""
        return not (
            self._depends_on(graph, first_id, second_id)
            or self._depends_on(graph, second_id, first_id)
        )

    def _depends_on(self, graph: DependencyGraph, item_id: str, target_id: str) -> bool:
        stack = list(graph.dependencies.get(item_id, []))
        seen = set()
        while stack:
            dep_id = stack.pop()
            if dep_id == target_id:
                return True
            if dep_id in seen:
                continue
            seen.add(dep_id)
            stack.extend(graph.dependencies.get(dep_id, []))
        return False
