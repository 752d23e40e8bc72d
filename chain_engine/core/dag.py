"""
Dependency leveling for workflow steps.

Groups steps into ordered levels so that every dependency of a step in
level k lies in some level < k. Cycles and dangling references leave
steps unscheduled; they are reported as warnings, never raised.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from chain_engine.core.models import Step

logger = logging.getLogger(__name__)


@dataclass
class LevelingIssue:
    """Represents a single leveling warning."""

    code: str
    message: str
    step_id: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class LevelingResult:
    """Result of dependency leveling."""

    levels: list[list[Step]] = field(default_factory=list)
    unscheduled: list[Step] = field(default_factory=list)
    warnings: list[LevelingIssue] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        """True if every step was placed in a level."""
        return not self.unscheduled

    @property
    def level_ids(self) -> list[list[str]]:
        return [[step.id for step in level] for level in self.levels]

    def level_of(self, step_id: str) -> Optional[int]:
        for index, level in enumerate(self.levels):
            if any(step.id == step_id for step in level):
                return index
        return None

    def add_warning(
        self,
        code: str,
        message: str,
        step_id: Optional[str] = None,
        **details: Any,
    ) -> None:
        self.warnings.append(LevelingIssue(code, message, step_id, details))


class DependencyLeveler:
    """
    Computes dependency levels with a repeated scan.

    Each pass collects every unprocessed step whose dependencies are all
    processed. A pass that finds nothing while steps remain stops the scan.
    Worst case O(V^2), fine for workflows of tens of steps.
    """

    def __init__(self, steps: Sequence[Step]):
        self.steps = list(steps)
        self._step_map: dict[str, Step] = {step.id: step for step in self.steps}
        self._adjacency_list: dict[str, list[str]] = defaultdict(list)

        for step in self.steps:
            for dep in step.dependencies:
                # dep -> step (forward edge)
                self._adjacency_list[dep].append(step.id)

    def level(self) -> LevelingResult:
        result = LevelingResult()
        processed: set[str] = set()
        remaining = list(self.steps)

        while remaining:
            current_level = [
                step for step in remaining
                if all(dep in processed for dep in step.dependencies)
            ]

            if not current_level:
                result.unscheduled = remaining
                self._explain_unscheduled(remaining, result)
                break

            processed.update(step.id for step in current_level)
            result.levels.append(current_level)
            remaining = [step for step in remaining if step.id not in processed]

        return result

    def _explain_unscheduled(self, remaining: list[Step], result: LevelingResult) -> None:
        """Attach a warning per cause: missing references, self loops, cycles."""
        known = set(self._step_map)
        remaining_ids = {step.id for step in remaining}

        for step in remaining:
            missing = [dep for dep in step.dependencies if dep not in known]
            if missing:
                result.add_warning(
                    code="MISSING_DEPENDENCY",
                    message=f"Step '{step.id}' references unknown steps {missing}",
                    step_id=step.id,
                    missing=missing,
                )
            if step.id in step.dependencies:
                result.add_warning(
                    code="SELF_LOOP",
                    message=f"Step '{step.id}' depends on itself",
                    step_id=step.id,
                )

        cycle = self._find_cycle_steps(remaining_ids)
        if cycle:
            result.add_warning(
                code="CYCLE_DETECTED",
                message=f"Workflow contains circular dependencies involving steps: {cycle}",
                cycle_steps=cycle,
            )

        logger.warning(
            f"{len(remaining)} step(s) could not be scheduled: "
            f"{sorted(remaining_ids)}"
        )

    def _find_cycle_steps(self, candidates: set[str]) -> list[str]:
        """Find steps that are part of a cycle using DFS."""
        visited: set[str] = set()
        rec_stack: set[str] = set()
        cycle_path: list[str] = []

        def dfs(step_id: str, path: list[str]) -> bool:
            visited.add(step_id)
            rec_stack.add(step_id)
            path.append(step_id)

            for neighbor in self._adjacency_list.get(step_id, []):
                if neighbor not in candidates:
                    continue
                if neighbor not in visited:
                    if dfs(neighbor, path):
                        return True
                elif neighbor in rec_stack:
                    # Found cycle - extract cycle portion
                    cycle_start = path.index(neighbor)
                    cycle_path.extend(path[cycle_start:])
                    return True

            path.pop()
            rec_stack.remove(step_id)
            return False

        for step_id in sorted(candidates):
            if step_id not in visited:
                if dfs(step_id, []):
                    break

        return cycle_path


def level_steps(steps: Sequence[Step]) -> LevelingResult:
    """Group steps into dependency levels."""
    return DependencyLeveler(steps).level()
