# dag.py
from __future__ import annotations

import heapq
from collections import deque
from typing import Dict, Iterable, List, Optional, Set

from .config import BuildConfig
from .errors import CycleError, PlanError
from .model import Step


class Plan:
    """
    Dependency graph of Steps for one build.

    Edges point from a dependency to the steps that consume its outputs.
    Ties between unconstrained steps are broken by declaration order, so
    two runs of the same plan always list steps identically.
    """

    def __init__(self, config: BuildConfig, artifact: Optional[str] = None):
        self.config = config
        self.artifact = artifact  # final output, relative to the work root
        self._steps: Dict[str, Step] = {}
        self._order: Dict[str, int] = {}     # declaration index
        self._needs: Dict[str, List[str]] = {}

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def add_step(self, step: Step, depends_on: Iterable[str] | None = None) -> Step:
        if step.id in self._steps:
            raise PlanError(f"Duplicate step id: {step.id!r}")
        needs = list(dict.fromkeys(depends_on or []))
        for dep in needs:
            if dep not in self._steps:
                raise PlanError(
                    f"Step {step.id!r} depends on unknown step {dep!r}. "
                    f"Known steps: {sorted(self._steps)}"
                )
        self._order[step.id] = len(self._order)
        self._steps[step.id] = step
        self._needs[step.id] = needs
        return step

    @classmethod
    def from_edges(
        cls,
        config: BuildConfig,
        steps: Iterable[Step],
        needs: Dict[str, Iterable[str]],
        artifact: Optional[str] = None,
    ) -> "Plan":
        """
        Build a plan where dependencies may be declared in any order.

        Unlike add_step, forward references are allowed here, which is how
        a cycle can be expressed at all; topological_order reports it.
        """
        plan = cls(config, artifact)
        steps = list(steps)
        for step in steps:
            if step.id in plan._steps:
                raise PlanError(f"Duplicate step id: {step.id!r}")
            plan._order[step.id] = len(plan._order)
            plan._steps[step.id] = step
        for step in steps:
            deps = list(dict.fromkeys(needs.get(step.id, [])))
            for dep in deps:
                if dep not in plan._steps:
                    raise PlanError(f"Step {step.id!r} depends on unknown step {dep!r}")
            plan._needs[step.id] = deps
        return plan

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._steps)

    def __contains__(self, step_id: str) -> bool:
        return step_id in self._steps

    def step(self, step_id: str) -> Step:
        return self._steps[step_id]

    @property
    def steps(self) -> List[Step]:
        """Steps in declaration order."""
        return list(self._steps.values())

    def needs(self, step_id: str) -> List[str]:
        return list(self._needs[step_id])

    def dependents(self) -> Dict[str, Set[str]]:
        adj: Dict[str, Set[str]] = {sid: set() for sid in self._steps}
        for sid, deps in self._needs.items():
            for dep in deps:
                adj[dep].add(sid)
        return adj

    def downstream_of(self, step_id: str) -> Set[str]:
        """Every step that transitively consumes step_id's outputs."""
        adj = self.dependents()
        seen: Set[str] = set()
        q = deque(adj[step_id])
        while q:
            sid = q.popleft()
            if sid in seen:
                continue
            seen.add(sid)
            q.extend(adj[sid])
        return seen

    def topological_order(self) -> List[Step]:
        """Kahn's algorithm with a declaration-order heap as tie-break."""
        adj = self.dependents()
        indeg = {sid: len(deps) for sid, deps in self._needs.items()}
        heap = [(self._order[sid], sid) for sid, d in indeg.items() if d == 0]
        heapq.heapify(heap)

        out: List[Step] = []
        while heap:
            _, sid = heapq.heappop(heap)
            out.append(self._steps[sid])
            for child in adj[sid]:
                indeg[child] -= 1
                if indeg[child] == 0:
                    heapq.heappush(heap, (self._order[child], child))

        if len(out) != len(self._steps):
            stuck = sorted((sid for sid, d in indeg.items() if d > 0), key=self._order.get)
            raise CycleError(stuck=stuck)
        return out

    def levels(self) -> List[List[str]]:
        """
        Group steps into stages; every step in a stage only depends on
        earlier stages. Used for display.
        """
        depth: Dict[str, int] = {}
        for step in self.topological_order():
            deps = self._needs[step.id]
            depth[step.id] = 1 + max((depth[d] for d in deps), default=-1)
        stages: List[List[str]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
        for sid in sorted(depth, key=self._order.get):
            stages[depth[sid]].append(sid)
        return stages

    def validate(self) -> None:
        self.topological_order()


def build_plan(
    config: BuildConfig,
    steps: Iterable[Step],
    needs: Optional[Dict[str, Iterable[str]]] = None,
) -> Plan:
    """Build and validate a plan in one call."""
    plan = Plan.from_edges(config, steps, needs or {})
    plan.validate()
    return plan
