# model.py
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union


@dataclass(frozen=True)
class Command:
    """
    An external process invocation.

    argv[0] is a tool alias, resolved through BuildConfig.tools at run time.
    Arguments may contain `{placeholders}` (see runner.StepContext.render); the
    unformatted text is what gets fingerprinted.
    """
    argv: Tuple[str, ...]
    env: Dict[str, str] = field(default_factory=dict)

    @property
    def tool(self) -> str:
        return self.argv[0]

    def normalized(self) -> Dict[str, Any]:
        return {"argv": list(self.argv), "env": dict(sorted(self.env.items()))}


@dataclass(frozen=True)
class Action:
    """A structured in-process action (fetch, patch, verify, write, copy, extract)."""
    kind: str
    params: Dict[str, Any] = field(default_factory=dict)

    def normalized(self) -> Dict[str, Any]:
        return {"action": self.kind, "params": self.params}


@dataclass(frozen=True)
class Readiness:
    ready: bool
    reason: str = ""


@dataclass(frozen=True)
class Step:
    """A single external-effect unit of a build plan."""
    id: str
    run: Union[Command, Action, Tuple[Command, ...]]

    inputs: Tuple[str, ...] = ()    # paths relative to the work root
    outputs: Tuple[str, ...] = ()   # paths this step must produce
    requires: Tuple[str, ...] = ()  # tool aliases needed on PATH
    cwd: str | None = None
    network: bool = False
    timeout: float | None = None
    description: str = ""

    @property
    def commands(self) -> Tuple[Command, ...]:
        if isinstance(self.run, Command):
            return (self.run,)
        if isinstance(self.run, tuple):
            return self.run
        return ()

    def normalized_run(self) -> Any:
        if isinstance(self.run, tuple):
            return [c.normalized() for c in self.run]
        return self.run.normalized()

    def prepare(self, work_root: Path) -> Readiness:
        """Blocked when a declared input is absent. No side effects."""
        missing = [p for p in self.inputs if not (work_root / p).exists()]
        if missing:
            return Readiness(False, f"missing inputs: {missing}")
        return Readiness(True)

    def verify(self, work_root: Path) -> bool:
        """True when every declared output exists."""
        return all((work_root / p).exists() for p in self.outputs)


class StepState(str, Enum):
    PENDING = "pending"
    BLOCKED = "blocked"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped(cached)"

    @property
    def terminal(self) -> bool:
        return self in (StepState.SUCCEEDED, StepState.FAILED, StepState.SKIPPED)

    @property
    def ok(self) -> bool:
        return self in (StepState.SUCCEEDED, StepState.SKIPPED)


@dataclass(frozen=True)
class StepOutcome:
    step: str
    state: StepState
    fingerprint: str = ""
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    attempts: int = 0
    reason: str = ""
    error_kind: Optional[str] = None
    exit_code: Optional[int] = None
    diagnostic: str = ""
    log_path: Optional[str] = None


@dataclass(frozen=True)
class RunReport:
    """Outcome of one executor invocation. Built once, at the end of the run."""
    version: str
    revision: str
    outcomes: Tuple[StepOutcome, ...]
    started_at: str
    finished_at: str
    cancel_reason: Optional[str] = None
    artifact: Optional[str] = None
    artifact_sha256: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_reason is not None

    @property
    def ok(self) -> bool:
        return not self.cancelled and all(o.state.ok for o in self.outcomes)

    @property
    def failed(self) -> List[StepOutcome]:
        return [o for o in self.outcomes if o.state is StepState.FAILED]

    def outcome(self, step_id: str) -> StepOutcome:
        for o in self.outcomes:
            if o.step == step_id:
                return o
        raise KeyError(step_id)

    def states(self) -> List[StepState]:
        return [o.state for o in self.outcomes]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["outcomes"] = [
            {**asdict(o), "state": o.state.value} for o in self.outcomes
        ]
        data["ok"] = self.ok
        data["cancelled"] = self.cancelled
        return data
