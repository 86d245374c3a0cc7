# src/pinbuild/dsl.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple, Union

from .config import BuildConfig
from .dag import Plan
from .model import Action, Command, Step


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def cmd(
    id: str,
    *argv: str,
    env: Optional[Dict[str, str]] = None,
    inputs: Iterable[str] = (),
    outputs: Iterable[str] = (),
    requires: Optional[Iterable[str]] = None,
    cwd: str | None = None,
    network: bool = False,
    timeout: float | None = None,
    description: str = "",
) -> Step:
    """
    Create a step that runs one external tool.

    argv[0] is a tool alias; `requires` defaults to just that alias.
    """
    if not argv:
        raise ValueError(f"cmd({id!r}) needs at least a program name")
    return Step(
        id=id,
        run=Command(tuple(argv), dict(env or {})),
        inputs=tuple(inputs),
        outputs=tuple(outputs),
        requires=tuple(requires) if requires is not None else (argv[0],),
        cwd=cwd,
        network=network,
        timeout=timeout,
        description=description,
    )


def script(
    id: str,
    *commands: Union[Sequence[str], Command],
    inputs: Iterable[str] = (),
    outputs: Iterable[str] = (),
    requires: Optional[Iterable[str]] = None,
    cwd: str | None = None,
    network: bool = False,
    timeout: float | None = None,
    description: str = "",
) -> Step:
    """
    Create a step that runs several tools in sequence, stopping at the
    first failure. The step's outputs are checked once, after the last one.
    """
    if not commands:
        raise ValueError(f"script({id!r}) must have at least one command")
    run: Tuple[Command, ...] = tuple(
        c if isinstance(c, Command) else Command(tuple(c)) for c in commands
    )
    tools = requires if requires is not None else dict.fromkeys(c.tool for c in run)
    return Step(
        id=id,
        run=run,
        inputs=tuple(inputs),
        outputs=tuple(outputs),
        requires=tuple(tools),
        cwd=cwd,
        network=network,
        timeout=timeout,
        description=description,
    )


def action(
    id: str,
    kind: str,
    *,
    inputs: Iterable[str] = (),
    outputs: Iterable[str] = (),
    requires: Iterable[str] = (),
    network: bool = False,
    timeout: float | None = None,
    **params: Any,
) -> Step:
    """Create a step that runs a built-in action (see runner._action_handlers)."""
    return Step(
        id=id,
        run=Action(kind, params),
        inputs=tuple(inputs),
        outputs=tuple(outputs),
        requires=tuple(requires),
        network=network,
        timeout=timeout,
    )


# ---------------------------------------------------------------------
# Plan helpers
# ---------------------------------------------------------------------

def chain(config: BuildConfig, *steps: Step, artifact: Optional[str] = None) -> Plan:
    """
    A linear plan: every step depends on the one before it.

        plan = chain(config, cmd("a", ...), cmd("b", ...))
    """
    plan = Plan(config, artifact)
    prev: Optional[str] = None
    for step in steps:
        plan.add_step(step, [prev] if prev else [])
        prev = step.id
    return plan


def load_plan(path: str | Path, config: BuildConfig) -> Plan:
    """
    Load a plan from a python file path.

    The file must define plan(config) -> Plan. It is run with runpy, so it
    may import pinbuild like any other script.
    """
    plan_path = Path(path).expanduser().resolve()
    if not plan_path.exists():
        raise FileNotFoundError(f"Plan file not found: {plan_path}")
    if plan_path.suffix != ".py":
        raise ValueError(f"Plan must be a .py file, got: {plan_path.name}")

    module_name = f"pinbuild_plan_{plan_path.stem}"
    globals_dict = runpy.run_path(str(plan_path), run_name=module_name)

    factory = globals_dict.get("plan")
    if not callable(factory):
        raise TypeError(f"{plan_path.name} must define plan(config) -> Plan")

    result = factory(config)
    if not isinstance(result, Plan):
        raise TypeError(
            f"plan() in {plan_path.name} returned {type(result).__name__}, expected Plan"
        )
    result.validate()
    return result
