from .config import BuildConfig, load_config
from .dag import Plan, build_plan
from .dsl import action, chain, cmd, load_plan, script
from .model import Action, Command, RunReport, Step, StepState
from .runner import dry_run, run_plan
from .templates import standalone_plan

__all__ = [
    "BuildConfig", "load_config", "Plan", "build_plan",
    "action", "chain", "cmd", "load_plan", "script",
    "Action", "Command", "RunReport", "Step", "StepState",
    "dry_run", "run_plan", "standalone_plan",
]
