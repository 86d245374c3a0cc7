# runner.py
from __future__ import annotations

import heapq
import json
import os
import shutil
import subprocess
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, FrozenSet, List, Mapping, Optional, Sequence, Set, Tuple

from .cache import ArtifactStore, EvictScope, clear_dir, compute_fingerprint, hash_file, is_covered
from .config import BuildConfig
from .dag import Plan
from .errors import FATAL, TOOL_HINTS, ErrorKind, LockContention, StepError
from .locks import WORKSPACE_LOCK, workspace_lock
from .model import Action, RunReport, Step, StepOutcome, StepState
from .ui.console import Console, get_console

# stderr fragments that mark a failed network operation
NETWORK_MARKERS = (
    "could not resolve host",
    "temporary failure in name resolution",
    "connection timed out",
    "connection refused",
    "connection reset",
    "network is unreachable",
    "unable to access",
    "early eof",
    "etimedout",
    "econnreset",
    "econnrefused",
    "enotfound",
    "eai_again",
    "socket hang up",
)

TERMINATE_GRACE = 5.0
POLL_INTERVAL = 0.2

# the only ambient variables a step inherits; everything else is explicit
PASSTHROUGH_ENV = (
    "PATH",
    "HOME",
    "TMPDIR",
    "USER",
    "LOGNAME",
    "LANG",
    "LC_ALL",
    "TZ",
    "SSH_AUTH_SOCK",
    "HTTP_PROXY",
    "HTTPS_PROXY",
    "NO_PROXY",
    "http_proxy",
    "https_proxy",
    "no_proxy",
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


# ----------------------------------------------------------------------
# Step context
# ----------------------------------------------------------------------

@dataclass
class StepContext:
    """
    Everything a step may touch. Processes see PASSTHROUGH_ENV from the
    caller, then the toolchain env, then the step's own env; nothing else.
    """
    config: BuildConfig
    work_root: Path
    cancel: threading.Event = field(default_factory=threading.Event)
    console: Console = field(default_factory=get_console)

    @property
    def log_dir(self) -> Path:
        return self.work_root / "logs"

    def placeholders(self) -> Dict[str, str]:
        c = self.config
        return {
            **c.toolchain,
            "work": str(self.work_root),
            "version": c.version,
            "revision": c.revision,
            "ref": c.resolved_ref,
            "target": c.resolved_target,
            "rpath": c.rpath,
            "artifact": c.artifact_name,
            "standalone": c.standalone_dir,
            "jobs": str(c.jobs),
        }

    def render(self, text: str) -> str:
        return text.format(**self.placeholders())

    def env(self, extra: Mapping[str, str] | None = None) -> Dict[str, str]:
        env = {k: os.environ[k] for k in PASSTHROUGH_ENV if k in os.environ}
        env.update(self.config.toolchain_env())
        for k, v in (extra or {}).items():
            env[k] = self.render(v)
        return env

    def log(self, step_id: str, text: str) -> Path:
        self.log_dir.mkdir(parents=True, exist_ok=True)
        path = self.log_dir / f"{step_id}.log"
        with path.open("a", encoding="utf-8") as f:
            f.write(text)
            if not text.endswith("\n"):
                f.write("\n")
        return path


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class ProcessResult:
    argv: Tuple[str, ...]
    exit_code: int
    stdout: str
    stderr: str

    @property
    def diagnostic(self) -> str:
        return (
            f"$ {' '.join(self.argv)}\n"
            f"--- stdout ---\n{self.stdout.rstrip()}\n"
            f"--- stderr ---\n{self.stderr.rstrip()}\n"
        )


def run_process(
    argv: Sequence[str],
    *,
    step_id: str,
    cwd: Path,
    env: Mapping[str, str],
    timeout: Optional[float] = None,
    cancel: threading.Event | None = None,
) -> ProcessResult:
    """
    Run an external tool to completion: execute(args) -> (exit, stdout, stderr).

    Raises StepError for ToolMissing, Timeout and Cancelled. A nonzero
    exit is returned, not raised; classification is the caller's job.
    """
    argv = tuple(argv)
    try:
        proc = subprocess.Popen(
            argv,
            cwd=str(cwd),
            env=dict(env),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
    except (FileNotFoundError, PermissionError) as e:
        hint = TOOL_HINTS.get(Path(argv[0]).name, f"Install {argv[0]} or fix PATH.")
        raise StepError(
            kind=ErrorKind.TOOL_MISSING,
            step=step_id,
            message=f"{argv[0]} is not available: {e.strerror or e}",
            diagnostic=hint,
        ) from e

    deadline = None if timeout is None else time.monotonic() + timeout
    while True:
        try:
            out, err = proc.communicate(timeout=POLL_INTERVAL)
            break
        except subprocess.TimeoutExpired:
            timed_out = deadline is not None and time.monotonic() >= deadline
            cancelled = cancel is not None and cancel.is_set()
            if not (timed_out or cancelled):
                continue
            out, err = _terminate(proc)
            kind = ErrorKind.CANCELLED if cancelled else ErrorKind.TIMEOUT
            message = "cancelled" if cancelled else f"timed out after {timeout}s"
            raise StepError(
                kind=kind,
                step=step_id,
                message=f"{argv[0]} {message}",
                diagnostic=ProcessResult(argv, proc.returncode, out, err).diagnostic,
            )

    return ProcessResult(argv, proc.returncode, out or "", err or "")


def _terminate(proc: subprocess.Popen) -> Tuple[str, str]:
    proc.terminate()
    try:
        out, err = proc.communicate(timeout=TERMINATE_GRACE)
    except subprocess.TimeoutExpired:
        proc.kill()
        out, err = proc.communicate()
    return out or "", err or ""


def looks_like_network_failure(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in NETWORK_MARKERS)


def check_process(step: Step, result: ProcessResult) -> None:
    """Turn a nonzero exit into the right StepError."""
    if result.exit_code == 0:
        return
    kind = ErrorKind.NON_ZERO_EXIT
    if step.network and looks_like_network_failure(result.stderr + result.stdout):
        kind = ErrorKind.NETWORK_FAILURE
    raise StepError(
        kind=kind,
        step=step.id,
        message=f"{result.argv[0]} exited with {result.exit_code}",
        diagnostic=result.diagnostic,
        exit_code=result.exit_code,
    )


def run_tool(step: Step, ctx: StepContext, argv: Sequence[str], *, cwd: Path | None = None,
             env: Mapping[str, str] | None = None) -> ProcessResult:
    """Run one tool invocation for `step`, log it, and raise on failure."""
    resolved = [ctx.config.tool(argv[0]), *argv[1:]]
    ctx.console.print_debug(f"[{step.id}] $ {' '.join(resolved)}")
    result = run_process(
        resolved,
        step_id=step.id,
        cwd=cwd or ctx.work_root,
        env=ctx.env(env),
        timeout=step.timeout or ctx.config.step_timeout,
        cancel=ctx.cancel,
    )
    ctx.log(step.id, result.diagnostic)
    check_process(step, result)
    return result


def _clear_outputs(step: Step, work_root: Path) -> None:
    # stale outputs from an interrupted attempt must not satisfy verify()
    for rel in step.outputs:
        p = work_root / rel
        if p.is_symlink() or p.is_file():
            p.unlink()
        elif p.is_dir():
            shutil.rmtree(p)


def _action_handlers() -> Dict[str, Callable[[Step, StepContext], None]]:
    # Import here to avoid circular import
    from .step_workflows import check, fetch, files, patch

    return {
        "fetch": fetch.run_step,
        "patch_binary": patch.run_step,
        "verify_artifact": check.run_step,
        "write_file": files.run_write_step,
        "copy": files.run_copy_step,
        "extract": files.run_extract_step,
    }


def execute_step(step: Step, ctx: StepContext) -> None:
    """
    Run a step's side effects once. Raises StepError on failure.
    """
    _clear_outputs(step, ctx.work_root)

    if step.commands:
        cwd = ctx.work_root / (step.cwd or ".")
        if not cwd.is_dir():
            raise StepError(
                kind=ErrorKind.INPUT_MISSING,
                step=step.id,
                message=f"working directory not found: {cwd}",
            )
        for command in step.commands:
            argv = [command.tool, *(ctx.render(a) for a in command.argv[1:])]
            run_tool(step, ctx, argv, cwd=cwd, env=command.env)
    elif isinstance(step.run, Action):
        handlers = _action_handlers()
        if step.run.kind not in handlers:
            raise ValueError(f"step {step.id!r} has unknown action {step.run.kind!r}")
        handlers[step.run.kind](step, ctx)
    else:
        raise TypeError(f"step {step.id!r} has no runnable command")

    if not step.verify(ctx.work_root):
        missing = [p for p in step.outputs if not (ctx.work_root / p).exists()]
        raise StepError(
            kind=ErrorKind.OUTPUT_MISSING,
            step=step.id,
            message=f"declared outputs were not produced: {missing}",
        )


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Delay before retry number `attempt` (1-based): base * 2^(attempt-1), capped."""
    return min(cap, base * (2 ** (attempt - 1)))


def execute_with_retry(step: Step, ctx: StepContext) -> int:
    """
    Execute with bounded exponential backoff for transient errors.
    Returns the number of attempts used.
    """
    cfg = ctx.config
    attempt = 0
    while True:
        attempt += 1
        ctx.console.print_step_start(step.id, attempt)
        try:
            execute_step(step, ctx)
            return attempt
        except StepError as e:
            e.attempts = attempt
            if not e.retryable or attempt >= cfg.max_attempts or ctx.cancel.is_set():
                raise
            delay = backoff_delay(attempt, cfg.backoff_base, cfg.backoff_cap)
            ctx.console.print_retry(step.id, f"{e.kind.value}: {e.message}", delay)
            if ctx.cancel.wait(delay):
                raise StepError(
                    kind=ErrorKind.CANCELLED,
                    step=step.id,
                    message="cancelled while waiting to retry",
                    diagnostic=e.diagnostic,
                    attempts=attempt,
                ) from e


# ----------------------------------------------------------------------
# Fingerprints for a whole plan
# ----------------------------------------------------------------------

def plan_fingerprints(plan: Plan, work_root: str | Path) -> Dict[str, Tuple[str, Dict]]:
    """
    Fingerprint every step in topological order.

    Each key folds in the keys of its direct dependencies, so a change
    anywhere upstream changes every downstream key and nothing else.
    """
    root = Path(work_root)
    keys: Dict[str, Tuple[str, Dict]] = {}
    produced: Dict[str, Set[str]] = {}
    for step in plan.topological_order():
        needs = plan.needs(step.id)
        ancestors_out: Set[str] = set()
        for dep in needs:
            ancestors_out |= produced[dep]
        keys[step.id] = compute_fingerprint(
            step,
            plan.config,
            work_root=root,
            upstream={dep: keys[dep][0] for dep in needs},
            produced=ancestors_out,
        )
        produced[step.id] = ancestors_out | set(step.outputs)
    return keys


def nested_outputs(plan: Plan) -> Dict[str, Tuple[str, ...]]:
    """For each step, the outputs of other steps that live inside its own."""
    out: Dict[str, Tuple[str, ...]] = {}
    for step in plan.steps:
        inner = {
            o
            for other in plan.steps if other.id != step.id
            for o in other.outputs
            if o not in step.outputs and is_covered(o, step.outputs)
        }
        out[step.id] = tuple(sorted(inner))
    return out


def cached_steps(plan: Plan, store: ArtifactStore, work_root: str | Path) -> Dict[str, bool]:
    keys = plan_fingerprints(plan, work_root)
    return {sid: store.get(fp) is not None for sid, (fp, _) in keys.items()}


@dataclass(frozen=True)
class ToolUse:
    """
    One step's need for a tool alias.

    `cwd` is where the step launches it, relative to the work root, and
    `produced` holds the outputs of the step's ancestors: a relative
    executable under one of those only exists once they have run.
    """
    alias: str
    step: str
    cwd: str = "."
    produced: FrozenSet[str] = frozenset()


def tool_uses(plan: Plan, only: Optional[Set[str]] = None) -> List[ToolUse]:
    """Every (step, tool) pair in topological order, optionally for `only` some steps."""
    produced: Dict[str, FrozenSet[str]] = {}
    uses: List[ToolUse] = []
    for step in plan.topological_order():
        upstream: Set[str] = set()
        for dep in plan.needs(step.id):
            upstream |= produced[dep]
        produced[step.id] = frozenset(upstream | set(step.outputs))
        if only is not None and step.id not in only:
            continue
        for alias in step.requires:
            uses.append(ToolUse(alias, step.id, step.cwd or ".", frozenset(upstream)))
    return uses


def required_tools(plan: Plan, store: ArtifactStore, work_root: str | Path) -> List[ToolUse]:
    """Tools needed by the steps that would actually run."""
    cached = cached_steps(plan, store, work_root)
    return tool_uses(plan, only={sid for sid, hit in cached.items() if not hit})


# ----------------------------------------------------------------------
# Executor
# ----------------------------------------------------------------------

@dataclass
class _Track:
    state: StepState = StepState.PENDING
    outcome: Optional[StepOutcome] = None


class Executor:
    """
    Runs a Plan on a bounded thread pool.

    A step is dispatched once all of its dependencies are Succeeded or
    Skipped. A failed step blocks its downstream branch; a fatal error
    (ToolMissing, RevisionMismatch, ChecksumMismatch) or cancellation stops
    all new dispatch. Steps already running are allowed to finish.

    A step whose inputs are missing when it comes up is Blocked, like its
    descendants. The report's cancel_reason is "timeout" only when the run
    timer fired, "interrupted" on Ctrl-C and "aborted" for any other set
    of the cancel event.
    """

    def __init__(
        self,
        plan: Plan,
        store: ArtifactStore,
        *,
        jobs: Optional[int] = None,
        console: Optional[Console] = None,
        cancel: Optional[threading.Event] = None,
    ):
        self.plan = plan
        self.config = plan.config
        self.store = store
        self.jobs = max(1, jobs or self.config.jobs)
        self.console = console or get_console()
        self.cancel = cancel or threading.Event()
        self.work_root = Path(self.config.work_root).resolve()
        self._nested = nested_outputs(plan)

    # -- single step ------------------------------------------------------

    def _run_step(self, step: Step, fingerprint: str, payload: Dict) -> StepOutcome:
        started = _now()
        ctx = StepContext(self.config, self.work_root, self.cancel, self.console)

        def outcome(state: StepState, **kw) -> StepOutcome:
            return StepOutcome(step=step.id, state=state, fingerprint=fingerprint,
                               started_at=started, finished_at=_now(), **kw)

        nested = self._nested[step.id]
        record = self.store.get(fingerprint)
        if record is not None:
            self.store.restore(record, self.work_root, nested)
            self.console.print_cache_hit(step.id, fingerprint)
            return outcome(StepState.SKIPPED, reason="cached")

        readiness = step.prepare(self.work_root)
        if not readiness.ready:
            self.console.print_warning(f"[{step.id}] blocked: {readiness.reason}")
            return outcome(StepState.BLOCKED, reason=readiness.reason,
                           error_kind=ErrorKind.INPUT_MISSING.value)

        attempts = 0

        def producer() -> None:
            nonlocal attempts
            attempts = execute_with_retry(step, ctx)

        try:
            record, produced = self.store.put(
                fingerprint,
                producer,
                step_id=step.id,
                work_root=self.work_root,
                outputs=step.outputs,
                tool_versions={t: self.config.toolchain[t] for t in step.requires if t in self.config.toolchain},
                key_payload=payload,
                cancel=self.cancel,
                exclude=nested,
            )
        except StepError as e:
            log_path = ctx.log(step.id, f"{e.kind.value}: {e.message}\n{e.diagnostic}")
            hint = e.diagnostic if e.kind is ErrorKind.TOOL_MISSING else None
            self.console.print_failure(step.id, e.message, e.exit_code, hint)
            return outcome(
                StepState.FAILED,
                attempts=e.attempts,
                reason=e.message,
                error_kind=e.kind.value,
                exit_code=e.exit_code,
                diagnostic=e.diagnostic,
                log_path=str(log_path),
            )
        except LockContention as e:
            self.console.print_failure(step.id, str(e))
            return outcome(StepState.FAILED, reason=str(e), error_kind=ErrorKind.LOCK_CONTENTION.value)

        if not produced:
            # another invocation produced it while we waited on the lock
            self.store.restore(record, self.work_root, nested)
            self.console.print_cache_hit(step.id, fingerprint)
            return outcome(StepState.SKIPPED, reason="cached")

        self.console.print_cache_saved(step.id, fingerprint)
        self.console.print_step_success(step.id)
        log = ctx.log_dir / f"{step.id}.log"
        return outcome(StepState.SUCCEEDED, attempts=attempts,
                       log_path=str(log) if log.exists() else None)

    # -- whole plan -------------------------------------------------------

    def run(
        self,
        *,
        clean: bool = False,
        fresh: bool = False,
        timeout: Optional[float] = None,
    ) -> RunReport:
        """
        clean: evict this version's cached records first (full rebuild).
        fresh: empty the work root first; cached outputs are restored.
        """
        order = self.plan.topological_order()
        started = _now()
        self.work_root.mkdir(parents=True, exist_ok=True)

        with workspace_lock(self.work_root):
            if clean or fresh:
                clear_dir(self.work_root, keep=(WORKSPACE_LOCK,))
            if clean:
                removed = self.store.evict(EvictScope(version=self.config.version))
                self.console.print_info(f"Clean build: evicted {removed} cached record(s) for {self.config.version}")

            keys = plan_fingerprints(self.plan, self.work_root)
            cancel_reason = self._schedule(order, keys, timeout)

        return self._report(order, started, cancel_reason)

    def _schedule(self, order: List[Step], keys: Dict[str, Tuple[str, Dict]],
                  timeout: Optional[float]) -> Optional[str]:
        decl = {s.id: i for i, s in enumerate(self.plan.steps)}
        adj = self.plan.dependents()
        indeg = {s.id: len(self.plan.needs(s.id)) for s in order}
        ready: List[Tuple[int, str]] = [(decl[sid], sid) for sid, d in indeg.items() if d == 0]
        heapq.heapify(ready)

        self._tracks: Dict[str, _Track] = {s.id: _Track() for s in order}
        self._halt_reason: Optional[str] = None
        in_flight: Dict[Future, str] = {}
        cancel_reason: Optional[str] = None

        # set only by the timer, so an outside cancel is never reported as a timeout
        fired = threading.Event()

        def expire() -> None:
            fired.set()
            self.cancel.set()

        timer = None
        if timeout is not None:
            timer = threading.Timer(timeout, expire)
            timer.daemon = True
            timer.start()

        try:
            with ThreadPoolExecutor(max_workers=self.jobs) as pool:
                while ready or in_flight:
                    # schedule all currently ready, up to the worker bound
                    while ready and len(in_flight) < self.jobs and not self._halted():
                        _, sid = heapq.heappop(ready)
                        fp, payload = keys[sid]
                        self._tracks[sid].state = StepState.RUNNING
                        fut = pool.submit(self._run_step, self.plan.step(sid), fp, payload)
                        in_flight[fut] = sid

                    if not in_flight:
                        break

                    try:
                        done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                    except KeyboardInterrupt:
                        cancel_reason = "interrupted"
                        self.cancel.set()
                        continue

                    for fut in done:
                        sid = in_flight.pop(fut)
                        result = self._collect(fut, sid, keys[sid][0])
                        self._tracks[sid].state = result.state
                        self._tracks[sid].outcome = result

                        # unlock dependents only if success or skipped(cache)
                        if result.state.ok:
                            for nxt in adj[sid]:
                                indeg[nxt] -= 1
                                if indeg[nxt] == 0:
                                    heapq.heappush(ready, (decl[nxt], nxt))
                        elif result.error_kind in {k.value for k in FATAL}:
                            self._halt_reason = f"plan halted after {result.error_kind} in '{sid}'"
        finally:
            if timer is not None:
                timer.cancel()

        if self.cancel.is_set() and cancel_reason is None:
            cancel_reason = "timeout" if fired.is_set() else "aborted"
        return cancel_reason

    def _halted(self) -> bool:
        return self._halt_reason is not None or self.cancel.is_set()

    def _collect(self, fut: Future, sid: str, fp: str) -> StepOutcome:
        try:
            return fut.result()
        except Exception as e:
            # a bug or unexpected OS error in a step handler; report it, keep going
            self.console.print_failure(sid, f"{type(e).__name__}: {e}")
            return StepOutcome(step=sid, state=StepState.FAILED, fingerprint=fp,
                               reason=f"{type(e).__name__}: {e}", finished_at=_now())

    def _report(self, order: List[Step], started: str, cancel_reason: Optional[str]) -> RunReport:
        outcomes: List[StepOutcome] = []
        for step in order:
            track = self._tracks[step.id]
            if track.outcome is not None:
                outcomes.append(track.outcome)
                continue
            outcomes.append(StepOutcome(
                step=step.id,
                state=StepState.BLOCKED,
                reason=self._blocked_reason(step.id, cancel_reason),
            ))

        artifact = sha = None
        if self.plan.artifact:
            path = self.work_root / self.plan.artifact
            if path.is_file():
                artifact, sha = str(path), hash_file(path)

        report = RunReport(
            version=self.config.version,
            revision=self.config.revision,
            outcomes=tuple(outcomes),
            started_at=started,
            finished_at=_now(),
            cancel_reason=cancel_reason,
            artifact=artifact,
            artifact_sha256=sha,
        )
        write_report(report, self.work_root)
        return report

    def _blocked_reason(self, sid: str, cancel_reason: Optional[str]) -> str:
        for dep in self._ancestors(sid):
            state = self._tracks[dep].state
            if state in (StepState.FAILED, StepState.BLOCKED) and self._tracks[dep].outcome is not None:
                return f"upstream '{dep}' {state.value}"
        if cancel_reason:
            return f"not started: run {cancel_reason}"
        if self._halt_reason:
            return self._halt_reason
        return "not started"

    def _ancestors(self, sid: str) -> List[str]:
        seen: List[str] = []
        stack = list(self.plan.needs(sid))
        while stack:
            dep = stack.pop(0)
            if dep not in seen:
                seen.append(dep)
                stack.extend(self.plan.needs(dep))
        return seen


def write_report(report: RunReport, work_root: Path) -> Path:
    out_dir = work_root / "reports"
    out_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
    path = out_dir / f"run-{stamp}.json"
    path.write_text(json.dumps(report.to_dict(), indent=2, sort_keys=True), encoding="utf-8")
    return path


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def run_plan(
    plan: Plan,
    store: Optional[ArtifactStore] = None,
    *,
    jobs: Optional[int] = None,
    clean: bool = False,
    fresh: bool = False,
    timeout: Optional[float] = None,
    cancel: Optional[threading.Event] = None,
    console: Optional[Console] = None,
) -> RunReport:
    """Run a plan, returning a report that lists every step's outcome."""
    if store is None:
        store = ArtifactStore(plan.config.cache_root, plan.config.version)
    executor = Executor(plan, store, jobs=jobs, console=console, cancel=cancel)
    return executor.run(clean=clean, fresh=fresh, timeout=timeout)


def dry_run(plan: Plan, store: ArtifactStore) -> List[Tuple[int, str, str, str]]:
    """(stage, step, fingerprint, status) rows without running anything."""
    work_root = Path(plan.config.work_root).resolve()
    keys = plan_fingerprints(plan, work_root)
    stage_of = {sid: i for i, stage in enumerate(plan.levels()) for sid in stage}
    rows = []
    for step in plan.topological_order():
        fp = keys[step.id][0]
        status = "cached" if store.get(fp) is not None else "would run"
        rows.append((stage_of[step.id] + 1, step.id, fp, status))
    return rows
