import json
import threading
from pathlib import Path

import pytest

from conftest import calls
from pinbuild.cache import ArtifactStore
from pinbuild.dag import Plan
from pinbuild.dsl import cmd, script
from pinbuild.errors import LockContention
from pinbuild.locks import workspace_lock
from pinbuild.model import StepState
from pinbuild.runner import (
    backoff_delay,
    dry_run,
    looks_like_network_failure,
    required_tools,
    run_plan,
    tool_uses,
)
from pinbuild.step_workflows.check import check_toolchain

SKIPPED = StepState.SKIPPED
SUCCEEDED = StepState.SUCCEEDED
FAILED = StepState.FAILED
BLOCKED = StepState.BLOCKED


def _diamond(config):
    """in/x.txt -> x -> z ; y independent."""
    plan = Plan(config)
    plan.add_step(cmd("x", "fake", "concat", "x.out", "in/x.txt", inputs=("in/x.txt",), outputs=("x.out",)))
    plan.add_step(cmd("y", "fake", "write", "y.out", "sibling", outputs=("y.out",)))
    plan.add_step(cmd("z", "fake", "concat", "z.out", "x.out", inputs=("x.out",), outputs=("z.out",)), ["x"])
    return plan


def _seed(config, text="one\n"):
    src = config.work_root / "in" / "x.txt"
    src.parent.mkdir(parents=True, exist_ok=True)
    src.write_text(text)


def test_second_run_skips_every_step(make_config, calls_file):
    config = make_config()
    _seed(config)
    first = run_plan(_diamond(config))
    assert first.states() == [SUCCEEDED] * 3
    assert first.ok

    second = run_plan(_diamond(config))
    assert second.states() == [SKIPPED] * 3
    assert len(calls(calls_file)) == 3
    assert (config.work_root / "z.out").read_text() == "one\n"


def test_input_change_reruns_step_and_dependents_only(make_config, calls_file):
    config = make_config()
    _seed(config)
    run_plan(_diamond(config))

    _seed(config, "two\n")
    report = run_plan(_diamond(config))
    assert report.outcome("x").state is SUCCEEDED
    assert report.outcome("z").state is SUCCEEDED
    assert report.outcome("y").state is SKIPPED
    assert (config.work_root / "z.out").read_text() == "two\n"


def test_clean_rebuilds_everything(make_config, calls_file):
    config = make_config()
    plan = Plan(config)
    plan.add_step(cmd("a", "fake", "write", "a.out", "A", outputs=("a.out",)))
    plan.add_step(cmd("b", "fake", "concat", "b.out", "a.out", inputs=("a.out",), outputs=("b.out",)), ["a"])

    run_plan(plan)
    report = run_plan(plan, clean=True)
    assert report.states() == [SUCCEEDED, SUCCEEDED]
    assert len(calls(calls_file)) == 4


def test_fresh_workspace_restores_from_cache(make_config, calls_file):
    config = make_config()
    plan = Plan(config)
    plan.add_step(cmd("a", "fake", "write", "a.out", "A", outputs=("a.out",)))
    run_plan(plan)
    (config.work_root / "scratch").write_text("junk")

    report = run_plan(plan, fresh=True)
    assert report.states() == [SKIPPED]
    assert (config.work_root / "a.out").read_text() == "A\n"
    assert not (config.work_root / "scratch").exists()
    assert len(calls(calls_file)) == 1


def test_network_failure_is_retried(make_config, tmp_path, calls_file):
    config = make_config(max_attempts=3)
    plan = Plan(config)
    plan.add_step(cmd("fetch", "fake", "flaky", "2", str(tmp_path / "state"), "got",
                      outputs=("got",), network=True))
    report = run_plan(plan)
    outcome = report.outcome("fetch")
    assert outcome.state is SUCCEEDED
    assert outcome.attempts == 3


def test_network_failure_surfaces_after_max_attempts(make_config, tmp_path):
    config = make_config(max_attempts=2)
    plan = Plan(config)
    plan.add_step(cmd("fetch", "fake", "flaky", "5", str(tmp_path / "state"), "got",
                      outputs=("got",), network=True))
    outcome = run_plan(plan).outcome("fetch")
    assert outcome.state is FAILED
    assert outcome.error_kind == "NetworkFailure"
    assert outcome.attempts == 2
    assert "Could not resolve host" in outcome.diagnostic


def test_same_stderr_without_network_flag_is_not_retried(make_config, tmp_path):
    config = make_config(max_attempts=3)
    plan = Plan(config)
    plan.add_step(cmd("compile", "fake", "flaky", "5", str(tmp_path / "state"), "got", outputs=("got",)))
    outcome = run_plan(plan).outcome("compile")
    assert outcome.error_kind == "NonZeroExit"
    assert outcome.attempts == 1
    assert outcome.exit_code == 128


def test_failure_blocks_only_its_branch(make_config):
    config = make_config()
    plan = Plan(config)
    plan.add_step(cmd("broken", "fake", "fail", "2", "ld: cannot find -lstdc++", outputs=("b.out",)))
    plan.add_step(cmd("after", "fake", "noop"), ["broken"])
    plan.add_step(cmd("sibling", "fake", "write", "s.out", "fine", outputs=("s.out",)))

    report = run_plan(plan)
    assert report.outcome("broken").state is FAILED
    assert report.outcome("after").state is BLOCKED
    assert report.outcome("after").reason == "upstream 'broken' failed"
    assert report.outcome("sibling").state is SUCCEEDED
    assert not report.ok

    failed = report.failed
    assert [o.step for o in failed] == ["broken"]
    assert "ld: cannot find -lstdc++" in failed[0].diagnostic
    assert "ld: cannot find" in Path(failed[0].log_path).read_text()


def test_missing_tool_halts_the_plan(make_config):
    config = make_config(jobs=1, tools={"cc": "/nonexistent/gcc12"})
    plan = Plan(config)
    plan.add_step(cmd("compile", "cc", "-c", "main.c"))
    plan.add_step(cmd("independent", "fake", "noop"))

    report = run_plan(plan)
    compile_ = report.outcome("compile")
    assert compile_.error_kind == "ToolMissing"
    assert compile_.attempts == 1
    independent = report.outcome("independent")
    assert independent.state is BLOCKED
    assert "ToolMissing" in independent.reason


def test_missing_output_fails_step(make_config):
    config = make_config()
    plan = Plan(config)
    plan.add_step(cmd("liar", "fake", "noop", outputs=("never.out",)))
    outcome = run_plan(plan).outcome("liar")
    assert outcome.state is FAILED
    assert outcome.error_kind == "OutputMissing"


def test_missing_external_input_blocks_step(make_config, calls_file):
    config = make_config()
    plan = Plan(config)
    plan.add_step(cmd("needs", "fake", "noop", inputs=("absent.txt",)))
    plan.add_step(cmd("after", "fake", "noop"), ["needs"])
    report = run_plan(plan)

    outcome = report.outcome("needs")
    assert outcome.state is BLOCKED
    assert outcome.error_kind == "InputMissing"
    assert "absent.txt" in outcome.reason
    assert report.outcome("after").reason == "upstream 'needs' blocked"
    assert report.failed == []
    assert not report.ok
    assert calls(calls_file) == []


def test_script_runs_commands_in_order(make_config, calls_file):
    config = make_config()
    plan = Plan(config)
    plan.add_step(script(
        "compile",
        ("fake", "write", "part", "{version}"),
        ("fake", "concat", "all.out", "part"),
        outputs=("all.out",),
    ))
    assert run_plan(plan).ok
    assert (config.work_root / "all.out").read_text() == "4.0.6\n"
    assert [c.split()[0] for c in calls(calls_file)] == ["write", "concat"]


def test_plan_timeout_cancels_in_flight_steps(make_config):
    config = make_config()
    plan = Plan(config)
    plan.add_step(cmd("slow", "fake", "sleep", "30"))
    plan.add_step(cmd("later", "fake", "noop"), ["slow"])

    report = run_plan(plan, timeout=0.5)
    assert report.cancelled
    assert report.cancel_reason == "timeout"
    assert report.outcome("slow").error_kind == "Cancelled"
    assert report.outcome("later").state is BLOCKED


def test_external_cancel_stops_dispatch(make_config, calls_file):
    config = make_config()
    plan = Plan(config)
    plan.add_step(cmd("a", "fake", "noop"))
    cancel = threading.Event()
    cancel.set()

    report = run_plan(plan, cancel=cancel)
    assert report.states() == [BLOCKED]
    assert report.cancel_reason == "aborted"
    assert calls(calls_file) == []


def test_external_cancel_with_timeout_set_is_still_aborted(make_config):
    config = make_config()
    plan = Plan(config)
    plan.add_step(cmd("slow", "fake", "sleep", "30"))
    cancel = threading.Event()
    trigger = threading.Timer(0.3, cancel.set)
    trigger.start()
    try:
        report = run_plan(plan, cancel=cancel, timeout=60)
    finally:
        trigger.cancel()
    assert report.cancel_reason == "aborted"
    assert report.outcome("slow").error_kind == "Cancelled"


def test_independent_steps_run_concurrently(make_config, tmp_path):
    config = make_config(jobs=2)
    a, b = str(tmp_path / "a.here"), str(tmp_path / "b.here")
    plan = Plan(config)
    plan.add_step(cmd("left", "fake", "meet", a, b, "10"))
    plan.add_step(cmd("right", "fake", "meet", b, a, "10"))

    report = run_plan(plan)
    assert report.states() == [SUCCEEDED, SUCCEEDED], report.failed


def test_jobs_bounds_concurrency(make_config, tmp_path):
    config = make_config(jobs=2)
    running, log = tmp_path / "running", tmp_path / "counts.log"
    plan = Plan(config)
    for n in range(4):
        plan.add_step(cmd(f"t{n}", "fake", "track", str(running), "0.3", str(log), str(n)))

    assert run_plan(plan).ok
    counts = [int(line) for line in log.read_text().split()]
    assert len(counts) == 4
    assert max(counts) == 2


def test_fatal_error_lets_in_flight_sibling_finish(make_config):
    config = make_config(jobs=2)
    plan = Plan(config)
    plan.add_step(cmd("slow", "fake", "sleep", "0.5"))
    plan.add_step(cmd("broken", "no-such-tool-pinbuild", "--version"))
    plan.add_step(cmd("later", "fake", "noop"))

    report = run_plan(plan)
    assert report.outcome("slow").state is SUCCEEDED
    broken = report.outcome("broken")
    assert broken.state is FAILED
    assert broken.error_kind == "ToolMissing"
    later = report.outcome("later")
    assert later.state is BLOCKED
    assert "ToolMissing" in later.reason
    assert not report.cancelled


def test_steps_see_only_allowed_ambient_env(make_config, monkeypatch):
    monkeypatch.setenv("PINBUILD_TEST_SECRET", "hunter2")
    config = make_config(env={"STEP_EXTRA": "on"})
    plan = Plan(config)
    plan.add_step(cmd("dump", "fake", "env", "env.json", outputs=("env.json",)))

    assert run_plan(plan).ok
    seen = json.loads((config.work_root / "env.json").read_text())
    assert "PINBUILD_TEST_SECRET" not in seen
    assert seen["PATH"]
    assert seen["CC"] == "/usr/local/bin/gcc12"
    assert seen["STEP_EXTRA"] == "on"
    assert "FAKE_CALLS" in seen


def test_step_timeout_is_classified(make_config):
    config = make_config(max_attempts=1)
    plan = Plan(config)
    plan.add_step(cmd("hang", "fake", "sleep", "30", timeout=0.3))
    outcome = run_plan(plan).outcome("hang")
    assert outcome.error_kind == "Timeout"


def test_busy_workspace_raises_lock_contention(make_config):
    config = make_config()
    config.work_root.mkdir(parents=True)
    plan = Plan(config)
    plan.add_step(cmd("a", "fake", "noop"))
    with workspace_lock(config.work_root):
        with pytest.raises(LockContention):
            run_plan(plan)


def test_report_is_persisted(make_config):
    config = make_config()
    plan = Plan(config)
    plan.add_step(cmd("a", "fake", "write", "a.out", "A", outputs=("a.out",)))
    run_plan(plan)
    reports = sorted((config.work_root / "reports").glob("run-*.json"))
    assert len(reports) == 1
    data = json.loads(reports[0].read_text())
    assert data["ok"] is True
    assert data["outcomes"][0]["state"] == "succeeded"


def test_dry_run_shows_cache_status_without_running(make_config, calls_file):
    config = make_config()
    plan = Plan(config)
    plan.add_step(cmd("a", "fake", "write", "a.out", "A", outputs=("a.out",)))
    plan.add_step(cmd("b", "fake", "concat", "b.out", "a.out", inputs=("a.out",), outputs=("b.out",)), ["a"])
    store = ArtifactStore(config.cache_root, config.version)

    before = dry_run(plan, store)
    assert [(r[0], r[1], r[3]) for r in before] == [(1, "a", "would run"), (2, "b", "would run")]
    assert calls(calls_file) == []

    run_plan(plan, store)
    after = dry_run(plan, store)
    assert [r[3] for r in after] == ["cached", "cached"]
    assert [r[2] for r in after] == [r[2] for r in before]


def test_backoff_is_exponential_and_capped():
    assert [backoff_delay(n, 1.0, 5.0) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


@pytest.mark.parametrize("text", [
    "fatal: unable to access 'https://github.com/x.git/': Could not resolve host: github.com",
    "npm ERR! code ETIMEDOUT",
    "npm ERR! errno ECONNRESET",
])
def test_network_markers(text):
    assert looks_like_network_failure(text)


def test_ordinary_errors_are_not_network_failures():
    assert not looks_like_network_failure("error: 'foo' undeclared (first use in this function)")


def test_relative_tool_resolves_against_step_cwd(make_config):
    config = make_config(tools={"local": "./bin/local"})
    plan = Plan(config)
    plan.add_step(cmd("use", "local", "x", cwd="sub"))

    problems = check_toolchain(config, tool_uses(plan))
    assert [(p.tool, p.kind) for p in problems] == [("local", "ToolMissing")]
    assert "./bin/local not found in sub" == problems[0].message

    tool = config.work_root / "sub" / "bin" / "local"
    tool.parent.mkdir(parents=True)
    tool.write_text("#!/bin/sh\n")
    tool.chmod(0o755)
    assert check_toolchain(config, tool_uses(plan)) == []


def test_tool_produced_by_an_upstream_step_is_checked_when_it_runs(make_config):
    config = make_config(tools={"local": "./out/bin/local"})
    plan = Plan(config)
    plan.add_step(cmd("make", "fake", "noop", outputs=("out",)))
    plan.add_step(cmd("use", "local", "x"), ["make"])
    assert check_toolchain(config, tool_uses(plan)) == []

    alone = Plan(config)
    alone.add_step(cmd("use", "local", "x"))
    assert [p.tool for p in check_toolchain(config, tool_uses(alone))] == ["local"]


def test_required_tools_skips_cached_steps(make_config):
    config = make_config(tools={"later": "/nonexistent/later"})
    plan = Plan(config)
    plan.add_step(cmd("a", "fake", "write", "a.out", "A", outputs=("a.out",)))
    store = ArtifactStore(config.cache_root, config.version)
    run_plan(plan, store)

    plan.add_step(cmd("b", "later", "go"), ["a"])
    uses = required_tools(plan, store, config.work_root)
    assert [(u.step, u.alias, sorted(u.produced)) for u in uses] == [("b", "later", ["a.out"])]
