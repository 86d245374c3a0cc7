import pytest

from pinbuild.config import BuildConfig
from pinbuild.dag import Plan, build_plan
from pinbuild.dsl import cmd
from pinbuild.errors import CycleError, PlanError


def _step(sid):
    return cmd(sid, "fake", "noop")


@pytest.fixture
def config(tmp_path):
    return BuildConfig(cache_root=tmp_path / "cache", work_root=tmp_path / "work")


def test_topological_order_puts_dependencies_first(config):
    plan = Plan.from_edges(
        config,
        [_step(s) for s in ("package", "fetch", "compile", "install")],
        {"package": ["compile"], "compile": ["install"], "install": ["fetch"]},
    )
    order = [s.id for s in plan.topological_order()]
    assert order == ["fetch", "install", "compile", "package"]


def test_unconstrained_steps_keep_declaration_order(config):
    plan = Plan(config)
    for sid in ("c", "a", "b"):
        plan.add_step(_step(sid))
    plan.add_step(_step("z"), ["b", "c"])
    assert [s.id for s in plan.topological_order()] == ["c", "a", "b", "z"]


def test_every_step_follows_all_of_its_dependencies(config):
    needs = {
        "e": ["b", "d"],
        "d": ["a"],
        "c": ["a", "b"],
        "b": ["a"],
    }
    plan = Plan.from_edges(config, [_step(s) for s in "edcba"], needs)
    position = {s.id: i for i, s in enumerate(plan.topological_order())}
    for sid, deps in needs.items():
        for dep in deps:
            assert position[dep] < position[sid]


def test_cycle_is_reported_with_stuck_steps(config):
    plan = Plan.from_edges(
        config,
        [_step("a"), _step("b"), _step("c"), _step("free")],
        {"a": ["c"], "b": ["a"], "c": ["b"]},
    )
    with pytest.raises(CycleError) as exc:
        plan.topological_order()
    assert exc.value.stuck == ["a", "b", "c"]
    with pytest.raises(PlanError):
        plan.validate()


def test_self_dependency_is_a_cycle(config):
    with pytest.raises(CycleError):
        build_plan(config, [_step("a")], {"a": ["a"]})


def test_duplicate_step_id_is_rejected(config):
    plan = Plan(config)
    plan.add_step(_step("fetch"))
    with pytest.raises(PlanError, match="Duplicate"):
        plan.add_step(_step("fetch"))


def test_dependency_on_unknown_step_is_rejected(config):
    plan = Plan(config)
    with pytest.raises(PlanError, match="unknown step 'fetch'"):
        plan.add_step(_step("compile"), ["fetch"])
    with pytest.raises(PlanError):
        Plan.from_edges(config, [_step("a")], {"a": ["ghost"]})


def test_levels_and_downstream(config):
    plan = Plan(config)
    plan.add_step(_step("fetch"))
    plan.add_step(_step("lint"))
    plan.add_step(_step("compile"), ["fetch"])
    plan.add_step(_step("package"), ["compile", "lint"])

    assert plan.levels() == [["fetch", "lint"], ["compile"], ["package"]]
    assert plan.downstream_of("fetch") == {"compile", "package"}
    assert plan.downstream_of("package") == set()
    assert len(plan) == 4
    assert "lint" in plan
