# cli.py
from __future__ import annotations

import sys
from datetime import timedelta
from pathlib import Path

import click

from pinbuild.cache import ArtifactStore, EvictScope, clear_dir
from pinbuild.config import BuildConfig, load_config
from pinbuild.dag import Plan
from pinbuild.dsl import load_plan
from pinbuild.errors import (
    EXIT_FAILURE,
    EXIT_OK,
    EXIT_TOOL_MISSING,
    EXIT_VERIFY_FAILED,
    ConfigError,
    ErrorKind,
    LockContention,
    PlanError,
)
from pinbuild.locks import WORKSPACE_LOCK, workspace_lock
from pinbuild.model import RunReport
from pinbuild.runner import dry_run, required_tools, run_plan, tool_uses
from pinbuild.step_workflows.check import check_toolchain
from pinbuild.templates import standalone_plan
from pinbuild.ui.console import Console, get_console, set_console
from pinbuild.verify import Requirements, verify_artifact, write_checksum_files

EXIT_INTERRUPTED = 130

_VERIFY_KINDS = {ErrorKind.VERIFICATION_FAILED.value, ErrorKind.CHECKSUM_MISMATCH.value}


# ---------------------------------------------------------------------
# Shared loading
# ---------------------------------------------------------------------

def _config(ctx: click.Context, **overrides) -> BuildConfig:
    console = get_console()
    try:
        return load_config(ctx.obj.get("config_path"), overrides=overrides)
    except ConfigError as e:
        console.print_error("Invalid configuration", str(e))
        sys.exit(EXIT_FAILURE)


def _plan(ctx: click.Context, config: BuildConfig) -> Plan:
    console = get_console()
    plan_path = ctx.obj.get("plan_path")
    try:
        if plan_path:
            console.print_debug(f"Loading plan from {plan_path}")
            return load_plan(plan_path, config)
        plan = standalone_plan(config)
        plan.validate()
        return plan
    except PlanError as e:
        console.print_error("Invalid plan", str(e))
        sys.exit(EXIT_FAILURE)
    except (FileNotFoundError, TypeError, ValueError) as e:
        console.print_error(
            "Failed to load plan",
            f"Could not load plan from {plan_path}",
            details=[str(e)],
            suggestion="A plan file must define:\n  def plan(config): return Plan(...)",
        )
        sys.exit(EXIT_FAILURE)


def _store(config: BuildConfig) -> ArtifactStore:
    return ArtifactStore(config.cache_root, config.version)


def exit_code_for(report: RunReport) -> int:
    """0 ok; 2 verification failed; 3 a tool was missing; 130 interrupted; 1 otherwise."""
    if report.ok:
        return EXIT_OK
    if report.cancel_reason == "interrupted":
        return EXIT_INTERRUPTED
    kinds = {o.error_kind for o in report.failed}
    if ErrorKind.TOOL_MISSING.value in kinds:
        return EXIT_TOOL_MISSING
    if kinds & _VERIFY_KINDS:
        return EXIT_VERIFY_FAILED
    return EXIT_FAILURE


# ---------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------

@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Show [DEBUG] lines and tool commands")
@click.option(
    "--debug",
    "-d",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option(
    "--config",
    "config_path",
    default=None,
    type=click.Path(dir_okay=False),
    help="Build file (defaults to ./pinbuild.toml if present)",
)
@click.option(
    "--plan",
    "plan_path",
    default=None,
    type=click.Path(dir_okay=False),
    help="Python file defining plan(config) -> Plan (defaults to the standalone template)",
)
@click.pass_context
def cli(ctx, verbose, debug, config_path, plan_path):
    """pinbuild: reproducible, cache-aware builds of pinned upstream sources."""
    console = Console(verbose=verbose, debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = config_path
    ctx.obj["plan_path"] = plan_path


@cli.command()
@click.option("--version", "version", default=None, help="Version to plan (overrides config)")
@click.pass_context
def plan(ctx, version):
    """Show step order, fingerprints, cache status and tool availability."""
    console = get_console()
    config = _config(ctx, version=version)
    p = _plan(ctx, config)
    store = _store(config)

    console.print_info(f"Plan for {config.version} @ {config.revision} ({len(p)} steps)")
    console.print_plan(dry_run(p, store))

    work_root = Path(config.work_root).resolve()
    tools = [use.alias for use in tool_uses(p)]
    problems = {pr.tool: pr for pr in check_toolchain(config, tool_uses(p), work_root)}
    rows = []
    for tool in dict.fromkeys(tools):
        pr = problems.get(tool)
        rows.append((tool, config.tool(tool), "ok" if pr is None else f"{pr.kind}: {pr.message}"))
    console.print_tools(rows)


@cli.command()
@click.option("--dry-run", is_flag=True, default=False, help="Print the plan and cache status, run nothing")
@click.option("--clean", is_flag=True, default=False, help="Evict this version's cache and rebuild from scratch")
@click.option(
    "--keep-cache",
    is_flag=True,
    default=False,
    help="Empty the work directory first but keep cached outputs (with --clean: do not evict)",
)
@click.option("--jobs", "-j", type=click.IntRange(min=1), default=None, help="Parallel steps")
@click.option("--version", "version", default=None, help="Version to build (overrides config)")
@click.option("--timeout", type=click.FloatRange(min=0, min_open=True), default=None,
              help="Cancel the whole run after this many seconds")
@click.option("--max-attempts", type=click.IntRange(min=1), default=None,
              help="Attempts for steps failing with network errors or timeouts")
@click.pass_context
def build(ctx, dry_run, clean, keep_cache, jobs, version, timeout, max_attempts):
    """Run the build plan."""
    console = get_console()
    config = _config(ctx, version=version, jobs=jobs, max_attempts=max_attempts)
    p = _plan(ctx, config)
    store = _store(config)

    if dry_run:
        _print_dry_run(p, store)
        return

    evict = clean and not keep_cache
    work_root = Path(config.work_root).resolve()

    # preflight: every tool a non-cached step needs
    tools = tool_uses(p) if evict else required_tools(p, store, work_root)
    problems = check_toolchain(config, tools, work_root)
    if problems:
        console.print_error(
            "Toolchain check failed",
            f"{len(problems)} problem(s) with required tools:",
            details=[f"{pr.tool}: {pr.kind}: {pr.message}" for pr in problems],
            suggestion="\n".join(dict.fromkeys(pr.hint for pr in problems if pr.hint)) or None,
        )
        sys.exit(EXIT_TOOL_MISSING)

    console.print_run_started(config.version, config.revision, len(p), str(work_root))
    try:
        report = run_plan(
            p,
            store,
            jobs=config.jobs,
            clean=evict,
            fresh=clean or keep_cache,
            timeout=timeout,
            console=console,
        )
    except LockContention as e:
        console.print_error(
            "Workspace is busy",
            str(e),
            suggestion="Wait for the other build to finish, or use a different --version / PINBUILD_WORK_DIR.",
        )
        sys.exit(EXIT_FAILURE)
    except KeyboardInterrupt:
        console.print_info("Interrupted by user")
        sys.exit(EXIT_INTERRUPTED)

    console.print_report(report)
    sys.exit(exit_code_for(report))


def _print_dry_run(p: Plan, store: ArtifactStore) -> None:
    console = get_console()
    rows = dry_run(p, store)
    console.print_plan(rows)
    would_run = sum(1 for row in rows if row[3] != "cached")
    console.print_info(f"Dry run: {would_run} of {len(rows)} step(s) would run")


@cli.command()
@click.argument("path", required=False, type=click.Path(dir_okay=False))
@click.option("--version", "min_version", default=None,
              help="Minimum self-reported version (defaults to the configured version)")
@click.option("--sha256", default=None, help="Expected SHA-256 of the artifact")
@click.option("--sha512", default=None, help="Expected SHA-512 of the artifact")
@click.option("--write-checksums", is_flag=True, default=False,
              help="Write <artifact>.sha256 / .sha512 files when verification passes")
@click.pass_context
def verify(ctx, path, min_version, sha256, sha512, write_checksums):
    """Verify a built artifact: executable bit, checksums, version."""
    console = get_console()
    config = _config(ctx)
    target = Path(path) if path else config.artifact_path
    checksums = {algo: v for algo, v in (("sha256", sha256), ("sha512", sha512)) if v}

    report = verify_artifact(target, Requirements(
        checksums=checksums,
        min_version=min_version or config.version,
    ))
    console.print_verification(report)
    if not report.ok:
        sys.exit(EXIT_VERIFY_FAILED)
    if write_checksums:
        for written in write_checksum_files(report):
            console.print_info(f"Wrote {written}")


@cli.command()
@click.option("--keep-cache", is_flag=True, default=False, help="Only empty the work directory")
@click.option("--all", "everything", is_flag=True, default=False, help="Evict cached records of every version")
@click.option("--older-than", type=click.IntRange(min=0), default=None, metavar="DAYS",
              help="Only evict records created more than DAYS days ago; the work directory is kept")
@click.option("--version", "version", default=None, help="Version to clean (overrides config)")
@click.pass_context
def clean(ctx, keep_cache, everything, older_than, version):
    """Remove the work directory and cached artifacts."""
    console = get_console()
    config = _config(ctx, version=version)
    store = _store(config)

    if older_than is not None:
        removed = store.evict(EvictScope(older_than=timedelta(days=older_than)))
        console.print_info(f"Evicted {removed} record(s) older than {older_than} day(s)")
        return

    work_root = Path(config.work_root).resolve()
    if work_root.exists():
        try:
            with workspace_lock(work_root):
                removed = clear_dir(work_root, keep=(WORKSPACE_LOCK,))
        except LockContention as e:
            console.print_error("Workspace is busy", str(e))
            sys.exit(EXIT_FAILURE)
        console.print_info(f"Emptied {work_root} ({removed} entries)")

    if keep_cache:
        return
    scope = EvictScope(everything=True) if everything else EvictScope(version=config.version)
    removed = store.evict(scope)
    what = "all versions" if everything else config.version
    console.print_info(f"Evicted {removed} cached record(s) for {what}")


if __name__ == "__main__":
    cli()
