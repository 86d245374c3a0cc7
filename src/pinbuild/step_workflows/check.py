from __future__ import annotations

import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Set, Tuple, Union

from pinbuild.cache import is_covered
from pinbuild.config import BuildConfig
from pinbuild.errors import TOOL_HINTS, ErrorKind, StepError
from pinbuild.model import Action, Step
from pinbuild.runner import StepContext, ToolUse
from pinbuild.verify import (
    FailureKind,
    Requirements,
    extract_version,
    satisfies,
    verify_artifact,
    write_checksum_files,
)

# ---------------------------------------------------------------------
# Artifact verification step
# ---------------------------------------------------------------------

def verify_step(
    id: str = "verify",
    *,
    artifact: str,
    min_version: str | None = "{version}",
    algorithms: tuple[str, ...] = ("sha256", "sha512"),
) -> Step:
    """Check the final artifact and write <artifact>.<algo> checksum files."""
    params = {"artifact": artifact, "algorithms": list(algorithms)}
    if min_version is not None:
        params["min_version"] = min_version
    return Step(
        id=id,
        run=Action("verify_artifact", params),
        inputs=(artifact,),
        outputs=tuple(f"{artifact}.{algo}" for algo in algorithms),
        description=f"verify {artifact}",
    )


def run_step(step: Step, ctx: StepContext) -> None:
    params = step.run.params
    path = ctx.work_root / params["artifact"]
    min_version = params.get("min_version")
    req = Requirements(
        algorithms=tuple(params.get("algorithms", ("sha256", "sha512"))),
        checksums=dict(params.get("checksums", {})),
        min_version=ctx.render(min_version) if min_version else None,
    )

    report = verify_artifact(path, req)
    if not report.ok:
        kind = ErrorKind.VERIFICATION_FAILED
        if FailureKind.CHECKSUM_MISMATCH in report.kinds:
            kind = ErrorKind.CHECKSUM_MISMATCH
        raise StepError(
            kind=kind,
            step=step.id,
            message=f"{path.name}: " + ", ".join(k.value for k in report.kinds),
            diagnostic="\n".join(f"{f.kind.value}: {f.message}" for f in report.failures),
        )

    for written in write_checksum_files(report):
        ctx.log(step.id, f"wrote {written.name}")
    ctx.log(step.id, f"{path.name} version {report.version or '-'} sha256 {report.checksums.get('sha256', '-')}")


# ---------------------------------------------------------------------
# Toolchain preflight
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class ToolProblem:
    tool: str
    kind: str
    message: str
    hint: str = ""


def tool_version(executable: str, timeout: float = 10.0) -> Optional[str]:
    """
    Best-effort version discovery. Keep it simple and stable.
    """
    candidates = [
        [executable, "--version"],
        [executable, "-V"],
        [executable, "version"],
    ]
    for cmd in candidates:
        try:
            completed = subprocess.run(
                cmd,
                text=True,
                capture_output=True,
                check=False,
                timeout=timeout,
            )
        except (OSError, subprocess.TimeoutExpired):
            continue
        out = (completed.stdout or "").strip()
        err = (completed.stderr or "").strip()
        text = out if out else err
        if completed.returncode == 0 and text:
            return " ".join(text.split())
    return None


def _locate(config: BuildConfig, use: ToolUse, work_root: Path) -> Tuple[Optional[str], bool]:
    """(path of the executable or None, whether the check waits for the run)."""
    executable = config.tool(use.alias)
    if os.path.isabs(executable) or os.sep not in executable:
        return shutil.which(executable), False
    # relative to the directory the step launches it from
    rel = os.path.normpath(os.path.join(use.cwd, executable))
    path = work_root / rel
    if path.is_file() and os.access(path, os.X_OK):
        return str(path), False
    return None, is_covered(rel, use.produced)


def check_toolchain(
    config: BuildConfig,
    tools: Iterable[Union[ToolUse, str]],
    work_root: str | Path | None = None,
) -> List[ToolProblem]:
    """
    Every tool must resolve (after alias lookup) and, where
    config.min_versions names it, report at least that version.

    Bare names are looked up on PATH. A relative path such as
    ./node_modules/.bin/pkg is resolved against the using step's cwd
    under the work root; when an upstream step produces that directory
    and it does not exist yet, the tool is checked when the step runs.
    """
    root = Path(work_root if work_root is not None else config.work_root).resolve()
    problems: List[ToolProblem] = []
    seen: Set[Tuple[str, str]] = set()
    for use in tools:
        if isinstance(use, str):
            use = ToolUse(use, step="")
        if (use.alias, use.cwd) in seen:
            continue
        seen.add((use.alias, use.cwd))

        executable = config.tool(use.alias)
        hint = TOOL_HINTS.get(use.alias, f"Install {use.alias} or fix PATH.")
        found, deferred = _locate(config, use, root)
        if deferred:
            continue
        if found is None:
            if os.sep not in executable:
                where = " on PATH"
            elif not os.path.isabs(executable):
                where = f" in {use.cwd}"
            else:
                where = ""
            problems.append(ToolProblem(use.alias, ErrorKind.TOOL_MISSING.value,
                                        f"{executable} not found{where}", hint))
            continue

        minimum = config.min_versions.get(use.alias)
        if minimum is None:
            continue
        text = tool_version(found)
        version = extract_version(text) if text else None
        if version is None:
            problems.append(ToolProblem(use.alias, FailureKind.VERSION_UNREADABLE.value,
                                        f"could not read the version of {found}", hint))
        elif not satisfies(version, minimum):
            problems.append(ToolProblem(use.alias, FailureKind.VERSION_TOO_LOW.value,
                                        f"{use.alias} {version} is below the minimum {minimum}", hint))
    return problems
