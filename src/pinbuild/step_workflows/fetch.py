from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

from pinbuild.errors import ErrorKind, StepError
from pinbuild.git_facts import git
from pinbuild.model import Action, Step
from pinbuild.runner import StepContext, run_tool


def fetch_step(
    id: str = "fetch",
    *,
    url: str,
    ref: str = "{ref}",
    revision: str = "{revision}",
    dest: str = "src",
    inputs: tuple[str, ...] = (),
) -> Step:
    """A shallow clone of `ref` into `dest`, rejected unless HEAD is `revision`."""
    return Step(
        id=id,
        run=Action("fetch", {"url": url, "ref": ref, "revision": revision, "dest": dest}),
        inputs=inputs,
        outputs=(dest,),
        requires=("git",),
        network=True,
        description=f"clone {url} at {ref}",
    )


def run_step(step: Step, ctx: StepContext) -> None:
    """
    Clone into a scratch directory next to the destination and only move
    it into place once the checked-out commit matches the pin. A mismatch
    leaves nothing behind.
    """
    params = step.run.params
    url = ctx.render(params["url"])
    ref = ctx.render(params.get("ref", "{ref}"))
    pin = ctx.render(params.get("revision", "{revision}"))
    dest = ctx.work_root / params.get("dest", "src")
    scratch = dest.with_name(f".{dest.name}.fetch")

    _remove(scratch)
    scratch.parent.mkdir(parents=True, exist_ok=True)

    try:
        run_tool(step, ctx, ["git", *git.clone_args(url, ref, scratch)])
        sha = _head(step, ctx, scratch)
        if not git.matches_pin(sha, pin):
            raise StepError(
                kind=ErrorKind.REVISION_MISMATCH,
                step=step.id,
                message=f"{ref} resolved to {sha[:12]}, pinned revision is {pin}",
                diagnostic=f"repository: {url}\nref:       {ref}\nexpected:  {pin}\nfetched:   {sha}\n",
            )
    except BaseException:
        _remove(scratch)
        raise

    _remove(dest)
    scratch.replace(dest)
    ctx.log(step.id, f"fetched {url}@{ref} -> {sha}")


def _head(step: Step, ctx: StepContext, checkout: Path) -> str:
    try:
        return git.head_sha(checkout, git=ctx.config.tool("git"))
    except subprocess.CalledProcessError as e:
        raise StepError(
            kind=ErrorKind.NON_ZERO_EXIT,
            step=step.id,
            message="git rev-parse HEAD failed",
            diagnostic=e.stderr or "",
            exit_code=e.returncode,
        ) from e


def _remove(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.is_dir():
        shutil.rmtree(path)
