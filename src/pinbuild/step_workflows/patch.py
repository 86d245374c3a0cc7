from __future__ import annotations

import re
import shutil
import stat
from typing import Iterable, Sequence, Tuple

from pinbuild.errors import ErrorKind, StepError
from pinbuild.model import Action, Step
from pinbuild.runner import StepContext, run_tool

# The packager embeds the byte offsets of its payload and prelude in a
# JavaScript bootstrap inside the binary, e.g.
#     var PAYLOAD_POSITION = '48730112 ...
# patchelf grows the ELF headers, so every offset has to move with them.
DEFAULT_MARKERS = ("PAYLOAD_POSITION", "PRELUDE_POSITION")


class PatchTargetNotFound(ValueError):
    def __init__(self, marker: str):
        super().__init__(f"byte pattern 'var {marker} = ' not found")
        self.marker = marker


def _pattern(marker: str) -> re.Pattern[bytes]:
    # one quote character sits between "= " and the digits
    return re.compile(rb"(var " + re.escape(marker.encode()) + rb" = .)(\d+)")


def adjust_offsets(data: bytes, offset: int, markers: Iterable[str] = DEFAULT_MARKERS) -> Tuple[bytes, dict]:
    """
    Add `offset` to the number after every marker.

    Returns (patched bytes, {marker: [(old, new), ...]}). Raises
    PatchTargetNotFound when a marker does not occur at all.
    """
    changes: dict = {}
    for marker in markers:
        seen = []

        def bump(m: re.Match) -> bytes:
            old = int(m.group(2))
            seen.append((old, old + offset))
            return m.group(1) + str(old + offset).encode()

        data, count = _pattern(marker).subn(bump, data)
        if count == 0:
            raise PatchTargetNotFound(marker)
        changes[marker] = seen
    return data, changes


def patch_step(
    id: str = "patch",
    *,
    source: str,
    output: str,
    rpath: str = "{rpath}",
    offset: int | None = None,
    markers: Sequence[str] = DEFAULT_MARKERS,
) -> Step:
    """Add an rpath to `source`, shift its payload offsets, write `output`."""
    params = {"source": source, "output": output, "rpath": rpath, "markers": list(markers)}
    if offset is not None:
        params["offset"] = offset
    return Step(
        id=id,
        run=Action("patch_binary", params),
        inputs=(source,),
        outputs=(output,),
        requires=("patchelf",),
        description=f"patch {source}",
    )


def run_step(step: Step, ctx: StepContext) -> None:
    params = step.run.params
    source = ctx.work_root / params["source"]
    output = ctx.work_root / params["output"]
    rpath = ctx.render(params.get("rpath", "{rpath}"))
    offset = int(params.get("offset", ctx.config.payload_offset))
    markers = params.get("markers", DEFAULT_MARKERS)

    output.parent.mkdir(parents=True, exist_ok=True)
    tmp = output.with_name(output.name + ".tmp")
    shutil.copy2(source, tmp)
    try:
        if rpath:
            run_tool(step, ctx, ["patchelf", "--add-rpath", rpath, str(tmp)])

        try:
            patched, changes = adjust_offsets(tmp.read_bytes(), offset, markers)
        except PatchTargetNotFound as e:
            raise StepError(
                kind=ErrorKind.PATCH_TARGET_NOT_FOUND,
                step=step.id,
                message=str(e),
                diagnostic=f"binary: {source}\nmarkers: {list(markers)}\n",
            ) from e

        tmp.write_bytes(patched)
        tmp.chmod(tmp.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        tmp.replace(output)
    finally:
        if tmp.exists():
            tmp.unlink()

    for marker, pairs in changes.items():
        ctx.log(step.id, f"{marker}: " + ", ".join(f"{a} -> {b}" for a, b in pairs))
