from __future__ import annotations

import shutil
import tarfile
from pathlib import Path

from pinbuild.errors import ErrorKind, StepError
from pinbuild.model import Action, Step
from pinbuild.runner import StepContext


def write_step(id: str, path: str, content: str, *, inputs: tuple[str, ...] = ()) -> Step:
    return Step(id=id, run=Action("write_file", {"path": path, "content": content}),
                inputs=inputs, outputs=(path,))


def copy_step(id: str, source: str, dest: str) -> Step:
    return Step(id=id, run=Action("copy", {"source": source, "dest": dest}),
                inputs=(source,), outputs=(dest,))


def extract_step(id: str, archive: str, dest: str) -> Step:
    return Step(id=id, run=Action("extract", {"archive": archive, "dest": dest}),
                inputs=(archive,), outputs=(dest,))


def _staging(path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp")
    _remove(tmp)
    return tmp


def _remove(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.is_dir():
        shutil.rmtree(path)


def _source(step: Step, ctx: StepContext, key: str) -> Path:
    src = ctx.work_root / step.run.params[key]
    if not src.exists():
        raise StepError(kind=ErrorKind.INPUT_MISSING, step=step.id, message=f"{src} does not exist")
    return src


def run_write_step(step: Step, ctx: StepContext) -> None:
    """Write rendered text to a file under the work root."""
    out = ctx.work_root / step.run.params["path"]
    tmp = _staging(out)
    tmp.write_text(ctx.render(step.run.params.get("content", "")), encoding="utf-8")
    tmp.replace(out)


def run_copy_step(step: Step, ctx: StepContext) -> None:
    """Copy a file or a directory tree; symlinks are copied as links."""
    src = _source(step, ctx, "source")
    out = ctx.work_root / step.run.params["dest"]
    tmp = _staging(out)
    if src.is_dir():
        shutil.copytree(src, tmp, symlinks=True)
    else:
        shutil.copy2(src, tmp, follow_symlinks=False)
    _remove(out)
    tmp.replace(out)


def run_extract_step(step: Step, ctx: StepContext) -> None:
    """Unpack a tar archive (any compression tarfile reads) into a directory."""
    archive = _source(step, ctx, "archive")
    out = ctx.work_root / step.run.params["dest"]
    tmp = _staging(out)
    tmp.mkdir()
    try:
        with tarfile.open(archive, "r:*") as tf:
            tf.extractall(tmp, filter="data")
    except tarfile.TarError as e:
        _remove(tmp)
        raise StepError(kind=ErrorKind.NON_ZERO_EXIT, step=step.id,
                        message=f"cannot extract {archive.name}: {e}") from e
    _remove(out)
    tmp.replace(out)
