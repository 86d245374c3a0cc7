# cache.py
from __future__ import annotations

import hashlib
import json
import os
import shutil
import stat
import tarfile
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from .config import BuildConfig
from .locks import FileLock
from .model import Step

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Step-level caching:
#   fingerprint = hash(
#       step id + normalized command/action + cwd,
#       contents of declared input paths,
#       config identity (version, pinned revision, declared toolchain),
#       fingerprints of the steps it depends on,
#   )
#
# Nothing time- or machine-dependent goes in, so the same build request
# yields the same fingerprint anywhere.
#
# Layout:
#   <cache_root>/
#     <version>/
#       manifest                  line-oriented index, sorted by fingerprint
#       records/<fp>.json         ArtifactRecord
#       artifacts/<fp>.tar.gz     the step's declared outputs
#       locks/<fp>.lock           single-producer lock
# ---------------------------------------------------------------------

FINGERPRINT_VERSION = 1
EXCLUDED_DIRS = frozenset({".git", "__pycache__", ".pinbuild"})


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def hash_file(path: Path, algorithm: str = "sha256") -> str:
    h = hashlib.new(algorithm)
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal; symlinks are yielded, never followed
    found: List[Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        base = Path(dirpath)
        linked = [d for d in dirnames if (base / d).is_symlink()]
        dirnames[:] = sorted(d for d in dirnames if d not in EXCLUDED_DIRS and d not in linked)
        found.extend(base / name for name in filenames)
        found.extend(base / name for name in linked)
    return sorted(found)


def _file_entry(p: Path, rel: str) -> Tuple[str, str, bool]:
    if p.is_symlink():
        return rel, "link:" + os.readlink(p), False
    executable = bool(p.stat().st_mode & stat.S_IXUSR)
    return rel, hash_file(p), executable


def hash_paths(root: Path, paths: Iterable[str], exclude: Iterable[str] = ()) -> Tuple[str, Dict[str, Any]]:
    """
    Hash files/dirs (relative to root) by relative path, content and exec bit.
    Missing paths are recorded rather than skipped, so they affect the digest.
    Anything under `exclude` (other steps' nested outputs) is ignored.
    """
    exclude = tuple(exclude)
    entries: List[Tuple[str, str, bool]] = []
    missing: List[str] = []
    for rel in paths:
        p = root / rel
        if p.is_symlink() or p.is_file():
            entries.append(_file_entry(p, rel))
        elif p.is_dir():
            for f in _iter_files_under(p):
                rel_f = f.relative_to(root).as_posix()
                if not is_covered(rel_f, exclude):
                    entries.append(_file_entry(f, rel_f))
        else:
            missing.append(rel)

    entries.sort(key=lambda t: t[0])
    payload = {"files": entries, "missing": sorted(missing)}
    return _sha256_str(_json_dumps_stable(payload)), payload


def is_covered(path: str, outputs: Iterable[str]) -> bool:
    norm = path.rstrip("/")
    for out in outputs:
        o = out.rstrip("/")
        if norm == o or norm.startswith(o + "/"):
            return True
    return False


def compute_fingerprint(
    step: Step,
    config: BuildConfig,
    *,
    work_root: str | Path,
    upstream: Mapping[str, str] | None = None,
    produced: Iterable[str] = (),
) -> Tuple[str, Dict[str, Any]]:
    """
    Returns (fingerprint, payload); the payload is stored with the record
    so a cache decision can be explained later.

    Inputs that fall under an upstream step's outputs (`produced`) are
    already covered by that step's fingerprint in `upstream` and are not
    read from disk, so every fingerprint of a plan is known before it runs.
    """
    root = Path(work_root)
    produced = tuple(produced)
    external = [p for p in step.inputs if not is_covered(p, produced)]
    inputs_hash, _ = hash_paths(root, external)
    payload = {
        "v": FINGERPRINT_VERSION,  # bump when the hashing format changes
        "step": step.id,
        "run": step.normalized_run(),
        "cwd": step.cwd or ".",
        "outputs": sorted(step.outputs),
        "requires": sorted(step.requires),
        "inputs_hash": inputs_hash,
        "config": config.identity(),
        "upstream": dict(sorted((upstream or {}).items())),
    }
    return _sha256_str(_json_dumps_stable(payload)), payload


# ---------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class ArtifactRecord:
    fingerprint: str
    step: str
    scope: str
    outputs: Tuple[str, ...]
    sha256: str            # content hash of the outputs
    archive: str           # path relative to the scope directory
    created_at: str
    tool_versions: Dict[str, str] = field(default_factory=dict)
    key_payload: Dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        data = asdict(self)
        data["outputs"] = list(self.outputs)
        return json.dumps(data, sort_keys=True, indent=2, ensure_ascii=False)

    @classmethod
    def from_json(cls, text: str) -> "ArtifactRecord":
        data = json.loads(text)
        data["outputs"] = tuple(data.get("outputs", []))
        return cls(**data)

    def manifest_line(self) -> str:
        return (
            f"{self.fingerprint} step={self.step} sha256={self.sha256} "
            f"created_at={self.created_at} archive={self.archive}"
        )


@dataclass(frozen=True)
class EvictScope:
    """What to evict. Exactly one of the fields should be set."""
    version: Optional[str] = None
    older_than: Optional[timedelta] = None
    everything: bool = False


class ArtifactStore:
    """
    Content-addressed store of step outputs, shared across invocations.

    Safe for concurrent readers; `put` admits one producer per fingerprint
    (flock on locks/<fp>.lock), later callers wait and get the first
    producer's record.
    """

    def __init__(self, root: str | Path, scope: str, *, lock_timeout: Optional[float] = None):
        self.root = Path(root).expanduser().resolve()
        self.scope = scope
        self.lock_timeout = lock_timeout
        self._manifest_guard = threading.Lock()
        self.scope_dir.mkdir(parents=True, exist_ok=True)

    @property
    def scope_dir(self) -> Path:
        return self.root / self.scope

    def record_path(self, fingerprint: str) -> Path:
        return self.scope_dir / "records" / f"{fingerprint}.json"

    def archive_path(self, fingerprint: str) -> Path:
        return self.scope_dir / "artifacts" / f"{fingerprint}.tar.gz"

    def manifest_path(self, scope: str | None = None) -> Path:
        return self.root / (scope or self.scope) / "manifest"

    def lock(self, fingerprint: str) -> FileLock:
        return FileLock(self.scope_dir / "locks" / f"{fingerprint}.lock", timeout=self.lock_timeout)

    # ------------------------------------------------------------------
    # get / put
    # ------------------------------------------------------------------

    def get(self, fingerprint: str) -> Optional[ArtifactRecord]:
        rec = self.record_path(fingerprint)
        if not rec.exists() or not self.archive_path(fingerprint).exists():
            return None
        try:
            return ArtifactRecord.from_json(rec.read_text(encoding="utf-8"))
        except (ValueError, TypeError, KeyError):
            # unreadable record is a miss; the producer rewrites it
            return None

    def put(
        self,
        fingerprint: str,
        producer: Callable[[], None],
        *,
        step_id: str,
        work_root: str | Path,
        outputs: Iterable[str],
        tool_versions: Mapping[str, str] | None = None,
        key_payload: Mapping[str, Any] | None = None,
        cancel: threading.Event | None = None,
        exclude: Iterable[str] = (),
    ) -> Tuple[ArtifactRecord, bool]:
        """
        Run `producer` unless a record already exists, then archive the
        declared outputs. Returns (record, produced_here).

        Raises LockContention if the lock cannot be taken within
        lock_timeout. Exceptions from the producer propagate and leave no
        record behind.
        """
        lock = self.lock(fingerprint)
        lock.acquire(cancel=cancel)
        try:
            existing = self.get(fingerprint)
            if existing is not None:
                return existing, False

            producer()

            record = self._archive(
                fingerprint,
                step_id=step_id,
                work_root=Path(work_root),
                outputs=tuple(outputs),
                tool_versions=dict(tool_versions or {}),
                key_payload=dict(key_payload or {}),
                exclude=tuple(exclude),
            )
            return record, True
        finally:
            lock.release()

    def _archive(
        self,
        fingerprint: str,
        *,
        step_id: str,
        work_root: Path,
        outputs: Tuple[str, ...],
        tool_versions: Dict[str, str],
        key_payload: Dict[str, Any],
        exclude: Tuple[str, ...] = (),
    ) -> ArtifactRecord:
        art = self.archive_path(fingerprint)

        def skip_nested(info: tarfile.TarInfo) -> Optional[tarfile.TarInfo]:
            return None if is_covered(info.name, exclude) else info

        art.parent.mkdir(parents=True, exist_ok=True)
        tmp = art.with_name(art.name + ".tmp")
        try:
            # Build tar.gz in tmp, then atomic rename
            with tarfile.open(str(tmp), mode="w:gz") as tar:
                for rel in sorted(outputs):
                    src = work_root / rel
                    if src.exists() or src.is_symlink():
                        tar.add(str(src), arcname=rel, recursive=True, filter=skip_nested)
            tmp.replace(art)
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

        digest, _ = hash_paths(work_root, outputs, exclude)
        record = ArtifactRecord(
            fingerprint=fingerprint,
            step=step_id,
            scope=self.scope,
            outputs=outputs,
            sha256=digest,
            archive=art.relative_to(self.scope_dir).as_posix(),
            created_at=_utcnow(),
            tool_versions=tool_versions,
            key_payload=key_payload,
        )
        _atomic_write(self.record_path(fingerprint), record.to_json())
        self._rewrite_manifest(self.scope)
        return record

    # ------------------------------------------------------------------
    # restore
    # ------------------------------------------------------------------

    def restore(self, record: ArtifactRecord, work_root: str | Path, exclude: Iterable[str] = ()) -> bool:
        """
        Put a record's outputs back into the work tree.
        Returns False when the tree already held identical outputs.

        `exclude` names outputs of other steps nested inside this record's
        outputs; they do not count as a difference. When the outputs do
        differ they are replaced whole, nested outputs included, and the
        steps owning those restore them afterwards.
        """
        root = Path(work_root)
        current, _ = hash_paths(root, record.outputs, exclude)
        if current == record.sha256:
            return False

        for rel in record.outputs:
            p = root / rel
            if p.is_symlink() or p.is_file():
                p.unlink()
            elif p.is_dir():
                shutil.rmtree(p)

        root.mkdir(parents=True, exist_ok=True)
        with tarfile.open(str(self.scope_dir / record.archive), mode="r:gz") as tar:
            tar.extractall(path=str(root), filter="tar")
        return True

    # ------------------------------------------------------------------
    # listing / eviction
    # ------------------------------------------------------------------

    def scopes(self) -> List[str]:
        if not self.root.exists():
            return []
        return sorted(p.name for p in self.root.iterdir() if p.is_dir())

    def records(self, scope: str | None = None) -> List[ArtifactRecord]:
        rec_dir = self.root / (scope or self.scope) / "records"
        out: List[ArtifactRecord] = []
        for p in sorted(rec_dir.glob("*.json")) if rec_dir.exists() else []:
            try:
                out.append(ArtifactRecord.from_json(p.read_text(encoding="utf-8")))
            except (ValueError, TypeError, KeyError):
                continue
        return out

    def evict(self, scope: EvictScope) -> int:
        """Remove records selected by `scope`. Returns how many went."""
        if scope.everything:
            removed = sum(len(self.records(s)) for s in self.scopes())
            for s in self.scopes():
                shutil.rmtree(self.root / s)
            return removed

        if scope.version is not None:
            target = self.root / scope.version
            removed = len(self.records(scope.version))
            if target.exists():
                shutil.rmtree(target)
            return removed

        if scope.older_than is not None:
            cutoff = datetime.now(timezone.utc) - scope.older_than
            removed = 0
            for s in self.scopes():
                for rec in self.records(s):
                    if datetime.fromisoformat(rec.created_at) < cutoff:
                        base = self.root / s
                        (base / rec.archive).unlink(missing_ok=True)
                        (base / "records" / f"{rec.fingerprint}.json").unlink(missing_ok=True)
                        removed += 1
                self._rewrite_manifest(s)
            return removed

        return 0

    def _rewrite_manifest(self, scope: str) -> None:
        with self._manifest_guard, FileLock(self.root / scope / "locks" / "manifest.lock"):
            lines = sorted(r.manifest_line() for r in self.records(scope))
            _atomic_write(self.manifest_path(scope), "".join(line + "\n" for line in lines))


def _atomic_write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + f".{os.getpid()}.{threading.get_ident()}.tmp")
    tmp.write_text(text, encoding="utf-8")
    tmp.replace(path)


def clear_dir(path: str | Path, keep: Iterable[str] = ()) -> int:
    """Empty `path` except for the entries named in `keep`. Returns how many went."""
    p = Path(path)
    if not p.exists():
        return 0
    keep = set(keep)
    removed = 0
    for child in sorted(p.iterdir()):
        if child.name in keep:
            continue
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()
        removed += 1
    return removed
