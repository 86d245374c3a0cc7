# verify.py
from __future__ import annotations

import os
import re
import shutil
import stat
import subprocess
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from functools import total_ordering
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .cache import hash_file

# ---------------------------------------------------------------------
# Semantic versions
# ---------------------------------------------------------------------

_FULL = re.compile(r"(\d+)\.(\d+)\.(\d+)(?:-([0-9A-Za-z.-]+))?")
_SHORT = re.compile(r"v?(\d+)(?:\.(\d+))?")


@total_ordering
@dataclass(frozen=True)
class SemVer:
    major: int
    minor: int = 0
    patch: int = 0
    prerelease: Tuple[str, ...] = ()

    @classmethod
    def parse(cls, text: str) -> "SemVer":
        v = extract_version(text)
        if v is None:
            raise ValueError(f"not a version: {text!r}")
        return v

    def _key(self):
        # a release sorts after any of its prereleases
        pre = tuple(
            (0, int(p), "") if p.isdigit() else (1, 0, p)
            for p in self.prerelease
        )
        return (self.major, self.minor, self.patch, not self.prerelease, pre)

    def __lt__(self, other: "SemVer") -> bool:
        if not isinstance(other, SemVer):
            return NotImplemented
        return self._key() < other._key()

    def __str__(self) -> str:
        base = f"{self.major}.{self.minor}.{self.patch}"
        return f"{base}-{'.'.join(self.prerelease)}" if self.prerelease else base


def extract_version(text: str) -> Optional[SemVer]:
    """
    Find the first version in free-form tool output, e.g.
    "tailwindcss v4.0.6" or "v22.9.0". A bare "22" reads as 22.0.0.
    """
    m = _FULL.search(text)
    if m:
        pre = tuple(m.group(4).split(".")) if m.group(4) else ()
        return SemVer(int(m.group(1)), int(m.group(2)), int(m.group(3)), pre)
    m = _SHORT.search(text)
    if m:
        return SemVer(int(m.group(1)), int(m.group(2) or 0))
    return None


def satisfies(found: str | SemVer, minimum: str | SemVer) -> bool:
    f = found if isinstance(found, SemVer) else SemVer.parse(found)
    m = minimum if isinstance(minimum, SemVer) else SemVer.parse(minimum)
    return f >= m


# ---------------------------------------------------------------------
# Artifact verification
# ---------------------------------------------------------------------

class FailureKind(str, Enum):
    NOT_FOUND = "NotFound"
    NOT_EXECUTABLE = "NotExecutable"
    CHECKSUM_MISMATCH = "ChecksumMismatch"
    VERSION_TOO_LOW = "VersionTooLow"
    VERSION_UNREADABLE = "VersionUnreadable"


@dataclass(frozen=True)
class Requirements:
    executable: bool = True
    algorithms: Tuple[str, ...] = ("sha256", "sha512")
    checksums: Dict[str, str] = field(default_factory=dict)  # expected, by algorithm
    min_version: Optional[str] = None
    version_args: Tuple[str, ...] = ("--version",)
    version_timeout: float = 30.0


@dataclass(frozen=True)
class Failure:
    kind: FailureKind
    message: str


@dataclass(frozen=True)
class VerificationReport:
    path: str
    checksums: Dict[str, str]
    version: Optional[str]
    failures: Tuple[Failure, ...]

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def kinds(self) -> List[FailureKind]:
        return [f.kind for f in self.failures]

    def to_dict(self) -> Dict:
        return {
            "path": self.path,
            "checksums": dict(self.checksums),
            "version": self.version,
            "ok": self.ok,
            "failures": [{"kind": f.kind.value, "message": f.message} for f in self.failures],
        }


def _is_executable(p: Path) -> bool:
    return bool(p.stat().st_mode & stat.S_IXUSR) and os.access(p, os.X_OK)


def _read_version(p: Path, req: Requirements, executable: bool) -> Tuple[Optional[str], str]:
    """Run the artifact to read its self-reported version. Returns (text, error)."""
    with tempfile.TemporaryDirectory(prefix="pinbuild-verify-") as tmp:
        target = p
        if not executable:
            # run a copy so a missing exec bit does not hide the version
            target = Path(tmp) / p.name
            shutil.copy2(p, target)
            target.chmod(target.stat().st_mode | stat.S_IXUSR)
        try:
            proc = subprocess.run(
                [str(target), *req.version_args],
                text=True,
                capture_output=True,
                timeout=req.version_timeout,
            )
        except subprocess.TimeoutExpired:
            return None, f"timed out after {req.version_timeout}s"
        except OSError as e:
            return None, str(e)
    return (proc.stdout or "") + (proc.stderr or ""), ""


def verify_artifact(path: str | Path, requirements: Requirements | None = None) -> VerificationReport:
    """
    Check every requirement and report all failures, not just the first.
    """
    req = requirements or Requirements()
    p = Path(path)
    failures: List[Failure] = []

    if not p.is_file():
        return VerificationReport(
            path=str(p),
            checksums={},
            version=None,
            failures=(Failure(FailureKind.NOT_FOUND, f"{p} does not exist or is not a file"),),
        )

    executable = _is_executable(p)
    if req.executable and not executable:
        failures.append(Failure(FailureKind.NOT_EXECUTABLE, f"{p} is not executable"))

    algorithms = list(dict.fromkeys([*req.algorithms, *req.checksums]))
    checksums = {algo: hash_file(p, algo) for algo in algorithms}
    for algo, expected in sorted(req.checksums.items()):
        if checksums[algo].lower() != expected.lower():
            failures.append(Failure(
                FailureKind.CHECKSUM_MISMATCH,
                f"{algo} is {checksums[algo]}, expected {expected}",
            ))

    version: Optional[str] = None
    if req.min_version is not None:
        output, error = _read_version(p, req, executable)
        found = extract_version(output) if output is not None else None
        if found is None:
            detail = error or f"no version in output of {' '.join(req.version_args)}: {output!r}"
            failures.append(Failure(FailureKind.VERSION_UNREADABLE, detail))
        else:
            version = str(found)
            if not satisfies(found, req.min_version):
                failures.append(Failure(
                    FailureKind.VERSION_TOO_LOW,
                    f"version {found} is below the minimum {req.min_version}",
                ))

    return VerificationReport(path=str(p), checksums=checksums, version=version, failures=tuple(failures))


def write_checksum_files(report: VerificationReport) -> List[Path]:
    """Write <artifact>.<algo> files in `sha256sum` format next to the artifact."""
    p = Path(report.path)
    written: List[Path] = []
    for algo, digest in sorted(report.checksums.items()):
        out = p.with_name(f"{p.name}.{algo}")
        tmp = out.with_name(out.name + ".tmp")
        tmp.write_text(f"{digest}  {p.name}\n", encoding="utf-8")
        tmp.replace(out)
        written.append(out)
    return written
