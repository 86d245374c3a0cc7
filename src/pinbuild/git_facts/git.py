# git.py
# Small, focused wrapper around the Git CLI.
# All Git interactions live here so the rest of the codebase
# never needs to spell out "git ..." arguments itself.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional


def _git(args: list[str], cwd: Optional[str | Path] = None, git: str = "git") -> str:
    """
    Execute a git command and return its stdout as a clean string.

    This is the entry point for the quick, local Git queries in this file.
    Slow or networked operations (clone) are run by the step runner
    instead, so they get timeouts, cancellation and logs.

    Args:
        args: List of git arguments (e.g. ["rev-parse", "HEAD"])
        cwd: Working directory in which to run the git command.
        git: The git executable (a tool alias may point elsewhere).

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError if git exits non-zero.
    """
    out = subprocess.check_output(
        [git, *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.PIPE,
    )
    return out.strip()


def clone_args(url: str, ref: str, dest: str | Path, depth: int = 1) -> List[str]:
    """
    Arguments (without the leading "git") for a shallow clone of one ref.

    `ref` may be a branch or a tag; git resolves both with --branch.
    """
    args = ["clone", "--quiet", "--branch", ref]
    if depth:
        args += ["--depth", str(depth)]
    return [*args, url, str(dest)]


def head_sha(cwd: str | Path, git: str = "git") -> str:
    """
    Return the full SHA hash of the HEAD commit of the checkout at `cwd`.

    This is what a fetched source tree is compared against the pinned
    revision with.
    """
    return _git(["rev-parse", "HEAD"], cwd=cwd, git=git)


def matches_pin(sha: str, pin: str) -> bool:
    """
    True when `sha` is the pinned commit.

    A pin may be abbreviated (7 to 40 hex characters); it matches when it
    is a prefix of the full SHA. Comparison is case-insensitive.
    """
    pin = pin.strip().lower()
    return bool(pin) and sha.strip().lower().startswith(pin)
