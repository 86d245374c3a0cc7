# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List


class ErrorKind(str, Enum):
    TOOL_MISSING = "ToolMissing"
    NETWORK_FAILURE = "NetworkFailure"
    NON_ZERO_EXIT = "NonZeroExit"
    CHECKSUM_MISMATCH = "ChecksumMismatch"
    REVISION_MISMATCH = "RevisionMismatch"
    TIMEOUT = "Timeout"
    LOCK_CONTENTION = "LockContention"
    PATCH_TARGET_NOT_FOUND = "PatchTargetNotFound"
    VERIFICATION_FAILED = "VerificationFailed"
    INPUT_MISSING = "InputMissing"
    OUTPUT_MISSING = "OutputMissing"
    CANCELLED = "Cancelled"


# Retried by the executor with backoff
RETRYABLE = frozenset({ErrorKind.NETWORK_FAILURE, ErrorKind.TIMEOUT})

# Retrying cannot fix these; the whole plan stops dispatching
FATAL = frozenset({
    ErrorKind.TOOL_MISSING,
    ErrorKind.REVISION_MISMATCH,
    ErrorKind.CHECKSUM_MISMATCH,
})


EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_VERIFY_FAILED = 2
EXIT_TOOL_MISSING = 3


TOOL_HINTS = {
    "git": "Install git (devel/git@tiny) or fix PATH.",
    "node": "Install Node.js (www/node22) or fix PATH.",
    "npm": "Install npm (www/npm-node22) or fix PATH.",
    "pkg": "The compile step installs the packager into node_modules/.bin; rerun it or set [tools] pkg.",
    "patchelf": "Install patchelf (sysutils/patchelf).",
    "gmake": "Install GNU make (devel/gmake).",
    "doas": "Install doas and permit your user (security/doas).",
}


@dataclass
class StepError(Exception):
    """
    Failure of one Step.

    `diagnostic` holds the raw output of the underlying tool; it is shown
    verbatim in the final report, never summarized.
    """
    kind: ErrorKind
    step: str
    message: str
    diagnostic: str = ""
    exit_code: int | None = None
    attempts: int = 1

    def __str__(self) -> str:
        lines = [f"{self.kind.value}: {self.message}", f"step={self.step}"]
        if self.exit_code is not None:
            lines.append(f"exit_code={self.exit_code}")
        return "\n".join(lines)

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE

    @property
    def fatal(self) -> bool:
        return self.kind in FATAL


class PlanError(ValueError):
    """Invalid plan construction (duplicate ids, dangling dependencies)."""


@dataclass
class CycleError(PlanError):
    stuck: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        return f"Plan has a cycle. Stuck steps: {self.stuck}"


@dataclass
class LockContention(Exception):
    path: str
    holder: str = ""

    def __str__(self) -> str:
        msg = f"lock is held by another invocation: {self.path}"
        if self.holder:
            msg += f" (holder: {self.holder})"
        return msg


class ConfigError(ValueError):
    """Build file or environment could not be resolved into a BuildConfig."""
