"""Console output formatting utilities for pinbuild."""

from __future__ import annotations

import sys
import threading
from datetime import datetime
from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from ..model import RunReport, StepOutcome
    from ..verify import VerificationReport


def _stamp() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


class Console:
    """Centralized console output formatting."""

    def __init__(self, verbose: bool = False, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            verbose: If True, print [DEBUG] lines and full tool output
            debug: If True, also show stack traces
        """
        self.verbose = verbose or debug
        self.debug = debug
        self._lock = threading.Lock()

    def _emit(self, line: str, *, err: bool = False) -> None:
        # worker threads share one console
        with self._lock:
            print(line, file=sys.stderr if err else sys.stdout, flush=True)

    # -- leveled log lines ------------------------------------------------

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._emit(f"[INFO] {_stamp()} {message}")

    def print_warning(self, message: str) -> None:
        self._emit(f"[WARN] {_stamp()} {message}", err=True)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if verbose mode enabled)."""
        if self.verbose:
            self._emit(f"[DEBUG] {_stamp()} {message}")

    # -- sections ---------------------------------------------------------

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._emit(f"\n{title}\n{'-' * len(title)}")

    def print_run_started(self, version: str, revision: str, step_count: int, work_root: str) -> None:
        """Print run start information."""
        self._emit(
            "\nBUILD STARTED\n"
            f"Version: {version}\n"
            f"Revision: {revision}\n"
            f"Steps: {step_count}\n"
            f"Work root: {work_root}\n"
        )

    def print_step_start(self, step: str, attempt: int = 1) -> None:
        suffix = f" (attempt {attempt})" if attempt > 1 else ""
        self.print_info(f"[{step}] started{suffix}")

    def print_cache_hit(self, step: str, fingerprint: str) -> None:
        self.print_info(f"[{step}] cache: hit ({fingerprint[:12]}...)")

    def print_cache_saved(self, step: str, fingerprint: str) -> None:
        self.print_debug(f"[{step}] cache: saved ({fingerprint[:12]}...)")

    def print_step_success(self, step: str) -> None:
        self.print_info(f"[{step}] succeeded")

    def print_retry(self, step: str, reason: str, delay: float) -> None:
        self.print_warning(f"[{step}] {reason}; retrying in {delay:.1f}s")

    def print_failure(
        self,
        step: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
    ) -> None:
        """Print a step failure. The full tool output only shows in verbose mode."""
        lines = [f"[ERROR] {_stamp()} [{step}] failed: {reason.splitlines()[0] if reason else 'unknown error'}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        self._emit("\n".join(lines), err=True)

    # -- plan / report ----------------------------------------------------

    def print_plan(self, rows: Iterable[tuple[str, str, str, str]]) -> None:
        """rows: (stage, step, fingerprint, status)"""
        self.print_header("PLAN")
        for stage, step, fingerprint, status in rows:
            self._emit(f"  {stage:>3}  {step:<16} {fingerprint[:12]:<12}  {status}")

    def print_tools(self, rows: Iterable[tuple[str, str, str]]) -> None:
        """rows: (alias, executable, status)"""
        self.print_header("TOOLS")
        for alias, executable, status in rows:
            self._emit(f"  {alias:<12} {executable:<24} {status}")

    def print_report(self, report: "RunReport") -> None:
        """Print final results summary, every step with its terminal state."""
        self._emit("\n" + "=" * 40 + "\nRESULTS\n" + "=" * 40)
        for o in report.outcomes:
            line = f"  {o.step}: {o.state.value.upper()}"
            if o.reason:
                line += f" ({o.reason})"
            self._emit(line)
        if report.artifact:
            self._emit(f"\nArtifact: {report.artifact}")
            self._emit(f"SHA256: {report.artifact_sha256}")
        if report.cancelled:
            self._emit(f"\nRun cancelled: {report.cancel_reason}")

        failures = report.failed
        for o in failures:
            self._print_diagnostic(o)

    def _print_diagnostic(self, o: "StepOutcome") -> None:
        title = f"{o.step}: {o.error_kind or 'failed'}"
        self._emit(f"\n--- {title} ---", err=True)
        if o.reason:
            self._emit(o.reason, err=True)
        if o.diagnostic:
            self._emit(o.diagnostic.rstrip(), err=True)
        if o.log_path:
            self._emit(f"(log: {o.log_path})", err=True)

    def print_verification(self, report: "VerificationReport") -> None:
        self.print_header("VERIFY")
        self._emit(f"Artifact: {report.path}")
        for algo, digest in sorted(report.checksums.items()):
            self._emit(f"{algo.upper()}: {digest}")
        if report.version:
            self._emit(f"Version: {report.version}")
        if report.ok:
            self._emit("Status: OK")
            return
        self._emit("Status: FAILED", err=True)
        for failure in report.failures:
            self._emit(f"  {failure.kind.value}: {failure.message}", err=True)

    # -- errors -----------------------------------------------------------

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\n[ERROR] {_stamp()} {title}", message]
        for detail in details or []:
            lines.append(f"  {detail}")
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._emit("\n".join(lines), err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(exc)
        else:
            self._emit(f"[ERROR] {_stamp()} {exc}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
