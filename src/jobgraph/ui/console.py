"""Console output formatting utilities for jobgraph."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from ..report import RunReport


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, only errors are printed (used by the HTTP app)
        """
        self.debug = debug
        self.quiet = quiet
        # job threads print concurrently
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        if self.quiet and not err:
            return
        with self._lock:
            for line in lines:
                print(line, file=sys.stderr if err else sys.stdout)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(self, run_id: str, workflow: str, job_count: int) -> None:
        """Print run start information."""
        self._out("\nRUN STARTED", f"Run: {run_id}", f"Workflow: {workflow}", f"Jobs: {job_count}", "")

    def print_run_queued(self, run_id: str, group: str) -> None:
        self._out(f"RUN QUEUED: {run_id} (concurrency group '{group}')")

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        self._out(f"\nJOB STARTED: {name}")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        self._out(f"[{job}] STEP: {name}")

    def print_job_finished(self, name: str, status: str, reason: Optional[str] = None) -> None:
        suffix = f" ({reason})" if reason else ""
        self._out(f"JOB {status.upper()}: {name}{suffix}")

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        self._out(f"\nJOB SKIPPED: {name}", f"STATUS: skipped ({reason})")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            # last line of a log is usually the useful one
            tail = [ln for ln in (reason or "").splitlines() if ln.strip()]
            if tail:
                lines.append(f"Error: {tail[-1]}")
        self._out(*lines)

    def print_plan_level(self, index: int, instance_ids: List[str]) -> None:
        """Print one topological layer."""
        self._out(f"  level {index}: {', '.join(instance_ids)}")

    def print_plan_deferred(self, template: str) -> None:
        self._out(f"  {template} (matrix resolved at run time)")

    def print_results(self, report: "RunReport") -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for job in report.jobs:
            reason = f" ({job.reason})" if job.reason else ""
            lines.append(f"  {job.id}: {job.status.value.upper()}{reason}")
        lines.append(f"\nRUN {report.conclusion.value.upper()}")
        self._out(*lines)

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
        lines = [f"\nERROR: {title}", message]
        lines.extend(f"  {d}" for d in details or [])
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


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
