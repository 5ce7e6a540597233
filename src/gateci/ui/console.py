"""Console output formatting utilities for gateci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Optional, TextIO

if TYPE_CHECKING:
    from ..model import JobResult, RunResult


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, stream: Optional[TextIO] = None, err: Optional[TextIO] = None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            stream: Where regular output goes (defaults to sys.stdout)
            err: Where errors and warnings go (defaults to sys.stderr)
        """
        self.debug = debug
        self._stream = stream
        self._err = err
        # nodes run in parallel; keep lines whole
        self._lock = threading.Lock()

    @property
    def out(self) -> TextIO:
        return self._stream or sys.stdout

    @property
    def err(self) -> TextIO:
        return self._err or sys.stderr

    def _emit(self, *lines: str, error: bool = False) -> None:
        target = self.err if error else self.out
        with self._lock:
            for line in lines:
                print(line, file=target)
            target.flush()

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._emit("", title, "-" * len(title))

    def print_run_started(self, workflow: str, event: str, job_count: int) -> None:
        """Print run start information."""
        self._emit("", "RUN STARTED", f"Workflow: {workflow}", f"Event: {event}", f"Jobs: {job_count}", "")

    def print_run_skipped(self, workflow: str, reason: str) -> None:
        self._emit("", "RUN SKIPPED", f"Workflow: {workflow}", f"Reason: {reason}")

    def print_job_start(self, name: str) -> None:
        self._emit(f"[{name}] JOB STARTED")

    def print_step(self, job: str, name: str) -> None:
        self._emit(f"[{job}] ▶ {name}")

    def print_job_finished(self, result: "JobResult") -> None:
        if result.ok:
            self._emit(f"[{result.job_name}] ✓ {result.status.value} ({result.duration:.1f}s)")
            return
        lines = [f"[{result.job_name}] ✗ {result.status.value} (exit={result.exit_code})"]
        if result.failed_step:
            lines.append(f"[{result.job_name}]   step: {result.failed_step}")
        if result.error:
            first = result.error.split("\n")[0]
            lines.append(f"[{result.job_name}]   {result.error if self.debug else first}")
        self._emit(*lines)

    def print_cache_hit(self, job: str, key: str) -> None:
        self._emit(f"[{job}] cache: hit ({key})")

    def print_cache_miss(self, job: str, key: str) -> None:
        self._emit(f"[{job}] cache: miss ({key})")

    def print_cache_saved(self, job: str, key: str) -> None:
        self._emit(f"[{job}] cache: saved ({key})")

    def print_cache_skipped(self, job: str, reason: str) -> None:
        self._emit(f"[{job}] cache: not saved ({reason})")

    def print_plan_job(self, index: int, name: str, steps: list[str]) -> None:
        """Print one planned node with its expanded steps."""
        lines = [f"  {index + 1}. {name}"]
        lines.extend(f"       - {s}" for s in steps)
        self._emit(*lines)

    def print_results(self, result: "RunResult") -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for r in result.job_results:
            lines.append(f"  {r.job_name}: {r.status.value.upper()} (exit={r.exit_code}, {r.duration:.1f}s)")
        lines.append(f"OVERALL: {result.overall_status.value.upper()}")
        self._emit(*lines)

    def print_logs(self, name: str, logs: bytes) -> None:
        text = logs.decode("utf-8", errors="replace").rstrip("\n")
        self._emit(f"--- logs: {name} ---", text, f"--- end: {name} ---")

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
        lines = ["", f"ERROR: {title}", message]
        if details:
            lines.extend(f"  {d}" for d in details)
        if suggestion:
            lines.extend(["", suggestion])
        self._emit(*lines, error=True)

    def print_warning(self, message: str) -> None:
        self._emit(f"WARNING: {message}", error=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__, file=self.err)
        else:
            self._emit(f"Error: {exc}", error=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._emit(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._emit(f"[DEBUG] {message}", error=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Optional[Console]) -> None:
    """Set the global console instance (None resets to default)."""
    global _console
    _console = console
