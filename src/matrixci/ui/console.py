"""Console output formatting utilities for matrixci."""

from __future__ import annotations

import sys
import threading
from typing import Optional

from ..model import JobResult, PipelineConfig, RunSummary


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug
        # jobs report from worker threads
        self._lock = threading.Lock()

    def _emit(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._emit(f"\n{title}", "-" * len(title))

    def print_run_started(self, config: PipelineConfig, job_count: int) -> None:
        """Print run start information."""
        axes = ", ".join(f"{a.name}={list(a.values)}" for a in config.axes)
        self._emit(
            "\nRUN STARTED",
            f"Pipeline: {config.name}",
            f"OS: {config.os_id}",
            f"Matrix: {axes or '(empty)'}",
            f"Jobs: {job_count}",
            f"Fail-fast: {'on' if config.fail_fast else 'off'}",
            "",
        )

    def print_trigger_skipped(self, pipeline: str, reason: str) -> None:
        self._emit(f"\nRUN SKIPPED: {pipeline}", f"Reason: {reason}")

    def print_plan_job(self, name: str, matrix: dict) -> None:
        """Print one planned job."""
        values = ", ".join(f"{k}={v}" for k, v in matrix.items())
        self._emit(f"  {name} ({values})")

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        self._emit(f"\nJOB STARTED: {name}")

    def print_state(self, job: str, state: str) -> None:
        """Print a state transition of a job."""
        self._emit(f"[{job}] STATE: {state}")

    def print_cache_hit(self, job: str, key: str) -> None:
        """Print cache hit message."""
        self._emit(f"[{job}] CACHE: hit ({_short(key)})")

    def print_cache_miss(self, job: str, key: str) -> None:
        """Print cache miss message."""
        self._emit(f"[{job}] CACHE: miss ({_short(key)})")

    def print_cache_saved(self, job: str, key: str) -> None:
        """Print cache save message."""
        self._emit(f"[{job}] CACHE: saved ({_short(key)})")

    def print_warning(self, job: str, message: str) -> None:
        self._emit(f"[{job}] WARNING: {message}", err=True)

    def print_job_done(self, result: JobResult) -> None:
        """Print job completion, with the failure reason if any."""
        name = result.spec.name
        if result.ok:
            self._emit(f"[{name}] STATUS: success ({result.duration:.1f}s)")
            return
        lines = [f"JOB FAILED: {name}", f"Outcome: {result.outcome.value}"]
        if result.failed_state is not None:
            lines.append(f"Failed in: {result.failed_state.value}")
        if result.diagnostic:
            if self.debug:
                lines.append(f"Error details: {result.diagnostic}")
            else:
                # first line only in non-debug mode
                lines.append(f"Error: {result.diagnostic.splitlines()[0]}")
        self._emit(*lines)

    def print_results(self, summary: RunSummary) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for r in summary.results:
            lines.append(f"  {r.spec.name}: {r.outcome.value.upper()}")
        if not summary.results:
            lines.append("  (nothing to run)")
        lines.append(f"VERDICT: {summary.verdict.upper()}")
        self._emit(*lines)

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
        if details:
            lines.extend(f"  {d}" for d in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._emit(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._emit(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._emit(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._emit(f"[DEBUG] {message}", err=True)


def _short(key: str) -> str:
    return key[:24] + "..." if len(key) > 24 else key


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
