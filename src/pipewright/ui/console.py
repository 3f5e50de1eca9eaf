"""Console output formatting utilities for pipewright."""

from __future__ import annotations

import sys
import threading
from typing import Optional, Sequence


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, show_logs: bool = True):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            show_logs: If False, step output is only captured, not echoed
        """
        self.debug = debug
        self.show_logs = show_logs
        # job threads print concurrently
        self._lock = threading.Lock()

    def _out(self, text: str, err: bool = False) -> None:
        with self._lock:
            print(text, file=sys.stderr if err else sys.stdout)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}\n" + "-" * len(title))

    def print_run_started(
        self,
        workflow: str,
        event: str,
        run_id: int,
        job_count: int,
    ) -> None:
        """Print run start information."""
        self._out(
            "\nRUN STARTED\n"
            f"Workflow: {workflow}\n"
            f"Event: {event}\n"
            f"Run ID: {run_id}\n"
            f"Jobs: {job_count}\n"
        )

    def print_run_finished(self, run_id: int, status: str) -> None:
        self._out(f"\nRUN {run_id} FINISHED: {status.upper()}")

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        self._out(f"\nJOB STARTED: {name}")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        self._out(f"[{job}] STEP: {name}")

    def print_log(self, job: str, line: str) -> None:
        """Echo one (already masked) output line of a step."""
        if self.show_logs:
            self._out(f"[{job}]   {line}")

    def print_job_finished(
        self,
        name: str,
        state: str,
        reason: Optional[str] = None,
        duration: Optional[float] = None,
    ) -> None:
        """Print job completion message."""
        text = f"[{name}] STATUS: {state}"
        if reason:
            text += f" ({reason})"
        if duration is not None:
            text += f" in {duration:.1f}s"
        self._out(text)

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            # Show first line of error for non-debug mode
            lines.append(f"Error: {reason.splitlines()[0] if reason else 'Unknown error'}")
        self._out("\n".join(lines))

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        self._out(f"[{name}] STATUS: skipped ({reason})")

    def print_plan(self, levels: Sequence[Sequence[str]]) -> None:
        """Print job stages."""
        for idx, level in enumerate(levels, start=1):
            self._out(f"=== Stage {idx}: {', '.join(level)} ===")

    def print_plan_job(self, name: str, reason: str) -> None:
        """Print one line of a plan."""
        self._out(f"  {name} ({reason})")

    def print_results(self, results: dict[str, str]) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for job, status in results.items():
            lines.append(f"  {job}: {status.upper()}")
        self._out("\n".join(lines))

    def print_warning(self, message: str) -> None:
        """Print a non-fatal problem."""
        self._out(f"WARNING: {message}", err=True)

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
        for detail in details or []:
            lines.append(f"  {detail}")
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out("\n".join(lines), err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
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
