"""Console output formatting utilities for matrixci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from matrixci.model import InstanceKey
    from matrixci.results import RunResult


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, only the results summary and errors are printed
        """
        self.debug = debug
        self.quiet = quiet
        # jobs print from worker threads
        self._lock = threading.Lock()

    def _out(self, *lines: str) -> None:
        if self.quiet:
            return
        with self._lock:
            for line in lines:
                print(line)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        workflow: str,
        event: str,
        job_count: int,
        instance_count: int,
    ) -> None:
        """Print run start information."""
        self._out(
            "\nRUN STARTED",
            f"Workflow: {workflow}",
            f"Event: {event}",
            f"Jobs: {job_count} ({instance_count} instances)",
            "",
        )

    def print_job_start(self, name: str, runner: Optional[str] = None) -> None:
        """Print job start message."""
        suffix = f" on {runner}" if runner else ""
        self._out(f"JOB STARTED: {name}{suffix}")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        self._out(f"[{job}] STEP: {name}")

    def print_step_skipped(self, job: str, name: str) -> None:
        if self.debug:
            self._out(f"[{job}] STEP SKIPPED: {name}")

    def print_job_finished(self, name: str, status: str, reason: Optional[str] = None) -> None:
        """Print job completion message."""
        line = f"JOB {status.upper()}: {name}"
        if reason:
            line += f" ({reason})"
        self._out(line)

    def print_job_skipped(self, name: str, reason: Optional[str]) -> None:
        """Print job skipped message."""
        self._out(f"JOB SKIPPED: {name} ({reason or 'condition'})")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
    ) -> None:
        """
        Print step failure message.

        Args:
            name: Job / step label
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
        """
        lines = [f"STEP FAILED: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if hint:
            lines.append(f"Hint: {hint}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            # first line only outside debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            lines.append(f"Error: {error_line}")
        self._out(*lines)

    def print_plan(self, levels: List[List[InstanceKey]]) -> None:
        """Print expanded instances stage by stage."""
        for idx, level in enumerate(levels, start=1):
            self._out(f"=== Stage {idx} ===")
            for key in level:
                self._out(f"  {key.label}")

    def print_results(self, result: RunResult) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        if not result.triggered:
            lines.append(f"  not triggered by '{result.event.value}'")
        for inst in result.instances:
            status = inst.state.value.upper()
            if inst.reason and inst.state.value != "succeeded":
                status += f" ({inst.reason})"
            if inst.allowed_to_fail and inst.state.value in ("failed", "cancelled"):
                status += " [allowed]"
            lines.append(f"  {inst.label}: {status}")
        lines.append("")
        lines.append("RUN " + ("SUCCEEDED" if result.succeeded else "FAILED"))
        with self._lock:
            for line in lines:
                print(line)

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
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)


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
