"""Console output formatting utilities for shipgate."""

from __future__ import annotations

import sys
import threading
from typing import Iterable, Optional


class Console:
    """Centralized console output formatting. Safe to call from worker threads."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, suppress progress output (errors still print)
        """
        self.debug = debug
        self.quiet = quiet
        self._lock = threading.Lock()

    def _out(self, *lines: str) -> None:
        if self.quiet:
            return
        with self._lock:
            for line in lines:
                print(line)

    def _err(self, *lines: str) -> None:
        with self._lock:
            for line in lines:
                print(line, file=sys.stderr)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        run_id: str,
        workflow: str,
        job_count: int,
        event: str,
        ref: str,
    ) -> None:
        """Print run start information."""
        self._out(
            "\nRUN STARTED",
            f"Run ID: {run_id}",
            f"Workflow: {workflow}",
            f"Trigger: {event} @ {ref}",
            f"Jobs: {job_count}",
            "",
        )

    def print_job_start(self, name: str) -> None:
        self._out(f"\nJOB STARTED: {name}")

    def print_step(self, job: str, name: str) -> None:
        self._out(f"[{job}] STEP: {name}")

    def print_job_succeeded(self, name: str, artifacts: Iterable[str] = ()) -> None:
        artifacts = list(artifacts)
        lines = [f"JOB SUCCEEDED: {name}"]
        if artifacts:
            lines.append(f"  artifacts: {', '.join(artifacts)}")
        self._out(*lines)

    def print_job_failed(self, name: str, reason: str, exit_code: Optional[int] = None) -> None:
        """
        Print failure message.

        Args:
            name: Job name
            reason: Failure reason/error message
            exit_code: Optional exit code of the failing step
        """
        lines = [f"JOB FAILED: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            # first line only outside debug mode
            lines.append(f"Error: {reason.splitlines()[0] if reason else 'Unknown error'}")
        self._out(*lines)

    def print_job_skipped(self, name: str, reason: str) -> None:
        self._out(f"JOB SKIPPED: {name} ({reason})")

    def print_gate_waiting(self, gate: str, jobs: Iterable[str], approvers: Iterable[str]) -> None:
        self._out(
            f"\nAWAITING APPROVAL: {gate}",
            f"  blocks: {', '.join(jobs)}",
            f"  approvers: {', '.join(approvers)}",
        )

    def print_gate_resolved(self, gate: str, status: str, actor: str) -> None:
        self._out(f"GATE {status.upper()}: {gate} (by {actor})")

    def print_plan(self, levels: list[list[str]], gates: dict[str, list[str]]) -> None:
        """Print execution stages and which jobs each gate holds back."""
        self.print_header("PLAN")
        for idx, level in enumerate(levels, start=1):
            self._out(f"  stage {idx}: {', '.join(level)}")
        for gate, jobs in gates.items():
            self._out(f"  gate {gate}: blocks {', '.join(jobs) or '(nothing)'}")

    def print_results(self, jobs: dict[str, str], result: str | None) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for job, status in jobs.items():
            lines.append(f"  {job}: {status.upper()}")
        lines.append(f"RUN: {(result or 'running').upper()}")
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
        for detail in details or []:
            lines.append(f"  {detail}")
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._err(*lines)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            self._err("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
        else:
            self._err(f"Error: {exc}")

    def print_info(self, message: str) -> None:
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._err(f"[DEBUG] {message}")


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
