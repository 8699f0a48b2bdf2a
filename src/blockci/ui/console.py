"""Console output formatting utilities for blockci."""

from __future__ import annotations

import sys
import threading
from typing import Optional

from blockci.model import BlockResult, JobResult, PipelineResult, Status
from blockci.resolver import PlannedBlock, PlannedJob
from blockci.scheduler import SchedulerEvents


_STATUS_LABELS = {
    Status.PASSED: "PASSED",
    Status.FAILED: "FAILED",
    Status.TIMED_OUT: "TIMED OUT",
    Status.CANCELLED: "CANCELLED",
    Status.SKIPPED: "SKIPPED",
}


class Console:
    """Terminal output for pipeline runs. Safe to call from job threads."""

    def __init__(self, debug: bool = False, stream_logs: bool = False):
        """
        Create a console.

        Args:
            debug: show stack traces and [DEBUG] lines
            stream_logs: If True, echo every job log line as it arrives
        """
        self.debug = debug
        self.stream_logs = stream_logs
        # jobs of a block print from worker threads
        self._lock = threading.Lock()

    def _print(self, *lines: str, err: bool = False) -> None:
        out = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=out)

    def print_run_started(self, repository: str, config: str, block_count: int, job_count: int) -> None:
        """Header printed before the first block starts."""
        self._print(
            "",
            "PIPELINE STARTED",
            f"Project: {repository}",
            f"Config: {config}",
            f"Blocks: {block_count}",
            f"Jobs: {job_count}",
            "",
        )

    def print_plan(self, pipeline: str, lines: list[str]) -> None:
        self._print(f"Pipeline: {pipeline}", *lines)

    def print_block_start(self, name: str, job_count: int) -> None:
        self._print(f"\nBLOCK STARTED: {name} ({job_count} job(s))")

    def print_job_start(self, block: str, name: str) -> None:
        self._print(f"  JOB STARTED: {name}")

    def print_job_finish(self, result: JobResult) -> None:
        label = _STATUS_LABELS[result.status]
        lines = [f"  JOB {label}: {result.name} ({result.duration:.1f}s)"]
        if result.status is not Status.PASSED:
            if result.exit_code is not None:
                lines.append(f"    Exit code: {result.exit_code}")
            if result.error:
                error_line = result.error if self.debug else result.error.split("\n")[0]
                lines.append(f"    Error: {error_line}")
            if result.hint:
                lines.append(f"    Hint: {result.hint}")
            if result.log_path:
                lines.append(f"    Log: {result.log_path}")
        self._print(*lines)

    def print_block_finish(self, result: BlockResult) -> None:
        self._print(f"BLOCK {_STATUS_LABELS[result.status]}: {result.name} ({result.duration:.1f}s)")

    def print_block_skipped(self, result: BlockResult) -> None:
        self._print(f"\nBLOCK SKIPPED: {result.name}")

    def print_log_line(self, job: str, line: str) -> None:
        if self.stream_logs:
            self._print(f"    [{job}] {line}")

    def print_results(self, result: PipelineResult) -> None:
        """Per-block, per-job summary printed after the run."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for block in result.blocks:
            lines.append(f"{block.name}: {_STATUS_LABELS[block.status]}")
            for job in block.jobs:
                code = "" if job.exit_code is None else f" exit={job.exit_code}"
                lines.append(f"  {job.name}: {_STATUS_LABELS[job.status]}{code} ({job.duration:.1f}s)")
        outcome = "CANCELLED" if result.cancelled else ("SUCCESS" if result.success else "FAILED")
        lines.append("")
        lines.append(f"PIPELINE {outcome} ({result.duration:.1f}s)")
        self._print(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Error block on stderr: title, message, detail lines, suggestion.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._print(*lines, err=True)

    def print_exception(self, exc: Exception) -> None:
        """Unexpected runner error; full traceback only with --debug."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            self._print(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._print(f"[DEBUG] {message}", err=True)


class ConsoleEvents(SchedulerEvents):
    """Routes scheduler events to a Console."""

    def __init__(self, console: Console):
        self.console = console

    def on_block_start(self, block: PlannedBlock) -> None:
        self.console.print_block_start(block.name, len(block.jobs))

    def on_job_start(self, block: PlannedBlock, job: PlannedJob) -> None:
        self.console.print_job_start(block.name, job.name)

    def on_job_finish(self, block: PlannedBlock, result: JobResult) -> None:
        self.console.print_job_finish(result)

    def on_block_finish(self, result: BlockResult) -> None:
        self.console.print_block_finish(result)

    def on_block_skipped(self, result: BlockResult) -> None:
        self.console.print_block_skipped(result)


# Set by the `blockci` group callback
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
