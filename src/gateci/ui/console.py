"""Console output formatting utilities for GateCI."""

from __future__ import annotations

import sys
from typing import Mapping, Optional


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(
        self,
        repository: str,
        workflow: str,
        job_count: int,
        trigger: Optional[str] = None,
    ) -> None:
        """Print run start information."""
        print("\nRUN STARTED")
        print(f"Repository: {repository}")
        print(f"Workflow: {workflow}")
        if trigger:
            print(f"Trigger: {trigger}")
        print(f"Jobs: {job_count}")
        print()

    def print_facts(self, facts: Mapping[str, bool]) -> None:
        """Print the run's facts, one per line."""
        self.print_header("FACTS")
        if not facts:
            print("  (none)")
        for name, value in facts.items():
            print(f"  {name}: {'true' if value else 'false'}")

    def print_plan(self, levels: list[list[str]], gates: Mapping[str, str]) -> None:
        """Print execution stages and the gate of each job."""
        self.print_header("PLAN")
        for idx, level in enumerate(levels, start=1):
            print(f"Stage {idx}:")
            for name in level:
                gate = gates.get(name) or "success()"
                print(f"  {name}  if: {gate}")

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        print(f"\nJOB STARTED: {name}")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        print(f"[{job}] STEP: {name}")

    def print_step_skipped(self, job: str, name: str, reason: str) -> None:
        print(f"[{job}] STEP SKIPPED: {name} ({reason})")

    def print_success(self, name: str) -> None:
        """Print success message."""
        print(f"JOB SUCCEEDED: {name}")

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
        print(f"{prefix}: {name}")
        if exit_code is not None:
            print(f"Exit code: {exit_code}")
        if hint:
            print(f"Hint: {hint}")
        if self.debug:
            print(f"Error details: {reason}")
        else:
            # first line only outside debug mode
            error_line = reason.split('\n')[0] if reason else "Unknown error"
            print(f"Error: {error_line}")

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        print(f"\nJOB SKIPPED: {name} ({reason})")

    def print_job_cancelled(self, name: str) -> None:
        print(f"\nJOB CANCELLED: {name}")

    def print_results(self, results: dict[str, str], status: Optional[str] = None) -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for job, outcome in results.items():
            print(f"  {job}: {outcome.upper()}")
        if status:
            print(f"\nRUN {status.upper()}")

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

    def print_agent_started(
        self,
        agent_id: str,
        api: str,
        poll_interval: int,
    ) -> None:
        """Print agent start information."""
        print("\nAGENT STARTED")
        print(f"Agent ID: {agent_id}")
        print(f"API: {api}")
        print(f"Polling every: {poll_interval}s")
        print()

    def print_lease_acquired(self, job_name: str, run_id: str) -> None:
        """Print lease acquisition message."""
        print("\nLEASE ACQUIRED")
        print(f"Job: {job_name}")
        print(f"Run ID: {run_id}")

    def print_execution_complete(
        self,
        outcome: str,
        duration: Optional[float] = None,
    ) -> None:
        """Print execution completion message."""
        print("\nEXECUTION COMPLETE")
        print(f"Outcome: {outcome}")
        if duration is not None:
            print(f"Duration: {duration:.1f}s")

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


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
