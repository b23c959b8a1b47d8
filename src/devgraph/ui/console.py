"""Console output formatting utilities for devgraph."""

from __future__ import annotations

import sys
from typing import Dict, List, Optional

from ..errors import DevGraphError
from ..events import Event


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, show_logs: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            show_logs: If True, echo handler output lines as they stream in
        """
        self.debug = debug
        self.show_logs = show_logs

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(self, project: str, command: str, task_count: int) -> None:
        """Print run start information."""
        print(f"\n{command.upper()} STARTED")
        print(f"Project: {project}")
        print(f"Requested: {task_count}")
        print()

    def print_stage(self, index: int, names: List[str]) -> None:
        print(f"=== Stage {index}: {names} ===")

    def print_version(self, key: str, version: str) -> None:
        print(f"  {key}: {version}")

    def on_event(self, event: Event) -> None:
        """Event bus listener: one line per task status transition."""
        if event.type == "task.status":
            state = event.data.get("state")
            if state == "checking" and not self.debug:
                return
            line = f"[{event.source}] {state}"
            if event.data.get("up_to_date"):
                line += " (up to date)"
            if event.data.get("error") and state == "failed":
                line += f": {event.data['error'].splitlines()[0]}"
            print(line)
        elif event.type == "log" and self.show_logs:
            print(f"  {event.source} | {event.data.get('line', '')}")

    def print_results(self, results: Dict[str, str]) -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for key, status in results.items():
            print(f"  {key}: {status.upper()}")

    def print_failure(self, key: str, error: DevGraphError) -> None:
        """
        Print one failed task. Fallout from a failed dependency is labelled
        separately from the task's own failure.
        """
        prefix = "SKIPPED" if error.kind == "dependency" else "TASK FAILED"
        print(f"\n{prefix}: {key}", file=sys.stderr)
        if self.debug:
            print(f"Error details: {error}", file=sys.stderr)
        else:
            print(f"Error: {error.message.splitlines()[0] if error.message else error.kind}", file=sys.stderr)
        log = error.details.get("log")
        if log and error.kind != "dependency":
            print("Last output:", file=sys.stderr)
            for line in str(log).splitlines()[-20:]:
                print(f"  {line}", file=sys.stderr)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """Print structured error message."""
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)
