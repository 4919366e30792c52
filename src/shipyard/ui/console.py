"""Console output for the shipyard CLI: job transitions, plans, results, errors."""

from __future__ import annotations

import sys
import traceback
from typing import Iterable, List, Optional

from ..errors import CIError
from ..model import CANCELLED, FAILURE, RUNNING, SKIPPED, SUCCESS, RunResult


_JOB_MARKS = {
    RUNNING: "▶",
    SUCCESS: "✓",
    FAILURE: "✗",
    SKIPPED: "⏭",
    CANCELLED: "⊘",
}

_RULE = "=" * 40


def _err(line: str = "") -> None:
    print(line, file=sys.stderr)


class Console:
    """
    Everything the CLI prints goes through here.

    Progress and results go to stdout, errors to stderr. With debug=True
    errors keep all their lines and exceptions show a traceback.
    """

    def __init__(self, debug: bool = False):
        self.debug = debug

    # ---- run progress ----

    def print_run_started(self, repository: str, workflow: str, job_count: int, event: str = "") -> None:
        print("\nRUN STARTED")
        rows = [("Repository", repository), ("Workflow", workflow), ("Event", event), ("Jobs", job_count)]
        for label, value in rows:
            if value != "":
                print(f"{label}: {value}")
        print()

    def print_job_status(self, name: str, status: str) -> None:
        print(f"{_JOB_MARKS.get(status, '·')} {name}: {status}")

    def print_plan(self, levels: List[List[str]]) -> None:
        """One line per ready set; jobs on a line may run in parallel."""
        for idx, level in enumerate(levels, start=1):
            print(f"=== Stage {idx}: {', '.join(level)} ===")

    def print_results(self, result: RunResult) -> None:
        print(f"\n{_RULE}\nRESULTS ({result.run_id})\n{_RULE}")
        for job in result.jobs:
            flags = []
            if job.duration:
                flags.append(f"({job.duration:.1f}s)")
            if not job.required:
                flags.append("[optional]")
            print(" ".join([f"  {job.name}: {job.status.upper()}", *flags]))

            if job.reason:
                print(f"    reason: {job.reason}")
            if job.status != FAILURE:
                continue
            codes = ", ".join("-" if c is None else str(c) for c in job.exit_codes)
            print(f"    exit codes: {codes}")
            if job.error:
                for line in self._error_lines(job.error):
                    print(f"    {line}")
            if job.output_ref:
                print(f"    log: {job.output_ref}")

        if result.error:
            print(f"\n  error: {result.error}")
        print(f"\nRUN {result.status.upper()}")

    def _error_lines(self, error: str) -> List[str]:
        lines = error.splitlines() or [""]
        if self.debug:
            return lines
        return [f"error: {lines[0]}"]

    # ---- errors ----

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[Iterable[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print a structured error block to stderr.

        Args:
            title: one-line summary, shown after "ERROR:"
            message: what went wrong
            details: extra lines, indented
            suggestion: how to fix it, separated by a blank line
        """
        _err(f"\nERROR: {title}")
        _err(message)
        for detail in details or []:
            _err(f"  {detail}")
        if suggestion:
            _err()
            _err(suggestion)

    def print_ci_error(self, title: str, err: CIError) -> None:
        """Error block for a CIError: kind and message, then its context lines."""
        context = [f"job={err.job}"] if err.job else []
        if err.step:
            context.append(f"step={err.step}")
        context += [f"{k}={v}" for k, v in err.details.items()]
        self.print_error(title, str(err).splitlines()[0], details=context if self.debug else context[:2])

    def print_exception(self, exc: BaseException) -> None:
        if self.debug:
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            _err(f"Error: {exc}")

    def print_info(self, message: str) -> None:
        print(message)


_console: Optional[Console] = None


def get_console() -> Console:
    """The CLI's console; a default one is created on first use."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    global _console
    _console = console
