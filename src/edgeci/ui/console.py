"""Progress and error output for edgeci runs."""

from __future__ import annotations

import sys
import threading
import traceback
from typing import Iterable, Optional


class Console:
    """
    Line-oriented printer shared by the CLI, the scheduler and the dispatcher.

    debug: include full error text and tracebacks.
    quiet: drop per-job and per-step progress; stage lines and errors stay.
    """

    def __init__(self, debug: bool = False, quiet: bool = False):
        self.debug = debug
        self.quiet = quiet
        # jobs of one stage print from worker threads
        self._lock = threading.Lock()

    def _emit(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def _progress(self, *lines: str) -> None:
        if not self.quiet:
            self._emit(*lines)

    def print_header(self, title: str) -> None:
        self._emit(f"\n{title}", "-" * len(title))

    def print_run_started(self, pipeline: str, run_id: str, stage_count: int, parameters: dict) -> None:
        lines = ["\nRUN STARTED", f"Pipeline: {pipeline}", f"Run ID: {run_id}", f"Stages: {stage_count}"]
        lines.extend(f"Parameter: {k}={v}" for k, v in sorted(parameters.items()))
        self._emit(*lines, "")

    # ---- stages ----

    def print_stage_start(self, name: str) -> None:
        self._emit(f"\nSTAGE STARTED: {name}")

    def print_stage_skipped(self, name: str, reason: str) -> None:
        self._emit(f"\nSTAGE SKIPPED: {name} ({reason})")

    def print_stage_finished(self, name: str, state: str, reason: str = "") -> None:
        self._emit(f"STAGE {state.upper()}: {name}" + (f" ({reason})" if reason else ""))

    # ---- job instances ----

    def print_job_start(self, producer: str) -> None:
        self._progress(f"JOB STARTED: {producer}")

    def print_job_skipped(self, producer: str, reason: str) -> None:
        self._emit(f"JOB SKIPPED: {producer} ({reason})")

    def print_step(self, producer: str, step: str) -> None:
        self._progress(f"[{producer}] {step}")

    def print_success(self, producer: str) -> None:
        self._progress(f"JOB SUCCEEDED: {producer}")

    def print_failure(
        self,
        producer: str,
        reason: str,
        step: Optional[str] = None,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
    ) -> None:
        """
        Report a failed step (when step is given) or a failed job instance.

        Outside debug mode only the first line of reason is shown.
        """
        head = f"STEP FAILED: {producer}/{step}" if step else f"JOB FAILED: {producer}"
        lines = [head]
        if exit_code is not None:
            lines.append(f"  exit code {exit_code}")
        if hint:
            lines.append(f"  hint: {hint}")
        if self.debug or not reason:
            lines.append(f"  {reason or 'unknown error'}")
        else:
            lines.append(f"  {reason.splitlines()[0]}")
        self._emit(*lines)

    # ---- plan / results ----

    def print_plan_stage(self, name: str, depends_on: Iterable[str], condition: Optional[str]) -> None:
        self._emit(f"  {name}  (depends on: {', '.join(depends_on) or '-'})")
        if condition:
            self._emit(f"    condition: {condition}")

    def print_plan_job(self, instance_id: str, detail: str = "") -> None:
        self._emit(f"    {instance_id}" + (f" ({detail})" if detail else ""))

    def print_results(self, stages: Iterable[tuple[str, str]], status: str) -> None:
        bar = "=" * 40
        lines = ["", bar, "RESULTS", bar]
        lines.extend(f"  {name}: {state.upper()}" for name, state in stages)
        lines.append(f"\nRun: {status.upper()}")
        self._emit(*lines)

    # ---- errors and diagnostics (stderr) ----

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        lines = [f"\nERROR: {title}", message]
        lines.extend(f"  {d}" for d in details or [])
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._emit(*lines, err=True)

    def print_warning(self, message: str) -> None:
        self._emit(f"WARNING: {message}", err=True)

    def print_exception(self, exc: BaseException) -> None:
        if self.debug:
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._emit(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        self._emit(message)

    def print_debug(self, message: str) -> None:
        if self.debug:
            self._emit(f"[debug] {message}", err=True)


_console: Optional[Console] = None


def get_console() -> Console:
    """Process-wide console; the CLI replaces it via set_console()."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    global _console
    _console = console
