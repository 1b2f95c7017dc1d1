# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


# ----------------------------------------------------------------------
# Definition-time errors (fatal to the whole run, raised before any job)
# ----------------------------------------------------------------------

class DefinitionError(ValueError):
    """A pipeline definition is malformed."""


@dataclass
class MatrixShapeError(DefinitionError):
    """Matrix instances do not share one variable key set."""
    message: str
    instance: str | None = None
    expected: tuple[str, ...] = ()
    actual: tuple[str, ...] = ()

    def __str__(self) -> str:
        if self.instance is None:
            return self.message
        return (
            f"{self.message}: instance '{self.instance}' has keys {list(self.actual)}, "
            f"expected {list(self.expected)}"
        )


@dataclass
class DuplicateInstanceError(DefinitionError):
    instance: str
    where: str = "matrix"

    def __str__(self) -> str:
        return f"Duplicate matrix instance '{self.instance}' in {self.where}"


@dataclass
class CycleError(DefinitionError):
    stuck: list[str] = field(default_factory=list)

    def __str__(self) -> str:
        return f"Stage graph has a cycle. Stuck stages: {self.stuck}"


# ----------------------------------------------------------------------
# Scheduling-time errors
# ----------------------------------------------------------------------

@dataclass
class ConditionResolutionError(Exception):
    """
    A condition could not be resolved. Fatal to the stage (or job) that owns
    the condition, never to the whole run.
    """
    reference: str
    message: str

    def __str__(self) -> str:
        return f"cannot resolve '{self.reference}': {self.message}"


class ConditionTypeError(ConditionResolutionError):
    """Operands of a condition have incompatible types."""


@dataclass
class ConsolidationConflictError(Exception):
    bundle: str
    path: str
    contributors: tuple[str, ...]

    def __str__(self) -> str:
        who = ", ".join(self.contributors)
        return f"[{self.bundle}] path '{self.path}' is produced by more than one artifact ({who})"


@dataclass
class StoreWriteError(RuntimeError):
    """Second write to a write-once key. Always a programming error."""
    store: str
    key: tuple[Any, ...]

    def __str__(self) -> str:
        return f"{self.store}: key {self.key!r} was already written"


# ----------------------------------------------------------------------
# Job execution errors
# ----------------------------------------------------------------------

@dataclass
class JobExecutionError(Exception):
    """
    Opaque failure surfaced from a build collaborator. Fatal to the owning job
    only; sibling jobs keep running.
    """
    kind: str
    job: str
    step: str | None
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}", f"job={self.job}"]
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class StepFailure(JobExecutionError):
    def __init__(self, job: str, step: str, cmd: str, exit_code: int, stderr: Optional[str] = None):
        details = {"cmd": cmd, "exit_code": exit_code}
        if stderr:
            details["stderr"] = stderr
        super().__init__(
            kind="step_failed",
            job=job,
            step=step,
            message=f"step '{step}' failed (exit={exit_code})",
            details=details,
        )
        self.exit_code = exit_code


class JobTimeoutError(JobExecutionError):
    def __init__(self, job: str, step: str | None, timeout_minutes: float):
        super().__init__(
            kind="timeout",
            job=job,
            step=step,
            message=f"job exceeded its timeout of {timeout_minutes:g} minute(s)",
            details={"timeout_minutes": timeout_minutes},
        )
