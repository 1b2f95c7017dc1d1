# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .conditions import Condition
from .errors import DefinitionError
from .matrix import MatrixSpec


class StageState(str, Enum):
    PENDING = "pending"
    BLOCKED = "blocked"
    SKIPPED = "skipped"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (StageState.SKIPPED, StageState.SUCCEEDED, StageState.FAILED)

    @property
    def satisfies_dependency(self) -> bool:
        # skipped is never a failure for a dependent stage
        return self in (StageState.SUCCEEDED, StageState.SKIPPED)


class JobStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Step:
    """A single command (step) inside a job."""
    name: str
    run: str = ""
    cwd: str | None = None
    kind: str | None = None          # None/"shell", "docker", "detect_changes"
    data: dict | None = None         # kind-specific settings
    always: bool = False             # run even after an earlier step failed
    condition: Condition | None = None
    env: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ArtifactSpec:
    """
    An artifact a job publishes.

    name/path may use $(var) macros (matrix bindings, parameters, variables).
    contents are globs relative to path; a leading "!" excludes.
    """
    name: str
    path: str
    contents: Tuple[str, ...] = ("*",)
    publish_always: bool = False
    condition: Condition | None = None   # false: not published, not a failure


@dataclass(frozen=True)
class ConsolidationSource:
    artifact: str          # logical artifact name
    prefix: str = ""       # destination directory inside the bundle


@dataclass(frozen=True)
class ConsolidationSpec:
    """A bundle a stage consumes, built when the stage starts."""
    name: str
    sources: Tuple[ConsolidationSource, ...]
    publish: bool = True


_TYPES = {"bool": bool, "boolean": bool, "str": str, "string": str, "int": int, "number": int}


def _coerce_typed(type_name: str, raw: Any, what: str) -> Any:
    py_type = _TYPES.get(type_name)
    if py_type is None:
        raise DefinitionError(f"{what}: unknown type '{type_name}' (use bool, str or int)")
    if py_type is bool:
        if isinstance(raw, bool):
            return raw
        text = str(raw).strip().lower()
        if text in ("true", "1", "yes", "on"):
            return True
        if text in ("false", "0", "no", "off", ""):
            return False
        raise ValueError(f"{what}: {raw!r} is not a boolean")
    if py_type is int:
        if isinstance(raw, bool):
            raise ValueError(f"{what}: {raw!r} is not an integer")
        return int(raw)
    return str(raw)


@dataclass(frozen=True)
class OutputDecl:
    """
    A declared stage output, named relative to its stage (job.task.name).

    default is the value consumers see when the producer stage was skipped
    or did not write the output.
    """
    name: str
    type: str = "bool"
    default: Any = False
    description: str = ""

    def coerce(self, raw: Any) -> Any:
        return _coerce_typed(self.type, raw, f"output '{self.name}'")


@dataclass(frozen=True)
class Parameter:
    name: str
    type: str = "bool"
    default: Any = None

    def coerce(self, raw: Any) -> Any:
        return _coerce_typed(self.type, raw, f"parameter '{self.name}'")


@dataclass
class Job:
    """
    One schedulable unit inside a stage. With a matrix, one job instance is
    materialized per matrix instance.
    """
    name: str
    steps: List[Step]
    matrix: Optional[MatrixSpec] = None
    env: Dict[str, str] = field(default_factory=dict)
    condition: Condition | None = None
    timeout_minutes: float | None = None
    continue_on_error: bool = False
    artifacts: List[ArtifactSpec] = field(default_factory=list)
    display_name: str | None = None


@dataclass
class Stage:
    name: str
    jobs: List[Job]
    depends_on: List[str] = field(default_factory=list)
    condition: Condition | None = None
    outputs: List[OutputDecl] = field(default_factory=list)
    consumes: List[ConsolidationSpec] = field(default_factory=list)
    timeout_minutes: float | None = None
    display_name: str | None = None

    def output_decl(self, local_name: str) -> OutputDecl | None:
        for decl in self.outputs:
            if decl.name == local_name:
                return decl
        return None


@dataclass
class Pipeline:
    name: str
    stages: List[Stage]
    parameters: List[Parameter] = field(default_factory=list)
    variables: Dict[str, str] = field(default_factory=dict)

    def stage(self, name: str) -> Stage:
        for s in self.stages:
            if s.name == name:
                return s
        raise KeyError(name)

    def resolve_parameters(self, overrides: Mapping[str, Any] | None = None) -> Dict[str, Any]:
        """Declared defaults overlaid with per-run values, coerced to their types."""
        overrides = dict(overrides or {})
        declared = {p.name: p for p in self.parameters}
        unknown = sorted(set(overrides) - set(declared))
        if unknown:
            raise DefinitionError(f"Unknown parameter(s): {unknown}. Declared: {sorted(declared)}")

        resolved: Dict[str, Any] = {}
        for p in self.parameters:
            raw = overrides.get(p.name, p.default)
            if raw is None:
                raise DefinitionError(f"Parameter '{p.name}' has no default and no value was given")
            try:
                resolved[p.name] = p.coerce(raw)
            except ValueError as e:
                raise DefinitionError(str(e)) from e
        return resolved
