# conditions.py
"""
Typed boolean expressions that gate stages, jobs and steps.

Conditions are small trees, never interpolated strings:

    or_(
        eq(param("E2EBuild"), False),
        eq(output("CheckBuildImages.check_source_change_runtime.check_files.RUNTIMECHANGES"), True),
    )

or, with operators:

    param("E2EBuild").equals(False) | output("...").equals(True)

Evaluation is pure. Lookups go through an EvaluationEnv; anything that cannot
be resolved raises ConditionResolutionError instead of silently becoming
true or false.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from .errors import ConditionResolutionError, ConditionTypeError, DefinitionError


# ---------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------

class Condition:
    """Base class for condition nodes. Supports `&` (AND) and `|` (OR)."""

    __slots__ = ()

    def __and__(self, other: "Condition") -> "Condition":
        return And((self, _coerce(other)))

    def __or__(self, other: "Condition") -> "Condition":
        return Or((self, _coerce(other)))


@dataclass(frozen=True)
class Literal(Condition):
    value: Any

    def __str__(self) -> str:
        if isinstance(self.value, bool):
            return "true" if self.value else "false"
        return repr(self.value)


@dataclass(frozen=True)
class _Lookup(Condition):
    name: str

    def equals(self, value: Any) -> "Eq":
        return Eq(self, _coerce(value))


@dataclass(frozen=True)
class Parameter(_Lookup):
    """A run parameter, e.g. E2EBuild."""

    def __str__(self) -> str:
        return f"parameters.{self.name}"


@dataclass(frozen=True)
class Variable(_Lookup):
    """A pipeline variable, matrix binding or job variable."""

    def __str__(self) -> str:
        return f"variables.{self.name}"


@dataclass(frozen=True)
class Output(_Lookup):
    """An output published by an upstream stage: stage.job.task.output."""

    def __str__(self) -> str:
        return f"outputs.{self.name}"


@dataclass(frozen=True)
class Eq(Condition):
    left: Condition
    right: Condition

    def __str__(self) -> str:
        return f"eq({self.left}, {self.right})"


@dataclass(frozen=True)
class And(Condition):
    items: Tuple[Condition, ...]

    def __str__(self) -> str:
        return "and(" + ", ".join(str(i) for i in self.items) + ")"


@dataclass(frozen=True)
class Or(Condition):
    items: Tuple[Condition, ...]

    def __str__(self) -> str:
        return "or(" + ", ".join(str(i) for i in self.items) + ")"


def _coerce(value: Any) -> Condition:
    return value if isinstance(value, Condition) else Literal(value)


# ---------------------------------------------------------------------
# Helpers (DSL)
# ---------------------------------------------------------------------

def lit(value: Any) -> Literal:
    return Literal(value)


def param(name: str) -> Parameter:
    return Parameter(name)


def var(name: str) -> Variable:
    return Variable(name)


def output(ref: str) -> Output:
    parse_output_ref(ref)
    return Output(ref)


def eq(left: Any, right: Any) -> Eq:
    return Eq(_coerce(left), _coerce(right))


def and_(*items: Any) -> And:
    if len(items) < 2:
        raise DefinitionError("and() needs at least two operands")
    return And(tuple(_coerce(i) for i in items))


def or_(*items: Any) -> Or:
    if len(items) < 2:
        raise DefinitionError("or() needs at least two operands")
    return Or(tuple(_coerce(i) for i in items))


# ---------------------------------------------------------------------
# Output references
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class OutputRef:
    stage: str
    job: str
    task: str
    name: str

    @property
    def local(self) -> str:
        """Reference relative to the producing stage: job.task.name"""
        return f"{self.job}.{self.task}.{self.name}"


def parse_output_ref(ref: str) -> OutputRef:
    """
    Split `stage.job.task.output`.

    Stage, task and output names never contain dots; the job segment may
    (matrix job instances are named `<job>.<instance>`).
    """
    parts = ref.split(".")
    if len(parts) < 4 or not all(parts):
        raise DefinitionError(
            f"output reference '{ref}' must look like stage.job.task.output"
        )
    return OutputRef(
        stage=parts[0],
        job=".".join(parts[1:-2]),
        task=parts[-2],
        name=parts[-1],
    )


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------

@dataclass
class EvaluationEnv:
    """
    Everything a condition may look at.

    outputs: callable resolving a full output reference (see store.OutputView);
             None means outputs are not visible here (job/step conditions).
    """
    parameters: Mapping[str, Any] = field(default_factory=dict)
    variables: Mapping[str, Any] = field(default_factory=dict)
    outputs: Optional[Callable[[str], Any]] = None


def _resolve(node: Condition, env: EvaluationEnv) -> Any:
    if isinstance(node, Literal):
        return node.value

    if isinstance(node, Parameter):
        if node.name not in env.parameters:
            raise ConditionResolutionError(str(node), "unknown parameter")
        return env.parameters[node.name]

    if isinstance(node, Variable):
        if node.name not in env.variables:
            raise ConditionResolutionError(str(node), "unknown variable")
        return env.variables[node.name]

    if isinstance(node, Output):
        if env.outputs is None:
            raise ConditionResolutionError(str(node), "stage outputs are not visible here")
        return env.outputs(node.name)

    if isinstance(node, Eq):
        left = _resolve(node.left, env)
        right = _resolve(node.right, env)
        if type(left) is not type(right):
            raise ConditionTypeError(
                str(node),
                f"cannot compare {type(left).__name__} {left!r} with {type(right).__name__} {right!r}",
            )
        return left == right

    if isinstance(node, (And, Or)):
        # every operand is resolved so a bad reference never hides behind
        # an earlier operand that already decided the result
        values = [_resolve(item, env) for item in node.items]
        for item, value in zip(node.items, values):
            if not isinstance(value, bool):
                raise ConditionTypeError(str(item), f"expected a boolean operand, got {value!r}")
        return all(values) if isinstance(node, And) else any(values)

    raise ConditionResolutionError(repr(node), "unsupported condition node")


def evaluate(condition: Optional[Condition], env: EvaluationEnv) -> bool:
    """Evaluate a condition to a boolean. `None` means "no condition" (true)."""
    if condition is None:
        return True
    value = _resolve(condition, env)
    if not isinstance(value, bool):
        raise ConditionTypeError(str(condition), f"condition produced {value!r}, not a boolean")
    return value


# ---------------------------------------------------------------------
# Serialization (YAML / reports)
# ---------------------------------------------------------------------

_LOOKUPS: Dict[str, Callable[[str], Condition]] = {
    "parameter": Parameter,
    "variable": Variable,
    "output": output,
}


def from_data(data: Any) -> Condition:
    """
    Build a condition from its structured document form:

      true / false / "text" / 3          -> Literal
      {parameter: E2EBuild}              -> Parameter
      {variable: arch}                   -> Variable
      {output: Stage.job.task.NAME}      -> Output
      {eq: [a, b]}                       -> Eq
      {and: [a, b, ...]} / {or: [...]}   -> And / Or
    """
    if isinstance(data, Condition):
        return data
    if not isinstance(data, dict):
        return Literal(data)
    if len(data) != 1:
        raise DefinitionError(f"condition node must have exactly one key, got {sorted(data)}")

    (op, arg), = data.items()
    if op in _LOOKUPS:
        if not isinstance(arg, str):
            raise DefinitionError(f"'{op}' lookup needs a name, got {arg!r}")
        return _LOOKUPS[op](arg)
    if op == "eq":
        if not isinstance(arg, list) or len(arg) != 2:
            raise DefinitionError("'eq' needs a list of exactly two operands")
        return eq(from_data(arg[0]), from_data(arg[1]))
    if op in ("and", "or"):
        if not isinstance(arg, list):
            raise DefinitionError(f"'{op}' needs a list of operands")
        items = [from_data(a) for a in arg]
        return and_(*items) if op == "and" else or_(*items)

    raise DefinitionError(f"unknown condition operator '{op}'")


def to_data(node: Condition) -> Any:
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, Parameter):
        return {"parameter": node.name}
    if isinstance(node, Variable):
        return {"variable": node.name}
    if isinstance(node, Output):
        return {"output": node.name}
    if isinstance(node, Eq):
        return {"eq": [to_data(node.left), to_data(node.right)]}
    if isinstance(node, And):
        return {"and": [to_data(i) for i in node.items]}
    if isinstance(node, Or):
        return {"or": [to_data(i) for i in node.items]}
    raise TypeError(f"not a condition node: {node!r}")


def output_refs(node: Optional[Condition]) -> list[str]:
    """All output references a condition reads, in order of appearance."""
    if node is None:
        return []
    if isinstance(node, Output):
        return [node.name]
    if isinstance(node, Eq):
        return output_refs(node.left) + output_refs(node.right)
    if isinstance(node, (And, Or)):
        refs: list[str] = []
        for item in node.items:
            refs.extend(output_refs(item))
        return refs
    return []
