# matrix.py
from __future__ import annotations

from collections.abc import Mapping
from types import MappingProxyType
from typing import Any, Iterable, List, NamedTuple, Tuple, Union

from .errors import DuplicateInstanceError, MatrixShapeError


class MatrixInstance(NamedTuple):
    """One named row of a build matrix. Unpacks as (name, bindings)."""
    name: str
    bindings: Mapping[str, Any]


MatrixSpec = Union[
    Mapping[str, Mapping[str, Any]],
    Iterable[Tuple[str, Mapping[str, Any]]],
]


def _pairs(matrix_spec: MatrixSpec) -> List[Tuple[Any, Any]]:
    if isinstance(matrix_spec, Mapping):
        return list(matrix_spec.items())
    pairs = []
    for entry in matrix_spec:
        try:
            name, bindings = entry
        except (TypeError, ValueError):
            raise MatrixShapeError(f"matrix entry {entry!r} is not a (name, bindings) pair")
        pairs.append((name, bindings))
    return pairs


def expand(matrix_spec: MatrixSpec) -> List[MatrixInstance]:
    """
    Expand a matrix into concrete instances, in declaration order.

    The matrix is a flat, hand-curated enumeration: each instance is an
    explicit record and no cartesian product of axes is ever built, because
    real build tables are sparse (not every distro ships every arch).

    Raises:
      MatrixShapeError       - empty matrix, non-mapping row, or key-set mismatch
      DuplicateInstanceError - the same instance name declared twice
    """
    pairs = _pairs(matrix_spec)
    if not pairs:
        raise MatrixShapeError("matrix declares no instances")

    seen: set[str] = set()
    expected: frozenset[str] | None = None
    out: List[MatrixInstance] = []

    for name, bindings in pairs:
        if not isinstance(name, str) or not name:
            raise MatrixShapeError(f"matrix instance name must be a non-empty string, got {name!r}")
        if name in seen:
            raise DuplicateInstanceError(instance=name)
        seen.add(name)

        if not isinstance(bindings, Mapping):
            raise MatrixShapeError(f"matrix instance '{name}' must map variable names to values")

        keys = frozenset(bindings)
        if expected is None:
            expected = keys
        elif keys != expected:
            raise MatrixShapeError(
                "matrix instances must share one variable key set",
                instance=name,
                expected=tuple(sorted(expected)),
                actual=tuple(sorted(keys)),
            )

        out.append(MatrixInstance(name, MappingProxyType(dict(bindings))))

    return out
