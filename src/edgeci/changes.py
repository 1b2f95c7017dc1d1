# changes.py
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple


def _normalize(path: str) -> str:
    path = path.strip().replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    return path.lstrip("/")


@dataclass(frozen=True)
class ChangeDetector:
    """
    Decide whether a change-set contains changes relevant to some class of work.

    Patterns are case-insensitive regular expressions anchored at the start of
    each repository-relative path, so "edgelet" matches "edgelet/src/main.rs"
    (and, like any prefix, "edgelet-tools/x").

    Two policies share this primitive:
      invert=False (exclude): a path is relevant if it matches NO pattern.
                              e.g. runtime changes = anything outside test/doc/edgelet
      invert=True  (include): a path is relevant if it matches SOME pattern.
                              e.g. packaging changes = anything under builds/ or edgelet/

    An empty or unknown change-set is inconclusive and detect() returns True:
    expensive work is only skipped when it is proven unnecessary.
    """
    patterns: Tuple[str, ...]
    invert: bool = False
    _compiled: Tuple[re.Pattern, ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        patterns = tuple(self.patterns)
        compiled = tuple(re.compile(f"^(?:{p})", re.IGNORECASE) for p in patterns)
        object.__setattr__(self, "patterns", patterns)
        object.__setattr__(self, "_compiled", compiled)

    def matches(self, path: str) -> bool:
        p = _normalize(path)
        return any(rx.match(p) for rx in self._compiled)

    def is_relevant(self, path: str) -> bool:
        if self.invert:
            return self.matches(path)
        return not self.matches(path)

    def relevant_paths(self, change_set: Iterable[str]) -> List[str]:
        return [p for p in change_set if _normalize(p) and self.is_relevant(p)]

    def detect(self, change_set: Optional[Sequence[str]]) -> bool:
        paths = [p for p in (change_set or []) if _normalize(p)]
        if not paths:
            return True
        return bool(self.relevant_paths(paths))


def runtime_changes(patterns: Sequence[str] = ("test", "doc", "edgelet")) -> ChangeDetector:
    """Exclude-based detector: changes outside test, doc and edgelet."""
    return ChangeDetector(tuple(patterns), invert=False)


def packaging_changes(patterns: Sequence[str] = ("builds", "edgelet")) -> ChangeDetector:
    """Include-based detector: changes inside builds or edgelet."""
    return ChangeDetector(tuple(patterns), invert=True)
