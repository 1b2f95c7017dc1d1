# consolidate.py
from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .errors import ConsolidationConflictError


@dataclass(frozen=True)
class Artifact:
    """
    A named output of one job instance.

    files maps a relative path inside the artifact to the file on disk.
    producer is "<stage>.<job instance>".
    """
    name: str
    producer: str
    files: Mapping[str, Path] = field(default_factory=dict)
    publish_always: bool = False

    def __post_init__(self) -> None:
        clean = {_clean_rel(k): Path(v) for k, v in dict(self.files).items()}
        object.__setattr__(self, "files", MappingProxyType(dict(sorted(clean.items()))))

    @property
    def key(self) -> Tuple[str, str]:
        return (self.producer, self.name)


@dataclass(frozen=True)
class ConsolidatedArtifact:
    name: str
    files: Mapping[str, Path]
    contributors: Tuple[str, ...]

    def report(self) -> dict:
        return {
            "name": self.name,
            "file_count": len(self.files),
            "contributors": list(self.contributors),
        }

    def materialize(self, dest: str | Path) -> Path:
        """Copy the bundle into dest (created if missing). Returns dest."""
        root = Path(dest)
        root.mkdir(parents=True, exist_ok=True)
        for rel, src in self.files.items():
            target = root / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, target)
        return root


def _clean_rel(rel: str) -> str:
    p = PurePosixPath(str(rel).replace("\\", "/"))
    parts = [part for part in p.parts if part not in ("", ".", "/")]
    if any(part == ".." for part in parts):
        raise ValueError(f"artifact path escapes its root: {rel!r}")
    return "/".join(parts)


def _label(a: Artifact) -> str:
    return f"{a.producer}:{a.name}"


def consolidate(
    logical_name: str,
    contributing: Iterable[Artifact],
    *,
    prefixes: Optional[Mapping[str, str]] = None,
) -> ConsolidatedArtifact:
    """
    Merge same-purpose artifacts into one bundle: union of contents by relative path.

    - prefixes maps an artifact name to a destination directory inside the bundle.
    - A path produced by two artifacts raises ConsolidationConflictError; nothing
      is ever silently overwritten.
    - publish_always artifacts (logs) land under "<producer>/<artifact name>/",
      so two of them never meet; a regular path that lands on one of those
      keys is still a conflict.
    - The result does not depend on the order of `contributing`.
    """
    prefixes = dict(prefixes or {})
    artifacts = sorted(contributing, key=lambda a: (a.producer, a.name))

    owners: Dict[str, Artifact] = {}
    files: Dict[str, Path] = {}
    conflicts: Dict[str, List[str]] = {}

    for art in artifacts:
        prefix = _clean_rel(prefixes.get(art.name) or "")
        for rel, src in art.files.items():
            dest = f"{prefix}/{rel}" if prefix else rel
            if art.publish_always:
                dest = f"{art.producer}/{art.name}/{dest}"
            if dest in owners:
                conflicts.setdefault(dest, [_label(owners[dest])]).append(_label(art))
                continue
            owners[dest] = art
            files[dest] = src

    if conflicts:
        path = min(conflicts)
        raise ConsolidationConflictError(
            bundle=logical_name,
            path=path,
            contributors=tuple(sorted(conflicts[path])),
        )

    return ConsolidatedArtifact(
        name=logical_name,
        files=MappingProxyType(dict(sorted(files.items()))),
        contributors=tuple(sorted(_label(a) for a in artifacts)),
    )
