# step_workflows/detect.py
from __future__ import annotations

import subprocess
import threading
from pathlib import Path
from typing import List, Mapping, Optional, Sequence

from ..changes import ChangeDetector
from ..collaborators import CollaboratorResult
from ..conditions import Condition
from ..git_facts.git import changed_files, last_commit_files, merge_base
from ..model import Step
from ..ui.console import get_console


# ---------------------------------------------------------------------
# Change detection step helper
# ---------------------------------------------------------------------

def detect_changes_step(
    name: str,
    output: str,
    patterns: Sequence[str],
    *,
    invert: bool = False,
    condition: Condition | None = None,
) -> Step:
    """
    A step that publishes one boolean output: are there relevant changes?

    invert=False: relevant = some changed path matches none of `patterns`
    invert=True:  relevant = some changed path matches one of `patterns`
    """
    data = {"output": output, "patterns": list(patterns), "invert": invert}
    return Step(name=name, kind="detect_changes", data=data, condition=condition)


def change_set_from_git(repo_root: str | Path = ".") -> Optional[List[str]]:
    """Paths of the last commit, or None when git cannot tell us."""
    try:
        return last_commit_files(cwd=repo_root)
    except (subprocess.CalledProcessError, FileNotFoundError) as e:
        get_console().print_debug(f"git change set unavailable: {e}")
        return None


def change_set_since(base: str, repo_root: str | Path = ".") -> Optional[List[str]]:
    """Paths changed since HEAD forked from `base` (e.g. origin/main), or None when git cannot tell us."""
    try:
        return changed_files(merge_base(base, cwd=repo_root), cwd=repo_root)
    except (subprocess.CalledProcessError, FileNotFoundError) as e:
        get_console().print_debug(f"git change set since {base} unavailable: {e}")
        return None


# ---------------------------------------------------------------------
# Change detection execution (in-process)
# ---------------------------------------------------------------------

class ChangeDetectionCollaborator:
    """
    Evaluates detect_changes steps against one change set.

    change_set=None means "ask git" (once, on first use); if git fails the
    change set stays unknown and detection reports relevant changes.
    """

    def __init__(self, change_set: Optional[Sequence[str]] = None, *, repo_root: str | Path = "."):
        self._explicit = list(change_set) if change_set is not None else None
        self.repo_root = Path(repo_root)
        self._from_git: Optional[List[str]] = None
        self._loaded = False
        self._lock = threading.Lock()

    def change_set(self) -> Optional[List[str]]:
        if self._explicit is not None:
            return self._explicit
        with self._lock:
            if not self._loaded:
                self._from_git = change_set_from_git(self.repo_root)
                self._loaded = True
            return self._from_git

    def invoke(self, step: Step, env: Mapping[str, str], cwd: Path, timeout: float | None) -> CollaboratorResult:
        data = step.data or {}
        output = data.get("output")
        if not output:
            return CollaboratorResult(exit_code=2, stderr=f"detect_changes step '{step.name}' declares no output")

        detector = ChangeDetector(tuple(data.get("patterns") or ()), invert=bool(data.get("invert", False)))
        change_set = self.change_set()
        found = detector.detect(change_set)

        lines: List[str] = []
        if change_set is None:
            lines.append("change set unknown, assuming relevant changes")
        elif not change_set:
            lines.append("change set empty, assuming relevant changes")
        else:
            relevant = detector.relevant_paths(change_set)
            lines.append(f"{len(change_set)} changed path(s), {len(relevant)} relevant")
            lines.extend(f"  {p}" for p in relevant)
        value = "true" if found else "false"
        lines.append(f"##edgeci[output name={output}]{value}")

        return CollaboratorResult(exit_code=0, outputs={output: value}, stdout="\n".join(lines) + "\n")
