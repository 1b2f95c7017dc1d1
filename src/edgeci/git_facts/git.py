# git.py
# Small, focused wrapper around the Git CLI.
# This module centralizes all Git interactions so the rest of the codebase
# never needs to call subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Args:
        args: List of git arguments (e.g. ["status", "--porcelain"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError if git exits non-zero,
        FileNotFoundError if git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def _lines(out: str) -> List[str]:
    return [line.strip() for line in out.splitlines() if line.strip()]


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of HEAD. Recorded in run reports for provenance."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def last_commit_files(cwd: Optional[str | Path] = None) -> List[str]:
    """
    Files touched by the last commit, relative to the repository root.

    For a merge commit this is the diff against its first parent, i.e. the
    whole change the merge brought into the branch:

        git log -m -1 --name-only --first-parent --pretty=""
    """
    out = _git(["log", "-m", "-1", "--name-only", "--first-parent", "--pretty="], cwd=cwd)
    # -m can list a path once per parent; keep first occurrence
    seen: dict[str, None] = {}
    for path in _lines(out):
        seen.setdefault(path, None)
    return list(seen)


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str | Path] = None) -> List[str]:
    """
    Files changed between two Git references, relative to the repository root.

    Typical usage:
        files = changed_files(merge_base("origin/main"))
    """
    return _lines(_git(["diff", "--name-only", f"{base}..{head}"], cwd=cwd))


def merge_base(with_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> str:
    """Common ancestor of HEAD and with_ref."""
    return _git(["merge-base", "HEAD", with_ref], cwd=cwd)
