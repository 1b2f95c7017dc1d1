# collaborators.py
from __future__ import annotations

import os
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Protocol, Tuple

from .model import Step

# ---------------------------------------------------------------------
# A build collaborator does the real work of a step (compile, package,
# build an image, ...). The orchestrator only hands it a step, an
# environment and a working directory and records what comes back.
#
# Collaborators publish values with marker lines on stdout:
#   ##edgeci[output name=RUNTIMECHANGES]true
#   ##edgeci[variable name=version]1.5.0
# ---------------------------------------------------------------------

_MARKER = re.compile(r"^##edgeci\[(output|variable) name=([A-Za-z0-9_\-]+)\](.*)$")

TOOL_HINTS = {
    "docker": "Install Docker and ensure the daemon is running.",
    "git": "Install Git or pass the change set explicitly (--changed).",
    "bash": "Install bash or fix PATH.",
    "sh": "Install a POSIX shell or fix PATH.",
}


@dataclass
class CollaboratorResult:
    exit_code: int
    outputs: Dict[str, str] = field(default_factory=dict)
    variables: Dict[str, str] = field(default_factory=dict)
    stdout: str = ""
    stderr: str = ""


class BuildCollaborator(Protocol):
    def invoke(
        self,
        step: Step,
        env: Mapping[str, str],
        cwd: Path,
        timeout: float | None,
    ) -> CollaboratorResult:
        """
        Run one step. `timeout` is in seconds; exceeding it raises
        subprocess.TimeoutExpired. `env` holds only what the pipeline
        resolved, not the orchestrator's own process environment.
        """
        ...


def parse_markers(stdout: str) -> Tuple[Dict[str, str], Dict[str, str]]:
    """Collect (outputs, variables) from marker lines. Later lines win."""
    outputs: Dict[str, str] = {}
    variables: Dict[str, str] = {}
    for line in (stdout or "").splitlines():
        m = _MARKER.match(line.strip())
        if not m:
            continue
        kind, name, value = m.groups()
        (outputs if kind == "output" else variables)[name] = value.strip()
    return outputs, variables


def _tail(text: str | None, limit: int = 4000) -> str:
    return (text or "")[-limit:]


class ShellCollaborator:
    """Runs `step.run` through the shell on the local machine."""

    def invoke(self, step: Step, env: Mapping[str, str], cwd: Path, timeout: float | None) -> CollaboratorResult:
        full_env = os.environ.copy()
        full_env.update(env)

        proc = subprocess.run(
            step.run,
            shell=True,
            cwd=str(cwd),
            env=full_env,
            text=True,
            capture_output=True,
            timeout=timeout,
        )
        outputs, variables = parse_markers(proc.stdout)
        return CollaboratorResult(
            exit_code=proc.returncode,
            outputs=outputs,
            variables=variables,
            stdout=proc.stdout,
            stderr=_tail(proc.stderr),
        )
