# step_workflows/docker.py
from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Dict, List, Mapping

from ..collaborators import TOOL_HINTS, CollaboratorResult, parse_markers
from ..conditions import Condition
from ..errors import JobExecutionError
from ..model import Step


# ---------------------------------------------------------------------
# Docker step helper
# ---------------------------------------------------------------------

def docker_step(
    name: str,
    cmd: str,
    image: str,
    *,
    cwd: str | None = None,
    volumes: List[str] | None = None,
    env: Dict[str, str] | None = None,
    user: str | None = None,
    always: bool = False,
    condition: Condition | None = None,
) -> Step:
    """Create a step that runs `cmd` inside a container of `image`."""
    data = {
        "image": image,
        "volumes": list(volumes or []),
        "env": dict(env or {}),
        "user": user,
    }
    return Step(name=name, run=cmd, cwd=cwd, kind="docker", data=data, always=always, condition=condition)


# ---------------------------------------------------------------------
# Docker step execution
# ---------------------------------------------------------------------

def _check_docker_available(docker: str, step: Step) -> None:
    """Check if Docker is available, raise helpful error if not."""
    try:
        subprocess.run(
            [docker, "--version"],
            capture_output=True,
            check=True,
        )
    except (subprocess.CalledProcessError, FileNotFoundError):
        raise JobExecutionError(
            kind="docker_unavailable",
            job="",
            step=step.name,
            message="Docker is not available",
            details={"hint": TOOL_HINTS["docker"]},
        )


class DockerCollaborator:
    """Runs a step in `docker run --rm` with the repository mounted at /workspace."""

    container_workdir = "/workspace"

    def __init__(self, repo_root: str | Path = ".", docker: str = "docker"):
        self.repo_root = Path(repo_root).resolve()
        self.docker = docker

    def command(self, step: Step, env: Mapping[str, str], cwd: Path) -> List[str]:
        data = step.data or {}
        image = data.get("image")
        if not image:
            raise JobExecutionError(
                kind="docker_no_image",
                job="",
                step=step.name,
                message="docker step has no image",
            )

        cmd = [self.docker, "run", "--rm"]

        # Volume mount: repo_root -> /workspace
        cmd.extend(["-v", f"{self.repo_root}:{self.container_workdir}"])
        for vol in data.get("volumes") or []:
            cmd.extend(["-v", vol])

        # Working directory: /workspace/<cwd relative to the repository>
        try:
            rel = Path(cwd).resolve().relative_to(self.repo_root).as_posix()
        except ValueError:
            rel = "."
        container_cwd = self.container_workdir if rel == "." else f"{self.container_workdir}/{rel}"
        cmd.extend(["-w", container_cwd])

        # pipeline environment + step-level docker env (never the host environment)
        merged = dict(env)
        merged.update(data.get("env") or {})
        for key, value in sorted(merged.items()):
            cmd.extend(["-e", f"{key}={value}"])

        if data.get("user"):
            cmd.extend(["--user", data["user"]])

        cmd.append(image)
        cmd.extend(["sh", "-c", step.run])
        return cmd

    def invoke(self, step: Step, env: Mapping[str, str], cwd: Path, timeout: float | None) -> CollaboratorResult:
        _check_docker_available(self.docker, step)
        proc = subprocess.run(
            self.command(step, env, cwd),
            shell=False,
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
            stderr=proc.stderr[-4000:],
        )
