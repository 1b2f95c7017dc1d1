# runner.py
from __future__ import annotations

import re
import subprocess
import time
from dataclasses import asdict, dataclass, field, replace
from fnmatch import fnmatch
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .collaborators import BuildCollaborator, CollaboratorResult, ShellCollaborator
from .conditions import EvaluationEnv, evaluate
from .consolidate import Artifact
from .errors import ConditionResolutionError, JobExecutionError, JobTimeoutError, StepFailure
from .model import ArtifactSpec, Job, JobStatus, Stage, Step
from .settings import DEFAULT_CLEANUP_TIMEOUT_MINUTES, DEFAULT_TIMEOUT_MINUTES
from .step_workflows.detect import ChangeDetectionCollaborator
from .step_workflows.docker import DockerCollaborator
from .store import ArtifactRecord
from .ui.console import get_console

LOG_ARTIFACT = "job-logs"

_MACRO = re.compile(r"\$\(([A-Za-z0-9_.\-]+)\)")


# ----------------------------------------------------------------------
# Variables and environment
# ----------------------------------------------------------------------

def expand_macros(text: str, variables: Mapping[str, Any]) -> str:
    """Replace $(name) with its value. Unknown names are left as written."""
    def sub(m: re.Match) -> str:
        name = m.group(1)
        if name in variables:
            return _env_value(variables[name])
        return m.group(0)
    return _MACRO.sub(sub, text or "")


def env_name(name: str) -> str:
    """os.iotedge -> OS_IOTEDGE"""
    return re.sub(r"[^A-Za-z0-9]", "_", name).upper()


def _env_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


# ----------------------------------------------------------------------
# Artifact collection
# ----------------------------------------------------------------------

def _glob_match(rel: str, patterns: Sequence[str]) -> bool:
    for p in patterns:
        if fnmatch(rel, p):
            return True
        # "**/*.deb" also matches top-level files
        if p.startswith("**/") and fnmatch(rel, p[3:]):
            return True
    return False


def collect_files(root: Path, contents: Sequence[str] = ("*",)) -> Dict[str, Path]:
    """
    Files under root selected by content globs (relative, posix style).
    A leading "!" excludes. A file root publishes just that file.
    """
    if root.is_file():
        return {root.name: root}
    includes = [c for c in contents if not c.startswith("!")] or ["*"]
    excludes = [c[1:] for c in contents if c.startswith("!")]
    files: Dict[str, Path] = {}
    for path in sorted(root.rglob("*")):
        if not path.is_file():
            continue
        rel = path.relative_to(root).as_posix()
        if _glob_match(rel, includes) and not _glob_match(rel, excludes):
            files[rel] = path
    return files


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------

@dataclass
class StepRecord:
    name: str
    status: str                 # succeeded | failed | skipped
    exit_code: int | None = None
    duration: float = 0.0
    reason: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class JobResult:
    stage: str
    job: str                    # job instance id, e.g. "linux.amd64"
    status: JobStatus
    artifacts: List[Artifact] = field(default_factory=list)
    outputs: Dict[str, str] = field(default_factory=dict)     # task.name -> raw value
    steps: List[StepRecord] = field(default_factory=list)
    artifact_records: List[ArtifactRecord] = field(default_factory=list)
    error: str | None = None
    continue_on_error: bool = False
    duration: float = 0.0

    @property
    def producer(self) -> str:
        return f"{self.stage}.{self.job}"

    @property
    def ok(self) -> bool:
        """Does this result let its stage succeed?"""
        if self.status in (JobStatus.SUCCEEDED, JobStatus.SKIPPED):
            return True
        return self.status is JobStatus.FAILED and self.continue_on_error

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "job": self.job,
            "status": self.status.value,
            "error": self.error,
            "continue_on_error": self.continue_on_error,
            "duration": round(self.duration, 3),
            "outputs": dict(self.outputs),
            "steps": [s.to_dict() for s in self.steps],
            "artifacts": [
                {"name": a.name, "file_count": len(a.files), "publish_always": a.publish_always}
                for a in self.artifacts
            ],
        }


# ----------------------------------------------------------------------
# Dispatcher
# ----------------------------------------------------------------------

class Dispatcher:
    """
    Runs one job instance: evaluates its condition, invokes a collaborator
    per step, enforces the job timeout and collects outputs and artifacts.

    Never retries. A failed job is reported as FAILED and that is all.
    """

    def __init__(
        self,
        *,
        repo_root: str | Path = ".",
        work_dir: str | Path = ".edgeci/work",
        run_id: str = "local",
        parameters: Optional[Mapping[str, Any]] = None,
        variables: Optional[Mapping[str, Any]] = None,
        collaborators: Optional[Mapping[str, BuildCollaborator]] = None,
        change_set: Optional[Sequence[str]] = None,
        default_timeout_minutes: float = DEFAULT_TIMEOUT_MINUTES,
        cleanup_timeout_minutes: float = DEFAULT_CLEANUP_TIMEOUT_MINUTES,
    ):
        self.repo_root = Path(repo_root).resolve()
        self.work_dir = Path(work_dir).resolve()
        self.run_id = run_id
        self.parameters = dict(parameters or {})
        self.variables = dict(variables or {})
        self.default_timeout_minutes = default_timeout_minutes
        self.cleanup_timeout_minutes = cleanup_timeout_minutes

        self.collaborators: Dict[str, BuildCollaborator] = {
            "shell": ShellCollaborator(),
            "docker": DockerCollaborator(self.repo_root),
            "detect_changes": ChangeDetectionCollaborator(change_set, repo_root=self.repo_root),
        }
        self.collaborators.update(collaborators or {})

    def dispatch(
        self,
        job: Job,
        bindings: Optional[Mapping[str, Any]] = None,
        *,
        stage: Stage | str,
        instance: str | None = None,
        inputs: Optional[Mapping[str, Any]] = None,
    ) -> JobResult:
        """
        Run `job` with one set of matrix bindings.

        inputs: extra variables for this stage (e.g. materialized bundle paths).
        """
        stage_name = stage if isinstance(stage, str) else stage.name
        stage_timeout = None if isinstance(stage, str) else stage.timeout_minutes
        instance_id = f"{job.name}.{instance}" if instance else job.name
        producer = f"{stage_name}.{instance_id}"
        console = get_console()
        started = time.monotonic()

        staging = self.work_dir / "staging" / producer
        staging.mkdir(parents=True, exist_ok=True)

        variables: Dict[str, Any] = dict(self.variables)
        variables.update(inputs or {})
        variables.update(bindings or {})
        variables.update({
            "edgeci.sources": str(self.repo_root),
            "edgeci.staging": str(staging),
            "edgeci.run_id": self.run_id,
            "edgeci.stage": stage_name,
            "edgeci.job": instance_id,
        })

        result = JobResult(
            stage=stage_name,
            job=instance_id,
            status=JobStatus.SUCCEEDED,
            continue_on_error=job.continue_on_error,
        )

        # ---- job condition ----
        try:
            should_run = evaluate(job.condition, EvaluationEnv(self.parameters, variables))
        except ConditionResolutionError as e:
            result.status = JobStatus.FAILED
            result.error = str(e)
            console.print_failure(producer, str(e))
            return result
        if not should_run:
            result.status = JobStatus.SKIPPED
            console.print_job_skipped(producer, "condition is false")
            return result

        console.print_job_start(producer)
        timeout_minutes = job.timeout_minutes or stage_timeout or self.default_timeout_minutes
        deadline = started + timeout_minutes * 60
        job_vars: Dict[str, str] = {}
        log: List[str] = []
        failed = False
        cleanup_deadline: Optional[float] = None

        # ---- steps ----
        for step in job.steps:
            if failed and not step.always:
                result.steps.append(StepRecord(step.name, "skipped", reason="an earlier step failed"))
                continue

            scope = {**variables, **job_vars}
            try:
                if not evaluate(step.condition, EvaluationEnv(self.parameters, scope)):
                    result.steps.append(StepRecord(step.name, "skipped", reason="condition is false"))
                    log.append(f"##[step] {step.name} skipped: condition is false")
                    continue
            except ConditionResolutionError as e:
                failed = True
                result.error = result.error or str(e)
                result.steps.append(StepRecord(step.name, "failed", reason=str(e)))
                console.print_failure(producer, str(e), step=step.name)
                continue

            step_deadline, step_budget = deadline, timeout_minutes
            if failed:
                # always steps after a failure get their own budget, even past the job deadline
                if cleanup_deadline is None:
                    cleanup_deadline = time.monotonic() + self.cleanup_timeout_minutes * 60
                if cleanup_deadline > deadline:
                    step_deadline, step_budget = cleanup_deadline, self.cleanup_timeout_minutes

            console.print_step(producer, step.name)
            log.append(f"##[step] {step.name}")
            step_started = time.monotonic()
            try:
                res = self._invoke(job, instance_id, step, scope, step_deadline, step_budget)
                log.extend(_log_lines(res))
                if res.exit_code != 0:
                    raise StepFailure(
                        job=instance_id,
                        step=step.name,
                        cmd=step.run,
                        exit_code=res.exit_code,
                        stderr=(res.stderr or "")[-500:] or None,
                    )
                self._collect_outputs(result, instance_id, step, res)
                job_vars.update(res.variables)
                result.steps.append(StepRecord(
                    step.name, "succeeded", exit_code=0, duration=time.monotonic() - step_started
                ))
            except JobExecutionError as e:
                failed = True
                result.error = result.error or str(e)
                exit_code = getattr(e, "exit_code", None)
                result.steps.append(StepRecord(
                    step.name,
                    "failed",
                    exit_code=exit_code,
                    duration=time.monotonic() - step_started,
                    reason=e.message,
                ))
                log.append(str(e))
                console.print_failure(
                    producer, str(e), step=step.name, exit_code=exit_code, hint=e.details.get("hint")
                )

        # ---- artifacts ----
        scope = {**variables, **job_vars}
        for spec in job.artifacts:
            try:
                artifact, record = self._collect_artifact(spec, instance_id, producer, scope, failed)
            except JobExecutionError as e:
                failed = True
                result.error = result.error or str(e)
                log.append(str(e))
                console.print_failure(producer, str(e))
                record = ArtifactRecord(
                    name=e.details.get("artifact", spec.name),
                    producer=producer,
                    publish_always=False,
                    published=False,
                    reason=e.message,
                )
                artifact = None
            if artifact is not None:
                result.artifacts.append(artifact)
            result.artifact_records.append(record)

        result.status = JobStatus.FAILED if failed else JobStatus.SUCCEEDED
        result.duration = time.monotonic() - started
        log.append(f"##[result] {result.status.value}")

        # ---- console log (always published) ----
        log_artifact = self._write_log(producer, instance_id, log)
        result.artifacts.append(log_artifact)
        result.artifact_records.append(ArtifactRecord(
            name=LOG_ARTIFACT, producer=producer, publish_always=True, published=True, file_count=1
        ))

        if failed:
            console.print_failure(producer, result.error or "job failed")
        else:
            console.print_success(producer)
        return result

    # ---- helpers ----

    def _invoke(
        self,
        job: Job,
        instance_id: str,
        step: Step,
        scope: Mapping[str, Any],
        deadline: float,
        timeout_minutes: float,
    ) -> CollaboratorResult:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise JobTimeoutError(instance_id, step.name, timeout_minutes)

        kind = step.kind or "shell"
        collaborator = self.collaborators.get(kind)
        if collaborator is None:
            raise JobExecutionError(
                kind="unknown_step_kind",
                job=instance_id,
                step=step.name,
                message=f"no collaborator for step kind '{kind}'",
            )

        macros = {**self.parameters, **scope}
        cwd = (self.repo_root / expand_macros(step.cwd or ".", macros)).resolve()
        if not cwd.is_dir():
            raise JobExecutionError(
                kind="cwd_not_found",
                job=instance_id,
                step=step.name,
                message="working directory not found",
                details={"cwd": str(cwd)},
            )

        concrete = replace(step, run=expand_macros(step.run, macros))
        try:
            return collaborator.invoke(concrete, self._environment(job, step, scope), cwd, remaining)
        except subprocess.TimeoutExpired:
            raise JobTimeoutError(instance_id, step.name, timeout_minutes) from None
        except JobExecutionError as e:
            if not e.job:
                e.job = instance_id
            raise
        except OSError as e:
            raise JobExecutionError(
                kind="collaborator_error",
                job=instance_id,
                step=step.name,
                message=str(e),
            ) from e
        except Exception as e:
            raise JobExecutionError(
                kind="collaborator_error",
                job=instance_id,
                step=step.name,
                message=f"{type(e).__name__}: {e}",
            ) from e

    def _environment(self, job: Job, step: Step, scope: Mapping[str, Any]) -> Dict[str, str]:
        """parameters < variables/bindings/job variables < job.env < step.env"""
        macros = {**self.parameters, **scope}
        env: Dict[str, str] = {}
        for name, value in self.parameters.items():
            env[env_name(name)] = _env_value(value)
        for name, value in scope.items():
            env[env_name(name)] = _env_value(value)
        env.update({k: expand_macros(str(v), macros) for k, v in job.env.items()})
        env.update({k: expand_macros(str(v), macros) for k, v in step.env.items()})
        return env

    @staticmethod
    def _collect_outputs(result: JobResult, instance_id: str, step: Step, res: CollaboratorResult) -> None:
        for name, value in res.outputs.items():
            key = f"{step.name}.{name}"
            if key in result.outputs:
                raise JobExecutionError(
                    kind="output_rewritten",
                    job=instance_id,
                    step=step.name,
                    message=f"output '{key}' was already published by this job",
                )
            result.outputs[key] = value

    def _collect_artifact(
        self,
        spec: ArtifactSpec,
        instance_id: str,
        producer: str,
        scope: Mapping[str, Any],
        job_failed: bool,
    ) -> tuple[Optional[Artifact], ArtifactRecord]:
        macros = {**self.parameters, **scope}
        name = expand_macros(spec.name, macros)
        if job_failed and not spec.publish_always:
            return None, ArtifactRecord(name, producer, False, False, reason="job failed")
        try:
            wanted = evaluate(spec.condition, EvaluationEnv(self.parameters, scope))
        except ConditionResolutionError as e:
            raise JobExecutionError(
                kind="artifact_condition",
                job=instance_id,
                step=None,
                message=str(e),
                details={"artifact": name},
            ) from e
        if not wanted:
            return None, ArtifactRecord(name, producer, spec.publish_always, False, reason="condition is false")

        root = self.repo_root / expand_macros(spec.path, macros)
        if not root.exists():
            if spec.publish_always:
                return None, ArtifactRecord(name, producer, True, False, reason=f"path not found: {root}")
            raise JobExecutionError(
                kind="artifact_missing",
                job=instance_id,
                step=None,
                message=f"artifact '{name}' path not found",
                details={"artifact": name, "path": str(root)},
            )

        files = collect_files(root, [expand_macros(c, macros) for c in spec.contents])
        artifact = Artifact(name=name, producer=producer, files=files, publish_always=spec.publish_always)
        return artifact, ArtifactRecord(name, producer, spec.publish_always, True, file_count=len(files))

    def _write_log(self, producer: str, instance_id: str, lines: List[str]) -> Artifact:
        log_dir = self.work_dir / "logs" / producer
        log_dir.mkdir(parents=True, exist_ok=True)
        path = log_dir / "job.log"
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return Artifact(
            name=LOG_ARTIFACT,
            producer=producer,
            files={f"{instance_id}.log": path},
            publish_always=True,
        )


def _log_lines(res: CollaboratorResult) -> List[str]:
    lines = (res.stdout or "").splitlines()
    lines.extend(f"[stderr] {line}" for line in (res.stderr or "").splitlines())
    return lines
