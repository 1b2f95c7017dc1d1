# scheduler.py
from __future__ import annotations

import os
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .collaborators import BuildCollaborator
from .conditions import EvaluationEnv, evaluate
from .consolidate import Artifact
from .dag import topo_order
from .errors import ConditionResolutionError, ConsolidationConflictError, DefinitionError
from .matrix import MatrixInstance, expand
from .model import Job, JobStatus, Pipeline, Stage, StageState
from .report import RunReport, StageRecord
from .runner import Dispatcher, JobResult
from .settings import DEFAULT_CLEANUP_TIMEOUT_MINUTES, DEFAULT_TIMEOUT_MINUTES
from .store import ArtifactRecord, ArtifactStore, OutputStore, OutputView
from .ui.console import get_console

JobUnit = Tuple[Job, Optional[MatrixInstance]]

BUILTIN_STEP_KINDS = ("shell", "docker", "detect_changes")


# ----------------------------------------------------------------------
# Validation (everything here happens before the first job starts)
# ----------------------------------------------------------------------

def _check_name(what: str, name: str) -> None:
    if not name or "." in name:
        raise DefinitionError(f"{what} name {name!r} must be non-empty and must not contain '.'")


def expand_jobs(stage: Stage) -> List[JobUnit]:
    """Matrix-expand the jobs of one stage, in declaration order."""
    seen_jobs: set[str] = set()
    seen_instances: set[str] = set()
    units: List[JobUnit] = []
    for job in stage.jobs:
        if job.name in seen_jobs:
            raise DefinitionError(f"Stage '{stage.name}' has two jobs named '{job.name}'")
        seen_jobs.add(job.name)

        instances: Sequence[Optional[MatrixInstance]] = [None]
        if job.matrix is not None:
            instances = expand(job.matrix)
        for inst in instances:
            instance_id = f"{job.name}.{inst.name}" if inst else job.name
            if instance_id in seen_instances:
                raise DefinitionError(f"Stage '{stage.name}' has two job instances named '{instance_id}'")
            seen_instances.add(instance_id)
            units.append((job, inst))
    return units


def validate_pipeline(
    pipeline: Pipeline,
    known_kinds: Iterable[str] = BUILTIN_STEP_KINDS,
) -> Tuple[List[str], Dict[str, List[JobUnit]]]:
    """
    Check a pipeline definition and expand its matrices.

    Returns (stage execution order, job units per stage).
    Raises DefinitionError (or a subclass) on the first problem found.
    """
    kinds = set(known_kinds)
    for stage in pipeline.stages:
        _check_name("Stage", stage.name)
        for decl in stage.outputs:
            if len(decl.name.split(".")) < 3:
                raise DefinitionError(
                    f"Stage '{stage.name}' declares output '{decl.name}'; expected job.task.name"
                )
            try:
                decl.coerce(decl.default)
            except ValueError as e:
                raise DefinitionError(f"Stage '{stage.name}': default of {e}") from e
        for job in stage.jobs:
            if not job.steps:
                raise DefinitionError(f"Job '{stage.name}.{job.name}' has no steps")
            step_names: set[str] = set()
            for step in job.steps:
                _check_name("Step", step.name)
                if step.name in step_names:
                    raise DefinitionError(f"Job '{stage.name}.{job.name}' has two steps named '{step.name}'")
                step_names.add(step.name)
                kind = step.kind or "shell"
                if kind not in kinds:
                    raise DefinitionError(
                        f"Step '{stage.name}.{job.name}.{step.name}' has unknown kind '{kind}'. "
                        f"Known kinds: {sorted(kinds)}"
                    )

    order = topo_order(pipeline.stages)
    units = {stage.name: expand_jobs(stage) for stage in pipeline.stages}
    return order, units


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ----------------------------------------------------------------------
# Run
# ----------------------------------------------------------------------

class PipelineRun:
    """
    One execution of a pipeline.

    Stages are processed in topological order (declaration order breaks
    ties). Before a stage is entered its dependencies are terminal and its
    condition is evaluated once. Jobs of a stage run on a bounded thread
    pool; the stage waits for all of them before anything downstream is
    looked at.
    """

    def __init__(
        self,
        pipeline: Pipeline,
        *,
        parameters: Optional[Mapping[str, Any]] = None,
        run_id: Optional[str] = None,
        repo_root: str | Path = ".",
        state_dir: str | Path = ".edgeci",
        change_set: Optional[Sequence[str]] = None,
        collaborators: Optional[Mapping[str, BuildCollaborator]] = None,
        max_workers: Optional[int] = None,
        default_timeout_minutes: float = DEFAULT_TIMEOUT_MINUTES,
        cleanup_timeout_minutes: float = DEFAULT_CLEANUP_TIMEOUT_MINUTES,
        commit: Optional[str] = None,
    ):
        self.pipeline = pipeline
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.state_dir = Path(state_dir)
        self.commit = commit

        if max_workers is None:
            c = os.cpu_count() or 2
            max_workers = max(1, c - 1)
        self.max_workers = max_workers

        # ---- validation: fatal to the whole run ----
        self.parameters = pipeline.resolve_parameters(parameters)
        self.dispatcher = Dispatcher(
            repo_root=repo_root,
            work_dir=self.run_dir / "work",
            run_id=self.run_id,
            parameters=self.parameters,
            variables=pipeline.variables,
            collaborators=collaborators,
            change_set=change_set,
            default_timeout_minutes=default_timeout_minutes,
            cleanup_timeout_minutes=cleanup_timeout_minutes,
        )
        self.order, self.units = validate_pipeline(pipeline, self.dispatcher.collaborators)
        self._stages: Dict[str, Stage] = {s.name: s for s in pipeline.stages}

        self.states: Dict[str, StageState] = {s.name: StageState.PENDING for s in pipeline.stages}
        self.outputs = OutputStore()
        self.artifacts = ArtifactStore(self.run_id)
        self._records: Dict[str, StageRecord] = {}
        self._cancel = threading.Event()
        self._lock = threading.Lock()

    @property
    def run_dir(self) -> Path:
        return self.state_dir / "runs" / self.run_id

    # ---- queries ----

    def state(self, name: str) -> StageState:
        with self._lock:
            return self.states[name]

    def is_unblocked(self, name: str) -> bool:
        """True iff every dependency of the stage is terminal. No side effects."""
        stage = self._stages[name]
        with self._lock:
            return all(self.states[d].terminal for d in stage.depends_on)

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # ---- control ----

    def cancel(self) -> None:
        """
        Stop the run. Stages that have not started are skipped; a running
        stage lets in-flight jobs finish and does not start new ones.
        """
        self._cancel.set()
        with self._lock:
            for name, state in self.states.items():
                if state in (StageState.PENDING, StageState.BLOCKED):
                    self.states[name] = StageState.SKIPPED
                    self._records[name] = StageRecord(name, StageState.SKIPPED, reason="run cancelled")

    def run(self) -> RunReport:
        console = get_console()
        started_at = _now()
        console.print_run_started(self.pipeline.name, self.run_id, len(self.order), self.parameters)

        with self._lock:
            for name in self.order:
                if self.states[name] is StageState.PENDING and self._stages[name].depends_on:
                    self.states[name] = StageState.BLOCKED

        try:
            for name in self.order:
                if self.state(name).terminal:
                    continue
                self._process(self._stages[name])
                self._unblock()
        except BaseException:
            # interrupted: settle every stage and keep the report
            self.cancel()
            for name in self.order:
                if self.state(name) is StageState.RUNNING:
                    record = self._records.get(name) or StageRecord(name, StageState.RUNNING)
                    self._finish(record, StageState.FAILED, "run cancelled")
            self._close(started_at)
            raise
        return self._close(started_at)

    def _close(self, started_at: str) -> RunReport:
        console = get_console()
        report = RunReport(
            run_id=self.run_id,
            pipeline=self.pipeline.name,
            parameters=dict(self.parameters),
            stages=[self._records[name] for name in self.order if name in self._records],
            artifacts=self.artifacts.records(),
            outputs=self.outputs.snapshot(),
            started_at=started_at,
            finished_at=_now(),
            cancelled=self.cancelled,
            commit=self.commit,
        )
        path = report.write(self.state_dir)
        # outputs live for one run only; the report keeps the snapshot
        self.outputs.clear()
        console.print_results([(s.name, s.state.value) for s in report.stages], report.status)
        console.print_debug(f"report written to {path}")
        return report

    # ---- stage processing ----

    def _unblock(self) -> None:
        with self._lock:
            for name, state in self.states.items():
                if state is StageState.BLOCKED and all(
                    self.states[d].terminal for d in self._stages[name].depends_on
                ):
                    self.states[name] = StageState.PENDING

    def _finish(self, record: StageRecord, state: StageState, reason: str = "", started: float | None = None) -> None:
        record.state = state
        record.reason = reason
        if started is not None:
            record.duration = time.monotonic() - started
        with self._lock:
            self.states[record.name] = state
            self._records[record.name] = record

        console = get_console()
        if state is StageState.SKIPPED:
            console.print_stage_skipped(record.name, reason)
        else:
            console.print_stage_finished(record.name, state.value, reason)

    def _process(self, stage: Stage) -> None:
        record = StageRecord(stage.name, self.state(stage.name))

        failed_deps = [d for d in stage.depends_on if self.state(d) is StageState.FAILED]
        if failed_deps:
            self._finish(record, StageState.FAILED, f"dependency failed: {', '.join(failed_deps)}")
            return
        if self.cancelled:
            self._finish(record, StageState.SKIPPED, "run cancelled")
            return

        with self._lock:
            states = dict(self.states)
        env = EvaluationEnv(
            parameters=self.parameters,
            variables=self.pipeline.variables,
            outputs=OutputView(self.outputs, stage, self._stages, states),
        )
        try:
            should_run = evaluate(stage.condition, env)
        except ConditionResolutionError as e:
            self._finish(record, StageState.FAILED, str(e))
            return
        if not should_run:
            self._finish(record, StageState.SKIPPED, "condition is false")
            return

        with self._lock:
            # cancel() may have settled the stage since the check above
            if self.states[stage.name].terminal:
                return
            self.states[stage.name] = StageState.RUNNING
        get_console().print_stage_start(stage.name)
        started = time.monotonic()

        try:
            inputs = self._prepare_inputs(stage, record)
        except ConsolidationConflictError as e:
            self._finish(record, StageState.FAILED, str(e), started)
            return

        record.jobs = self._run_jobs(stage, inputs)
        for result in record.jobs:
            self._publish(stage, result)

        bad = [r.job for r in record.jobs if not r.ok]
        if bad:
            self._finish(record, StageState.FAILED, f"job(s) failed: {', '.join(bad)}", started)
        else:
            self._finish(record, StageState.SUCCEEDED, "", started)

    def _prepare_inputs(self, stage: Stage, record: StageRecord) -> Dict[str, str]:
        """Build, materialize and (optionally) publish every bundle the stage consumes."""
        inputs: Dict[str, str] = {}
        for spec in stage.consumes:
            bundle, missing = self.artifacts.bundle(spec)
            for name in missing:
                get_console().print_warning(
                    f"[{stage.name}] bundle '{spec.name}': no artifact named '{name}' was published"
                )
            dest = bundle.materialize(self.run_dir / "bundles" / stage.name / spec.name)
            inputs[f"bundles.{spec.name}"] = str(dest)

            summary = bundle.report()
            summary.update({"path": str(dest), "missing": missing})
            record.bundles.append(summary)

            if spec.publish:
                self.artifacts.append_variant(Artifact(name=spec.name, producer=stage.name, files=bundle.files))
                self.artifacts.record(ArtifactRecord(
                    name=spec.name,
                    producer=stage.name,
                    publish_always=False,
                    published=True,
                    file_count=len(bundle.files),
                ))
        return inputs

    def _run_jobs(self, stage: Stage, inputs: Mapping[str, str]) -> List[JobResult]:
        units = self.units[stage.name]
        results: List[Optional[JobResult]] = [None] * len(units)

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            # submitted in declaration order
            futures = {
                pool.submit(self._run_instance, stage, job, inst, inputs): i
                for i, (job, inst) in enumerate(units)
            }
            try:
                for fut in as_completed(futures):
                    i = futures[fut]
                    job, inst = units[i]
                    try:
                        results[i] = fut.result()
                    except Exception as e:
                        # a dispatcher bug fails this job only
                        get_console().print_exception(e)
                        results[i] = JobResult(
                            stage=stage.name,
                            job=f"{job.name}.{inst.name}" if inst else job.name,
                            status=JobStatus.FAILED,
                            error=f"{type(e).__name__}: {e}",
                            continue_on_error=job.continue_on_error,
                        )
            except BaseException:
                # queued instances see the flag and come back CANCELLED
                self._cancel.set()
                raise
        return [r for r in results if r is not None]

    def _run_instance(
        self,
        stage: Stage,
        job: Job,
        inst: Optional[MatrixInstance],
        inputs: Mapping[str, str],
    ) -> JobResult:
        if self.cancelled:
            return JobResult(
                stage=stage.name,
                job=f"{job.name}.{inst.name}" if inst else job.name,
                status=JobStatus.CANCELLED,
                error="run cancelled before the job started",
            )
        return self.dispatcher.dispatch(
            job,
            inst.bindings if inst else {},
            stage=stage,
            instance=inst.name if inst else None,
            inputs=inputs,
        )

    def _publish(self, stage: Stage, result: JobResult) -> None:
        """Move a job's outputs and artifacts into the run stores."""
        for local, raw in sorted(result.outputs.items()):
            task, name = local.split(".", 1)
            decl = stage.output_decl(f"{result.job}.{local}")
            value: Any = raw
            if decl is not None:
                try:
                    value = decl.coerce(raw)
                except ValueError as e:
                    result.status = JobStatus.FAILED
                    result.error = result.error or str(e)
                    continue
            self.outputs.write(stage.name, result.job, task, name, value)

        for artifact in result.artifacts:
            self.artifacts.append_variant(artifact)
        for rec in result.artifact_records:
            self.artifacts.record(rec)
