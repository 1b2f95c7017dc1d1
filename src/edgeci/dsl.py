# src/edgeci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .conditions import Condition
from .model import (
    ArtifactSpec,
    ConsolidationSource,
    ConsolidationSpec,
    Job,
    OutputDecl,
    Parameter,
    Pipeline,
    Stage,
    Step,
)
from .matrix import MatrixSpec


# ---------------------------------------------------------------------
# Step helper
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    always: bool = False,
    condition: Condition | None = None,
) -> Step:
    """Create a shell step."""
    return Step(name=name, run=cmd, cwd=cwd, env=dict(env or {}), always=always, condition=condition)


# ---------------------------------------------------------------------
# Artifacts and bundles
# ---------------------------------------------------------------------

def artifact(
    name: str,
    path: str,
    *contents: str,
    publish_always: bool = False,
    condition: Condition | None = None,
) -> ArtifactSpec:
    """
    artifact("iotedged-$(os.iotedge)-$(arch)", "edgelet/target/release",
             "*.deb", "!*dbgsym*")
    """
    return ArtifactSpec(
        name=name,
        path=path,
        contents=tuple(contents) or ("*",),
        publish_always=publish_always,
        condition=condition,
    )


def source(artifact_name: str, prefix: str = "") -> ConsolidationSource:
    return ConsolidationSource(artifact=artifact_name, prefix=prefix)


def bundle(name: str, *sources: ConsolidationSource | str, publish: bool = True) -> ConsolidationSpec:
    """bundle("consolidated_artifacts", "dotnet_artifacts", source("librocksdb", "librocksdb"))"""
    if not sources:
        raise ValueError(f"bundle({name!r}) needs at least one source artifact")
    srcs = tuple(s if isinstance(s, ConsolidationSource) else ConsolidationSource(artifact=s) for s in sources)
    return ConsolidationSpec(name=name, sources=srcs, publish=publish)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

def matrix(instances: Optional[Mapping[str, Mapping[str, Any]]] = None, **named: Mapping[str, Any]) -> Dict[str, Dict[str, Any]]:
    """
    Named matrix instances, in declaration order.

        matrix(amd64={"arch": "amd64"}, arm64={"arch": "arm64"})
        matrix({"RedHat8-amd64": {"arch": "amd64", "os.container": "..."}})

    Expansion (and shape checking) happens when the pipeline is validated.
    """
    rows: Dict[str, Dict[str, Any]] = {}
    for name, bindings in list((instances or {}).items()) + list(named.items()):
        if name in rows:
            raise ValueError(f"matrix instance {name!r} given twice")
        rows[name] = dict(bindings)
    return rows


# ---------------------------------------------------------------------
# Functional Job / Stage helpers
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    matrix: Optional[MatrixSpec] = None,
    env: Optional[Dict[str, str]] = None,
    condition: Condition | None = None,
    timeout_minutes: float | None = None,
    continue_on_error: bool = False,
    artifacts: Optional[Iterable[ArtifactSpec]] = None,
    display_name: str | None = None,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        name=name,
        steps=steps_final,
        matrix=matrix,
        env={k: str(v) for k, v in (env or {}).items()},
        condition=condition,
        timeout_minutes=timeout_minutes,
        continue_on_error=continue_on_error,
        artifacts=list(artifacts or []),
        display_name=display_name,
    )


def declare_output(name: str, type: str = "bool", default: Any = False, description: str = "") -> OutputDecl:
    """Declare `job.task.name` as an output of the stage, with the value used when it is absent."""
    return OutputDecl(name=name, type=type, default=default, description=description)


def stage(
    name: str,
    *jobs: Job,
    depends_on: Optional[Iterable[str]] = None,
    condition: Condition | None = None,
    outputs: Optional[Iterable[OutputDecl]] = None,
    consumes: Optional[Iterable[ConsolidationSpec]] = None,
    timeout_minutes: float | None = None,
    display_name: str | None = None,
) -> Stage:
    if not jobs:
        raise ValueError(f"stage({name!r}) must have at least one job")
    return Stage(
        name=name,
        jobs=list(jobs),
        depends_on=list(depends_on or []),
        condition=condition,
        outputs=list(outputs or []),
        consumes=list(consumes or []),
        timeout_minutes=timeout_minutes,
        display_name=display_name,
    )


def parameter(name: str, type: str = "bool", default: Any = None) -> Parameter:
    return Parameter(name=name, type=type, default=default)


# ---------------------------------------------------------------------
# Pipeline helper (single-file story)
# ---------------------------------------------------------------------

def build_pipeline(
    name: str,
    *stages: Stage,
    parameters: Optional[Iterable[Parameter]] = None,
    variables: Optional[Mapping[str, Any]] = None,
) -> Pipeline:
    """
    Pipeline definition helper. Named so you can still define your own
    `def pipeline(): ...` in a pipeline file:

        from edgeci import build_pipeline, stage, job, sh

        def pipeline():
            return build_pipeline(
                "images",
                stage("Build", job("compile", sh("make", "make"))),
            )

    Or set PIPELINE directly:
        PIPELINE = build_pipeline("images", stage(...))
    """
    return Pipeline(
        name=name,
        stages=list(stages),
        parameters=list(parameters or []),
        variables=dict(variables or {}),
    )
