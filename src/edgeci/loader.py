# loader.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .conditions import Condition, from_data
from .errors import DefinitionError, DuplicateInstanceError
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

# ----------------------------------------------------------------------
# Pipeline loading (python file or YAML document)
# ----------------------------------------------------------------------

YAML_SUFFIXES = (".yaml", ".yml")


def load_pipeline(path: str | Path) -> Pipeline:
    """
    Load a pipeline from a .py file or a YAML document.

    A python file must define either:
      - pipeline() -> Pipeline
      - PIPELINE = Pipeline(...)
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise FileNotFoundError(f"Pipeline file not found: {p}")
    if p.suffix == ".py":
        return _load_python(p)
    if p.suffix in YAML_SUFFIXES:
        return load_yaml(p.read_text(encoding="utf-8"), source=str(p))
    raise ValueError(f"Pipeline must be a .py, .yaml or .yml file, got: {p.name}")


def _load_python(path: Path) -> Pipeline:
    module_name = f"edgeci_pipeline_{path.stem}"
    globals_dict = runpy.run_path(str(path), run_name=module_name)

    result = None
    if "pipeline" in globals_dict and callable(globals_dict["pipeline"]):
        try:
            result = globals_dict["pipeline"]()
        except TypeError as e:
            if "positional argument" in str(e):
                raise TypeError(
                    "Your pipeline() is being called with arguments. "
                    "Use the 'build_pipeline' helper inside it: "
                    "`def pipeline(): return build_pipeline('name', stage(...))`"
                ) from e
            raise
    elif "PIPELINE" in globals_dict:
        result = globals_dict["PIPELINE"]

    if not isinstance(result, Pipeline):
        raise TypeError(
            f"{path.name} must return/define a Pipeline. "
            "Define pipeline() -> Pipeline or PIPELINE = build_pipeline(...)."
        )
    return result


# ----------------------------------------------------------------------
# YAML
# ----------------------------------------------------------------------

def _check_duplicate_keys(node: yaml.Node, in_matrix: bool = False) -> None:
    """
    safe_load silently keeps the last of two equal keys; a repeated matrix
    instance would vanish. Walk the composed tree and refuse them instead.
    """
    if isinstance(node, yaml.MappingNode):
        seen = set()
        for key_node, value_node in node.value:
            key = key_node.value if isinstance(key_node, yaml.ScalarNode) else None
            if key is not None:
                if key in seen:
                    line = key_node.start_mark.line + 1
                    if in_matrix:
                        raise DuplicateInstanceError(instance=key, where=f"matrix (line {line})")
                    raise DefinitionError(f"Duplicate key '{key}' (line {line})")
                seen.add(key)
            _check_duplicate_keys(value_node, in_matrix=(key == "matrix"))
    elif isinstance(node, yaml.SequenceNode):
        for item in node.value:
            _check_duplicate_keys(item)


def load_yaml(text: str, source: str = "<yaml>") -> Pipeline:
    try:
        root = yaml.compose(text, Loader=yaml.SafeLoader)
        if root is not None:
            _check_duplicate_keys(root)
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise DefinitionError(f"{source}: invalid YAML: {e}") from e
    if not isinstance(data, dict):
        raise DefinitionError(f"{source}: a pipeline document must be a mapping")
    return pipeline_from_data(data, source=source)


def _req(d: Mapping[str, Any], key: str, where: str) -> Any:
    if key not in d or d[key] in (None, ""):
        raise DefinitionError(f"{where}: missing '{key}'")
    return d[key]


def _list(value: Any, where: str) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        raise DefinitionError(f"{where}: expected a list, got {type(value).__name__}")
    return value


def _mapping(value: Any, where: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise DefinitionError(f"{where}: expected a mapping, got {type(value).__name__}")
    return value


def _str_map(value: Any, where: str) -> Dict[str, str]:
    return {str(k): _scalar_text(v) for k, v in _mapping(value, where).items()}


def _scalar_text(v: Any) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    return str(v)


def _condition(value: Any) -> Optional[Condition]:
    if value is None:
        return None
    return from_data(value)


def pipeline_from_data(data: Mapping[str, Any], source: str = "<data>") -> Pipeline:
    """
    Build a Pipeline from its document form:

        name: build-images
        parameters: [{name: E2EBuild, type: boolean, default: false}]
        variables: {DisableDockerBuild: false}
        stages:
          - stage: BuildExecutables
            dependsOn: [CheckBuildImages]
            condition: {or: [...]}
            outputs: [{name: job.task.NAME, type: bool, default: true}]
            consumes: [{bundle: consolidated_artifacts, sources: [{artifact: x, prefix: y}]}]
            jobs:
              - job: linux
                strategy: {matrix: {amd64: {arch: amd64}}}
                steps: [{script: make, name: build}]
                artifacts: [{name: core-linux, path: target, contents: ["*"]}]
    """
    name = str(_req(data, "name", source))
    parameters = [_parameter(p, f"{source}: parameters[{i}]") for i, p in enumerate(_list(data.get("parameters"), source))]
    variables = {str(k): v for k, v in _mapping(data.get("variables"), f"{source}: variables").items()}
    stages = [_stage(s, f"{source}: stages[{i}]") for i, s in enumerate(_list(data.get("stages"), source))]
    if not stages:
        raise DefinitionError(f"{source}: pipeline has no stages")
    return Pipeline(name=name, stages=stages, parameters=parameters, variables=variables)


def _parameter(d: Any, where: str) -> Parameter:
    d = _mapping(d, where)
    return Parameter(name=str(_req(d, "name", where)), type=str(d.get("type", "bool")), default=d.get("default"))


def _stage(d: Any, where: str) -> Stage:
    d = _mapping(d, where)
    name = str(_req(d, "stage", where))
    where = f"{where} ({name})"
    return Stage(
        name=name,
        jobs=[_job(j, f"{where}: jobs[{i}]") for i, j in enumerate(_list(_req(d, "jobs", where), where))],
        depends_on=[str(x) for x in _list(d.get("dependsOn"), where)],
        condition=_condition(d.get("condition")),
        outputs=[_output(o, f"{where}: outputs[{i}]") for i, o in enumerate(_list(d.get("outputs"), where))],
        consumes=[_bundle(b, f"{where}: consumes[{i}]") for i, b in enumerate(_list(d.get("consumes"), where))],
        timeout_minutes=d.get("timeoutInMinutes"),
        display_name=d.get("displayName"),
    )


def _output(d: Any, where: str) -> OutputDecl:
    d = _mapping(d, where)
    return OutputDecl(
        name=str(_req(d, "name", where)),
        type=str(d.get("type", "bool")),
        default=d.get("default", False),
        description=str(d.get("description", "")),
    )


def _bundle(d: Any, where: str) -> ConsolidationSpec:
    d = _mapping(d, where)
    sources = []
    for i, s in enumerate(_list(_req(d, "sources", where), where)):
        if isinstance(s, str):
            sources.append(ConsolidationSource(artifact=s))
            continue
        s = _mapping(s, f"{where}: sources[{i}]")
        sources.append(ConsolidationSource(
            artifact=str(_req(s, "artifact", f"{where}: sources[{i}]")),
            prefix=str(s.get("prefix") or ""),
        ))
    return ConsolidationSpec(name=str(_req(d, "bundle", where)), sources=tuple(sources), publish=bool(d.get("publish", True)))


def _job(d: Any, where: str) -> Job:
    d = _mapping(d, where)
    name = str(_req(d, "job", where))
    where = f"{where} ({name})"

    matrix = d.get("matrix")
    strategy = _mapping(d.get("strategy"), f"{where}: strategy")
    if "matrix" in strategy:
        if matrix is not None:
            raise DefinitionError(f"{where}: give 'matrix' or 'strategy.matrix', not both")
        matrix = strategy["matrix"]
    if matrix is not None:
        matrix = _mapping(matrix, f"{where}: matrix")

    return Job(
        name=name,
        steps=[_step(s, f"{where}: steps[{i}]") for i, s in enumerate(_list(_req(d, "steps", where), where))],
        matrix=matrix,
        env=_str_map(d.get("env"), f"{where}: env"),
        condition=_condition(d.get("condition")),
        timeout_minutes=d.get("timeoutInMinutes"),
        continue_on_error=bool(d.get("continueOnError", False)),
        artifacts=[_artifact(a, f"{where}: artifacts[{i}]") for i, a in enumerate(_list(d.get("artifacts"), where))],
        display_name=d.get("displayName"),
    )


def _artifact(d: Any, where: str) -> ArtifactSpec:
    d = _mapping(d, where)
    contents = tuple(str(c) for c in _list(d.get("contents"), where)) or ("*",)
    return ArtifactSpec(
        name=str(_req(d, "name", where)),
        path=str(_req(d, "path", where)),
        contents=contents,
        publish_always=bool(d.get("publishAlways", False)),
        condition=_condition(d.get("condition")),
    )


def _step(d: Any, where: str) -> Step:
    d = _mapping(d, where)
    name = str(_req(d, "name", where))
    common = dict(
        name=name,
        cwd=d.get("workingDirectory"),
        always=bool(d.get("always", False)),
        condition=_condition(d.get("condition")),
        env=_str_map(d.get("env"), f"{where}: env"),
    )

    if "detectChanges" in d:
        spec = _mapping(d["detectChanges"], f"{where}: detectChanges")
        if ("include" in spec) == ("exclude" in spec):
            raise DefinitionError(f"{where}: detectChanges needs exactly one of 'include' or 'exclude'")
        invert = "include" in spec
        patterns = [str(p) for p in _list(spec["include"] if invert else spec["exclude"], where)]
        data = {"output": str(_req(spec, "output", where)), "patterns": patterns, "invert": invert}
        return Step(kind="detect_changes", data=data, **common)

    if "docker" in d:
        data = {
            "image": str(_req(d, "docker", where)),
            "volumes": [str(v) for v in _list(d.get("volumes"), where)],
            "env": _str_map(d.get("dockerEnv"), f"{where}: dockerEnv"),
            "user": d.get("user"),
        }
        return Step(run=str(_req(d, "script", where)), kind="docker", data=data, **common)

    return Step(run=str(_req(d, "script", where)), kind=d.get("kind"), data=d.get("data"), **common)
