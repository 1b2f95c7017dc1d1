from .changes import ChangeDetector, packaging_changes, runtime_changes
from .conditions import and_, eq, lit, or_, output, param, var
from .dsl import artifact, build_pipeline, bundle, declare_output, job, matrix, parameter, sh, source, stage
from .loader import load_pipeline
from .model import Job, Pipeline, Stage, StageState, Step
from .scheduler import PipelineRun
from .step_workflows.detect import detect_changes_step
from .step_workflows.docker import docker_step

__all__ = [
    "ChangeDetector", "packaging_changes", "runtime_changes",
    "and_", "eq", "lit", "or_", "output", "param", "var",
    "artifact", "build_pipeline", "bundle", "declare_output", "job", "matrix", "parameter", "sh", "source", "stage",
    "load_pipeline",
    "Job", "Pipeline", "Stage", "StageState", "Step",
    "PipelineRun",
    "detect_changes_step", "docker_step",
]
