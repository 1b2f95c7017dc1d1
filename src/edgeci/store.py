# store.py
from __future__ import annotations

import threading
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Mapping, Tuple

from .conditions import parse_output_ref
from .consolidate import Artifact, ConsolidatedArtifact, consolidate
from .errors import ConditionResolutionError, DefinitionError, StoreWriteError
from .model import ConsolidationSpec, Stage, StageState

# ---------------------------------------------------------------------
# Both stores are write-once per key. A second writer for the same key is
# a programming error and fails immediately instead of racing.
#
# StageOutput key:  (stage, job instance, task, name)
# Artifact key:     (producer, logical name), grouped per (run_id, logical name)
# ---------------------------------------------------------------------

OutputKey = Tuple[str, str, str, str]


class OutputStore:
    """Named variables published by jobs, populated once and read-only afterwards."""

    def __init__(self) -> None:
        self._values: Dict[OutputKey, Any] = {}
        self._lock = threading.Lock()

    def write(self, stage: str, job: str, task: str, name: str, value: Any) -> None:
        key = (stage, job, task, name)
        with self._lock:
            if key in self._values:
                raise StoreWriteError(store="stage outputs", key=key)
            self._values[key] = value

    def has(self, stage: str, job: str, task: str, name: str) -> bool:
        with self._lock:
            return (stage, job, task, name) in self._values

    def get(self, stage: str, job: str, task: str, name: str) -> Any:
        with self._lock:
            return self._values[(stage, job, task, name)]

    def for_stage(self, stage: str) -> Dict[str, Any]:
        """Outputs of one stage, keyed job.task.name"""
        with self._lock:
            return {
                f"{j}.{t}.{n}": v
                for (s, j, t, n), v in sorted(self._values.items())
                if s == stage
            }

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {".".join(k): v for k, v in sorted(self._values.items())}

    def clear(self) -> None:
        with self._lock:
            self._values.clear()


class OutputView:
    """
    Resolves `stage.job.task.output` references for one consuming stage.

    Rules:
      - the producer must be a declared dependency of the consumer
      - the producer must be terminal (no partial visibility)
      - producer skipped: declared outputs resolve to their declared default,
        undeclared ones are an error
      - producer ran but never wrote the output: same as skipped
    """

    def __init__(
        self,
        store: OutputStore,
        consumer: Stage,
        producers: Mapping[str, Stage],
        states: Mapping[str, StageState],
    ):
        self.store = store
        self.consumer = consumer
        self.producers = producers
        self.states = dict(states)

    def __call__(self, ref: str) -> Any:
        try:
            r = parse_output_ref(ref)
        except DefinitionError as e:
            raise ConditionResolutionError(ref, str(e)) from e

        if r.stage not in (self.consumer.depends_on or []):
            raise ConditionResolutionError(
                ref, f"stage '{r.stage}' is not a declared dependency of '{self.consumer.name}'"
            )
        state = self.states.get(r.stage)
        if state is None or not state.terminal:
            raise ConditionResolutionError(ref, f"producer stage '{r.stage}' has not finished")

        producer = self.producers[r.stage]
        decl = producer.output_decl(r.local)

        if state is not StageState.SKIPPED and self.store.has(r.stage, r.job, r.task, r.name):
            return self.store.get(r.stage, r.job, r.task, r.name)
        if decl is not None:
            return decl.default

        why = "was skipped" if state is StageState.SKIPPED else "did not publish it"
        raise ConditionResolutionError(
            ref, f"producer stage '{r.stage}' {why} and the output declares no default"
        )


# ---------------------------------------------------------------------
# Artifacts
# ---------------------------------------------------------------------

@dataclass
class ArtifactRecord:
    """Publish outcome of one artifact, kept for auditing."""
    name: str
    producer: str
    publish_always: bool
    published: bool
    file_count: int = 0
    reason: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


class ArtifactStore:
    """
    Artifacts of one run, keyed by (run_id, logical name).

      create(name)            declare an empty logical artifact
      append_variant(a)       add one producer's contribution (creates the name if needed)
      fetch_consolidated(n)   merged view of every variant of n (built lazily)
    """

    def __init__(self, run_id: str):
        self.run_id = run_id
        self._variants: Dict[str, Dict[str, Artifact]] = {}
        self._consolidated: Dict[str, ConsolidatedArtifact] = {}
        self._records: List[ArtifactRecord] = []
        self._lock = threading.Lock()

    def create(self, name: str) -> None:
        with self._lock:
            if name in self._variants:
                raise StoreWriteError(store="artifacts", key=(self.run_id, name))
            self._variants[name] = {}

    def append_variant(self, artifact: Artifact) -> None:
        with self._lock:
            variants = self._variants.setdefault(artifact.name, {})
            if artifact.producer in variants:
                raise StoreWriteError(store="artifacts", key=(self.run_id, artifact.name, artifact.producer))
            variants[artifact.producer] = artifact
            self._consolidated.pop(artifact.name, None)

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._variants)

    def variants(self, name: str) -> List[Artifact]:
        with self._lock:
            return [a for _, a in sorted(self._variants.get(name, {}).items())]

    def fetch_consolidated(self, name: str) -> ConsolidatedArtifact:
        with self._lock:
            if name not in self._variants:
                raise KeyError(f"no artifact named '{name}' in run {self.run_id}")
            cached = self._consolidated.get(name)
            if cached is not None:
                return cached
            variants = list(self._variants[name].values())

        merged = consolidate(name, variants)
        with self._lock:
            self._consolidated[name] = merged
        return merged

    def bundle(self, spec: ConsolidationSpec) -> Tuple[ConsolidatedArtifact, List[str]]:
        """
        Build the bundle a stage consumes from several logical artifacts.
        Returns (bundle, names of sources that had no variants).
        """
        contributing: List[Artifact] = []
        prefixes: Dict[str, str] = {}
        missing: List[str] = []
        for src in spec.sources:
            found = self.variants(src.artifact)
            if not found:
                missing.append(src.artifact)
            contributing.extend(found)
            if src.prefix:
                prefixes[src.artifact] = src.prefix
        return consolidate(spec.name, contributing, prefixes=prefixes), missing

    # ---- publish outcomes ----

    def record(self, record: ArtifactRecord) -> None:
        with self._lock:
            self._records.append(record)

    def records(self) -> List[ArtifactRecord]:
        with self._lock:
            return list(self._records)
