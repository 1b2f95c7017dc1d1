# report.py
from __future__ import annotations

import json
import urllib.request
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

from .model import StageState
from .runner import JobResult
from .store import ArtifactRecord


@dataclass
class StageRecord:
    name: str
    state: StageState
    reason: str = ""
    jobs: List[JobResult] = field(default_factory=list)
    bundles: List[dict] = field(default_factory=list)
    duration: float = 0.0

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "reason": self.reason,
            "duration": round(self.duration, 3),
            "bundles": list(self.bundles),
            "jobs": [j.to_dict() for j in self.jobs],
        }


@dataclass
class RunReport:
    """Everything a finished run leaves behind, in a JSON-friendly shape."""
    run_id: str
    pipeline: str
    parameters: Dict[str, Any]
    stages: List[StageRecord]
    artifacts: List[ArtifactRecord]
    outputs: Dict[str, Any]
    started_at: str
    finished_at: str
    cancelled: bool = False
    commit: Optional[str] = None

    @property
    def status(self) -> str:
        if any(s.state is StageState.FAILED for s in self.stages):
            return "failed"
        if self.cancelled:
            return "cancelled"
        return "succeeded"

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"

    def stage(self, name: str) -> StageRecord:
        for s in self.stages:
            if s.name == name:
                return s
        raise KeyError(name)

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "status": self.status,
            "commit": self.commit,
            "parameters": dict(self.parameters),
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "stages": [s.to_dict() for s in self.stages],
            "artifacts": [a.to_dict() for a in self.artifacts],
            "outputs": dict(self.outputs),
        }

    def write(self, state_dir: str | Path) -> Path:
        """Write <state_dir>/runs/<run_id>/report.json and return its path."""
        path = Path(state_dir) / "runs" / self.run_id / "report.json"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2, default=str), encoding="utf-8")
        return path


def report_path(state_dir: str | Path, run_id: str) -> Path:
    return Path(state_dir) / "runs" / run_id / "report.json"


def load_report(path: str | Path) -> dict:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Run report not found: {p}")
    return json.loads(p.read_text(encoding="utf-8"))


def post_report(api: str, report: dict, timeout: float = 30.0) -> dict:
    """
    POST a report to the audit service (<api>/runs).

    Raises urllib.error.HTTPError / URLError; the CLI turns those into
    readable errors.
    """
    url = urljoin(api.rstrip("/") + "/", "runs")
    data = json.dumps(report, default=str).encode("utf-8")
    req = urllib.request.Request(url, data=data, headers={"Content-Type": "application/json"}, method="POST")
    with urllib.request.urlopen(req, timeout=timeout) as response:
        body = response.read().decode("utf-8")
    return json.loads(body) if body else {}
