import os
import tempfile
from pathlib import Path

import pytest

# the audit service reads its database URL at import time
_DB_DIR = tempfile.mkdtemp(prefix="edgeci-audit-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_DIR}/audit.db")

from edgeci.collaborators import CollaboratorResult  # noqa: E402
from edgeci.ui.console import Console, set_console  # noqa: E402

REPO_ROOT = Path(__file__).resolve().parents[1]


class FakeCollaborator:
    """
    Scripted collaborator. `script` maps a step name to either a
    CollaboratorResult or a callable (step, env, cwd, timeout) -> CollaboratorResult.
    Steps not in the script succeed with no output.
    """

    def __init__(self, script=None):
        self.script = dict(script or {})
        self.calls = []

    def invoke(self, step, env, cwd, timeout):
        self.calls.append({"step": step.name, "run": step.run, "env": dict(env), "cwd": cwd, "timeout": timeout})
        action = self.script.get(step.name)
        if action is None:
            return CollaboratorResult(exit_code=0)
        if callable(action):
            return action(step, env, cwd, timeout)
        return action

    def steps(self):
        return [c["step"] for c in self.calls]


@pytest.fixture(autouse=True)
def quiet_console():
    set_console(Console())
    yield


@pytest.fixture
def fake():
    return FakeCollaborator()


@pytest.fixture
def repo_root():
    return REPO_ROOT
