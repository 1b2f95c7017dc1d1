import pytest

from edgeci.consolidate import Artifact
from edgeci.errors import ConditionResolutionError, StoreWriteError
from edgeci.model import ConsolidationSource, ConsolidationSpec, OutputDecl, Stage, StageState
from edgeci.store import ArtifactStore, OutputStore, OutputView

REF = "Check.check_source_change_runtime.check_files.RUNTIMECHANGES"


def _view(store, states, declared=True, depends_on=("Check",)):
    outputs = [OutputDecl("check_source_change_runtime.check_files.RUNTIMECHANGES", default=True)] if declared else []
    producer = Stage("Check", jobs=[], outputs=outputs)
    consumer = Stage("Build", jobs=[], depends_on=list(depends_on))
    other = Stage("Other", jobs=[])
    return OutputView(store, consumer, {"Check": producer, "Build": consumer, "Other": other}, states)


def test_outputs_are_write_once():
    store = OutputStore()
    store.write("Check", "job", "task", "NAME", True)

    with pytest.raises(StoreWriteError):
        store.write("Check", "job", "task", "NAME", False)
    assert store.get("Check", "job", "task", "NAME") is True
    assert store.for_stage("Check") == {"job.task.NAME": True}
    assert store.snapshot() == {"Check.job.task.NAME": True}


def test_view_returns_published_value():
    store = OutputStore()
    store.write("Check", "check_source_change_runtime", "check_files", "RUNTIMECHANGES", False)

    assert _view(store, {"Check": StageState.SUCCEEDED})(REF) is False


def test_view_uses_declared_default_when_producer_skipped():
    view = _view(OutputStore(), {"Check": StageState.SKIPPED})

    assert view(REF) is True


def test_view_uses_declared_default_when_output_never_written():
    view = _view(OutputStore(), {"Check": StageState.SUCCEEDED})

    assert view(REF) is True


def test_view_without_declaration_refuses_to_guess():
    view = _view(OutputStore(), {"Check": StageState.SKIPPED}, declared=False)

    with pytest.raises(ConditionResolutionError, match="was skipped"):
        view(REF)


def test_view_requires_a_declared_dependency():
    view = _view(OutputStore(), {"Check": StageState.SUCCEEDED}, depends_on=())

    with pytest.raises(ConditionResolutionError, match="not a declared dependency"):
        view(REF)


def test_view_requires_a_terminal_producer():
    view = _view(OutputStore(), {"Check": StageState.RUNNING})

    with pytest.raises(ConditionResolutionError, match="has not finished"):
        view(REF)


def test_view_rejects_malformed_references():
    with pytest.raises(ConditionResolutionError):
        _view(OutputStore(), {"Check": StageState.SUCCEEDED})("Check.NAME")


def test_artifact_variants_are_write_once_per_producer(tmp_path):
    store = ArtifactStore("run1")
    art = Artifact("pkgs", "Build.linux.amd64", {"a.deb": tmp_path / "a.deb"})
    store.append_variant(art)

    with pytest.raises(StoreWriteError):
        store.append_variant(art)
    with pytest.raises(StoreWriteError):
        store.create("pkgs")


def test_fetch_consolidated_is_rebuilt_after_a_new_variant(tmp_path):
    store = ArtifactStore("run1")
    store.create("pkgs")
    assert dict(store.fetch_consolidated("pkgs").files) == {}

    store.append_variant(Artifact("pkgs", "Build.linux.amd64", {"a.deb": tmp_path / "a.deb"}))
    first = store.fetch_consolidated("pkgs")
    assert store.fetch_consolidated("pkgs") is first

    store.append_variant(Artifact("pkgs", "Build.linux.arm64", {"b.deb": tmp_path / "b.deb"}))
    assert sorted(store.fetch_consolidated("pkgs").files) == ["a.deb", "b.deb"]

    with pytest.raises(KeyError):
        store.fetch_consolidated("unknown")


def test_bundle_reports_missing_sources(tmp_path):
    store = ArtifactStore("run1")
    store.append_variant(Artifact("dotnet_artifacts", "Build.dotnet", {"agent.dll": tmp_path / "agent.dll"}))
    spec = ConsolidationSpec(
        "consolidated_artifacts",
        (ConsolidationSource("dotnet_artifacts"), ConsolidationSource("librocksdb", "librocksdb")),
    )

    bundle, missing = store.bundle(spec)

    assert list(bundle.files) == ["agent.dll"]
    assert missing == ["librocksdb"]
