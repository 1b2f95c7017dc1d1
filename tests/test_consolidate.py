import pytest

from edgeci.consolidate import Artifact, consolidate
from edgeci.errors import ConsolidationConflictError


def _files(root, *names):
    out = {}
    for name in names:
        path = root / name.replace("/", "_")
        path.write_text(name)
        out[name] = path
    return out


def test_union_by_relative_path(tmp_path):
    dotnet = Artifact("dotnet_artifacts", "BuildExecutables.dotnet", _files(tmp_path, "Agent/agent.dll"))
    proxy = Artifact("api_proxy", "BuildExecutables.api_proxy.x86_64", _files(tmp_path, "x86_64/api-proxy"))
    rocks = Artifact("librocksdb", "BuildRocksDb.rocksdb.amd64", _files(tmp_path, "amd64/librocksdb.so"))

    bundle = consolidate("consolidated_artifacts", [dotnet, proxy, rocks], prefixes={"librocksdb": "librocksdb"})

    assert sorted(bundle.files) == ["Agent/agent.dll", "librocksdb/amd64/librocksdb.so", "x86_64/api-proxy"]
    assert bundle.contributors == (
        "BuildExecutables.api_proxy.x86_64:api_proxy",
        "BuildExecutables.dotnet:dotnet_artifacts",
        "BuildRocksDb.rocksdb.amd64:librocksdb",
    )


def test_same_path_from_two_producers_is_a_conflict(tmp_path):
    a = Artifact("api_proxy", "Build.api_proxy.x86_64", {"api-proxy": tmp_path / "a"})
    b = Artifact("api_proxy", "Build.api_proxy.aarch64", {"api-proxy": tmp_path / "b"})

    with pytest.raises(ConsolidationConflictError) as exc:
        consolidate("api_proxy", [a, b])

    assert exc.value.path == "api-proxy"
    assert exc.value.contributors == ("Build.api_proxy.aarch64:api_proxy", "Build.api_proxy.x86_64:api_proxy")


def test_publish_always_artifacts_are_namespaced_by_producer(tmp_path):
    a = Artifact("job-logs", "Build.linux.amd64", {"job.log": tmp_path / "a"}, publish_always=True)
    b = Artifact("job-logs", "Build.linux.arm64", {"job.log": tmp_path / "b"}, publish_always=True)

    bundle = consolidate("job-logs", [a, b])

    assert list(bundle.files) == ["Build.linux.amd64/job-logs/job.log", "Build.linux.arm64/job-logs/job.log"]


def test_two_log_artifacts_of_one_job_keep_both_files(tmp_path):
    a = Artifact("logs-a", "S.j", {"out.log": tmp_path / "a.log"}, publish_always=True)
    b = Artifact("logs-b", "S.j", {"out.log": tmp_path / "b.log"}, publish_always=True)

    bundle = consolidate("logs", [a, b])

    assert dict(bundle.files) == {
        "S.j/logs-a/out.log": tmp_path / "a.log",
        "S.j/logs-b/out.log": tmp_path / "b.log",
    }


def test_regular_path_landing_on_a_log_path_is_a_conflict(tmp_path):
    log = Artifact("job-logs", "S.j", {"j.log": tmp_path / "log"}, publish_always=True)
    pkg = Artifact("pkgs", "S.k", {"S.j/job-logs/j.log": tmp_path / "pkg"})

    with pytest.raises(ConsolidationConflictError) as exc:
        consolidate("mixed", [pkg, log])

    assert exc.value.path == "S.j/job-logs/j.log"
    assert exc.value.contributors == ("S.j:job-logs", "S.k:pkgs")


def test_result_does_not_depend_on_input_order(tmp_path):
    arts = [
        Artifact("pkgs", "Build.linux.a", _files(tmp_path, "a.deb")),
        Artifact("pkgs", "Build.linux.b", _files(tmp_path, "b.deb")),
        Artifact("pkgs", "Build.linux.c", _files(tmp_path, "c.rpm")),
    ]

    forward = consolidate("pkgs", arts)
    backward = consolidate("pkgs", list(reversed(arts)))

    assert dict(forward.files) == dict(backward.files)
    assert forward.contributors == backward.contributors


def test_materialize_copies_the_bundle(tmp_path):
    src = tmp_path / "src"
    src.mkdir()
    art = Artifact("dotnet_artifacts", "Build.dotnet", _files(src, "Agent/agent.dll", "Hub/hub.dll"))

    dest = consolidate("bundle", [art], prefixes={"dotnet_artifacts": "dotnet"}).materialize(tmp_path / "out")

    assert (dest / "dotnet" / "Agent" / "agent.dll").read_text() == "Agent/agent.dll"
    assert (dest / "dotnet" / "Hub" / "hub.dll").read_text() == "Hub/hub.dll"


def test_paths_may_not_escape_the_artifact(tmp_path):
    with pytest.raises(ValueError):
        Artifact("x", "Build.job", {"../etc/passwd": tmp_path / "x"})


def test_report_summary(tmp_path):
    art = Artifact("pkgs", "Build.linux.a", _files(tmp_path, "a.deb", "b.deb"))

    assert consolidate("pkgs", [art]).report() == {
        "name": "pkgs",
        "file_count": 2,
        "contributors": ["Build.linux.a:pkgs"],
    }
