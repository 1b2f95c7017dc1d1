import subprocess
from pathlib import Path

import pytest

from edgeci.collaborators import CollaboratorResult
from edgeci.conditions import eq, param, var
from edgeci.dsl import artifact, job, sh
from edgeci.errors import JobExecutionError
from edgeci.model import JobStatus, Stage, Step
from edgeci.runner import LOG_ARTIFACT, Dispatcher, collect_files, env_name, expand_macros


def _dispatcher(tmp_path, fake, **kwargs):
    return Dispatcher(
        repo_root=tmp_path,
        work_dir=tmp_path / "work",
        run_id="run1",
        collaborators={"shell": fake},
        **kwargs,
    )


def _write(rel):
    def action(step, env, cwd, timeout):
        path = Path(env["EDGECI_STAGING"]) / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(rel)
        return CollaboratorResult(exit_code=0)
    return action


def test_expand_macros_leaves_unknown_names():
    text = expand_macros("iotedged-$(os.iotedge)-$(arch) $(Build.BuildId)", {"os.iotedge": "debian11", "arch": "amd64"})

    assert text == "iotedged-debian11-amd64 $(Build.BuildId)"
    assert expand_macros("$(E2EBuild)", {"E2EBuild": False}) == "false"


def test_env_names():
    assert env_name("os.iotedge") == "OS_IOTEDGE"
    assert env_name("target.identity") == "TARGET_IDENTITY"
    assert env_name("E2EBuild") == "E2EBUILD"


def test_collect_files_with_excludes(tmp_path):
    for name in ("a.rpm", "a-debugsource-1.rpm", "sub/b.rpm", "notes.txt"):
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(name)

    files = collect_files(tmp_path, ("*.rpm", "**/*.rpm", "!*-debugsource-*.rpm"))

    assert sorted(files) == ["a.rpm", "sub/b.rpm"]
    assert collect_files(tmp_path / "notes.txt") == {"notes.txt": tmp_path / "notes.txt"}


def test_environment_layers_and_outputs(tmp_path, fake):
    fake.script["build"] = CollaboratorResult(exit_code=0, outputs={"VERSION": "1.5.0"})
    j = job(
        "linux",
        Step(name="build", run="make $(arch)", env={"EXTRA": "$(os.iotedge)"}),
        env={"ARCH": "overridden"},
    )
    d = _dispatcher(tmp_path, fake, parameters={"E2EBuild": True}, variables={"configuration": "Release"})

    result = d.dispatch(j, {"arch": "amd64", "os.iotedge": "debian11"}, stage="BuildPackages", instance="Debian11-amd64")

    assert result.status is JobStatus.SUCCEEDED
    assert result.job == "linux.Debian11-amd64"
    assert result.producer == "BuildPackages.linux.Debian11-amd64"
    assert result.outputs == {"build.VERSION": "1.5.0"}

    call = fake.calls[0]
    assert call["run"] == "make amd64"
    assert call["env"]["E2EBUILD"] == "true"
    assert call["env"]["CONFIGURATION"] == "Release"
    assert call["env"]["OS_IOTEDGE"] == "debian11"
    assert call["env"]["ARCH"] == "overridden"
    assert call["env"]["EXTRA"] == "debian11"
    assert call["env"]["EDGECI_JOB"] == "linux.Debian11-amd64"
    assert call["env"]["EDGECI_RUN_ID"] == "run1"
    assert call["timeout"] <= 60 * 60


def test_failed_step_skips_the_rest_except_always_steps(tmp_path, fake):
    fake.script["build"] = CollaboratorResult(exit_code=3, stderr="boom")
    j = job("linux", sh("build", "make"), sh("package", "make pkg"), sh("cleanup", "rm -rf out", always=True))

    result = _dispatcher(tmp_path, fake).dispatch(j, stage="Build")

    assert result.status is JobStatus.FAILED
    assert fake.steps() == ["build", "cleanup"]
    assert [(s.name, s.status) for s in result.steps] == [
        ("build", "failed"),
        ("package", "skipped"),
        ("cleanup", "succeeded"),
    ]
    assert result.steps[0].exit_code == 3
    assert "step_failed" in result.error
    assert not result.ok


def test_continue_on_error_keeps_the_stage_green(tmp_path, fake):
    fake.script["flaky"] = CollaboratorResult(exit_code=1)
    j = job("tests", sh("flaky", "run-tests"), continue_on_error=True)

    result = _dispatcher(tmp_path, fake).dispatch(j, stage="Test")

    assert result.status is JobStatus.FAILED
    assert result.ok


def test_false_job_condition_skips_without_invoking(tmp_path, fake):
    j = job("snap", sh("build", "snapcraft"), condition=eq(param("E2EBuild"), False))

    result = _dispatcher(tmp_path, fake, parameters={"E2EBuild": True}).dispatch(j, stage="BuildPackages")

    assert result.status is JobStatus.SKIPPED
    assert result.ok
    assert fake.calls == []


def test_unresolvable_job_condition_fails_the_job(tmp_path, fake):
    j = job("snap", sh("build", "snapcraft"), condition=eq(param("Missing"), False))

    result = _dispatcher(tmp_path, fake).dispatch(j, stage="BuildPackages")

    assert result.status is JobStatus.FAILED
    assert "unknown parameter" in result.error
    assert fake.calls == []


def test_step_conditions_see_matrix_bindings_and_job_variables(tmp_path, fake):
    fake.script["set_version"] = CollaboratorResult(exit_code=0, variables={"VERSION": "1.5.0"})
    j = job(
        "linux",
        sh("set_version", "echo"),
        sh("amd64_only", "make", condition=eq(var("arch"), "amd64")),
        sh("versioned", "make $(VERSION)", condition=eq(var("VERSION"), "1.5.0")),
    )

    result = _dispatcher(tmp_path, fake).dispatch(j, {"arch": "arm32v7"}, stage="Build", instance="arm32v7")

    assert result.status is JobStatus.SUCCEEDED
    assert fake.steps() == ["set_version", "versioned"]
    assert fake.calls[1]["run"] == "make 1.5.0"
    assert fake.calls[1]["env"]["VERSION"] == "1.5.0"
    assert result.steps[1].status == "skipped"


def test_timeout_fails_the_job(tmp_path, fake):
    def hang(step, env, cwd, timeout):
        raise subprocess.TimeoutExpired(step.run, timeout)

    fake.script["build"] = hang
    j = job("linux", sh("build", "sleep 600"), sh("after", "true"), timeout_minutes=0.01)

    result = _dispatcher(tmp_path, fake).dispatch(j, stage="Build")

    assert result.status is JobStatus.FAILED
    assert result.error.startswith("timeout:")
    assert fake.steps() == ["build"]
    assert fake.calls[0]["timeout"] <= 0.6


def test_stage_timeout_applies_when_job_has_none(tmp_path, fake):
    j = job("linux", sh("build", "make"))
    stage = Stage("Build", jobs=[j], timeout_minutes=5)

    _dispatcher(tmp_path, fake).dispatch(j, stage=stage)

    assert 0 < fake.calls[0]["timeout"] <= 300


def test_collaborator_errors_are_attributed_to_the_job(tmp_path, fake):
    def broken(step, env, cwd, timeout):
        raise JobExecutionError(kind="docker_unavailable", job="", step=step.name, message="Docker is not available")

    fake.script["image"] = broken
    result = _dispatcher(tmp_path, fake).dispatch(job("images", sh("image", "build")), stage="BuildImages")

    assert result.status is JobStatus.FAILED
    assert "docker_unavailable" in result.error
    assert "job=images" in result.error


def test_unexpected_collaborator_exception_takes_the_failure_path(tmp_path, fake):
    def crash(step, env, cwd, timeout):
        raise RuntimeError("collaborator bug")

    fake.script["build"] = crash
    j = job("linux", sh("build", "make"), sh("package", "make pkg"), sh("cleanup", "rm -rf out", always=True))

    result = _dispatcher(tmp_path, fake).dispatch(j, stage="Build", instance="amd64")

    assert result.status is JobStatus.FAILED
    assert "collaborator_error" in result.error
    assert "RuntimeError: collaborator bug" in result.error
    assert fake.steps() == ["build", "cleanup"]
    assert [(s.name, s.status) for s in result.steps] == [
        ("build", "failed"),
        ("package", "skipped"),
        ("cleanup", "succeeded"),
    ]
    log = result.artifacts[-1]
    assert log.name == LOG_ARTIFACT
    assert "collaborator bug" in log.files["linux.amd64.log"].read_text()


def test_always_steps_get_a_cleanup_budget_after_a_timeout(tmp_path, fake):
    import time

    def slow(step, env, cwd, timeout):
        time.sleep(0.1)
        raise subprocess.TimeoutExpired(step.run, timeout)

    fake.script["check_usage"] = slow
    j = job(
        "compare",
        sh("check_usage", "check.sh"),
        sh("cleanup", "docker system prune -f", always=True),
        timeout_minutes=0.001,
    )

    result = _dispatcher(tmp_path, fake, cleanup_timeout_minutes=2).dispatch(j, stage="Compatibility")

    assert result.status is JobStatus.FAILED
    assert result.error.startswith("timeout:")
    assert fake.steps() == ["check_usage", "cleanup"]
    assert 60 < fake.calls[1]["timeout"] <= 120
    assert (result.steps[1].name, result.steps[1].status) == ("cleanup", "succeeded")


def test_always_steps_after_a_plain_failure_keep_the_job_deadline(tmp_path, fake):
    fake.script["build"] = CollaboratorResult(exit_code=1)
    j = job("linux", sh("build", "make"), sh("cleanup", "rm -rf out", always=True), timeout_minutes=30)

    _dispatcher(tmp_path, fake, cleanup_timeout_minutes=2).dispatch(j, stage="Build")

    assert 120 < fake.calls[1]["timeout"] <= 30 * 60


def test_unknown_step_kind_fails_the_job(tmp_path, fake):
    j = job("x", Step(name="deploy", run="go", kind="helm"))

    result = _dispatcher(tmp_path, fake).dispatch(j, stage="Deploy")

    assert result.status is JobStatus.FAILED
    assert "unknown_step_kind" in result.error


def test_missing_working_directory(tmp_path, fake):
    j = job("x", sh("build", "make", cwd="does/not/exist"))

    result = _dispatcher(tmp_path, fake).dispatch(j, stage="Build")

    assert result.status is JobStatus.FAILED
    assert "cwd_not_found" in result.error


def test_artifacts_are_collected_from_staging(tmp_path, fake):
    fake.script["build"] = _write("out/iotedge_1.5.0_amd64.deb")
    j = job(
        "linux",
        sh("build", "make"),
        artifacts=[artifact("iotedged-$(os.iotedge)-$(arch)", "$(edgeci.staging)/out", "*.deb")],
    )

    result = _dispatcher(tmp_path, fake).dispatch(
        j, {"arch": "amd64", "os.iotedge": "debian11"}, stage="BuildPackages", instance="Debian11-amd64"
    )

    names = [a.name for a in result.artifacts]
    assert names == ["iotedged-debian11-amd64", LOG_ARTIFACT]
    pkg = result.artifacts[0]
    assert pkg.producer == "BuildPackages.linux.Debian11-amd64"
    assert list(pkg.files) == ["iotedge_1.5.0_amd64.deb"]
    assert result.artifact_records[0].published


def test_missing_required_artifact_fails_the_job(tmp_path, fake):
    j = job("linux", sh("build", "make"), artifacts=[artifact("pkgs", "$(edgeci.staging)/nothing")])

    result = _dispatcher(tmp_path, fake).dispatch(j, stage="Build")

    assert result.status is JobStatus.FAILED
    assert "artifact_missing" in result.error
    assert result.artifact_records[0].published is False


def test_publish_always_artifacts_survive_failures(tmp_path, fake):
    def fail_after_logging(step, env, cwd, timeout):
        _write("logs/compat.log")(step, env, cwd, timeout)
        return CollaboratorResult(exit_code=1)

    fake.script["check"] = fail_after_logging
    j = job(
        "compare",
        sh("check", "check-for-updates.sh"),
        artifacts=[
            artifact("compatibility-logs", "$(edgeci.staging)/logs", publish_always=True),
            artifact("binaries", "$(edgeci.staging)/bin"),
        ],
    )

    result = _dispatcher(tmp_path, fake).dispatch(j, stage="Compatibility")

    assert result.status is JobStatus.FAILED
    published = {a.name for a in result.artifacts}
    assert published == {"compatibility-logs", LOG_ARTIFACT}
    binaries = [r for r in result.artifact_records if r.name == "binaries"][0]
    assert binaries.reason == "job failed"


def test_missing_publish_always_artifact_is_recorded_not_fatal(tmp_path, fake):
    j = job("linux", sh("build", "make"), artifacts=[artifact("logs", "$(edgeci.staging)/logs", publish_always=True)])

    result = _dispatcher(tmp_path, fake).dispatch(j, stage="Build")

    assert result.status is JobStatus.SUCCEEDED
    assert result.artifact_records[0].published is False
    assert result.artifact_records[0].reason.startswith("path not found")


def test_artifact_condition(tmp_path, fake):
    fake.script["build"] = _write("out/a.deb")
    j = job(
        "linux",
        sh("build", "make"),
        artifacts=[artifact("pkgs-$(arch)", "$(edgeci.staging)/out", condition=eq(var("arch"), "amd64"))],
    )
    d = _dispatcher(tmp_path, fake)

    arm = d.dispatch(j, {"arch": "arm32v7"}, stage="Build", instance="arm32v7")
    amd = d.dispatch(j, {"arch": "amd64"}, stage="Build", instance="amd64")

    assert [a.name for a in arm.artifacts] == [LOG_ARTIFACT]
    assert arm.artifact_records[0].reason == "condition is false"
    assert arm.status is JobStatus.SUCCEEDED
    assert [a.name for a in amd.artifacts] == ["pkgs-amd64", LOG_ARTIFACT]


def test_console_log_is_always_written(tmp_path, fake):
    fake.script["build"] = CollaboratorResult(exit_code=2, stdout="compiling\n", stderr="error: nope\n")

    result = _dispatcher(tmp_path, fake).dispatch(job("linux", sh("build", "make")), stage="Build", instance="amd64")

    log = result.artifacts[-1]
    assert log.name == LOG_ARTIFACT
    assert log.publish_always
    text = log.files["linux.amd64.log"].read_text()
    assert "compiling" in text
    assert "[stderr] error: nope" in text
    assert "##[result] failed" in text


def test_real_shell_markers(tmp_path):
    d = Dispatcher(repo_root=tmp_path, work_dir=tmp_path / "work", run_id="run1")
    j = job(
        "check",
        sh("detect", "echo '##edgeci[output name=CHANGES]true'"),
        sh("uses_env", "test \"$EDGECI_STAGE\" = Check && echo '##edgeci[variable name=seen]yes'"),
        sh("show", "echo $(seen)"),
    )

    result = d.dispatch(j, stage="Check")

    assert result.status is JobStatus.SUCCEEDED, result.error
    assert result.outputs == {"detect.CHANGES": "true"}
    assert "yes" in result.artifacts[-1].files["check.log"].read_text()


@pytest.mark.parametrize("code", [1, 127])
def test_real_shell_failure(tmp_path, code):
    d = Dispatcher(repo_root=tmp_path, work_dir=tmp_path / "work", run_id="run1")

    result = d.dispatch(job("x", sh("fail", f"exit {code}")), stage="S")

    assert result.status is JobStatus.FAILED
    assert result.steps[0].exit_code == code
