# edgeci_pipeline.py
from edgeci import (
    artifact,
    build_pipeline,
    bundle,
    declare_output,
    detect_changes_step,
    eq,
    job,
    matrix,
    or_,
    output,
    param,
    parameter,
    sh,
    source,
    stage,
)

RUNTIME_CHANGES = "CheckBuildImages.check_source_change_runtime.check_files.RUNTIMECHANGES"


def pipeline():
    return build_pipeline(
        "local-images",
        stage(
            "CheckBuildImages",
            job(
                "check_source_change_runtime",
                detect_changes_step(
                    "check_files",
                    "RUNTIMECHANGES",
                    ["test/Microsoft.Azure.Devices.Edge.Test", "doc", "edgelet"],
                ),
            ),
            outputs=[declare_output("check_source_change_runtime.check_files.RUNTIMECHANGES", default=True)],
        ),
        stage(
            "BuildExecutables",
            job(
                "dotnet",
                sh("build", "mkdir -p '$(edgeci.staging)/publish' && echo agent > '$(edgeci.staging)/publish/agent.dll'"),
                artifacts=[artifact("dotnet_artifacts", "$(edgeci.staging)/publish")],
            ),
            job(
                "api_proxy",
                sh(
                    "build",
                    "mkdir -p '$(edgeci.staging)/out/$(arch)' && echo $(arch) > '$(edgeci.staging)/out/$(arch)/api-proxy'",
                ),
                matrix=matrix(
                    x86_64={"arch": "x86_64"},
                    armv7l={"arch": "armv7l"},
                    aarch64={"arch": "aarch64"},
                ),
                artifacts=[artifact("api_proxy", "$(edgeci.staging)/out")],
            ),
            depends_on=["CheckBuildImages"],
            condition=or_(eq(param("E2EBuild"), False), eq(output(RUNTIME_CHANGES), True)),
        ),
        stage(
            "ConsolidateArtifacts",
            job("list", sh("list", "find '$(bundles.consolidated_artifacts)' -type f | sort")),
            depends_on=["BuildExecutables"],
            consumes=[bundle("consolidated_artifacts", "dotnet_artifacts", source("api_proxy", "api_proxy"))],
        ),
        parameters=[parameter("E2EBuild", default=False)],
    )
