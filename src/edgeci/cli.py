# cli.py
from __future__ import annotations

import json
import subprocess
import sys
import urllib.error
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import click

from edgeci.changes import ChangeDetector
from edgeci.conditions import output_refs
from edgeci.errors import DefinitionError
from edgeci.git_facts.git import head_sha
from edgeci.loader import YAML_SUFFIXES, load_pipeline
from edgeci.report import load_report, post_report, report_path
from edgeci.scheduler import PipelineRun, validate_pipeline
from edgeci.settings import load_settings
from edgeci.step_workflows.detect import change_set_from_git, change_set_since
from edgeci.ui.console import Console, get_console, set_console


def find_pipeline_files() -> list[Path]:
    """
    Find all pipeline files in the current directory.

    Returns:
        List of Path objects for pipeline files
    """
    current_dir = Path(".")
    found = []

    default_pipeline = current_dir / "edgeci_pipeline.py"
    if default_pipeline.exists():
        found.append(default_pipeline)

    for path in current_dir.glob("*_pipeline.py"):
        if path != default_pipeline:
            found.append(path)
    for suffix in YAML_SUFFIXES:
        candidate = current_dir / f"edgeci{suffix}"
        if candidate.exists():
            found.append(candidate)

    return sorted(found)


def discover_pipeline(pipeline_arg: str | None) -> Path:
    """
    Discover pipeline file from argument or default.

    Raises:
        SystemExit: If the pipeline cannot be found or several candidates exist
    """
    console = get_console()

    if pipeline_arg:
        pipeline_path = Path(pipeline_arg)
        if not pipeline_path.exists() and not pipeline_path.suffix:
            pipeline_path = Path(str(pipeline_path) + ".py")
        if not pipeline_path.exists():
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {pipeline_arg}",
                suggestion="Create a pipeline file or specify a different path:\n  edgeci run --pipeline pipelines/build-images.yaml",
            )
            sys.exit(1)
        return pipeline_path

    candidates = find_pipeline_files()

    if len(candidates) == 0:
        console.print_error(
            "No pipeline file found",
            "Could not find any pipeline files.",
            details=[
                "Looked for:",
                "  edgeci_pipeline.py",
                "  *_pipeline.py",
                "  edgeci.yaml / edgeci.yml",
            ],
            suggestion="Specify a pipeline explicitly:\n  edgeci run --pipeline pipelines/build-images.yaml",
        )
        sys.exit(1)

    if len(candidates) > 1:
        console.print_error(
            "Multiple pipeline files found",
            "Found multiple pipeline files. Please specify which one to use:",
            details=[str(f) for f in candidates],
            suggestion="Specify a pipeline explicitly:\n  edgeci run --pipeline edgeci_pipeline.py",
        )
        sys.exit(1)

    return candidates[0]


def parse_params(values: Tuple[str, ...]) -> Dict[str, str]:
    params: Dict[str, str] = {}
    for item in values:
        name, sep, value = item.partition("=")
        if not sep or not name.strip():
            raise click.BadParameter(f"expected NAME=VALUE, got {item!r}", param_hint="--param")
        params[name.strip()] = value
    return params


def _change_set(changed: Tuple[str, ...], base: Optional[str], ask_git: bool) -> Optional[List[str]]:
    """
    Explicit paths win, then the diff against `base`. Without either, `run`
    leaves it to the detect steps (last commit) and `detect` asks git itself.
    """
    if changed:
        return list(changed)
    if base:
        return change_set_since(base, ".")
    return change_set_from_git(".") if ask_git else None


def _load(pipeline_path: Path, debug: bool):
    console = get_console()
    try:
        return load_pipeline(pipeline_path)
    except (DefinitionError, TypeError, ValueError) as e:
        console.print_error(
            "Failed to load pipeline",
            f"Could not load pipeline from {pipeline_path}",
            details=[str(e)],
        )
        if debug:
            import traceback
            traceback.print_exc()
        sys.exit(1)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Only print stage-level progress")
@click.pass_context
def cli(ctx, debug, quiet):
    """edgeci: dependency-gated, matrix-expanding build pipeline orchestrator."""
    console = Console(debug=debug, quiet=quiet)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--pipeline", "pipeline_file", default=None, help="Pipeline file (.py, .yaml or .yml)")
@click.option("--param", "params", multiple=True, metavar="NAME=VALUE", help="Pipeline parameter (repeatable)")
@click.option("--changed", multiple=True, metavar="PATH", help="Changed path; when omitted the last commit is asked from git")
@click.option("--base", default=None, metavar="REF", help="Diff against the merge base with REF instead of using the last commit")
@click.option("--workers", default=None, type=int, help="Number of parallel job instances per stage")
@click.option("--state-dir", default=None, help="Where run reports and work files go (default: $EDGECI_HOME or .edgeci)")
@click.option("--timeout-minutes", default=None, type=float, help="Default job timeout")
@click.option("--run-id", default=None, help="Run identifier (default: random)")
@click.option("--report-api", default=None, help="Audit service URL to post the report to")
@click.pass_context
def run(ctx, pipeline_file, params, changed, base, workers, state_dir, timeout_minutes, run_id, report_api):
    """Run a pipeline."""
    console = get_console()
    debug = ctx.obj.get("debug", False)
    settings = load_settings()

    pipeline_path = discover_pipeline(pipeline_file)
    pipeline = _load(pipeline_path, debug)

    try:
        commit = head_sha()
    except (subprocess.CalledProcessError, FileNotFoundError):
        commit = None

    try:
        pipeline_run = PipelineRun(
            pipeline,
            parameters=parse_params(params),
            run_id=run_id,
            repo_root=".",
            state_dir=state_dir or settings.home,
            change_set=_change_set(changed, base, ask_git=False),
            max_workers=workers or settings.max_workers,
            default_timeout_minutes=timeout_minutes or settings.timeout_minutes,
            cleanup_timeout_minutes=settings.cleanup_timeout_minutes,
            commit=commit,
        )
    except DefinitionError as e:
        console.print_error("Invalid pipeline", str(e), suggestion=f"Check the definition with:\n  edgeci plan --pipeline {pipeline_path}")
        sys.exit(1)

    try:
        report = pipeline_run.run()
    except KeyboardInterrupt:
        pipeline_run.cancel()
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    api = report_api or settings.report_api
    if api:
        try:
            post_report(api, report.to_dict())
            console.print_info(f"Report posted to {api}")
        except (urllib.error.URLError, json.JSONDecodeError) as e:
            console.print_warning(f"could not post report to {api}: {e}")

    if not report.succeeded:
        sys.exit(1)


@cli.command()
@click.option("--pipeline", "pipeline_file", default=None, help="Pipeline file (.py, .yaml or .yml)")
@click.option("--param", "params", multiple=True, metavar="NAME=VALUE", help="Pipeline parameter (repeatable)")
@click.pass_context
def plan(ctx, pipeline_file, params):
    """Validate a pipeline and print its stages and job instances without running anything."""
    console = get_console()
    pipeline_path = discover_pipeline(pipeline_file)
    pipeline = _load(pipeline_path, ctx.obj.get("debug", False))

    try:
        resolved = pipeline.resolve_parameters(parse_params(params))
        order, units = validate_pipeline(pipeline)
    except DefinitionError as e:
        console.print_error("Invalid pipeline", str(e))
        sys.exit(1)

    console.print_header(f"PLAN: {pipeline.name}")
    for name, value in sorted(resolved.items()):
        console.print_info(f"Parameter: {name}={value}")
    total = 0
    for name in order:
        st = pipeline.stage(name)
        console.print_plan_stage(name, st.depends_on, str(st.condition) if st.condition else None)
        for ref in output_refs(st.condition):
            console.print_debug(f"{name} reads {ref}")
        for job, inst in units[name]:
            instance_id = f"{job.name}.{inst.name}" if inst else job.name
            detail = ", ".join(f"{k}={v}" for k, v in inst.bindings.items()) if inst else ""
            console.print_plan_job(instance_id, detail)
            total += 1
    console.print_info(f"\n{len(order)} stage(s), {total} job instance(s)")


@cli.command()
@click.option("--include", "includes", multiple=True, metavar="REGEX", help="Relevant if a path matches (repeatable)")
@click.option("--exclude", "excludes", multiple=True, metavar="REGEX", help="Relevant if a path matches none (repeatable)")
@click.option("--changed", multiple=True, metavar="PATH", help="Changed path; when omitted the last commit is asked from git")
@click.option("--base", default=None, metavar="REF", help="Diff against the merge base with REF instead of using the last commit")
@click.option("--output", "output_name", default=None, help="Also print an output marker with this name")
def detect(includes, excludes, changed, base, output_name):
    """Report whether a change set contains relevant changes."""
    console = get_console()
    if bool(includes) == bool(excludes):
        raise click.UsageError("give either --include or --exclude patterns")

    detector = ChangeDetector(tuple(includes or excludes), invert=bool(includes))
    change_set = _change_set(changed, base, ask_git=True)

    if change_set is None:
        console.print_info("change set: unknown")
    else:
        console.print_info(f"change set: {len(change_set)} path(s)")
        for path in detector.relevant_paths(change_set):
            console.print_info(f"  relevant: {path}")

    found = detector.detect(change_set)
    console.print_info("true" if found else "false")
    if output_name:
        console.print_info(f"##edgeci[output name={output_name}]{'true' if found else 'false'}")


@cli.command()
@click.argument("run_id")
@click.option("--state-dir", default=None, help="Where run reports are kept (default: $EDGECI_HOME or .edgeci)")
@click.option("--api", default=None, help="Post the report to this audit service URL")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the raw JSON report")
@click.pass_context
def report(ctx, run_id, state_dir, api, as_json):
    """Show a stored run report, or post it to the audit service."""
    console = get_console()
    settings = load_settings()
    path = report_path(state_dir or settings.home, run_id)

    try:
        data = load_report(path)
    except FileNotFoundError as e:
        console.print_error("Report not found", str(e), suggestion="Run a pipeline first:\n  edgeci run --pipeline <file>")
        sys.exit(1)

    if api:
        try:
            result = post_report(api, data)
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8") if e.fp else ""
            console.print_error(
                "API request failed",
                f"HTTP {e.code} {e.reason}",
                details=[error_body] if error_body else None,
                suggestion=f"Check the API at {api} and verify your request.",
            )
            sys.exit(1)
        except urllib.error.URLError as e:
            console.print_error(
                "Network error",
                f"Could not connect to {api}",
                details=[str(e.reason)],
                suggestion="Verify the API URL is correct and the API is running.",
            )
            sys.exit(1)
        console.print_info(f"Posted run {result.get('run_id', run_id)} to {api}")
        return

    if as_json:
        console.print_info(json.dumps(data, indent=2))
        return

    console.print_header(f"RUN {data['run_id']} ({data['pipeline']})")
    console.print_results([(s["name"], s["state"]) for s in data.get("stages", [])], data.get("status", "unknown"))
    unpublished = [a for a in data.get("artifacts", []) if not a.get("published")]
    for a in unpublished:
        console.print_info(f"  unpublished artifact {a['name']} from {a['producer']}: {a.get('reason', '')}")


if __name__ == "__main__":
    cli()
