# cli.py
from __future__ import annotations

import json
import os
import sys
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List

import click

from pipewright.dag import topo_levels
from pipewright.dispatcher import Dispatcher, ScheduleTimer, resolve_inputs
from pipewright.errors import CycleDetected, ParseError
from pipewright.git import local_facts
from pipewright.model import Event, RunStatus, Workflow
from pipewright.parser import WORKFLOW_SUFFIXES, load_workflow, load_workflows
from pipewright.runner import RetryPolicy, WorkflowRunner, expand_jobs
from pipewright.settings import Settings
from pipewright.ui.console import Console, get_console, set_console


def find_workflow_files(settings: Settings) -> list[Path]:
    """
    Workflow documents in the workflows directory plus `*_workflow.py`
    files in the current directory.
    """
    files: list[Path] = []
    if settings.workflows_dir.is_dir():
        files.extend(p for p in settings.workflows_dir.iterdir() if p.suffix in WORKFLOW_SUFFIXES)
    files.extend(Path(".").glob("*_workflow.py"))
    return sorted(files)


def discover_workflow(workflow_arg: str | None, settings: Settings) -> Path:
    """
    Resolve the workflow file to use.

    Raises:
        SystemExit: If the workflow cannot be found or the choice is ambiguous
    """
    console = get_console()

    if workflow_arg:
        path = Path(workflow_arg)
        if not path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Specify an existing .yml, .yaml or .py workflow file.",
            )
            sys.exit(1)
        return path

    files = find_workflow_files(settings)
    if not files:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", f"  {settings.workflows_dir}/*.yml", "  *_workflow.py"],
            suggestion="Create a workflow file or pass one explicitly:\n  pipewright run path/to/workflow.yml",
        )
        sys.exit(1)
    if len(files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[str(f) for f in files],
        )
        sys.exit(1)
    return files[0]


def parse_pairs(values: Iterable[str], what: str, *, env_fallback: bool = False) -> Dict[str, str]:
    """`KEY=VALUE` options to a dict. With env_fallback, a bare `KEY` reads os.environ."""
    out: Dict[str, str] = {}
    for item in values:
        if "=" in item:
            key, value = item.split("=", 1)
        elif env_fallback and item in os.environ:
            key, value = item, os.environ[item]
        else:
            raise click.BadParameter(f"expected KEY=VALUE, got {item!r}", param_hint=what)
        out[key] = value
    return out


def read_payload(path: str | None) -> Dict[str, Any]:
    if not path:
        return {}
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"{path} is not valid JSON: {e}", param_hint="--payload") from e
    if not isinstance(data, dict):
        raise click.BadParameter(f"{path} must hold a JSON object", param_hint="--payload")
    return data


def build_event(name: str, payload: Dict[str, Any], ref: str | None, sha: str | None) -> Event:
    """Event from CLI options; ref/sha default to the local checkout."""
    facts: Dict[str, str] = {}
    if ref is None or sha is None:
        facts = local_facts()
        if facts:
            get_console().print_debug(f"git: ref={facts['ref']} sha={facts['sha']}")
    if ref and not ref.startswith("refs/"):
        ref = f"refs/heads/{ref}"
    # a payload that carries its own ref/sha wins over the local checkout
    if not ref and not payload.get("ref"):
        ref = facts.get("ref") or None
    if not sha and not payload.get("after"):
        sha = facts.get("sha") or None
    return Event(
        name=name,
        payload=payload,
        ref=ref,
        sha=sha,
        repository=facts.get("repository") or None,
    )


def make_runner(settings: Settings, *, workers, fail_fast, secrets, retries=1) -> WorkflowRunner:
    return WorkflowRunner(
        max_workers=workers if workers is not None else settings.max_workers,
        fail_fast=fail_fast,
        skipped_needs_pass=settings.skipped_needs_pass,
        retry=RetryPolicy(max_attempts=retries),
        workspace=settings.workspace,
        secrets=secrets,
    )


def report_load_error(path: Any, e: Exception) -> None:
    console = get_console()
    if isinstance(e, CycleDetected):
        console.print_error("Dependency cycle", f"{path}: {e}")
    elif isinstance(e, ParseError):
        console.print_error("Invalid workflow", str(e))
    else:
        console.print_error("Failed to load workflow", f"Could not load workflow from {path}", details=[str(e)])
        console.print_exception(e)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """pipewright: run GitHub-Actions-style workflows locally."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["settings"] = Settings.from_env()


@cli.command()
@click.argument("files", nargs=-1, type=click.Path(exists=True, dir_okay=False))
@click.option("--strict/--no-strict", default=None, help="Treat unknown keys as errors")
@click.pass_context
def validate(ctx, files, strict):
    """Parse workflows and check their job graphs."""
    console = get_console()
    settings: Settings = ctx.obj["settings"]
    strict = settings.strict if strict is None else strict
    paths = [Path(f) for f in files] or find_workflow_files(settings)
    if not paths:
        console.print_error("No workflow file found", "Nothing to validate.")
        sys.exit(1)

    failed = 0
    for path in paths:
        try:
            wf = load_workflow(path, strict=strict)
            topo_levels(list(wf.jobs.values()))
            console.print_info(f"OK  {path}: '{wf.name}' ({len(wf.jobs)} job(s))")
        except (ParseError, CycleDetected, ValueError, TypeError, FileNotFoundError) as e:
            failed += 1
            report_load_error(path, e)
    if failed:
        sys.exit(1)


@cli.command()
@click.argument("workflow", required=False)
@click.pass_context
def plan(ctx, workflow):
    """Show the stages a workflow would run in."""
    console = get_console()
    settings: Settings = ctx.obj["settings"]
    path = discover_workflow(workflow, settings)
    try:
        wf = load_workflow(path, strict=settings.strict)
        levels = topo_levels(list(wf.jobs.values()))
    except (ParseError, CycleDetected, ValueError, TypeError) as e:
        report_load_error(path, e)
        sys.exit(1)

    console.print_header(f"Plan: {wf.name}")
    console.print_info("Triggers: " + ", ".join(t.event for t in wf.triggers))
    console.print_plan(levels)
    for ex in expand_jobs(wf):
        if ex.job.needs:
            reason = "needs " + ", ".join(ex.job.needs)
        else:
            reason = "no dependencies"
        if ex.job.condition:
            reason += f"; if: {ex.job.condition}"
        console.print_plan_job(ex.key, reason)


def build_dispatcher(workflows: List[Workflow], runner: WorkflowRunner, settings: Settings) -> tuple[Dispatcher, int]:
    """Register workflows one by one; a workflow that can never run is reported and left out."""
    dispatcher = Dispatcher(runner=runner, default_ref=settings.default_ref)
    rejected = 0
    for wf in workflows:
        try:
            dispatcher.register(wf)
        except (ParseError, CycleDetected, ValueError) as e:
            report_load_error(wf.source or wf.name, e)
            rejected += 1
    return dispatcher, rejected


def _finish(results: List[Any]) -> None:
    if any(r.status is not RunStatus.SUCCEEDED for r in results):
        sys.exit(1)


@cli.command()
@click.argument("workflow", required=False)
@click.option("--event", "event_name", default="push", show_default=True, help="Event type that starts the run")
@click.option("--payload", default=None, type=click.Path(exists=True, dir_okay=False), help="JSON event payload")
@click.option("--ref", default=None, help="Git ref (defaults to the current branch)")
@click.option("--sha", default=None, help="Commit sha (defaults to HEAD)")
@click.option("--input", "inputs", multiple=True, help="workflow_dispatch input KEY=VALUE")
@click.option("--secret", "secrets", multiple=True, help="Secret KEY=VALUE, or KEY to read it from the environment")
@click.option("--workers", default=None, type=int, help="Maximum concurrently running jobs")
@click.option("--fail-fast/--no-fail-fast", default=False, help="Stop starting new jobs after the first failure")
@click.option("--retries", default=1, show_default=True, type=int, help="Attempts per step")
@click.option("--strict/--no-strict", default=None, help="Treat unknown keys as errors")
@click.option("--quiet", is_flag=True, default=False, help="Do not echo step output")
@click.pass_context
def run(ctx, workflow, event_name, payload, ref, sha, inputs, secrets, workers, fail_fast, retries, strict, quiet):
    """Run one workflow for an event."""
    console = get_console()
    console.show_logs = not quiet
    settings: Settings = ctx.obj["settings"]
    strict = settings.strict if strict is None else strict
    path = discover_workflow(workflow, settings)

    try:
        wf: Workflow = load_workflow(path, strict=strict)
    except (ParseError, CycleDetected, ValueError, TypeError) as e:
        report_load_error(path, e)
        sys.exit(1)

    try:
        event = build_event(event_name, read_payload(payload), ref, sha)
        given = parse_pairs(inputs, "--input")
        run_inputs: Dict[str, Any] = dict(given)
        manual = wf.triggers_for("workflow_dispatch")
        if event_name == "workflow_dispatch" and manual:
            run_inputs = resolve_inputs(manual[0].inputs, given)
        elif not any(t.matches(event) for t in wf.triggers) and event_name not in ("workflow_dispatch", "schedule"):
            console.print_warning(f"'{wf.name}' has no trigger matching event '{event_name}'; running anyway")

        runner = make_runner(settings, workers=workers, fail_fast=fail_fast,
                             secrets=parse_pairs(secrets, "--secret", env_fallback=True), retries=retries)
        result = runner.run(wf, event, inputs=run_inputs)
        _finish([result])
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except CycleDetected as e:
        report_load_error(path, e)
        sys.exit(1)
    except ValueError as e:
        console.print_error("Invalid run request", str(e))
        sys.exit(1)


@cli.command()
@click.argument("event_name")
@click.option("--payload", default=None, type=click.Path(exists=True, dir_okay=False), help="JSON event payload")
@click.option("--dir", "directory", default=None, type=click.Path(file_okay=False), help="Workflow directory")
@click.option("--ref", default=None, help="Git ref (defaults to the current branch)")
@click.option("--sha", default=None, help="Commit sha (defaults to HEAD)")
@click.option("--secret", "secrets", multiple=True, help="Secret KEY=VALUE, or KEY to read it from the environment")
@click.option("--workers", default=None, type=int, help="Maximum concurrently running jobs per run")
@click.option("--quiet", is_flag=True, default=False, help="Do not echo step output")
@click.pass_context
def dispatch(ctx, event_name, payload, directory, ref, sha, secrets, workers, quiet):
    """Run every workflow in a directory whose triggers match an event."""
    console = get_console()
    console.show_logs = not quiet
    settings: Settings = ctx.obj["settings"]
    directory = Path(directory) if directory else settings.workflows_dir

    try:
        workflows = load_workflows(directory, strict=settings.strict)
    except (ParseError, CycleDetected, ValueError, TypeError, FileNotFoundError) as e:
        report_load_error(directory, e)
        sys.exit(1)

    try:
        runner = make_runner(settings, workers=workers, fail_fast=False,
                             secrets=parse_pairs(secrets, "--secret", env_fallback=True))
        dispatcher, rejected = build_dispatcher(workflows, runner, settings)
        runs = dispatcher.dispatch(build_event(event_name, read_payload(payload), ref, sha))
        if not runs:
            console.print_info(f"No workflow in {directory} matches event '{event_name}'")
        _finish([r.wait() for r in runs])
        if rejected:
            sys.exit(1)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)


@cli.command()
@click.option("--dir", "directory", default=None, type=click.Path(file_okay=False), help="Workflow directory")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
@click.option("--schedule/--no-schedule", default=True, show_default=True, help="Fire schedule triggers")
@click.option("--secret", "secrets", multiple=True, help="Secret KEY=VALUE, or KEY to read it from the environment")
@click.pass_context
def serve(ctx, directory, host, port, schedule, secrets):
    """Serve the webhook endpoint and fire scheduled workflows."""
    import uvicorn
    from pipewright.server.app import create_app

    console = get_console()
    settings: Settings = ctx.obj["settings"]
    directory = Path(directory) if directory else settings.workflows_dir
    try:
        workflows = load_workflows(directory, strict=settings.strict)
    except (ParseError, CycleDetected, ValueError, TypeError, FileNotFoundError) as e:
        report_load_error(directory, e)
        sys.exit(1)

    runner = make_runner(settings, workers=None, fail_fast=False,
                         secrets=parse_pairs(secrets, "--secret", env_fallback=True))
    dispatcher, _ = build_dispatcher(workflows, runner, settings)
    stop = threading.Event()
    if schedule:
        timer = ScheduleTimer(dispatcher)
        threading.Thread(
            target=timer.run_forever,
            args=(stop, settings.poll_seconds),
            name="pipewright-schedule",
            daemon=True,
        ).start()
    console.print_info(f"Loaded {len(dispatcher.workflows)} workflow(s) from {directory}")
    try:
        uvicorn.run(create_app(dispatcher), host=host, port=port, log_level="info")
    finally:
        stop.set()


if __name__ == "__main__":
    cli()
