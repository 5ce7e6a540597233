# cli.py
from __future__ import annotations

import json
import subprocess
import sys
from pathlib import Path

import click

from .cache import DiskBackend
from .config import load_workflow
from .dag import build
from .git_facts.git import get_remote_url, head_sha
from .errors import ConfigError, ReportError
from .model import Event, EventKind
from .report import StatusReporter
from .runner import event_from_git, start_run
from .settings import Settings
from .toolchain import HostProvisioner, RustupProvisioner
from .trigger import explain
from .ui.console import Console, get_console, set_console

EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130

EVENT_CHOICES = [k.value for k in EventKind] + ["workflow_dispatch"]


def find_workflow_files(directory: Path = Path(".")) -> list[Path]:
    """
    Find all workflow files in a directory.

    Returns:
        gateci_workflow.py first (if present), then other *_workflow.py files
    """
    workflow_files = []
    default_workflow = directory / "gateci_workflow.py"
    if default_workflow.exists():
        workflow_files.append(default_workflow)
    for path in sorted(directory.glob("*_workflow.py")):
        if path != default_workflow:
            workflow_files.append(path)
    return workflow_files


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Resolve the workflow file from the --workflow argument or by discovery.

    Raises:
        SystemExit: (2) if no workflow, or more than one, can be found
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and not workflow_path.suffix:
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  gateci run --workflow my_workflow.py",
            )
            sys.exit(EXIT_CONFIG)
        return workflow_path

    workflow_files = find_workflow_files()

    if not workflow_files:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", "  gateci_workflow.py", "  *_workflow.py"],
            suggestion="Create gateci_workflow.py, or pass a .py/.toml/.json file:\n  gateci run --workflow ci.toml",
        )
        sys.exit(EXIT_CONFIG)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[str(f) for f in workflow_files],
            suggestion="Specify a workflow explicitly:\n  gateci run --workflow gateci_workflow.py",
        )
        sys.exit(EXIT_CONFIG)

    return workflow_files[0]


def _config_failed(e: ConfigError) -> None:
    details = [f"job: {e.job}"] if e.job else []
    if e.step:
        details.append(f"step: {e.step}")
    for k, v in e.details.items():
        if isinstance(v, list):
            details.extend(str(x) for x in v)
        else:
            details.append(f"{k}: {v}")
    get_console().print_error("Invalid workflow", e.message, details=details or None)
    sys.exit(EXIT_CONFIG)


def status_context(wf_name: str, event: Event, repo_root: str) -> dict:
    """Context attached to a reported run status: workflow, event and commit."""
    context = {"workflow": wf_name, "event": event.kind.value, "ref": event.ref}
    try:
        context["sha"] = head_sha(cwd=repo_root)
        context["repository"] = get_remote_url("origin", cwd=repo_root)
    except (subprocess.CalledProcessError, FileNotFoundError):
        # not a git checkout
        pass
    return context


def _make_event(event: str, changed_paths, git_diff: bool, compare_ref: str, repo_root: str) -> Event:
    if git_diff:
        return event_from_git(event, compare_ref=compare_ref, cwd=repo_root)
    return Event(kind=EventKind.parse(event), changed_paths=frozenset(changed_paths))


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """gateci: trigger-filtered, cache-aware CI runner."""
    set_console(Console(debug=debug))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.py, .toml or .json); defaults to gateci_workflow.py")
@click.option("--event", "event_kind", type=click.Choice(EVENT_CHOICES), default="push", show_default=True,
              help="Event kind that triggers the run")
@click.option("--changed-path", "changed_paths", multiple=True, help="Changed file path (repeatable)")
@click.option("--git-diff/--no-git-diff", default=False, help="Take changed paths from the local git checkout")
@click.option("--compare-ref", default="origin/main", show_default=True, help="Git ref to diff against")
@click.option("--repo-root", default=".", show_default=True, help="Working tree the jobs run in")
@click.option("--cache-dir", default=None, help="Local cache directory (env: GATECI_CACHE_DIR)")
@click.option("--redis-url", default=None, help="Use a Redis cache backend (env: GATECI_REDIS_URL)")
@click.option("--workers", default=None, type=click.IntRange(min=1), help="Number of parallel nodes")
@click.option("--timeout", "step_timeout", default=None, type=click.FloatRange(min=0, min_open=True),
              help="Per-step wall-clock budget in seconds")
@click.option("--no-cache", is_flag=True, default=False, help="Skip cache restore and save")
@click.option("--install-toolchains", is_flag=True, default=False,
              help="Install toolchains with rustup instead of using the ones on PATH")
@click.option("--stream", is_flag=True, default=False, help="Stream command output while jobs run")
@click.option("--show-logs", is_flag=True, default=False, help="Print the captured logs of failed jobs")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the run status as JSON on stdout")
@click.option("--status-url", default=None, help="POST the run status to this URL")
@click.option("--status-token", default=None, envvar="GATECI_STATUS_TOKEN", help="Bearer token for --status-url")
@click.pass_context
def run(ctx, workflow, event_kind, changed_paths, git_diff, compare_ref, repo_root, cache_dir, redis_url,
        workers, step_timeout, no_cache, install_toolchains, stream, show_logs, as_json, status_url, status_token):
    """Run a gateci workflow for one event."""
    if as_json:
        # keep stdout for the JSON document
        set_console(Console(debug=ctx.obj.get("debug", False), stream=sys.stderr))
    console = get_console()

    workflow_path = discover_workflow(workflow)

    try:
        settings = Settings.from_env().override(
            cache_dir=cache_dir,
            redis_url=redis_url,
            workers=workers,
            step_timeout=step_timeout,
        )
        wf = load_workflow(workflow_path)
        event = _make_event(event_kind, changed_paths, git_diff, compare_ref, repo_root)
    except ConfigError as e:
        _config_failed(e)
    except (subprocess.CalledProcessError, FileNotFoundError) as e:
        console.print_error(
            "Could not read git changes",
            str(e),
            suggestion="Run inside a git checkout or pass --changed-path explicitly.",
        )
        sys.exit(EXIT_FAILED)

    console.print_debug(f"workflow={workflow_path} event={event.kind.value} changed={sorted(event.changed_paths)}")

    handle = start_run(
        wf,
        event,
        group=event.ref,
        repo_root=repo_root,
        settings=settings,
        provisioner=RustupProvisioner() if install_toolchains else HostProvisioner(),
        stream_output=stream,
        use_cache=not no_cache,
    )
    try:
        result = handle.wait()
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user, cancelling jobs...")
        handle.cancel()
        try:
            handle.wait()
        except Exception as e:
            console.print_exception(e)
        sys.exit(EXIT_INTERRUPTED)
    except ConfigError as e:
        _config_failed(e)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)

    if result is None:
        if as_json:
            click.echo(json.dumps({"overall_status": "skipped", "jobs": []}))
        return

    console.print_results(result)
    if show_logs:
        for r in result.job_results:
            if not r.ok:
                console.print_logs(r.job_name, r.logs)
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))

    if status_url:
        try:
            StatusReporter(status_url, token=status_token).report(
                result, context=status_context(wf.name, event, repo_root)
            )
        except ReportError as e:
            console.print_warning(f"could not deliver run status: {e.message}")

    if not result.passed:
        sys.exit(EXIT_FAILED)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.py, .toml or .json); defaults to gateci_workflow.py")
@click.option("--event", "event_kind", type=click.Choice(EVENT_CHOICES), default=None,
              help="Also evaluate the trigger for this event kind")
@click.option("--changed-path", "changed_paths", multiple=True, help="Changed file path (repeatable)")
def plan(workflow, event_kind, changed_paths):
    """Validate a workflow and print its execution graph."""
    console = get_console()
    workflow_path = discover_workflow(workflow)

    try:
        wf = load_workflow(workflow_path)
        graph = build(wf.jobs)
    except ConfigError as e:
        _config_failed(e)

    console.print_header(f"PLAN: {wf.name} ({len(graph)} node(s))")
    for node in graph:
        console.print_plan_job(node.index, node.name, [f"{s.name} [{s.kind.value}]" for s in node.steps])

    if event_kind:
        event = Event(kind=EventKind.parse(event_kind), changed_paths=frozenset(changed_paths))
        trigger = wf.trigger_for(event.kind)
        if trigger is None:
            console.print_info(f"\n{event.kind.value}: not a trigger of this workflow, would skip")
            return
        runs, relevant = explain(event, trigger.path_filter)
        if runs:
            console.print_info(f"\n{event.kind.value}: would run")
            for p in relevant:
                console.print_info(f"  changed: {p}")
        else:
            console.print_info(f"\n{event.kind.value}: would skip (every changed path is ignored)")


@cli.group()
def cache():
    """Inspect and maintain the local artifact cache."""


@cache.command("prune")
@click.option("--cache-dir", default=None, help="Local cache directory (env: GATECI_CACHE_DIR)")
@click.option("--keep", default=None, type=click.IntRange(min=0), help="Artifacts to keep per prefix")
@click.option("--prefix", "prefixes", multiple=True, help="Only prune these prefixes (default: all)")
def cache_prune(cache_dir, keep, prefixes):
    """Delete all but the newest artifacts of each cache prefix."""
    console = get_console()
    try:
        settings = Settings.from_env().override(cache_dir=cache_dir, cache_keep=keep)
    except ConfigError as e:
        _config_failed(e)

    backend = DiskBackend(settings.cache_dir)
    total = 0
    for prefix in prefixes or backend.prefixes():
        removed = backend.prune(prefix, keep=settings.cache_keep)
        total += len(removed)
        console.print_debug(f"{prefix}: removed {len(removed)}")
    console.print_info(f"Removed {total} artifact(s) from {backend.root}")


if __name__ == "__main__":
    cli()
