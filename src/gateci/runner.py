# runner.py
from __future__ import annotations

import os
import subprocess
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Dict, List, Optional

from .aggregate import aggregate
from .cache import CacheManager, manager_for
from .config import load_workflow
from .dag import Graph, JobNode, build
from .executor import ExecutionEnvironment, Executor
from .git_facts.git import changed_files, current_branch, is_dirty, merge_base, repo_root, uncommitted_files
from .model import Event, EventKind, JobResult, JobStatus, RunResult, StepKind, Workflow
from .settings import Settings
from .toolchain import HostProvisioner, Provisioner
from .trigger import skip_reason
from .ui.console import Console, get_console

__all__ = [
    "RunHandle",
    "RunRegistry",
    "event_from_git",
    "execute_graph",
    "load_workflow",
    "run_workflow",
    "start_run",
]


# ----------------------------------------------------------------------
# Local events (git diff)
# ----------------------------------------------------------------------

def event_from_git(
    kind: EventKind | str = EventKind.PUSH,
    *,
    compare_ref: str = "origin/main",
    cwd: str | Path | None = None,
) -> Event:
    """
    Build an Event from the local checkout:
      - dirty tree: staged + unstaged + untracked files
      - clean tree: files changed since the merge-base with compare_ref
        (falls back to HEAD~1 when compare_ref is unavailable)
    """
    root = repo_root(cwd=cwd)
    if is_dirty(cwd=root):
        changed = uncommitted_files(cwd=root)
    else:
        try:
            base = merge_base(compare_ref, cwd=root)
        except subprocess.CalledProcessError:
            # e.g. no remote configured
            base = "HEAD~1"
        try:
            changed = changed_files(base, "HEAD", cwd=root)
        except subprocess.CalledProcessError:
            # first commit: nothing to diff against, treat as "unknown"
            changed = []
    try:
        ref = current_branch(cwd=root)
    except subprocess.CalledProcessError:
        ref = None
    return Event(kind=EventKind.parse(kind), changed_paths=frozenset(changed), ref=ref)


# ----------------------------------------------------------------------
# Execution
# ----------------------------------------------------------------------

def _crashed(node: JobNode, exc: BaseException) -> JobResult:
    return JobResult(
        job_name=node.name,
        exit_code=1,
        duration=0.0,
        status=JobStatus.ERROR,
        error=f"{type(exc).__name__}: {exc}",
    )


def execute_graph(
    graph: Graph,
    executor: Executor,
    env: ExecutionEnvironment,
    *,
    max_workers: Optional[int] = None,
) -> RunResult:
    """
    Run every node on its own worker. A failing node never stops its
    siblings; results are reported in graph order.
    """
    if max_workers is None:
        max_workers = len(graph)
    max_workers = max(1, min(max_workers, len(graph)))

    results: List[JobResult] = []
    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="gateci-node") as pool:
        futures = {pool.submit(executor.execute, node, env): node for node in graph}
        for fut in as_completed(futures):
            node = futures[fut]
            try:
                results.append(fut.result())
            except Exception as e:
                executor.console.print_exception(e)
                results.append(_crashed(node, e))

    return aggregate(results, order=graph.names())


def _prune(graph: Graph, cache: CacheManager, keep: int) -> None:
    for node in graph:
        for step in node.steps:
            if step.kind is StepKind.SAVE_CACHE:
                cache.prune(step.parameters.get("prefix") or node.name, keep=keep)


def run_workflow(
    workflow: Workflow,
    event: Event,
    *,
    repo_root: str | Path = ".",
    settings: Optional[Settings] = None,
    cache: Optional[CacheManager] = None,
    provisioner: Optional[Provisioner] = None,
    max_workers: Optional[int] = None,
    cancel_event: Optional[threading.Event] = None,
    console: Optional[Console] = None,
    stream_output: bool = False,
    use_cache: bool = True,
    home: str | Path | None = None,
) -> Optional[RunResult]:
    """
    Trigger -> graph -> parallel execution -> aggregate.

    Returns None when the event does not start a run. ConfigError from the
    graph builder propagates: no run starts.
    """
    settings = settings or Settings()
    console = console or get_console()

    reason = skip_reason(workflow, event)
    if reason is not None:
        console.print_run_skipped(workflow.name, reason)
        return None

    graph = build(workflow.jobs)

    if cache is None and use_cache:
        cache = manager_for(settings.cache_dir, settings.redis_url, console=console)
    executor = Executor(
        provisioner or HostProvisioner(),
        cache if use_cache else None,
        console=console,
        stream_output=stream_output,
    )
    env = ExecutionEnvironment(
        workdir=Path(repo_root).resolve(),
        env=dict(os.environ),
        step_timeout=settings.step_timeout,
        cancel_event=cancel_event or threading.Event(),
        concurrency_vars=settings.concurrency_vars,
        home=Path(home) if home else None,
    )

    console.print_run_started(workflow.name, event.kind.value, len(graph))
    result = execute_graph(graph, executor, env, max_workers=max_workers or settings.workers)

    if executor.cache is not None:
        _prune(graph, executor.cache, settings.cache_keep)
    return result


# ----------------------------------------------------------------------
# Background runs + supersession
# ----------------------------------------------------------------------

class RunHandle:
    """A run executing in the background."""

    def __init__(self, future: "Future[Optional[RunResult]]", cancel_event: threading.Event, group: Optional[str] = None):
        self._future = future
        self.cancel_event = cancel_event
        self.group = group
        self.started_at = time.time()

    def cancel(self) -> None:
        """Stop every in-flight node; their child processes are terminated."""
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def done(self) -> bool:
        return self._future.done()

    def wait(self, timeout: Optional[float] = None) -> Optional[RunResult]:
        return self._future.result(timeout=timeout)


def start_run(workflow: Workflow, event: Event, *, group: Optional[str] = None, **kwargs) -> RunHandle:
    """Start run_workflow() on a background thread and return its handle."""
    cancel_event = kwargs.pop("cancel_event", None) or threading.Event()
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="gateci-run")
    future = pool.submit(run_workflow, workflow, event, cancel_event=cancel_event, **kwargs)
    pool.shutdown(wait=False)
    return RunHandle(future, cancel_event, group=group)


class RunRegistry:
    """
    One live run per group (branch). Submitting a new run for a group
    cancels the run it supersedes.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._runs: Dict[str, RunHandle] = {}

    def submit(self, workflow: Workflow, event: Event, *, group: Optional[str] = None, **kwargs) -> RunHandle:
        group = group or event.ref or workflow.name
        with self._lock:
            previous = self._runs.get(group)
            if previous is not None and not previous.done():
                previous.cancel()
            # forget finished runs of other groups
            self._runs = {g: h for g, h in self._runs.items() if not h.done()}
            handle = start_run(workflow, event, group=group, **kwargs)
            self._runs[group] = handle
        return handle

    def get(self, group: str) -> Optional[RunHandle]:
        with self._lock:
            return self._runs.get(group)

    def active(self) -> List[RunHandle]:
        with self._lock:
            return [h for h in self._runs.values() if not h.done()]

    def cancel_all(self) -> None:
        for h in self.active():
            h.cancel()
