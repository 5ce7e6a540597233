"""Tests for whole-workflow runs: isolation, cancellation, supersession."""

import shutil
import subprocess
from pathlib import Path

import pytest

from gateci.dsl import job, on, sh, use_cache, wf
from gateci.errors import ConfigError
from gateci.git_facts.git import get_remote_url, head_sha
from gateci.model import Event, EventKind, JobStatus, RunStatus
from gateci.runner import RunRegistry, event_from_git, run_workflow, start_run
from gateci.settings import Settings

PUSH = Event(EventKind.PUSH, frozenset({"src/lib.rs"}))


@pytest.fixture
def run_kwargs(workdir: Path, home: Path, cache, provisioner, console):
    return dict(
        repo_root=workdir,
        settings=Settings(),
        cache=cache,
        provisioner=provisioner,
        console=console,
        home=home,
    )


def test_sibling_failure_does_not_affect_other_node(run_kwargs, workdir: Path) -> None:
    w = wf(
        job("a", sh("a1", "true"), sh("a2", "false"), sh("a3", "touch a3")),
        job("b", sh("b1", "true"), sh("b2", "true"), sh("b3", "true")),
    )

    result = run_workflow(w, PUSH, **run_kwargs)

    assert result.overall_status is RunStatus.FAIL
    assert result.result_for("a").exit_code == 1
    assert result.result_for("a").failed_step == "a2"
    assert result.result_for("b").exit_code == 0
    assert not (workdir / "a3").exists()


def test_results_follow_declaration_order(run_kwargs) -> None:
    w = wf(job("slow", sh("s", "sleep 0.3")), job("fast", sh("f", "true")))

    result = run_workflow(w, PUSH, **run_kwargs)

    assert [r.job_name for r in result.job_results] == ["slow", "fast"]
    assert result.passed


def test_skipped_event_returns_none(run_kwargs, console) -> None:
    w = wf(job("a", sh("x", "touch ran")), triggers=[on("push", paths_ignore=["**.md"])])
    docs = Event(EventKind.PUSH, frozenset({"README.md", "docs/a.md"}))

    assert run_workflow(w, docs, **run_kwargs) is None
    assert "RUN SKIPPED" in console.out.getvalue()


def test_invalid_workflow_starts_nothing(run_kwargs, workdir: Path) -> None:
    w = wf(job("a", sh("x", "touch ran")), job("a", sh("y", "true")))

    with pytest.raises(ConfigError):
        run_workflow(w, PUSH, **run_kwargs)
    assert not (workdir / "ran").exists()


def test_cancel_keeps_completed_save_only(run_kwargs, backend) -> None:
    w = wf(
        job("quick", use_cache(paths=["target"]), sh("Build", "mkdir -p target && echo q > target/q")),
        job("slow", use_cache(paths=["target"]), sh("Wait", "sleep 30")),
    )

    handle = start_run(w, PUSH, **run_kwargs)
    assert backend.saved.wait(timeout=20), "quick job never saved its cache"
    handle.cancel()
    result = handle.wait(timeout=20)

    assert result.result_for("quick").status is JobStatus.SUCCESS
    slow = result.result_for("slow")
    assert slow.status is JobStatus.CANCELLED
    assert slow.exit_code == 130
    assert backend.saved_prefixes() == ["quick"]
    assert result.overall_status is RunStatus.FAIL


def test_registry_supersedes_run_on_same_ref(run_kwargs) -> None:
    registry = RunRegistry()
    event = Event(EventKind.PUSH, frozenset({"src/lib.rs"}), ref="feature")
    old_wf = wf(job("old", sh("Wait", "sleep 30")))
    new_wf = wf(job("new", sh("Quick", "true")))

    first = registry.submit(old_wf, event, **run_kwargs)
    second = registry.submit(new_wf, event, **run_kwargs)

    assert first.cancelled
    assert first.wait(timeout=20).result_for("old").status is JobStatus.CANCELLED
    assert second.wait(timeout=20).passed
    assert registry.get("feature") is second
    assert second.group == "feature"


def test_registry_keeps_other_groups_running(run_kwargs) -> None:
    registry = RunRegistry()
    w = wf(job("a", sh("Quick", "true")))

    one = registry.submit(w, Event(EventKind.PUSH, ref="main"), **run_kwargs)
    two = registry.submit(w, Event(EventKind.PUSH, ref="feature"), **run_kwargs)

    assert one.wait(timeout=20).passed
    assert two.wait(timeout=20).passed
    assert not one.cancelled


def _git(cwd: Path, *args: str) -> None:
    subprocess.run(
        ["git", "-c", "user.email=ci@example.com", "-c", "user.name=ci", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
    )


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_event_from_git_uses_uncommitted_files(tmp_path: Path) -> None:
    repo = tmp_path / "checkout"
    repo.mkdir()
    _git(repo, "init", "-q")
    (repo / "README.md").write_text("hello\n")
    _git(repo, "add", "README.md")
    _git(repo, "commit", "-q", "-m", "init")
    (repo / "README.md").write_text("changed\n")
    (repo / "notes.md").write_text("new\n")

    event = event_from_git("pull_request", cwd=repo)

    assert event.kind is EventKind.PULL_REQUEST
    assert event.changed_paths == frozenset({"README.md", "notes.md"})
    assert event.ref
    assert len(head_sha(cwd=repo)) == 40
    assert get_remote_url(cwd=repo) is None


def test_registry_forgets_finished_runs(run_kwargs) -> None:
    registry = RunRegistry()
    w = wf(job("a", sh("Quick", "true")))

    first = registry.submit(w, Event(EventKind.PUSH, ref="old-branch"), **run_kwargs)
    assert first.wait(timeout=20).passed
    second = registry.submit(w, Event(EventKind.PUSH, ref="new-branch"), **run_kwargs)

    assert registry.get("old-branch") is None
    assert registry.get("new-branch") is second
    assert second.wait(timeout=20).passed
