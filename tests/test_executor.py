"""Unit tests for node execution."""

import os
from pathlib import Path

from gateci.dag import build
from gateci.dsl import cmd, job, sh, toolchain, use_cache
from gateci.executor import ExecutionEnvironment, Executor
from gateci.model import JobStatus, StepKind
from gateci.toolchain import RustupProvisioner

from conftest import FakeProvisioner, MemoryBackend


def _node(j):
    return build([j]).node(j.name)


def _cached_build_job(check: str = "true"):
    return job(
        "test",
        use_cache(paths=["target"]),
        sh("Check", check),
        sh("Build", "mkdir -p target && echo built > target/out"),
        toolchain=toolchain("stable"),
    )


def test_successful_job(executor, env, provisioner, backend) -> None:
    result = executor.execute(_node(_cached_build_job()), env)

    assert result.ok
    assert result.status is JobStatus.SUCCESS
    assert result.exit_code == 0
    assert [s.name for s in provisioner.calls] == ["stable"]
    assert len(backend.puts) == 1
    assert b"$ mkdir -p target" in result.logs


def test_fail_fast_skips_rest_and_save(executor, env, backend, workdir: Path) -> None:
    j = job(
        "test",
        use_cache(paths=["target"]),
        sh("a", "true"),
        sh("b", "exit 3"),
        sh("c", "touch ran_c"),
    )

    result = executor.execute(_node(j), env)

    assert result.exit_code == 3
    assert result.status is JobStatus.COMMAND_FAILED
    assert result.failed_step == "b"
    assert not (workdir / "ran_c").exists()
    assert backend.puts == []


def test_timeout_is_distinguishable(executor, env) -> None:
    j = job("slow", sh("Sleep", "sleep 10", timeout=0.2))

    result = executor.execute(_node(j), env)

    assert result.status is JobStatus.TIMED_OUT
    assert result.exit_code == 124
    assert result.failed_step == "Sleep"


def test_job_timeout_applies_to_each_step(executor, env) -> None:
    j = job("slow", sh("Sleep", "sleep 10"), timeout=0.2)

    assert executor.execute(_node(j), env).exit_code == 124


def test_missing_toolchain_fails_before_commands(cache, console, env, workdir: Path) -> None:
    executor = Executor(FakeProvisioner(missing="cargo"), cache, console=console)
    j = job("lint", sh("fmt", "touch ran"), toolchain=toolchain("stable"))

    result = executor.execute(_node(j), env)

    assert result.status is JobStatus.PROVISION_FAILED
    assert result.exit_code == 127
    assert not (workdir / "ran").exists()


def test_concurrency_exported_to_commands(executor, env, workdir: Path) -> None:
    j = job("test", sh("Probe", "echo $RUST_TEST_THREADS > threads.txt"), concurrency=1)

    assert executor.execute(_node(j), env).ok
    assert (workdir / "threads.txt").read_text().strip() == "1"


def test_step_env_overrides_concurrency(executor, env, workdir: Path) -> None:
    j = job(
        "test",
        sh("Probe", "echo $RUST_TEST_THREADS > threads.txt", env={"RUST_TEST_THREADS": 1}),
        concurrency=4,
    )

    executor.execute(_node(j), env)

    assert (workdir / "threads.txt").read_text().strip() == "1"


def test_toolchain_env_reaches_commands(executor, env, workdir: Path) -> None:
    j = job("t", sh("Probe", "echo $GATECI_TEST_TOOLCHAIN > tc.txt"), toolchain=toolchain("nightly"))

    executor.execute(_node(j), env)

    assert (workdir / "tc.txt").read_text().strip() == "nightly"


def test_cache_hit_restores_and_skips_save(executor, env, backend, workdir: Path) -> None:
    first = executor.execute(_node(_cached_build_job()), env)
    assert not first.cache_hit
    (workdir / "target" / "out").unlink()

    second = executor.execute(_node(_cached_build_job(check="test -f target/out")), env)

    assert second.ok
    assert second.cache_hit
    assert len(backend.puts) == 1


def test_lockfile_change_is_a_miss(executor, env, backend, workdir: Path) -> None:
    executor.execute(_node(_cached_build_job()), env)
    (workdir / "Cargo.lock").write_text("# lock v2\n")

    result = executor.execute(_node(_cached_build_job()), env)

    assert not result.cache_hit
    assert len(backend.puts) == 2
    assert backend.puts[0] != backend.puts[1]


class GarbageBackend(MemoryBackend):
    def get(self, key):
        return b"garbage"


def test_corrupt_entry_behaves_like_miss(provisioner, console, env) -> None:
    from gateci.cache import CacheManager

    backend = GarbageBackend()
    executor = Executor(provisioner, CacheManager(backend, console=console), console=console)

    result = executor.execute(_node(_cached_build_job()), env)

    assert result.ok
    assert not result.cache_hit
    assert len(backend.puts) == 1


def test_no_cache_manager(provisioner, console, env) -> None:
    executor = Executor(provisioner, None, console=console)

    result = executor.execute(_node(_cached_build_job()), env)

    assert result.ok
    assert b"cache: disabled" in result.logs


def test_cancelled_before_start(executor, env, backend) -> None:
    env.cancel_event.set()

    result = executor.execute(_node(_cached_build_job()), env)

    assert result.status is JobStatus.CANCELLED
    assert result.exit_code == 130
    assert backend.puts == []


def test_missing_cwd_is_an_error(executor, env) -> None:
    j = job("t", sh("x", "true", cwd="does/not/exist"))

    result = executor.execute(_node(j), env)

    assert result.status is JobStatus.ERROR
    assert result.exit_code == 1


def test_missing_executable_exits_127(executor, env) -> None:
    j = job("t", cmd("x", "definitely-not-a-real-tool-xyz", "--flag"))

    result = executor.execute(_node(j), env)

    assert result.status is JobStatus.COMMAND_FAILED
    assert result.exit_code == 127


def test_for_node_layers_job_settings(workdir: Path) -> None:
    base = ExecutionEnvironment(workdir=workdir, env={"A": "base"}, step_timeout=100)
    j = job("t", sh("x", "true"), env={"A": "job"}, timeout=5, concurrency=2)

    layered = base.for_node(_node(j))

    assert layered.env["A"] == "job"
    assert layered.step_timeout == 5
    assert layered.concurrency == 2
    assert layered.cancel_event is base.cancel_event
    assert base.env["A"] == "base"


class TruncatingBackend(MemoryBackend):
    """Hands back only the first half of every stored artifact."""

    def get(self, key):
        data = super().get(key)
        return data[: len(data) // 2] if data else data


def test_truncated_entry_behaves_like_miss(provisioner, console, env, workdir: Path) -> None:
    from gateci.cache import CacheManager

    backend = TruncatingBackend()
    executor = Executor(provisioner, CacheManager(backend, console=console), console=console)
    (workdir / "target").mkdir()
    (workdir / "target" / "big").write_bytes(os.urandom(64 * 1024))
    executor.execute(_node(_cached_build_job()), env)

    result = executor.execute(_node(_cached_build_job()), env)

    assert result.ok
    assert not result.cache_hit
    assert b"cache: restore failed" in result.logs


def test_unusable_key_files_skip_cache_only(executor, env, backend) -> None:
    j = job("t", use_cache(paths=["target"], key_files=["/nonexistent/Cargo.lock"]), sh("Build", "true"))

    result = executor.execute(_node(j), env)

    assert result.ok
    assert not result.cache_hit
    assert backend.puts == []
    assert b"cache: no key" in result.logs


def test_unreadable_lockfile_skips_cache_only(executor, env, backend, monkeypatch) -> None:
    def _denied(path):
        raise PermissionError(13, "Permission denied", str(path))

    monkeypatch.setattr("gateci.cache._hash_file_contents", _denied)

    result = executor.execute(_node(_cached_build_job()), env)

    assert result.ok
    assert not result.cache_hit
    assert backend.puts == []


def test_toolchain_install_timeout_is_a_timeout(cache, console, env, tmp_path: Path) -> None:
    rustup = tmp_path / "rustup"
    rustup.write_text("#!/bin/sh\nsleep 30\n")
    rustup.chmod(0o755)
    executor = Executor(RustupProvisioner(rustup=str(rustup)), cache, console=console)
    j = job("lint", sh("fmt", "touch ran"), toolchain=toolchain("stable"), timeout=0.5)

    result = executor.execute(_node(j), env)

    assert result.status is JobStatus.TIMED_OUT
    assert result.exit_code == 124
    assert result.failed_step == "Install stable toolchain"


def test_unexpected_handler_error_names_the_step(executor, env) -> None:
    def _broken(node, step, env, state):
        raise RuntimeError("boom")

    executor._handlers[StepKind.RUN_COMMAND] = _broken
    j = job("t", sh("Build", "true"))

    result = executor.execute(_node(j), env)

    assert result.status is JobStatus.ERROR
    assert result.exit_code == 1
    assert result.failed_step == "Build"
    assert "RuntimeError: boom" in result.error


def test_workflow_env_reaches_commands(executor, env, workdir: Path) -> None:
    from gateci.config import workflow_from_dict

    w = workflow_from_dict({
        "env": {"RUST_TOOLCHAIN": "stable"},
        "jobs": [{"name": "a", "steps": [{"run": "echo \"$RUST_TOOLCHAIN\" > tc.txt"}]}],
    })

    assert executor.execute(build(w.jobs).node("a"), env).ok
    assert (workdir / "tc.txt").read_text().strip() == "stable"
