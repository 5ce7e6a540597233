from __future__ import annotations

from ..dsl import job, sh, toolchain, use_cache
from ..model import Job, Step


def cargo_test_compile(name: str = "Compile", *, cwd: str | None = None) -> Step:
    """Build the test binaries without running them."""
    return sh(name, "cargo test --no-run", cwd=cwd)


def cargo_test(
    name: str = "Test",
    *,
    all_features: bool = True,
    threads: int | None = 1,
    cwd: str | None = None,
) -> Step:
    """
    Run the test suite. `threads` pins RUST_TEST_THREADS for this step only;
    None leaves it to the job's concurrency.
    """
    cmd = "cargo test --all-features" if all_features else "cargo test"
    env = {"RUST_TEST_THREADS": threads} if threads is not None else None
    return sh(name, cmd, cwd=cwd, env=env)


def test_job(
    name: str = "test",
    *,
    channel: str = "stable",
    cache: bool = True,
    threads: int | None = 1,
    cwd: str | None = None,
) -> Job:
    steps: list = []
    if cache:
        steps.append(use_cache())
    steps.append(cargo_test_compile(cwd=cwd))
    steps.append(cargo_test(threads=threads, cwd=cwd))
    return job(name, *steps, toolchain=toolchain(channel))
