# step_workflows/lint.py
from __future__ import annotations

from typing import Sequence

from ..dsl import job, sh, toolchain, use_cache
from ..model import Job, Step

LINT_COMPONENTS = ("rustfmt", "clippy")


# ---------------------------------------------------------------------
# Lint step helpers
# ---------------------------------------------------------------------

def cargo_fmt_check(name: str = "Run cargo fmt", *, cwd: str | None = None) -> Step:
    """Formatting gate: fails when any file is not rustfmt-clean."""
    return sh(name, "cargo fmt --all -- --check", cwd=cwd)


def cargo_clippy(
    name: str = "Run cargo clippy",
    *,
    deny: Sequence[str] = ("warnings",),
    args: str | None = None,
    cwd: str | None = None,
) -> Step:
    cmd = "cargo clippy"
    if args:
        cmd = f"{cmd} {args}"
    if deny:
        cmd = f"{cmd} -- " + " ".join(f"-D {lint}" for lint in deny)
    return sh(name, cmd, cwd=cwd)


def lint_job(
    name: str = "lint",
    *,
    channel: str = "stable",
    cache: bool = True,
    cwd: str | None = None,
) -> Job:
    """fmt + clippy on a minimal toolchain with the two lint components."""
    steps: list = []
    if cache:
        steps.append(use_cache())
    steps.append(cargo_fmt_check(cwd=cwd))
    steps.append(cargo_clippy(cwd=cwd))
    return job(name, *steps, toolchain=toolchain(channel, components=LINT_COMPONENTS))
