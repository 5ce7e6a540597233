# git.py
# Small, focused wrapper around the Git CLI.
# This module centralizes all Git interactions so the rest of the codebase
# never needs to call subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional


def _git(args: list[str], cwd: str | Path | None = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    This is the single low-level entry point for all Git operations in this file.

    Args:
        args: List of git arguments (e.g. ["status", "--porcelain"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError: git exited non-zero.
        FileNotFoundError: git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd else None,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def _lines(out: str) -> List[str]:
    return out.splitlines() if out else []


def repo_root(cwd: str | Path | None = None) -> Path:
    """Absolute path to the root of the current Git repository."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def head_sha(cwd: str | Path | None = None) -> str:
    """Full SHA of HEAD."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_branch(cwd: str | Path | None = None) -> str:
    """
    Current branch name, used as the supersession group of a local run.
    Detached HEAD raises CalledProcessError.
    """
    return _git(["symbolic-ref", "--short", "HEAD"], cwd=cwd)


def is_dirty(cwd: str | Path | None = None) -> bool:
    """
    Whether the working tree has modified, staged or untracked files.
    """
    # `git status --porcelain` produces stable, machine-readable output.
    return _git(["status", "--porcelain"], cwd=cwd) != ""


def uncommitted_files(cwd: str | Path | None = None) -> List[str]:
    """Staged, unstaged and untracked paths, relative to the repo root."""
    files = set()
    files.update(_lines(_git(["diff", "--name-only"], cwd=cwd)))
    files.update(_lines(_git(["diff", "--name-only", "--cached"], cwd=cwd)))
    files.update(_lines(_git(["ls-files", "--others", "--exclude-standard"], cwd=cwd)))
    return sorted(files)


def changed_files(base: str, head: str = "HEAD", cwd: str | Path | None = None) -> List[str]:
    """
    Files changed between two Git references, relative to the repo root.

    Typical usage:
        base = merge_base("origin/main")
        files = changed_files(base)
    """
    return _lines(_git(["diff", "--name-only", f"{base}..{head}"], cwd=cwd))


def merge_base(with_ref: str = "origin/main", cwd: str | Path | None = None) -> str:
    """
    Merge-base (common ancestor) between HEAD and another ref: the canonical
    starting point for "what changed on this branch".
    """
    return _git(["merge-base", "HEAD", with_ref], cwd=cwd)


def get_remote_url(remote: str = "origin", cwd: str | Path | None = None) -> Optional[str]:
    try:
        return _git(["remote", "get-url", remote], cwd=cwd)
    except subprocess.CalledProcessError:
        return None
