# toolchain.py
from __future__ import annotations

import hashlib
import json
import shlex
import shutil
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Optional, Protocol, Tuple

from .errors import ProvisionError
from .model import ToolchainSpec
from .process import run_process

TOOL_HINTS = {
    "rustup": "Install rustup (https://rustup.rs) or fix PATH.",
    "cargo": "Install a Rust toolchain with rustup or fix PATH.",
    "rustc": "Install a Rust toolchain with rustup or fix PATH.",
    "rustfmt": "Run `rustup component add rustfmt`.",
    "cargo-clippy": "Run `rustup component add clippy`.",
}

# component name -> executable it provides
COMPONENT_TOOLS = {
    "rustfmt": "rustfmt",
    "clippy": "cargo-clippy",
}

LogFn = Callable[[bytes], None]


@dataclass(frozen=True)
class ProvisionedToolchain:
    spec: ToolchainSpec
    fingerprint: str
    env: Dict[str, str] = field(default_factory=dict)


class Provisioner(Protocol):
    def provision(
        self,
        spec: ToolchainSpec,
        *,
        cwd: Path,
        env: Dict[str, str],
        cancel_event: Optional[threading.Event] = None,
        timeout: float | None = None,
        log: Optional[LogFn] = None,
    ) -> ProvisionedToolchain:
        ...


def _normalize(text: str) -> str:
    # Normalize whitespace to make hashing stable
    return " ".join(text.split())


def tool_version(tool: str, *args: str, env: Optional[Dict[str, str]] = None) -> Optional[str]:
    """
    Best-effort version discovery. Keep it simple and stable.
    """
    candidates = [list(args)] if args else [["--version"], ["-V"], ["version"]]
    for extra in candidates:
        try:
            completed = subprocess.run(
                [tool, *extra],
                text=True,
                capture_output=True,
                check=False,
                env=env,
            )
        except OSError:
            continue
        text = (completed.stdout or "").strip() or (completed.stderr or "").strip()
        if completed.returncode == 0 and text:
            return _normalize(text)
    return None


def fingerprint(spec: ToolchainSpec, versions: Dict[str, Optional[str]]) -> str:
    payload = {
        "v": 1,
        "toolchain": spec.name,
        "profile": spec.profile,
        "components": sorted(spec.components),
        "versions": versions,
    }
    blob = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()


def _hint(tool: str) -> str:
    return TOOL_HINTS.get(tool, f"Install {tool} or fix PATH.")


class RustupProvisioner:
    """
    Installs the requested toolchain with rustup and pins it for the node
    via RUSTUP_TOOLCHAIN (the equivalent of a directory override).
    """

    def __init__(self, rustup: str = "rustup", *, self_update: bool = False):
        self.rustup = rustup
        self.self_update = self_update

    def install_command(self, spec: ToolchainSpec) -> Tuple[str, ...]:
        argv = [self.rustup, "toolchain", "install", spec.name, "--profile", spec.profile]
        for comp in sorted(spec.components):
            argv.extend(["--component", comp])
        if not self.self_update:
            argv.append("--no-self-update")
        return tuple(argv)

    def provision(self, spec, *, cwd, env, cancel_event=None, timeout=None, log=None):
        if shutil.which(self.rustup, path=env.get("PATH")) is None:
            raise ProvisionError(f"{self.rustup} is not available", toolchain=spec.describe(),
                                 exit_code=127, hint=_hint("rustup"))

        res = run_process(
            shlex.join(self.install_command(spec)),
            shell=False,
            cwd=cwd,
            env=env,
            timeout=timeout,
            cancel_event=cancel_event,
            on_output=log,
        )
        if res.cancelled or res.timed_out or res.returncode != 0:
            reason = "cancelled" if res.cancelled else "timed out" if res.timed_out else f"exit {res.returncode}"
            raise ProvisionError(f"toolchain install failed ({reason})", toolchain=spec.describe(),
                                 exit_code=res.returncode if res.returncode > 0 else 1,
                                 timed_out=res.timed_out)

        pinned = dict(env)
        pinned["RUSTUP_TOOLCHAIN"] = spec.name
        versions = {"rustc": tool_version("rustc", "-vV", env=pinned)}
        for comp in sorted(spec.components):
            tool = COMPONENT_TOOLS.get(comp)
            if tool:
                versions[tool] = tool_version(tool, env=pinned)
        return ProvisionedToolchain(spec=spec, fingerprint=fingerprint(spec, versions),
                                    env={"RUSTUP_TOOLCHAIN": spec.name})


class HostProvisioner:
    """
    Uses whatever is already on PATH. Fails when a required tool is missing;
    never installs anything. Good for local runs and pre-provisioned agents.
    """

    def __init__(self, tools: Tuple[str, ...] = ("cargo", "rustc")):
        self.tools = tools

    def required_tools(self, spec: ToolchainSpec) -> Tuple[str, ...]:
        extra = tuple(COMPONENT_TOOLS[c] for c in sorted(spec.components) if c in COMPONENT_TOOLS)
        return self.tools + extra

    def provision(self, spec, *, cwd, env, cancel_event=None, timeout=None, log=None):
        versions: Dict[str, Optional[str]] = {}
        for tool in self.required_tools(spec):
            if shutil.which(tool, path=env.get("PATH")) is None:
                raise ProvisionError(f"{tool} is not available", toolchain=spec.describe(),
                                     exit_code=127, hint=_hint(tool))
            versions[tool] = tool_version(tool, env=env)
            if log is not None:
                log(f"{tool}: {versions[tool] or 'unknown version'}\n".encode("utf-8"))
        return ProvisionedToolchain(spec=spec, fingerprint=fingerprint(spec, versions))
