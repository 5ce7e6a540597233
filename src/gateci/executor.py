# executor.py
from __future__ import annotations

import os
import threading
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Dict, Optional, Set, Tuple

from .cache import CacheKey, CacheManager, fingerprint_files, pack_paths, unpack_artifact
from .dag import JobNode
from .errors import (
    CacheError,
    CIError,
    CommandError,
    ProvisionError,
    RunCancelled,
    StepTimeoutError,
)
from .model import JobResult, JobStatus, Step, StepKind, ToolchainSpec
from .process import run_process
from .toolchain import ProvisionedToolchain, Provisioner
from .ui.console import Console, get_console


@dataclass
class ExecutionEnvironment:
    """
    Everything a node runs against: working tree, base environment,
    concurrency hint, step budget and the run's cancellation flag.
    """
    workdir: Path
    env: Dict[str, str] = field(default_factory=lambda: dict(os.environ))
    concurrency: Optional[int] = None
    step_timeout: Optional[float] = None
    cancel_event: threading.Event = field(default_factory=threading.Event)
    concurrency_vars: Tuple[str, ...] = ("RUST_TEST_THREADS",)
    home: Optional[Path] = None  # where "~/..." cache paths live; None = real home

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def for_node(self, node: JobNode) -> "ExecutionEnvironment":
        """Layer the job's own env, concurrency and timeout over this one."""
        job = node.job
        env = dict(self.env)
        env.update(job.env)
        return replace(
            self,
            workdir=Path(self.workdir),
            env=env,
            concurrency=job.concurrency if job.concurrency is not None else self.concurrency,
            step_timeout=job.timeout if job.timeout is not None else self.step_timeout,
        )

    def process_env(self, step: Step, toolchain: Optional[ProvisionedToolchain] = None) -> Dict[str, str]:
        env = dict(self.env)
        if toolchain is not None:
            env.update(toolchain.env)
        if self.concurrency is not None:
            for var in self.concurrency_vars:
                env[var] = str(self.concurrency)
        env.update(step.env)
        return env


@dataclass
class _NodeState:
    log: bytearray = field(default_factory=bytearray)
    toolchain: Optional[ProvisionedToolchain] = None
    keys: Dict[Tuple[str, str, str], CacheKey] = field(default_factory=dict)
    hits: Set[CacheKey] = field(default_factory=set)

    def write(self, data: bytes) -> None:
        self.log.extend(data)

    def line(self, text: str) -> None:
        self.log.extend((text + "\n").encode("utf-8"))


def _split(value: str) -> Tuple[str, ...]:
    return tuple(v.strip() for v in value.split(",") if v.strip())


def toolchain_from_step(step: Step, default: Optional[ToolchainSpec] = None) -> ToolchainSpec:
    p = step.parameters
    if "toolchain" not in p and default is not None:
        return default
    return ToolchainSpec(
        name=p.get("toolchain", "stable"),
        profile=p.get("profile", "minimal"),
        components=frozenset(_split(p.get("components", ""))),
    )


class Executor:
    """
    Runs one node's steps in order inside one environment.

    Fail-fast inside the node; every failure is turned into a JobResult,
    nothing escapes execute(), so sibling nodes are never affected.
    """

    def __init__(
        self,
        provisioner: Provisioner,
        cache: Optional[CacheManager] = None,
        *,
        console: Optional[Console] = None,
        stream_output: bool = False,
    ):
        self.provisioner = provisioner
        self.cache = cache
        self._console = console
        self.stream_output = stream_output
        self._handlers: Dict[StepKind, Callable[[JobNode, Step, ExecutionEnvironment, _NodeState], None]] = {
            StepKind.PROVISION_TOOLCHAIN: self._provision,
            StepKind.RESTORE_CACHE: self._restore_cache,
            StepKind.RUN_COMMAND: self._run_command,
            StepKind.SAVE_CACHE: self._save_cache,
        }

    @property
    def console(self) -> Console:
        return self._console or get_console()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def execute(self, node: JobNode, env: ExecutionEnvironment) -> JobResult:
        env = env.for_node(node)
        state = _NodeState()
        start = time.monotonic()
        status, exit_code = JobStatus.SUCCESS, 0
        failed_step: Optional[str] = None
        error: Optional[str] = None

        self.console.print_job_start(node.name)
        current: Optional[Step] = None
        try:
            for step in node.steps:
                current = step
                if env.cancelled:
                    raise RunCancelled(job=node.name, step=step.name)
                self.console.print_step(node.name, step.name)
                state.line(f"##[step] {step.name} ({step.kind.value})")
                self._handlers[step.kind](node, step, env, state)
        except RunCancelled as e:
            status, exit_code, failed_step, error = JobStatus.CANCELLED, RunCancelled.exit_code, e.step, e.message
        except ProvisionError as e:
            status, exit_code, failed_step, error = JobStatus.PROVISION_FAILED, e.exit_code, e.step, str(e)
        except StepTimeoutError as e:
            status, exit_code, failed_step, error = JobStatus.TIMED_OUT, StepTimeoutError.exit_code, e.step, e.message
        except CommandError as e:
            status, exit_code, failed_step, error = JobStatus.COMMAND_FAILED, e.exit_code, e.step, e.message
        except CIError as e:
            status, exit_code, error = JobStatus.ERROR, 1, str(e)
            failed_step = e.step or (current.name if current is not None else None)
        except Exception as e:  # unexpected bug in a handler; still scoped to this node
            status, exit_code, error = JobStatus.ERROR, 1, f"{type(e).__name__}: {e}"
            failed_step = current.name if current is not None else None
            self.console.print_exception(e)

        if error:
            state.line(f"##[error] {error}")

        result = JobResult(
            job_name=node.name,
            exit_code=exit_code,
            duration=time.monotonic() - start,
            logs=bytes(state.log),
            status=status,
            failed_step=failed_step,
            error=error,
            cache_hit=bool(state.hits),
        )
        self.console.print_job_finished(result)
        return result

    # ------------------------------------------------------------------
    # Step handlers
    # ------------------------------------------------------------------

    def _provision(self, node: JobNode, step: Step, env: ExecutionEnvironment, state: _NodeState) -> None:
        spec = toolchain_from_step(step, node.job.toolchain)
        timeout = step.timeout or env.step_timeout
        state.line(f"toolchain: {spec.describe()}")
        try:
            state.toolchain = self.provisioner.provision(
                spec,
                cwd=env.workdir,
                env=dict(env.env),
                cancel_event=env.cancel_event,
                timeout=timeout,
                log=state.write,
            )
        except ProvisionError as e:
            if env.cancelled:
                raise RunCancelled(job=node.name, step=step.name) from e
            if e.timed_out:
                raise StepTimeoutError(job=node.name, step=step.name, timeout=timeout or 0.0) from e
            e.job, e.step = node.name, step.name
            raise
        state.line(f"toolchain fingerprint: {state.toolchain.fingerprint[:16]}")

    def cache_key(self, node: JobNode, step: Step, env: ExecutionEnvironment, state: _NodeState) -> CacheKey:
        """
        Derive (once per cache declaration) the key from the provisioned
        toolchain and the lockfile contents. Restore and save of the same
        declaration share the key even if a command rewrites the lockfile.
        """
        p = step.parameters
        prefix = p.get("prefix") or node.name
        ident = (prefix, p.get("paths", ""), p.get("key_files", "Cargo.lock"))
        if ident in state.keys:
            return state.keys[ident]

        if state.toolchain is not None:
            toolchain_fp = state.toolchain.fingerprint
        elif node.job.toolchain is not None:
            toolchain_fp = "declared:" + node.job.toolchain.describe()
        else:
            toolchain_fp = "none"
        lock_fp, _ = fingerprint_files(env.workdir, _split(ident[2]))
        key = CacheKey.derive(toolchain_fp, lock_fp, prefix=prefix)
        state.keys[ident] = key
        return key

    def _restore_cache(self, node: JobNode, step: Step, env: ExecutionEnvironment, state: _NodeState) -> None:
        if self.cache is None:
            state.line("cache: disabled")
            return
        try:
            key = self.cache_key(node, step, env, state)
        except CacheError as e:
            state.line(f"cache: no key: {e.message}")
            self.console.print_warning(f"[{node.name}] cache key failed, restoring nothing: {e.message}")
            return
        artifact = self.cache.restore(key)
        if artifact is None:
            state.line(f"cache: miss {key}")
            self.console.print_cache_miss(node.name, key.short())
            return
        try:
            manifest = unpack_artifact(artifact, env.workdir, home=env.home,
                                       paths=_split(step.parameters.get("paths", "")))
        except CacheError as e:
            # corrupt entry: behave exactly like a miss
            state.line(f"cache: restore failed {key}: {e.message}")
            self.console.print_warning(f"[{node.name}] cache restore failed: {e.message}")
            return
        state.hits.add(key)
        state.line(f"cache: hit {key} ({manifest.get('files', '?')} files)")
        self.console.print_cache_hit(node.name, key.short())

    def _run_command(self, node: JobNode, step: Step, env: ExecutionEnvironment, state: _NodeState) -> None:
        cwd = (env.workdir / (step.cwd or ".")).resolve()
        if not cwd.is_dir():
            raise CIError(kind="workdir_missing", message=f"cwd not found: {cwd}", job=node.name, step=step.name)

        timeout = step.timeout or env.step_timeout
        state.line(f"$ {step.run}")

        def _out(line: bytes) -> None:
            state.write(line)
            if self.stream_output:
                self.console.print_info(f"[{node.name}] {line.decode('utf-8', errors='replace').rstrip()}")

        try:
            res = run_process(
                step.run,
                shell=step.shell,
                cwd=cwd,
                env=env.process_env(step, state.toolchain),
                timeout=timeout,
                cancel_event=env.cancel_event,
                on_output=_out,
            )
        except FileNotFoundError as e:
            state.line(str(e))
            raise CommandError(job=node.name, step=step.name, cmd=step.run, exit_code=127) from e

        if res.cancelled:
            raise RunCancelled(job=node.name, step=step.name)
        if res.timed_out:
            raise StepTimeoutError(job=node.name, step=step.name, timeout=timeout or 0.0)
        if res.returncode != 0:
            raise CommandError(job=node.name, step=step.name, cmd=step.run, exit_code=res.returncode)

    def _save_cache(self, node: JobNode, step: Step, env: ExecutionEnvironment, state: _NodeState) -> None:
        # Only reached when every earlier step succeeded (fail-fast), so a
        # failing run never gets here.
        if self.cache is None:
            return
        try:
            key = self.cache_key(node, step, env, state)
        except CacheError as e:
            state.line(f"cache: no key, not saving: {e.message}")
            self.console.print_cache_skipped(node.name, "no cache key")
            return
        if key in state.hits:
            state.line(f"cache: exact hit for {key}, not saving")
            self.console.print_cache_skipped(node.name, "exact hit")
            return

        try:
            artifact = pack_paths(env.workdir, _split(step.parameters.get("paths", "")), key=key, home=env.home)
        except OSError as e:
            state.line(f"cache: could not pack {key}: {e}")
            self.console.print_warning(f"[{node.name}] cache pack failed: {e}")
            return

        # an artifact built while the run was being cancelled is never persisted
        if env.cancelled:
            raise RunCancelled(job=node.name, step=step.name)

        if not self.cache.save(key, artifact):
            state.line(f"cache: save failed for {key}")
            return
        state.line(f"cache: saved {key} ({artifact.size} bytes)")
        self.console.print_cache_saved(node.name, key.short())
