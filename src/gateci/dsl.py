# src/gateci/dsl.py
from __future__ import annotations

import shlex
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

from .errors import ConfigError
from .model import (
    EventKind,
    Job,
    PathFilter,
    Step,
    StepKind,
    ToolchainSpec,
    Trigger,
    Workflow,
)

DEFAULT_CACHE_PATHS = ("target", "~/.cargo/registry", "~/.cargo/git")
DEFAULT_KEY_FILES = ("Cargo.lock",)


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def _command_params(
    run: str,
    *,
    shell: bool,
    cwd: str | None,
    env: Optional[Dict[str, Any]],
    timeout: float | None,
) -> Dict[str, str]:
    params = {"run": run}
    if not shell:
        params["shell"] = "false"
    if cwd is not None:
        params["cwd"] = cwd
    if timeout is not None:
        params["timeout"] = str(timeout)
    for k, v in (env or {}).items():
        # force values to str for stable hashing + env compatibility
        params[f"env.{k}"] = str(v)
    return params


def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, Any]] = None,
    timeout: float | None = None,
) -> Step:
    """Create a shell step."""
    return Step(name=name, kind=StepKind.RUN_COMMAND,
                parameters=_command_params(cmd, shell=True, cwd=cwd, env=env, timeout=timeout))


def cmd(
    name: str,
    *argv: str,
    cwd: str | None = None,
    env: Optional[Dict[str, Any]] = None,
    timeout: float | None = None,
) -> Step:
    """Create a step that runs an argument list directly (no shell)."""
    if not argv:
        raise ConfigError(f"cmd({name!r}) needs at least one argument", step=name)
    return Step(name=name, kind=StepKind.RUN_COMMAND,
                parameters=_command_params(shlex.join(argv), shell=False, cwd=cwd, env=env, timeout=timeout))


def toolchain(
    name: str = "stable",
    *,
    profile: str = "minimal",
    components: Iterable[str] = (),
) -> ToolchainSpec:
    return ToolchainSpec(name=name, profile=profile, components=frozenset(components))


def provision(spec: Union[ToolchainSpec, str], *, name: str | None = None) -> Step:
    """Create a toolchain install step."""
    if isinstance(spec, str):
        spec = toolchain(spec)
    params = {"toolchain": spec.name, "profile": spec.profile}
    if spec.components:
        params["components"] = ",".join(sorted(spec.components))
    return Step(
        name=name or f"Install {spec.name} toolchain",
        kind=StepKind.PROVISION_TOOLCHAIN,
        parameters=params,
    )


def use_cache(
    *,
    paths: Sequence[str] = DEFAULT_CACHE_PATHS,
    key_files: Sequence[str] = DEFAULT_KEY_FILES,
    prefix: str | None = None,
    name: str = "Use cache",
) -> List[Step]:
    """
    Restore a dependency build cache now and save it once every command of
    the job has succeeded. The save step is moved to the end of the job by
    the graph builder.
    """
    if not paths:
        raise ConfigError("use_cache() needs at least one path")
    params = {"paths": ",".join(paths), "key_files": ",".join(key_files)}
    if prefix:
        params["prefix"] = prefix
    return [
        Step(name=name, kind=StepKind.RESTORE_CACHE, parameters=params),
        Step(name=f"Post {name}", kind=StepKind.SAVE_CACHE, parameters=params),
    ]


StepLike = Union[Step, Sequence[Step]]


def _flatten(items: Iterable[StepLike]) -> List[Step]:
    out: List[Step] = []
    for it in items:
        if isinstance(it, Step):
            out.append(it)
        else:
            out.extend(it)
    return out


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: StepLike,  # allow: job("x", sh(...), use_cache(), sh(...))
    steps_list: Optional[List[Step]] = None,
    toolchain: Optional[ToolchainSpec] = None,
    env: Optional[Dict[str, Any]] = None,
    concurrency: int | None = None,
    timeout: float | None = None,
    cwd: str | None = None,  # default cwd applied to command steps missing cwd
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(steps_list)
    steps_final.extend(_flatten(steps))

    if not steps_final:
        raise ConfigError(f"job({name!r}) must have at least one step", job=name)

    if cwd is not None:
        steps_final = [_with_default_cwd(s, cwd) for s in steps_final]

    return Job(
        name=name,
        steps=tuple(steps_final),
        toolchain=toolchain,
        env={k: str(v) for k, v in (env or {}).items()},
        concurrency=concurrency,
        timeout=timeout,
    )


def _with_default_cwd(step: Step, cwd: str) -> Step:
    if step.kind is not StepKind.RUN_COMMAND or step.cwd is not None:
        return step
    params = dict(step.parameters)
    params["cwd"] = cwd
    return Step(name=step.name, kind=step.kind, parameters=params)


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._toolchain: Optional[ToolchainSpec] = None
        self._concurrency: Optional[int] = None
        self._timeout: Optional[float] = None

    def with_toolchain(self, name: str = "stable", *, profile: str = "minimal", components: Iterable[str] = ()):
        self._toolchain = toolchain(name, profile=profile, components=components)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **env):
        self._steps.append(sh(name, run, cwd=cwd, env=env or None))
        return self

    def add(self, *steps: StepLike):
        self._steps.extend(_flatten(steps))
        return self

    def with_cache(self, *paths: str, key_files: Sequence[str] = DEFAULT_KEY_FILES):
        self._steps.extend(use_cache(paths=paths or DEFAULT_CACHE_PATHS, key_files=key_files))
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_concurrency(self, n: int):
        self._concurrency = n
        return self

    def with_timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ConfigError(f"Job '{self.name}' has no steps", job=self.name)
        return Job(
            name=self.name,
            steps=tuple(self._steps),
            toolchain=self._toolchain,
            env=self._env,
            concurrency=self._concurrency,
            timeout=self._timeout,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("toolchain", ["stable", "beta"]).jobs(
            lambda v: job(f"test-{v}", sh(...), toolchain=toolchain(v))
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], Job]) -> List[Job]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Triggers + workflow
# ---------------------------------------------------------------------

def on(kind: Union[EventKind, str], *, paths_ignore: Sequence[str] = ()) -> Trigger:
    """on("push", paths_ignore=["**.md"])"""
    return Trigger(kind=EventKind.parse(kind), path_filter=PathFilter(tuple(paths_ignore)))


DEFAULT_TRIGGERS = (on(EventKind.PUSH), on(EventKind.PULL_REQUEST), on(EventKind.MANUAL))


def wf(
    *jobs: Union[Job, Sequence[Job]],
    name: str = "CI",
    triggers: Optional[Sequence[Trigger]] = None,
) -> Workflow:
    """
    Workflow definition helper.

        from gateci import wf, job, sh, on

        def workflow():
            return wf(
                job(...),
                job(...),
                triggers=[on("push", paths_ignore=["**.md"]), on("manual")],
            )

    Without triggers the workflow listens to push, pull_request and manual
    events with no path filtering.
    """
    flat: List[Job] = []
    for j in jobs:
        if isinstance(j, Job):
            flat.append(j)
        else:
            flat.extend(j)
    return Workflow(
        name=name,
        jobs=tuple(flat),
        triggers=tuple(triggers) if triggers is not None else DEFAULT_TRIGGERS,
    )


workflow = wf  # alias (avoid naming your own function workflow if you use it)
