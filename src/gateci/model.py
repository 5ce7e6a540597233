# model.py
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, FrozenSet, Mapping, Optional, Tuple

from .globs import compile_glob, matches_any


class EventKind(str, enum.Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    MANUAL = "manual"

    @classmethod
    def parse(cls, value: "str | EventKind") -> "EventKind":
        if isinstance(value, EventKind):
            return value
        v = value.strip().lower().replace("-", "_")
        if v == "workflow_dispatch":
            return cls.MANUAL
        return cls(v)


@dataclass(frozen=True)
class Event:
    """An incoming trigger, as delivered by the VCS integration."""
    kind: EventKind
    changed_paths: FrozenSet[str] = frozenset()
    ref: Optional[str] = None  # branch / PR ref, used for supersession only

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", EventKind.parse(self.kind))
        object.__setattr__(self, "changed_paths", frozenset(self.changed_paths))


class StepKind(str, enum.Enum):
    PROVISION_TOOLCHAIN = "provision_toolchain"
    RESTORE_CACHE = "restore_cache"
    RUN_COMMAND = "run_command"
    SAVE_CACHE = "save_cache"

    @property
    def phase(self) -> int:
        # steps inside a job must be non-decreasing in phase
        return _PHASES[self]


_PHASES = {
    StepKind.PROVISION_TOOLCHAIN: 0,
    StepKind.RESTORE_CACHE: 1,
    StepKind.RUN_COMMAND: 2,
    StepKind.SAVE_CACHE: 3,
}


@dataclass(frozen=True)
class Step:
    """A single atomic action inside a CI job."""
    name: str
    kind: StepKind = StepKind.RUN_COMMAND
    parameters: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", StepKind(self.kind))
        params = {str(k): str(v) for k, v in dict(self.parameters).items()}
        object.__setattr__(self, "parameters", MappingProxyType(params))

    # ---- convenience accessors (run_command) ----
    @property
    def run(self) -> str:
        return self.parameters.get("run", "")

    @property
    def cwd(self) -> Optional[str]:
        return self.parameters.get("cwd")

    @property
    def shell(self) -> bool:
        return self.parameters.get("shell", "true").lower() != "false"

    @property
    def timeout(self) -> Optional[float]:
        raw = self.parameters.get("timeout")
        return float(raw) if raw else None

    @property
    def env(self) -> Dict[str, str]:
        """Per-step environment, declared as `env.NAME` parameters."""
        return {
            k[len("env."):]: v
            for k, v in self.parameters.items()
            if k.startswith("env.")
        }

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Step):
            return NotImplemented
        return (self.name, self.kind, dict(self.parameters)) == (other.name, other.kind, dict(other.parameters))

    def __hash__(self) -> int:
        return hash((self.name, self.kind, tuple(sorted(self.parameters.items()))))


@dataclass(frozen=True)
class ToolchainSpec:
    name: str = "stable"
    profile: str = "minimal"
    components: FrozenSet[str] = frozenset()

    def __post_init__(self) -> None:
        object.__setattr__(self, "components", frozenset(self.components))

    def describe(self) -> str:
        comps = ",".join(sorted(self.components))
        return f"{self.name}/{self.profile}" + (f" [{comps}]" if comps else "")


@dataclass(frozen=True)
class Job:
    """
    A CI job: an ordered step list plus the toolchain it runs on.

    Declared once at configuration load; immutable for the run's lifetime.
    """
    name: str
    steps: Tuple[Step, ...]
    toolchain: Optional[ToolchainSpec] = None
    env: Mapping[str, str] = field(default_factory=dict)
    concurrency: Optional[int] = None   # exported to tools that honour it (RUST_TEST_THREADS, ...)
    timeout: Optional[float] = None     # default wall-clock budget for each step

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "env", MappingProxyType({str(k): str(v) for k, v in dict(self.env).items()}))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Job):
            return NotImplemented
        return (
            self.name == other.name
            and self.steps == other.steps
            and self.toolchain == other.toolchain
            and dict(self.env) == dict(other.env)
            and self.concurrency == other.concurrency
            and self.timeout == other.timeout
        )

    def __hash__(self) -> int:
        return hash((self.name, self.steps, self.toolchain))


@dataclass(frozen=True)
class PathFilter:
    """
    Ignore patterns evaluated against Event.changed_paths.

    Patterns are compiled on construction so a malformed glob fails at
    configuration-load time, not when an event arrives.
    """
    ignore_patterns: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        patterns = tuple(self.ignore_patterns)
        for p in patterns:
            compile_glob(p)
        object.__setattr__(self, "ignore_patterns", patterns)

    def ignores(self, path: str) -> bool:
        return matches_any(path, self.ignore_patterns)


@dataclass(frozen=True)
class Trigger:
    """An event kind the workflow listens to, with its path filter."""
    kind: EventKind
    path_filter: PathFilter = field(default_factory=PathFilter)

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", EventKind.parse(self.kind))


@dataclass(frozen=True)
class Workflow:
    name: str
    jobs: Tuple[Job, ...]
    triggers: Tuple[Trigger, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "jobs", tuple(self.jobs))
        object.__setattr__(self, "triggers", tuple(self.triggers))

    def trigger_for(self, kind: EventKind) -> Optional[Trigger]:
        for t in self.triggers:
            if t.kind == kind:
                return t
        return None


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------

class JobStatus(str, enum.Enum):
    SUCCESS = "success"
    COMMAND_FAILED = "command_failed"
    PROVISION_FAILED = "provision_failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass(frozen=True)
class JobResult:
    job_name: str
    exit_code: int
    duration: float
    logs: bytes = b""
    status: JobStatus = JobStatus.SUCCESS
    failed_step: Optional[str] = None
    error: Optional[str] = None
    cache_hit: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def to_dict(self, *, include_logs: bool = False) -> dict:
        d = {
            "job_name": self.job_name,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "duration": round(self.duration, 3),
            "failed_step": self.failed_step,
            "error": self.error,
            "cache_hit": self.cache_hit,
        }
        if include_logs:
            d["logs"] = self.logs.decode("utf-8", errors="replace")
        return d


class RunStatus(str, enum.Enum):
    PASS = "pass"
    FAIL = "fail"


@dataclass(frozen=True)
class RunResult:
    overall_status: RunStatus
    job_results: Tuple[JobResult, ...]

    @property
    def passed(self) -> bool:
        return self.overall_status is RunStatus.PASS

    def result_for(self, job_name: str) -> JobResult:
        for r in self.job_results:
            if r.job_name == job_name:
                return r
        raise KeyError(job_name)

    def to_dict(self, *, include_logs: bool = False) -> dict:
        return {
            "overall_status": self.overall_status.value,
            "jobs": [r.to_dict(include_logs=include_logs) for r in self.job_results],
        }
