# dag.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, List, Sequence, Tuple

from .dsl import provision
from .errors import ConfigError
from .model import Job, Step, StepKind


@dataclass(frozen=True)
class JobNode:
    """
    One independently schedulable job: its steps in total order.

    `steps` is the expanded sequence (implicit provisioning added, cache
    saves moved after every command); `job` is the declaration it came from.
    """
    index: int
    job: Job
    steps: Tuple[Step, ...]

    @property
    def name(self) -> str:
        return self.job.name


@dataclass(frozen=True)
class Graph:
    nodes: Tuple[JobNode, ...]

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self) -> Iterator[JobNode]:
        return iter(self.nodes)

    def names(self) -> List[str]:
        return [n.name for n in self.nodes]

    def node(self, name: str) -> JobNode:
        for n in self.nodes:
            if n.name == name:
                return n
        raise KeyError(name)


def expand_steps(job: Job) -> Tuple[Step, ...]:
    """
    toolchain install -> cache restore -> commands -> cache save

    - a job with a toolchain but no provision step gets one prepended
    - save_cache steps keep their relative order but move to the end
    """
    steps = list(job.steps)
    if job.toolchain is not None and not any(s.kind is StepKind.PROVISION_TOOLCHAIN for s in steps):
        steps.insert(0, provision(job.toolchain))

    saves = [s for s in steps if s.kind is StepKind.SAVE_CACHE]
    rest = [s for s in steps if s.kind is not StepKind.SAVE_CACHE]
    return tuple(rest + saves)


def _validate_phases(job: Job, steps: Sequence[Step]) -> None:
    prev = None
    for s in steps:
        if prev is not None and s.kind.phase < prev.kind.phase:
            raise ConfigError(
                f"step '{s.name}' ({s.kind.value}) cannot follow '{prev.name}' ({prev.kind.value})",
                job=job.name,
                step=s.name,
                order="provision_toolchain -> restore_cache -> run_command -> save_cache",
            )
        prev = s

    for s in steps:
        if s.kind is StepKind.RUN_COMMAND and not s.run.strip():
            raise ConfigError(f"step '{s.name}' has no command", job=job.name, step=s.name)
        if s.kind in (StepKind.RESTORE_CACHE, StepKind.SAVE_CACHE) and not s.parameters.get("paths"):
            raise ConfigError(f"cache step '{s.name}' has no paths", job=job.name, step=s.name)


def build(jobs: Sequence[Job]) -> Graph:
    """
    Build the job graph.

    Every job becomes an independent node (jobs do not depend on each
    other); node order is input order.
    """
    jobs = list(jobs)
    if not jobs:
        raise ConfigError("workflow has no jobs")

    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigError(f"Duplicate job names found: {dupes}")

    nodes: List[JobNode] = []
    for idx, job in enumerate(jobs):
        if not job.name or not job.name.strip():
            raise ConfigError(f"job #{idx + 1} has no name")
        if not job.steps:
            raise ConfigError(f"Job '{job.name}' has no steps", job=job.name)
        steps = expand_steps(job)
        _validate_phases(job, steps)
        nodes.append(JobNode(index=idx, job=job, steps=steps))

    return Graph(nodes=tuple(nodes))
