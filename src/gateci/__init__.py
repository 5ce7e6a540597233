from .runner import run_workflow, start_run, RunRegistry
from .dsl import job, sh, cmd, on, provision, toolchain, use_cache, matrix, wf, workflow, JobBuilder, build
from .model import Event, EventKind, Job, Step, Workflow, JobResult, RunResult

__all__ = [
    "job", "sh", "cmd", "on", "provision", "toolchain", "use_cache", "matrix", "wf", "workflow",
    "JobBuilder", "build", "run_workflow", "start_run", "RunRegistry",
    "Event", "EventKind", "Job", "Step", "Workflow", "JobResult", "RunResult",
]
