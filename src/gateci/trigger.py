# trigger.py
from __future__ import annotations

from typing import List, Optional, Tuple

from .model import Event, EventKind, PathFilter, Workflow


def should_run(event: Event, filter: PathFilter) -> bool:
    """
    Decide whether an event starts a run.

    Returns False iff every changed path matches at least one ignore pattern.
    Manual dispatch always runs; path filtering does not apply to it.
    An event with no changed paths runs (nothing proves it is ignorable).
    """
    if event.kind is EventKind.MANUAL:
        return True
    if not event.changed_paths:
        return True
    return not all(filter.ignores(p) for p in event.changed_paths)


def explain(event: Event, filter: PathFilter) -> Tuple[bool, List[str]]:
    """
    Same decision as should_run(), plus the changed paths that were not
    ignored (the ones that caused the run). Used for plan output.
    """
    if event.kind is EventKind.MANUAL:
        return True, []
    relevant = sorted(p for p in event.changed_paths if not filter.ignores(p))
    return should_run(event, filter), relevant


def workflow_should_run(workflow: Workflow, event: Event) -> bool:
    """
    Apply the workflow's trigger list: an event kind the workflow does not
    listen to never runs; otherwise its trigger's path filter decides.
    """
    trigger = workflow.trigger_for(event.kind)
    if trigger is None:
        return False
    return should_run(event, trigger.path_filter)


def skip_reason(workflow: Workflow, event: Event) -> Optional[str]:
    trigger = workflow.trigger_for(event.kind)
    if trigger is None:
        return f"workflow does not listen to {event.kind.value} events"
    if not should_run(event, trigger.path_filter):
        return f"all {len(event.changed_paths)} changed path(s) match {list(trigger.path_filter.ignore_patterns)}"
    return None
