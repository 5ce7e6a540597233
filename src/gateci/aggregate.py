# aggregate.py
from __future__ import annotations

from typing import Dict, Iterable, Optional, Sequence

from .model import JobResult, RunResult, RunStatus


def aggregate(results: Iterable[JobResult], order: Optional[Sequence[str]] = None) -> RunResult:
    """
    Collapse job outcomes into one run status.

    overall_status is FAIL iff any exit code is non-zero. With `order`
    (graph node names) the results are reported in that order, whatever
    order the nodes actually finished in.
    """
    results = list(results)

    if order is not None:
        by_name: Dict[str, JobResult] = {}
        for r in results:
            if r.job_name in by_name:
                raise ValueError(f"duplicate result for job '{r.job_name}'")
            by_name[r.job_name] = r
        missing = [n for n in order if n not in by_name]
        if missing:
            raise ValueError(f"no result for job(s): {missing}")
        extra = sorted(set(by_name) - set(order))
        if extra:
            raise ValueError(f"result(s) for unknown job(s): {extra}")
        results = [by_name[n] for n in order]

    status = RunStatus.FAIL if any(r.exit_code != 0 for r in results) else RunStatus.PASS
    return RunResult(overall_status=status, job_results=tuple(results))
