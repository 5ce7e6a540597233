# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


@dataclass
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - per-job failure classification
      - debugging without full tracebacks
    """
    kind: str
    message: str
    job: Optional[str] = None
    step: Optional[str] = None
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


# ----------------------------------------------------------------------
# Run-fatal
# ----------------------------------------------------------------------

class ConfigError(CIError):
    """Malformed or empty workflow definition. No run starts."""

    def __init__(self, message: str, *, job: str | None = None, step: str | None = None, **details):
        super().__init__(kind="config_error", message=message, job=job, step=step, details=details)


# ----------------------------------------------------------------------
# Node-scoped (recorded in the JobResult, never abort siblings)
# ----------------------------------------------------------------------

class ProvisionError(CIError):
    def __init__(self, message: str, *, toolchain: str, job: str | None = None,
                 step: str | None = None, exit_code: int = 127, hint: str | None = None,
                 timed_out: bool = False):
        details = {"toolchain": toolchain, "exit_code": exit_code}
        if hint:
            details["hint"] = hint
        super().__init__(kind="provision_error", message=message, job=job, step=step, details=details)
        self.exit_code = exit_code
        self.timed_out = timed_out


class CommandError(CIError):
    def __init__(self, *, job: str, step: str, cmd: str, exit_code: int):
        super().__init__(
            kind="command_error",
            message=f"step '{step}' failed (exit={exit_code}): {cmd}",
            job=job,
            step=step,
            details={"exit_code": exit_code},
        )
        self.cmd = cmd
        self.exit_code = exit_code


class StepTimeoutError(CIError):
    exit_code = 124

    def __init__(self, *, job: str, step: str, timeout: float):
        super().__init__(
            kind="timeout",
            message=f"step '{step}' exceeded {timeout:g}s",
            job=job,
            step=step,
            details={"timeout": timeout},
        )
        self.timeout = timeout


class RunCancelled(CIError):
    exit_code = 130

    def __init__(self, *, job: str | None = None, step: str | None = None):
        super().__init__(kind="cancelled", message="run was cancelled", job=job, step=step)


# ----------------------------------------------------------------------
# Non-fatal
# ----------------------------------------------------------------------

class CacheError(CIError):
    """Cache backend I/O failure. Logged and treated as a miss / no-op."""

    def __init__(self, message: str, *, key: str | None = None, op: str | None = None):
        details = {}
        if key:
            details["key"] = key
        if op:
            details["op"] = op
        super().__init__(kind="cache_error", message=message, details=details)


class ReportError(CIError):
    def __init__(self, message: str, *, url: str, status: int | None = None):
        details = {"url": url}
        if status is not None:
            details["status"] = status
        super().__init__(kind="report_error", message=message, details=details)
