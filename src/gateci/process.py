"""Child process execution for command steps."""

from __future__ import annotations

import os
import shlex
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

POLL_INTERVAL = 0.05
KILL_GRACE = 2.0


@dataclass
class ProcessResult:
    """
    Outcome of one child process.

    Attributes:
        returncode: exit status (negative for signals on POSIX).
        output: interleaved stdout/stderr bytes.
        command: the command line that was run.
        duration: wall-clock seconds.
        timed_out: the process was killed for exceeding its budget.
        cancelled: the process was killed because the run was cancelled.
    """

    returncode: int
    output: bytes = b""
    command: str = ""
    duration: float = 0.0
    timed_out: bool = False
    cancelled: bool = False
    argv: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out and not self.cancelled


def _terminate(proc: subprocess.Popen) -> None:
    """Stop the child and everything it spawned."""
    if proc.poll() is not None:
        return
    if os.name == "posix":
        try:
            os.killpg(proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        try:
            proc.wait(timeout=KILL_GRACE)
            return
        except subprocess.TimeoutExpired:
            pass
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            return
    else:
        proc.kill()
    proc.wait()


def run_process(
    command: str,
    *,
    shell: bool = True,
    cwd: str | Path | None = None,
    env: Optional[Dict[str, str]] = None,
    timeout: float | None = None,
    cancel_event: Optional[threading.Event] = None,
    on_output: Optional[Callable[[bytes], None]] = None,
) -> ProcessResult:
    """
    Run a command, collecting its output, until it exits, exceeds `timeout`
    seconds or `cancel_event` is set.

    With shell=False the command is split with shlex and run directly.

    Raises:
        FileNotFoundError: shell=False and the executable does not exist.
    """
    argv = [command] if shell else shlex.split(command)
    start = time.monotonic()

    proc = subprocess.Popen(
        command if shell else argv,
        shell=shell,
        cwd=str(cwd) if cwd else None,
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        start_new_session=(os.name == "posix"),
    )

    chunks: List[bytes] = []

    def _pump() -> None:
        assert proc.stdout is not None
        for line in iter(proc.stdout.readline, b""):
            chunks.append(line)
            if on_output is not None:
                on_output(line)
        proc.stdout.close()

    reader = threading.Thread(target=_pump, name=f"gateci-output-{proc.pid}", daemon=True)
    reader.start()

    deadline = start + timeout if timeout else None
    timed_out = cancelled = False

    while True:
        try:
            proc.wait(timeout=POLL_INTERVAL)
            break
        except subprocess.TimeoutExpired:
            pass
        if cancel_event is not None and cancel_event.is_set():
            cancelled = True
            _terminate(proc)
            break
        if deadline is not None and time.monotonic() >= deadline:
            timed_out = True
            _terminate(proc)
            break

    reader.join(timeout=KILL_GRACE)

    return ProcessResult(
        returncode=proc.returncode,
        output=b"".join(chunks),
        command=command,
        duration=time.monotonic() - start,
        timed_out=timed_out,
        cancelled=cancelled,
        argv=argv,
    )
