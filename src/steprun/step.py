# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Steps and step groups.

A Step is one child process of a job. It captures the child's combined
stdout/stderr into a private temporary file, tracks its lifecycle
(pending -> running -> ok|error) and samples its resource usage while
it runs. A StepGroup is the set of steps sharing a position number; its
members run concurrently.
"""

import os
import subprocess
import sys
import tempfile
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional

from steprun.context import RunContext, utcnow
from steprun.sampler import ResourceSampler
from steprun.store import JobStore

# Interpreters for step files that are not directly executable
INTERPRETERS = {
    ".py": sys.executable,
    ".rb": "ruby",
}


class StepSpawnError(Exception):
    """Raised when the OS refuses to start a step's process."""

    pass


class Status(Enum):
    """Lifecycle status of a step or job."""

    PENDING = "pending"
    RUNNING = "running"
    OK = "ok"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in (Status.OK, Status.ERROR)


def exit_code_from_wait_status(wait_status: int) -> int:
    """Exit code from a waitpid status; signal deaths map to 128+signum."""
    if os.WIFSIGNALED(wait_status):
        return 128 + os.WTERMSIG(wait_status)
    return os.WEXITSTATUS(wait_status)


class Step:
    """One executable unit of a job."""

    def __init__(
        self,
        step_id: int,
        number: int,
        path: Path,
        name: str,
        flags: Optional[List[str]] = None,
        cwd: Optional[Path] = None,
        sampler: Optional[ResourceSampler] = None,
    ):
        self.id = step_id
        self.number = number
        self.path = Path(path)
        self.name = name
        self.flags = list(flags or [])
        self.cwd = cwd

        self.status = Status.PENDING
        self.started: Optional[datetime] = None
        self.duration_ms: Optional[int] = None
        self.pid: Optional[int] = None
        self.exit_code: Optional[int] = None
        self.log: Optional[str] = None
        self.sampler = sampler or ResourceSampler()

        self.ctx: Optional[RunContext] = None
        self.store: Optional[JobStore] = None
        self.job_id: Any = None
        self._start_ms: Optional[int] = None
        self._log_file = None
        self._process: Optional[subprocess.Popen] = None

    def __repr__(self) -> str:
        return f"Step(id={self.id}, name={self.name!r}, status={self.status.value})"

    def bind(self, ctx: RunContext, store: JobStore, job_id: Any) -> None:
        """Attach the run context and record store; writes the step record."""
        self.ctx = ctx
        self.store = store
        self.job_id = job_id
        store.create_step(job_id, self.id, self.number, self.name, self.status.value, self.flags)

    def command(self) -> List[str]:
        """argv used to start this step."""
        interpreter = INTERPRETERS.get(self.path.suffix)
        if interpreter:
            return [interpreter, str(self.path), *self.flags]
        return [str(self.path), *self.flags]

    def spawn(self) -> None:
        """Start the step's process without waiting for it.

        Raises:
            RuntimeError: If the step is not pending.
            StepSpawnError: If the process could not be started.
        """
        if self.status != Status.PENDING:
            raise RuntimeError(f"cannot spawn step {self.name} in state {self.status.value}")

        self._log_file = tempfile.TemporaryFile(prefix="step")
        self.status = Status.RUNNING
        self.started = utcnow()
        self._start_ms = self.ctx.now_ms()
        self.store.start_step(self.job_id, self.id, self.status.value, self.started)

        try:
            self._process = subprocess.Popen(
                self.command(),
                cwd=self.cwd,
                stdin=subprocess.DEVNULL,
                stdout=self._log_file,
                stderr=subprocess.STDOUT,
            )
        except OSError as e:
            self._log_file.close()
            self.status = Status.ERROR
            self._update_duration()
            self.log = str(e)
            self.store.finish_step(self.job_id, self.id, self.status.value, self.duration, self.log)
            raise StepSpawnError(f"failed to start step {self.name}: {e}") from e

        self.pid = self._process.pid
        self.ctx.logger.info("Started step %s (pid %d): %s", self.name, self.pid, " ".join(self.command()))

    def _update_duration(self) -> None:
        self.duration_ms = self.ctx.now_ms() - self._start_ms

    def poll_sample(self, force: bool = False) -> bool:
        """Refresh duration and take a resource sample if one is due."""
        if self.status != Status.RUNNING:
            return False
        self._update_duration()
        return self.sampler.sample(self.pid, self.duration_ms, force=force)

    def current_cpu_usage(self) -> float:
        """Cores in use now while running, average cores once finished."""
        if self.status == Status.RUNNING:
            return self.sampler.cpu_series.current_rate()
        return self.sampler.cpu_series.total_rate()

    def read_rate(self) -> float:
        """Bytes read per second."""
        series = self.sampler.read_series
        rate = series.current_rate() if self.status == Status.RUNNING else series.total_rate()
        return rate * 1000

    def write_rate(self) -> float:
        """Bytes written per second."""
        series = self.sampler.write_series
        rate = series.current_rate() if self.status == Status.RUNNING else series.total_rate()
        return rate * 1000

    @property
    def duration(self) -> Optional[float]:
        """Duration in seconds."""
        if self.duration_ms is None:
            return None
        return self.duration_ms / 1000

    def on_terminated(self, exit_code: int) -> None:
        """Record the step's exit and store its terminal state.

        Raises:
            RuntimeError: If the step is not running.
        """
        if self.status != Status.RUNNING:
            raise RuntimeError(f"step {self.name} terminated in state {self.status.value}")

        self._update_duration()
        self.exit_code = exit_code
        self.status = Status.OK if exit_code == 0 else Status.ERROR
        if self._process is not None:
            # Reaped outside of Popen; keep it from waiting again
            self._process.returncode = exit_code

        self._log_file.seek(0)
        self.log = self._log_file.read().decode("utf-8", errors="replace")
        self._log_file.close()

        if self.status == Status.OK:
            self.ctx.logger.info("Step %s finished in %.2fs", self.name, self.duration)
        else:
            self.ctx.logger.warning(
                "Step %s failed with exit code %d after %.2fs", self.name, exit_code, self.duration
            )
        self.store.finish_step(self.job_id, self.id, self.status.value, self.duration, self.log)


class StepGroup:
    """Steps sharing a position number; run concurrently."""

    def __init__(self, number: int, steps: Optional[List[Step]] = None):
        self.number = number
        self.steps: List[Step] = list(steps or [])

    def __iter__(self):
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    def __repr__(self) -> str:
        return f"StepGroup({self.number}, {[s.name for s in self.steps]})"

    def append(self, step: Step) -> None:
        self.steps.append(step)

    def running(self) -> List[Step]:
        return [s for s in self.steps if s.status == Status.RUNNING]

    def all_terminal(self) -> bool:
        return all(s.status.terminal for s in self.steps)

    def failed(self) -> List[Step]:
        return [s for s in self.steps if s.status == Status.ERROR]

    def status(self) -> Status:
        """ERROR if any member failed, OK once all finished, else RUNNING."""
        if not self.all_terminal():
            return Status.RUNNING
        if self.failed():
            return Status.ERROR
        return Status.OK
