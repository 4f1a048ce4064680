# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Job execution.

A Job discovers its step groups, records them in the store, then runs
the groups in order. All steps of a group are spawned at once; the group
finishes when every spawned child has been reaped. The first group with
a failed step ends the job.

Child exits are learned from SIGCHLD. Linux may deliver a single SIGCHLD
for several children that exit together, so every notification drains
all exited children of the group. Between notifications the loop sleeps
briefly and samples the steps that are still running.
"""

import os
import signal
import threading
import time
from pathlib import Path
from typing import Any, Callable, List, Optional

from steprun.config import FlagMap
from steprun.context import RunContext
from steprun.discovery import discover
from steprun.step import Status, Step, StepGroup, StepSpawnError, exit_code_from_wait_status
from steprun.store import JobStore, NullJobStore

POLL_INTERVAL = 0.005
REPORT_INTERVAL = 5.0


def child_exited(pid: int) -> bool:
    """Whether child pid has exited, without reaping it.

    The child stays a zombie so its final CPU counters can still be read.
    """
    return os.waitid(os.P_PID, pid, os.WEXITED | os.WNOHANG | os.WNOWAIT) is not None


class StatusReporter:
    """Calls a render function periodically from a background thread."""

    def __init__(self, render: Callable[[], None], interval: float = REPORT_INTERVAL):
        self.render = render
        self.interval = interval
        self._done = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        self._thread = threading.Thread(target=self._loop, name="steprun-status", daemon=True)
        self._thread.start()

    def _loop(self) -> None:
        while not self._done.wait(self.interval):
            self.render()

    def stop(self) -> None:
        self._done.set()
        if self._thread is not None:
            self._thread.join()


class Job:
    """An ordered sequence of step groups run as local child processes."""

    def __init__(
        self,
        name: str,
        directory: Optional[Path] = None,
        command: Optional[str] = None,
        flag_map: Optional[FlagMap] = None,
        store: Optional[JobStore] = None,
        ctx: Optional[RunContext] = None,
        quiet: bool = False,
        render: Optional[Callable[["Job"], None]] = None,
        poll_interval: float = POLL_INTERVAL,
        report_interval: float = REPORT_INTERVAL,
    ):
        self.name = name
        self.directory = directory
        self.command = command
        self.flag_map = flag_map or {}
        self.store = store or NullJobStore()
        self.ctx = ctx or RunContext(name)
        self.quiet = quiet
        self.render = render
        self.poll_interval = poll_interval
        self.report_interval = report_interval

        self.job_id: Any = None
        self.groups: List[StepGroup] = []
        self.status = Status.PENDING
        self.duration_ms: Optional[int] = None
        self._child_exited = False

    @property
    def source(self) -> str:
        """Where the steps come from, for display."""
        return str(self.directory) if self.directory is not None else str(self.command)

    @property
    def steps(self) -> List[Step]:
        return [step for group in self.groups for step in group]

    @property
    def failed_steps(self) -> List[Step]:
        return [step for step in self.steps if step.status == Status.ERROR]

    @property
    def duration(self) -> Optional[float]:
        """Duration in seconds."""
        if self.duration_ms is None:
            return None
        return self.duration_ms / 1000

    def discover(self) -> List[StepGroup]:
        """Discover the job's step groups.

        Raises:
            ConfigError: If the source is ambiguous or yields no steps.
        """
        self.groups = discover(self.directory, self.command, self.flag_map)
        self.ctx.logger.debug(
            "Discovered %d steps in %d groups from %s", len(self.steps), len(self.groups), self.source
        )
        return self.groups

    def persist(self) -> None:
        """Create the job record and one record per discovered step."""
        self.job_id = self.store.create_job(
            self.name, self.ctx.hostname, self.ctx.username, self.ctx.started_at, Status.RUNNING.value
        )
        for step in self.steps:
            step.bind(self.ctx, self.store, self.job_id)

    def run(self) -> Status:
        """Run all groups in order, stopping after the first failed group.

        Returns:
            Status.OK if every group succeeded, else Status.ERROR.

        Raises:
            ConfigError: If discovery fails.
            StepSpawnError: If a step's process could not be started.
        """
        if not self.groups:
            self.discover()
        self.persist()
        self.status = Status.RUNNING

        reporter = None
        if not self.quiet and self.render is not None:
            reporter = StatusReporter(lambda: self.render(self), self.report_interval)
            reporter.start()

        t0 = self.ctx.now_ms()
        try:
            for group in self.groups:
                if self.run_group(group) != Status.OK:
                    self.ctx.logger.warning(
                        "Group %03d failed: %s", group.number, ", ".join(s.name for s in group.failed())
                    )
                    self.status = Status.ERROR
                    break
            else:
                self.status = Status.OK
        except Exception:
            self.status = Status.ERROR
            raise
        finally:
            if reporter is not None:
                reporter.stop()
            self.duration_ms = self.ctx.now_ms() - t0
            self.store.finish_job(self.job_id, self.status.value, self.duration)

        self.ctx.logger.info("Job %s finished: %s in %.2fs", self.name, self.status.value, self.duration)
        return self.status

    def run_group(self, group: StepGroup) -> Status:
        """Spawn every step of the group and wait until all have exited.

        If a spawn fails, the steps already started are still waited for
        before the error is raised.
        """
        on_main_thread = threading.current_thread() is threading.main_thread()
        previous = signal.signal(signal.SIGCHLD, self._on_sigchld) if on_main_thread else None
        spawn_error = None
        try:
            self._child_exited = True
            for step in group:
                try:
                    step.spawn()
                except StepSpawnError as e:
                    spawn_error = e
                    break
            self._reap_loop(group, signalled=on_main_thread)
        finally:
            if on_main_thread:
                signal.signal(signal.SIGCHLD, previous if previous is not None else signal.SIG_DFL)

        if spawn_error is not None:
            raise spawn_error
        return group.status()

    def _on_sigchld(self, signum, frame) -> None:
        self._child_exited = True

    def _reap_loop(self, group: StepGroup, signalled: bool) -> None:
        while group.running():
            # Without a SIGCHLD handler every tick checks for exits
            if self._child_exited or not signalled:
                self._child_exited = False
                self.reap(group)
                if not group.running():
                    break
            time.sleep(self.poll_interval)
            for step in group.running():
                step.poll_sample()

    def reap(self, group: StepGroup) -> int:
        """Handle every child of the group that has exited.

        Returns:
            Number of steps that terminated.
        """
        reaped = 0
        for step in group.running():
            try:
                if not child_exited(step.pid):
                    continue
                step.poll_sample(force=True)
                _, wait_status = os.waitpid(step.pid, 0)
                exit_code = exit_code_from_wait_status(wait_status)
            except ChildProcessError:
                # Already reaped elsewhere; the exit code is lost
                self.ctx.logger.warning("Step %s (pid %d) was reaped elsewhere", step.name, step.pid)
                exit_code = -1
            step.on_terminated(exit_code)
            reaped += 1
        return reaped
