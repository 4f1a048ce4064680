# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Resource sampling for running steps.

Reads per-process CPU time, resident memory and I/O byte counters from
/proc and appends them to the step's time series at an adaptive cadence:
fine-grained while a step is young, coarser as it keeps running.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from steprun.timeseries import TimeSeries

logger = logging.getLogger(__name__)

# (max step duration ms, sample interval ms), checked in order
SAMPLE_TIERS = (
    (10_000, 100),
    (600_000, 1_000),
)
LONG_RUNNING_INTERVAL_MS = 10_000


class ProcessGone(Exception):
    """Raised when a process's /proc entry can no longer be read."""

    pass


def sample_interval_ms(duration_ms: int) -> int:
    """Sampling interval for a step that has been running duration_ms."""
    for max_duration, interval in SAMPLE_TIERS:
        if duration_ms <= max_duration:
            return interval
    return LONG_RUNNING_INTERVAL_MS


@dataclass
class ResourceSample:
    """One reading of a process's accounting counters."""

    cpu_ms: int
    rss_bytes: int
    read_bytes: Optional[int] = None
    write_bytes: Optional[int] = None


class ProcReader:
    """Reads process accounting data from a procfs mount."""

    def __init__(self, proc_root: Path = Path("/proc")):
        self.proc_root = Path(proc_root)
        self.ticks_per_second = os.sysconf("SC_CLK_TCK")
        self.page_size = os.sysconf("SC_PAGE_SIZE")

    def _read(self, pid: int, name: str) -> str:
        try:
            return (self.proc_root / str(pid) / name).read_text()
        except (FileNotFoundError, ProcessLookupError) as e:
            raise ProcessGone(f"process {pid} has exited") from e

    def cpu_and_memory(self, pid: int) -> Tuple[int, int]:
        """Return (user+system CPU ms, resident bytes) for pid.

        Raises:
            ProcessGone: If the process no longer exists.
        """
        try:
            stat = self._read(pid, "stat")
            statm = self._read(pid, "statm")
        except PermissionError as e:
            raise ProcessGone(f"process {pid} stats unreadable") from e

        # comm (field 2) may contain spaces and parentheses
        fields = stat[stat.rfind(")") + 2:].split()
        try:
            utime, stime = int(fields[11]), int(fields[12])
            resident_pages = int(statm.split()[1])
        except (IndexError, ValueError) as e:
            # Entry emptied while the process was being torn down
            raise ProcessGone(f"process {pid} stats incomplete") from e

        cpu_ms = (utime + stime) * 1000 // self.ticks_per_second
        return cpu_ms, resident_pages * self.page_size

    def io_counters(self, pid: int) -> Tuple[int, int]:
        """Return cumulative (read_bytes, write_bytes) for pid.

        Raises:
            ProcessGone: If the process no longer exists.
            PermissionError: If the io file changed owner during exit.
        """
        counters = {}
        for line in self._read(pid, "io").splitlines():
            key, _, value = line.partition(":")
            counters[key.strip()] = value.strip()
        try:
            return int(counters["read_bytes"]), int(counters["write_bytes"])
        except (KeyError, ValueError) as e:
            raise ProcessGone(f"process {pid} io counters incomplete") from e

    def read(self, pid: int) -> Optional[ResourceSample]:
        """Read all counters for pid, None if the process is gone.

        I/O counters are left unset when only they are unreadable.
        """
        try:
            cpu_ms, rss_bytes = self.cpu_and_memory(pid)
        except ProcessGone as e:
            logger.debug("Skipping sample: %s", e)
            return None

        sample = ResourceSample(cpu_ms=cpu_ms, rss_bytes=rss_bytes)
        try:
            sample.read_bytes, sample.write_bytes = self.io_counters(pid)
        except (PermissionError, ProcessGone) as e:
            logger.debug("Skipping io sample for %d: %s", pid, e)
        return sample


class ResourceSampler:
    """Sampling state and series for one step's process."""

    def __init__(self, reader: Optional[ProcReader] = None):
        self.reader = reader or ProcReader()
        self.last_sampled_ms: Optional[int] = None
        self.cpu_series = TimeSeries(anchor=True)
        self.rss_series = TimeSeries()
        self.read_series = TimeSeries(anchor=True)
        self.write_series = TimeSeries(anchor=True)
        self.cpu_ms: Optional[int] = None
        self.rss_bytes: Optional[int] = None
        self.read_bytes: Optional[int] = None
        self.write_bytes: Optional[int] = None

    def due(self, duration_ms: int) -> bool:
        if self.last_sampled_ms is None:
            return True
        return duration_ms - self.last_sampled_ms >= sample_interval_ms(duration_ms)

    def sample(self, pid: int, duration_ms: int, force: bool = False) -> bool:
        """Take a sample if one is due (or forced).

        Returns:
            True if a new sample was recorded.
        """
        if not force and not self.due(duration_ms):
            return False
        self.last_sampled_ms = duration_ms

        sample = self.reader.read(pid)
        if sample is None:
            return False

        self.cpu_ms = sample.cpu_ms
        self.rss_bytes = sample.rss_bytes
        self.cpu_series.push(duration_ms, sample.cpu_ms)
        self.rss_series.push(duration_ms, sample.rss_bytes)
        if sample.read_bytes is not None:
            self.read_bytes = sample.read_bytes
            self.write_bytes = sample.write_bytes
            self.read_series.push(duration_ms, sample.read_bytes)
            self.write_series.push(duration_ms, sample.write_bytes)
        return True
