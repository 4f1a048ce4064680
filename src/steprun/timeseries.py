# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Append-only metric samples with rate queries."""

from typing import List, Tuple


class TimeSeries:
    """Sequence of (elapsed_ms, value) samples.

    Samples are only ever appended; callers push non-decreasing times.
    Rates are per millisecond, so a CPU-ms series yields fractional cores.
    """

    def __init__(self, anchor: bool = False):
        self.samples: List[Tuple[int, int]] = []
        if anchor:
            self.samples.append((0, 0))

    def __len__(self) -> int:
        return len(self.samples)

    def push(self, t: int, v: int) -> None:
        self.samples.append((t, v))

    def last(self) -> Tuple[int, int]:
        return self.samples[-1]

    def current_rate(self) -> float:
        """Rate between the last two samples, 0 when undefined."""
        if len(self.samples) < 2:
            return 0
        (t0, v0), (t1, v1) = self.samples[-2], self.samples[-1]
        if t1 == t0:
            return 0
        return (v1 - v0) / (t1 - t0)

    def total_rate(self) -> float:
        """Average rate since t=0, 0 when undefined."""
        if len(self.samples) < 2:
            return 0
        t, v = self.samples[-1]
        if t == 0:
            return 0
        return v / t
