# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Per-run context shared by the job and its steps.

Holds what used to be process-wide state: the run's logger, its start
time, and the host/user identity recorded with the job.
"""

import logging
import os
import socket
import time
from datetime import datetime, timezone
from typing import Optional


def monotonic_ms() -> int:
    """Monotonic clock in whole milliseconds."""
    return int(time.monotonic() * 1000)


def utcnow() -> datetime:
    """Return current UTC time."""
    return datetime.now(timezone.utc)


class RunContext:
    """Explicit context constructed once per run."""

    def __init__(self, job_name: str, logger: Optional[logging.Logger] = None):
        self.job_name = job_name
        self.logger = logger or logging.getLogger(f"steprun.run.{job_name}")
        self.hostname = socket.gethostname()
        self.username = os.environ.get("USER", "unknown")
        self.started_at = utcnow()

    def now_ms(self) -> int:
        return monotonic_ms()
