# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Job and step record stores.

The engine writes job/step lifecycle records through the JobStore
interface. Failures raised by a store propagate and abort the run.
"""

import json
import sqlite3
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"


def format_timestamp(when: datetime) -> str:
    """Format a datetime as a compact UTC timestamp."""
    return when.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


class JobStore(ABC):
    """Persistent record of jobs and their steps."""

    @abstractmethod
    def create_job(
        self, name: str, hostname: str, username: str, started: datetime, status: str
    ) -> Any:
        """Insert a job and return its identifier."""

    @abstractmethod
    def create_step(
        self, job_id: Any, step_id: int, number: int, name: str, status: str, flags: List[str]
    ) -> None:
        """Insert a discovered step."""

    @abstractmethod
    def start_step(self, job_id: Any, step_id: int, status: str, started: datetime) -> None:
        """Record that a step started running."""

    @abstractmethod
    def finish_step(
        self, job_id: Any, step_id: int, status: str, duration: float, log: str
    ) -> None:
        """Record a step's terminal status, duration in seconds and log."""

    @abstractmethod
    def finish_job(self, job_id: Any, status: str, duration: float) -> None:
        """Record a job's terminal status and duration in seconds."""

    def close(self) -> None:
        """Release any resources held by the store."""

    def describe(self) -> str:
        return type(self).__name__


class NullJobStore(JobStore):
    """Keeps calls in memory; used for plan mode and tests."""

    def __init__(self):
        self.calls: List[Tuple[str, tuple]] = []

    def create_job(self, name, hostname, username, started, status):
        self.calls.append(("create_job", (name, hostname, username, started, status)))
        return 0

    def create_step(self, job_id, step_id, number, name, status, flags):
        self.calls.append(("create_step", (job_id, step_id, number, name, status, list(flags))))

    def start_step(self, job_id, step_id, status, started):
        self.calls.append(("start_step", (job_id, step_id, status, started)))

    def finish_step(self, job_id, step_id, status, duration, log):
        self.calls.append(("finish_step", (job_id, step_id, status, duration, log)))

    def finish_job(self, job_id, status, duration):
        self.calls.append(("finish_job", (job_id, status, duration)))

    def describe(self) -> str:
        return "memory"


class SqliteJobStore(JobStore):
    """Stores jobs and steps in a SQLite database."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(self.db_path))
        self.conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self) -> None:
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS job (
            job_id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            hostname TEXT,
            username TEXT,
            started TEXT,
            duration REAL,
            status TEXT NOT NULL
        )
        """)
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS step (
            job_id INTEGER NOT NULL,
            step_id INTEGER NOT NULL,
            number INTEGER NOT NULL,
            name TEXT NOT NULL,
            status TEXT NOT NULL,
            flags TEXT,
            started TEXT,
            duration REAL,
            log TEXT,
            PRIMARY KEY (job_id, step_id)
        )
        """)
        self.conn.commit()

    def create_job(self, name, hostname, username, started, status):
        cur = self.conn.execute(
            """
            INSERT INTO job (name, hostname, username, started, duration, status)
            VALUES (?, ?, ?, ?, NULL, ?)
            """,
            (name, hostname, username, format_timestamp(started), status),
        )
        self.conn.commit()
        return cur.lastrowid

    def create_step(self, job_id, step_id, number, name, status, flags):
        self.conn.execute(
            """
            INSERT INTO step (job_id, step_id, number, name, status, flags)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (job_id, step_id, number, name, status, " ".join(flags)),
        )
        self.conn.commit()

    def start_step(self, job_id, step_id, status, started):
        self.conn.execute(
            "UPDATE step SET status = ?, started = ? WHERE job_id = ? AND step_id = ?",
            (status, format_timestamp(started), job_id, step_id),
        )
        self.conn.commit()

    def finish_step(self, job_id, step_id, status, duration, log):
        self.conn.execute(
            """
            UPDATE step SET status = ?, duration = ?, log = ?
            WHERE job_id = ? AND step_id = ?
            """,
            (status, duration, log, job_id, step_id),
        )
        self.conn.commit()

    def finish_job(self, job_id, status, duration):
        self.conn.execute(
            "UPDATE job SET status = ?, duration = ? WHERE job_id = ?",
            (status, duration, job_id),
        )
        self.conn.commit()

    def get_job(self, job_id) -> Optional[Dict[str, Any]]:
        row = self.conn.execute("SELECT * FROM job WHERE job_id = ?", (job_id,)).fetchone()
        return dict(row) if row else None

    def get_steps(self, job_id) -> List[Dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT * FROM step WHERE job_id = ? ORDER BY step_id", (job_id,)
        ).fetchall()
        return [dict(r) for r in rows]

    def close(self) -> None:
        self.conn.close()

    def describe(self) -> str:
        return f"sqlite:{self.db_path}"


class JsonlJobStore(JobStore):
    """Append-only JSONL event log of job and step transitions."""

    def __init__(self, log_path: Path):
        self.log_path = Path(log_path).expanduser()
        self.log_path.parent.mkdir(parents=True, exist_ok=True)

    def _log_event(self, event_type: str, job_id: str, payload: Dict[str, Any]) -> None:
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "job_id": job_id,
            "payload": payload,
        }
        with open(self.log_path, "a") as f:
            f.write(json.dumps(event) + "\n")

    def create_job(self, name, hostname, username, started, status):
        job_id = str(uuid.uuid4())
        self._log_event(
            "job.created",
            job_id,
            {
                "name": name,
                "hostname": hostname,
                "username": username,
                "started": started.isoformat(),
                "status": status,
            },
        )
        return job_id

    def create_step(self, job_id, step_id, number, name, status, flags):
        self._log_event(
            "step.created",
            job_id,
            {"step_id": step_id, "number": number, "name": name, "status": status, "flags": flags},
        )

    def start_step(self, job_id, step_id, status, started):
        self._log_event(
            "step.started",
            job_id,
            {"step_id": step_id, "status": status, "started": started.isoformat()},
        )

    def finish_step(self, job_id, step_id, status, duration, log):
        self._log_event(
            "step.finished",
            job_id,
            {"step_id": step_id, "status": status, "duration": duration, "log": log},
        )

    def finish_job(self, job_id, status, duration):
        self._log_event("job.finished", job_id, {"status": status, "duration": duration})

    def describe(self) -> str:
        return f"jsonl:{self.log_path}"
