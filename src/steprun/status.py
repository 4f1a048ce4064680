# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Status rendering for jobs.

Builds the per-step status table shown while a job runs, the final
console report, and the subject/body of the completion email.
"""

import os
import sys
from datetime import datetime
from typing import TYPE_CHECKING, Dict, Mapping, Optional, Tuple

import jinja2
import typer

from steprun.step import Status, Step

if TYPE_CHECKING:
    from steprun.job import Job

LINE = "-" * 80
MAX_EMAIL_LOG_CHARS = 100_000

# (first in group, last in group) -> marker
MARKER_UNICODE: Dict[Tuple[bool, bool], str] = {
    (True, True): "",
    (True, False): "╒",
    (False, False): "╞",
    (False, True): "╘",
}
MARKER_ASCII: Dict[Tuple[bool, bool], str] = {
    (True, True): "",
    (True, False): "",
    (False, False): "=",
    (False, True): "=",
}

EMAIL_TEMPLATE = jinja2.Template(
    """\
{% if job.status.value == "ok" -%}
Job {{ job.name }} completed successfully

{% else -%}
{% for step in job.failed_steps -%}
Job {{ job.name }} failed at step {{ step.name }}

{% endfor -%}
{% endif -%}
Hostname: {{ job.ctx.hostname }}
Username: {{ job.ctx.username }}
Status: {{ job.status.value | upper }}
Duration: {{ "%.3f" | format(job.duration or 0) }}s

{{ table }}
{{ line }}
Job id: {{ job.job_id }}
Command: {{ command }}
PWD: {{ cwd }}
Store: {{ job.store.describe() }}

{% for step in job.failed_steps -%}
{{ line }}
{{ (step.log or "")[:max_log] }}
{{ line }}
{% endfor -%}
""",
    keep_trailing_newline=True,
)


def is_utf8_locale(environ: Optional[Mapping[str, str]] = None) -> bool:
    """Whether the effective locale (LC_ALL, LC_CTYPE, LANG) is UTF-8."""
    environ = os.environ if environ is None else environ
    for var in ("LC_ALL", "LC_CTYPE", "LANG"):
        value = environ.get(var)
        if value:
            normalized = value.lower().replace("-", "")
            return "utf8" in normalized
    return False


def group_marker(is_first: bool, is_last: bool, utf8: Optional[bool] = None) -> str:
    """Marker showing a step's place within its parallel group."""
    if utf8 is None:
        utf8 = is_utf8_locale()
    markers = MARKER_UNICODE if utf8 else MARKER_ASCII
    return markers[(is_first, is_last)]


def format_size(size: Optional[float]) -> str:
    """Format a byte count as bytes, K, or M."""
    if size is None:
        return "-"
    size = int(size)
    if size >= 1024 * 1024:
        return f"{size // 1024 // 1024}M"
    if size >= 1024:
        return f"{size // 1024}K"
    return str(size)


def step_line(step: Step, marker: str) -> str:
    """One row of the status table."""
    duration = step.duration or 0
    cpu = step.current_cpu_usage()
    return "  %1s %-40s %-10s %8.2fs %5.2f %6s %6s/s %6s/s  %s\n" % (
        marker,
        step.name,
        step.status.value.upper(),
        duration,
        cpu,
        format_size(step.sampler.rss_bytes),
        format_size(step.read_rate()),
        format_size(step.write_rate()),
        " ".join(step.flags),
    )


def status_string(job: "Job", utf8: Optional[bool] = None) -> str:
    """Status table of every step in the job."""
    if utf8 is None:
        utf8 = is_utf8_locale()
    lines = []
    for group in job.groups:
        steps = group.steps
        for step in steps:
            marker = group_marker(step is steps[0], step is steps[-1], utf8)
            lines.append(step_line(step, marker))
    return "".join(lines)


def print_status(job: "Job") -> None:
    """Print the header and status table."""
    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    typer.echo(f"{now} Running job {job.name} (from {job.source})\n")
    typer.echo(status_string(job))


def print_plan(job: "Job", command: str) -> None:
    """Show the steps a run would execute."""
    print_status(job)
    typer.echo("Showing plan only; add flag --run to really run job:")
    typer.echo(f"  {command} --run")


def print_report(job: "Job") -> None:
    """Final console report after a run."""
    print_status(job)
    if job.status == Status.OK:
        typer.echo(f"Job {job.name} completed successfully")
        return
    for step in job.failed_steps:
        typer.echo(f"Job {job.name} failed at step {step.name}")
        typer.echo(f"\n{LINE}")
        typer.echo(step.log or "")
        typer.echo(LINE)


def email_subject(job: "Job") -> str:
    return "Job %s: %s (%.2fs)" % (job.status.value.upper(), job.name, job.duration or 0)


def email_body(job: "Job", command: Optional[str] = None, cwd: Optional[str] = None) -> str:
    """Completion email body; failed step logs are truncated."""
    return EMAIL_TEMPLATE.render(
        job=job,
        table=status_string(job),
        line=LINE,
        command=command if command is not None else " ".join(sys.argv),
        cwd=cwd if cwd is not None else os.getcwd(),
        max_log=MAX_EMAIL_LOG_CHARS,
    )
