# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Main CLI entry point for steprun.

Parses options, builds the job, runs it (or shows the plan) and reports
the outcome on the console or by email.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

import typer

from steprun import __version__
from steprun.config import ConfigError, default_db_path, load_config, smtp_settings
from steprun.context import RunContext
from steprun.job import Job
from steprun.notify import SmtpNotifier
from steprun.status import email_body, email_subject, print_plan, print_report, print_status
from steprun.step import Status, StepSpawnError
from steprun.store import JobStore, JsonlJobStore, NullJobStore, SqliteJobStore

app = typer.Typer(
    name="steprun",
    help="Run numbered job steps sequentially and in parallel",
    no_args_is_help=True,
)


def _job_name(directory: Optional[Path], command: Optional[str]) -> str:
    if directory is not None:
        return Path(directory).expanduser().resolve().name
    parts = (command or "").split()
    return Path(parts[0]).stem if parts else "job"


def _open_store(db: Optional[Path], events: Optional[Path]) -> JobStore:
    if events is not None:
        return JsonlJobStore(events)
    return SqliteJobStore(db if db is not None else default_db_path())


def _notify_target(job: Job, email: Optional[str], error_email: Optional[str]) -> Optional[str]:
    """Recipient for the completion email, if one should be sent."""
    if email:
        return email
    if error_email and job.status == Status.ERROR:
        return error_email
    return None


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Run numbered job steps sequentially and in parallel."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command()
def run(
    directory: Optional[Path] = typer.Option(None, "--dir", "-d", help="Directory of NNN_* step files"),
    command: Optional[str] = typer.Option(None, "--exec", "-e", help="Run a single command as the only step"),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Job name (default: directory or command name)"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="YAML config with per-step flags"),
    really_run: bool = typer.Option(False, "--run", help="Really run the job (default: show plan only)"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="No periodic status output"),
    email: Optional[str] = typer.Option(None, "--email", help="Email the final status to this address"),
    error_email: Optional[str] = typer.Option(None, "--error-email", help="Email the final status only on failure"),
    db: Optional[Path] = typer.Option(None, "--db", help="SQLite store path (default: $STEPRUN_DB)"),
    events: Optional[Path] = typer.Option(None, "--events", help="Write records to a JSONL event log instead"),
):
    """Run the steps of a job, or show the plan without --run."""
    if email or error_email:
        quiet = True
    job_name = name or _job_name(directory, command)

    try:
        flag_map = load_config(config_path)
        job = Job(
            job_name,
            directory=directory,
            command=command,
            flag_map=flag_map,
            ctx=RunContext(job_name),
            quiet=quiet,
            render=print_status,
        )
        job.discover()
    except ConfigError as e:
        typer.echo(f"Config error: {e}", err=True)
        raise typer.Exit(2)

    if not really_run:
        print_plan(job, " ".join(sys.argv))
        return

    try:
        notifier = SmtpNotifier(**smtp_settings()) if (email or error_email) else None
        job.store = _open_store(db, events)
    except ConfigError as e:
        typer.echo(f"Config error: {e}", err=True)
        raise typer.Exit(2)

    try:
        if not quiet:
            print_status(job)
        try:
            status = job.run()
        except StepSpawnError as e:
            typer.echo(f"Spawn error: {e}", err=True)
            raise typer.Exit(1)

        target = _notify_target(job, email, error_email)
        if notifier is not None:
            if target is not None:
                result = notifier.send(email_subject(job), email_body(job), target)
                if not result["sent"]:
                    typer.echo(f"Error: could not send email: {result['error']}", err=True)
        else:
            print_report(job)
    finally:
        job.store.close()

    if status != Status.OK:
        raise typer.Exit(1)


@app.command()
def plan(
    directory: Optional[Path] = typer.Option(None, "--dir", "-d", help="Directory of NNN_* step files"),
    command: Optional[str] = typer.Option(None, "--exec", "-e", help="Single command to run as the only step"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="YAML config with per-step flags"),
):
    """Show the steps and groups a run would execute."""
    job_name = _job_name(directory, command)
    try:
        job = Job(job_name, directory=directory, command=command, flag_map=load_config(config_path),
                  store=NullJobStore())
        job.discover()
    except ConfigError as e:
        typer.echo(f"Config error: {e}", err=True)
        raise typer.Exit(2)
    print_status(job)


@app.command()
def version():
    """Show version information."""
    typer.echo(f"steprun version {__version__}")


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
