"""Shared fixtures for steprun tests."""

import os
import stat
from pathlib import Path

import pytest

from steprun.context import RunContext
from steprun.step import exit_code_from_wait_status
from steprun.store import NullJobStore


def _write_script(directory: Path, name: str, body: str = "exit 0") -> Path:
    path = directory / name
    path.write_text(f"#!/bin/sh\n{body}\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def _wait_for(step) -> None:
    _, wait_status = os.waitpid(step.pid, 0)
    step.on_terminated(exit_code_from_wait_status(wait_status))


@pytest.fixture
def make_script():
    """Write an executable shell script: make_script(dir, name, body)."""
    return _write_script


@pytest.fixture
def wait_step():
    """Block until a spawned step exits and record its termination."""
    return _wait_for


@pytest.fixture
def ctx():
    return RunContext("test-job")


@pytest.fixture
def store():
    return NullJobStore()


@pytest.fixture
def step_dir(tmp_path):
    directory = tmp_path / "steps"
    directory.mkdir()
    return directory
