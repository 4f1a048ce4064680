# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Step discovery.

Directory mode: files named NNN_<name> are steps. They are sorted by
name; that order is the execution order. Consecutive files with the same
three-digit position number form one group and run concurrently. Step
ids are assigned 1, 2, 3, ... across all groups.

Command mode: a single command line becomes one group with one step.
"""

import re
from pathlib import Path
from typing import List, Optional

from steprun.config import ConfigError, FlagMap, flags_for
from steprun.step import Step, StepGroup

STEP_NAME_PATTERN = re.compile(r"^\d{3}_.+")


def step_base_name(filename: str) -> str:
    """Step name: file name with its extension removed."""
    return Path(filename).stem


def position_number(name: str) -> int:
    """Position number from the leading three characters, 0 if not numeric."""
    prefix = name[:3]
    return int(prefix) if prefix.isdigit() else 0


def discover_from_dir(directory: Path, flag_map: Optional[FlagMap] = None) -> List[StepGroup]:
    """Discover step groups from NNN_* files in a directory.

    Raises:
        ConfigError: If the directory does not exist or holds no steps.
    """
    flag_map = flag_map or {}
    directory = Path(directory).expanduser().resolve()
    if not directory.is_dir():
        raise ConfigError(f"step directory not found: {directory}")

    filenames = sorted(
        entry.name
        for entry in directory.iterdir()
        if STEP_NAME_PATTERN.match(entry.name) and entry.is_file()
    )

    groups: List[StepGroup] = []
    for step_id, filename in enumerate(filenames, 1):
        name = step_base_name(filename)
        number = position_number(name)
        step = Step(
            step_id,
            number,
            directory / filename,
            name,
            flags=flags_for(name, flag_map),
            cwd=directory,
        )
        if groups and groups[-1].number == number:
            groups[-1].append(step)
        else:
            groups.append(StepGroup(number, [step]))

    if not groups:
        raise ConfigError(f"no steps found in {directory}")
    return groups


def discover_from_command(command: str, flag_map: Optional[FlagMap] = None) -> List[StepGroup]:
    """Build a single-step group from a command line.

    Raises:
        ConfigError: If the command is empty.
    """
    flag_map = flag_map or {}
    parts = command.split()
    if not parts:
        raise ConfigError("exec command is empty")

    file, *flags = parts
    name = step_base_name(file)
    # Bare names are left for PATH lookup
    path = Path(file).resolve() if "/" in file else Path(file)
    flags += flags_for(name, flag_map)

    step = Step(1, position_number(name), path, name, flags=flags)
    return [StepGroup(step.number, [step])]


def discover(
    directory: Optional[Path] = None,
    command: Optional[str] = None,
    flag_map: Optional[FlagMap] = None,
) -> List[StepGroup]:
    """Discover steps from exactly one of a directory or a command.

    Raises:
        ConfigError: If neither or both sources are given, or no steps exist.
    """
    if (directory is None) == (command is None):
        raise ConfigError("exactly one of a step directory or an exec command is required")
    if directory is not None:
        return discover_from_dir(directory, flag_map)
    return discover_from_command(command, flag_map)
