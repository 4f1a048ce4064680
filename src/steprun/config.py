"""Job configuration loading and validation.

A job config is a YAML file with a `flags` mapping from step name to the
flags passed to that step:

    flags:
      001_fetch:
        date: 2025-01-31
        limit: 10

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

DEFAULT_DB_PATH = "~/.steprun/jobs.db"
DEFAULT_SMTP_HOST = "localhost"
DEFAULT_SMTP_PORT = 25

FlagMap = Dict[str, Dict[str, Any]]


class ConfigError(Exception):
    """Raised when job configuration is invalid."""

    pass


def validate_flag_map(flags: Any) -> FlagMap:
    """Validate a step-name -> {flag: value} mapping.

    Args:
        flags: Parsed flag map.

    Returns:
        The flag map with string keys.

    Raises:
        ConfigError: If the structure is not a mapping of mappings of scalars.
    """
    if flags is None:
        return {}
    if not isinstance(flags, dict):
        raise ConfigError(f"flags must be a mapping of step name to flags, got: {type(flags).__name__}")

    validated: FlagMap = {}
    for step_name, step_flags in flags.items():
        if not isinstance(step_flags, dict):
            raise ConfigError(f"flags for step '{step_name}' must be a mapping")
        for key, value in step_flags.items():
            if isinstance(value, (dict, list)):
                raise ConfigError(f"flag '{key}' for step '{step_name}' must be a scalar value")
        validated[str(step_name)] = {str(k): v for k, v in step_flags.items()}
    return validated


def load_config(config_path: Optional[str]) -> FlagMap:
    """Load the flag map from a YAML config file.

    Args:
        config_path: Path to the config file, or None for no flags.

    Returns:
        Validated flag map.

    Raises:
        ConfigError: If the file is missing, not valid YAML, or has no flags key.
    """
    if config_path is None:
        return {}

    path = Path(config_path).expanduser()
    if not path.exists():
        raise ConfigError(f"config file not found: {path}")

    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a YAML mapping")
    if "flags" not in data:
        raise ConfigError(f"flags missing from config {path}")

    return validate_flag_map(data["flags"])


def flags_for(name: str, flag_map: FlagMap) -> List[str]:
    """Render a step's configured flags as --key=value arguments."""
    return [f"--{key}={_format_value(value)}" for key, value in flag_map.get(name, {}).items()]


def _format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def default_db_path() -> Path:
    """SQLite store path: $STEPRUN_DB or ~/.steprun/jobs.db."""
    return Path(os.environ.get("STEPRUN_DB", DEFAULT_DB_PATH)).expanduser()


def smtp_settings() -> Dict[str, Any]:
    """SMTP host/port from $STEPRUN_SMTP_HOST and $STEPRUN_SMTP_PORT."""
    port = os.environ.get("STEPRUN_SMTP_PORT", str(DEFAULT_SMTP_PORT))
    try:
        port_number = int(port)
    except ValueError:
        raise ConfigError(f"STEPRUN_SMTP_PORT must be an integer, got: {port}")
    return {
        "host": os.environ.get("STEPRUN_SMTP_HOST", DEFAULT_SMTP_HOST),
        "port": port_number,
    }
