"""Configuration utilities for the cicada CLI.

This module provides shared configuration functions used across CLI commands:
the JSON config file, the watch database location, logging setup and the
conversion of raw settings into resolved configuration values.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

from cicada.core.config import DEFAULT_CONCURRENCY, DEFAULT_EXCLUDE_PATTERNS, S3Settings
from cicada.core.errors import ConfigError

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Libraries that are noisy at DEBUG
QUIET_LOGGERS = ("botocore", "boto3", "s3transfer", "urllib3", "watchdog")


def get_config_dir() -> Path:
    """Get the configuration directory for cicada.

    Returns:
        Path to $CICADA_HOME, or ~/.cicada.
    """
    home = os.environ.get("CICADA_HOME")
    if home:
        return Path(home).expanduser()
    return Path.home() / ".cicada"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def get_watch_db() -> Path:
    """Get the path to the watch database."""
    return get_config_dir() / "watches.db"


def load_config() -> dict[str, Any]:
    """Load configuration from config file.

    Raises:
        ConfigError: If the file exists but is not a JSON object.
    """
    config_file = get_config_file()
    if not config_file.exists():
        return {}
    try:
        data = json.loads(config_file.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid config file {config_file}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Invalid config file {config_file}: expected an object")
    return data


def save_config(config: dict[str, Any]) -> None:
    """Save configuration to config file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2), encoding="utf-8")


def get_section(config: dict[str, Any], name: str) -> dict[str, Any]:
    """Return a config section, or an empty dict if missing."""
    section = config.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"config section '{name}' must be an object")
    return section


def get_concurrency(config: dict[str, Any]) -> int:
    return int(get_section(config, "sync").get("concurrency", DEFAULT_CONCURRENCY))


def get_default_excludes(config: dict[str, Any]) -> list[str]:
    """Exclude patterns from config, or the built-in defaults."""
    patterns = get_section(config, "sync").get("exclude")
    if patterns is None:
        return list(DEFAULT_EXCLUDE_PATTERNS)
    return [str(p) for p in patterns]


def get_s3_settings(config: dict[str, Any]) -> S3Settings:
    """Build S3 connection settings from the ``aws`` section."""
    aws = get_section(config, "aws")
    return S3Settings(
        region=aws.get("region"),
        endpoint_url=aws.get("endpoint"),
        profile=aws.get("profile"),
    )


def configure_logging(verbose: bool = False, log_file: str | None = None) -> None:
    """Attach handlers to the ``cicada`` logger.

    Args:
        verbose: Log DEBUG to stderr instead of WARNING.
        log_file: Optional file receiving INFO and above.
    """
    root = logging.getLogger("cicada")
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    root.setLevel(logging.DEBUG)
    root.propagate = False

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    root.addHandler(console)

    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
