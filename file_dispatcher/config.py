"""Configuration management for File Dispatcher.

Reads the dispatcher settings from a JSON file.  The file is loaded once
at startup and validated up front: every configured source and
destination must be an existing directory, otherwise nothing runs.
"""

import json
import logging
import os
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from file_dispatcher.platform_utils import to_slash

logger = logging.getLogger(__name__)

DEFAULT_SETTLE_DELAY_MS = 500

DEFAULT_CONFIG: dict[str, Any] = {
    "threads": [],
    "recursive": True,  # watch every subdirectory, not just the source roots
    "settle_delay_ms": DEFAULT_SETTLE_DELAY_MS,
    "log_level": "INFO",
    # ---- log file ----
    "log_file": "",  # blank = no file log (stderr only, except as a Windows service)
    "max_log_size_mb": 10,  # rotate log when it exceeds this size
    "log_backup_count": 3,  # number of rotated log files to keep
}


class ConfigError(Exception):
    """Raised when the configuration file cannot be loaded or is invalid."""


@dataclass(frozen=True)
class ThreadMapping:
    """One configured rule: copy new files from *source* into *destination*."""

    source: str
    destination: str


def _check_dir(path: str, role: str) -> None:
    try:
        st = os.stat(path)
    except FileNotFoundError as exc:
        raise ConfigError(f"Specified {role} path {path} does not exist.") from exc
    except OSError as exc:
        raise ConfigError(f"Cannot inspect {role} path {path}: {exc}") from exc
    if not stat.S_ISDIR(st.st_mode):
        raise ConfigError(f"Specified {role} path {path} is not a directory.")


def _parse_mapping(index: int, entry: Any) -> ThreadMapping:
    if not isinstance(entry, dict):
        raise ConfigError(f"threads[{index}] must be an object.")
    values = {}
    for key in ("source", "destination"):
        value = entry.get(key)
        if not isinstance(value, str) or not value.strip():
            raise ConfigError(f"threads[{index}].{key} must be a non-empty string.")
        values[key] = to_slash(value.strip())
        _check_dir(values[key], key)
    return ThreadMapping(source=values["source"], destination=values["destination"])


class Config:
    """Immutable dispatcher configuration backed by a parsed JSON object."""

    def __init__(self, data: dict[str, Any], path: Path | None = None):
        """Validate *data* and apply defaults for missing keys."""
        if not isinstance(data, dict):
            raise ConfigError("Configuration must be a JSON object.")
        self._path = path
        unknown = sorted(set(data) - set(DEFAULT_CONFIG))
        if unknown:
            logger.warning("Ignoring unknown configuration keys: %s", ", ".join(unknown))
        self._data: dict[str, Any] = {**DEFAULT_CONFIG, **data}

        threads = self._data["threads"]
        if not isinstance(threads, list):
            raise ConfigError("'threads' must be a list.")
        self._mappings = tuple(
            _parse_mapping(i, entry) for i, entry in enumerate(threads)
        )
        if not self._mappings:
            logger.warning("No threads configured; nothing will be dispatched.")

        for key in ("settle_delay_ms", "max_log_size_mb", "log_backup_count"):
            value = self._data[key]
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigError(f"'{key}' must be a number.")
        if not isinstance(self._data["recursive"], bool):
            raise ConfigError("'recursive' must be true or false.")
        for key in ("log_level", "log_file"):
            if not isinstance(self._data[key], str):
                raise ConfigError(f"'{key}' must be a string.")

    @property
    def path(self) -> Path | None:
        """Return the file this configuration was loaded from, if any."""
        return self._path

    # ---- dispatch ----

    @property
    def mappings(self) -> tuple[ThreadMapping, ...]:
        """Return the configured mappings in match order."""
        return self._mappings

    @property
    def recursive(self) -> bool:
        """Return whether subdirectories of each source are watched too."""
        return self._data["recursive"]

    @property
    def settle_delay(self) -> float:
        """Return the pause before copying a new file, in seconds."""
        return max(0, self._data["settle_delay_ms"]) / 1000.0

    # ---- logging ----

    @property
    def log_level(self) -> str:
        """Return the current logging level name."""
        return self._data["log_level"]

    @property
    def log_file(self) -> str:
        """Return the configured log file path (blank = none)."""
        return self._data["log_file"]

    @property
    def max_log_size_mb(self) -> int:
        """Return the maximum log file size in MB before rotation."""
        return max(1, int(self._data["max_log_size_mb"]))

    @property
    def log_backup_count(self) -> int:
        """Return the number of rotated log backups to keep."""
        return max(0, int(self._data["log_backup_count"]))


def load_config(path: str | Path) -> Config:
    """Load and validate the configuration file at *path*."""
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as fh:
            data = json.load(fh)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Malformed JSON in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Cannot read config file {path}: {exc}") from exc
    config = Config(data, path=path)
    logger.info("Configuration loaded from %s (%d threads)", path, len(config.mappings))
    return config
