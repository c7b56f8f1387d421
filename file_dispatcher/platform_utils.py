"""
Cross-platform utilities for File Dispatcher.

Centralises all OS-detection logic so every other module can import
a single canonical set of helpers rather than scattering ``sys.platform``
checks throughout the codebase.

Supported platforms:
  - Windows Server / Windows 10+ (Windows service via pywin32)
  - macOS 12+ (launchd agent)
  - Linux (systemd unit)
"""

from __future__ import annotations

import os
import posixpath
import sys
from pathlib import Path, PurePath

# ---- platform flags ----------------------------------------------------

IS_WINDOWS: bool = sys.platform == "win32"
IS_MACOS: bool = sys.platform == "darwin"
IS_LINUX: bool = sys.platform.startswith("linux")

DEFAULT_CONFIG_NAME = "Dispatcher.json"

# ---- paths -------------------------------------------------------------


def to_slash(path: str | os.PathLike[str]) -> str:
    """Return *path* normalised to forward-slash form.

    Backslashes only become separators on Windows; on POSIX they are legal
    file-name characters and are left alone.
    """
    text = os.fspath(path)
    if IS_WINDOWS:
        text = PurePath(text).as_posix()
    if not text:
        return text
    return posixpath.normpath(text)


def get_executable_dir() -> Path:
    """Return the directory holding the running program.

    For a frozen build this is the directory of the executable itself;
    otherwise it is the directory of the launching script.
    """
    if getattr(sys, "frozen", False):
        return Path(sys.executable).resolve().parent
    return Path(sys.argv[0] or ".").resolve().parent


def default_config_path() -> Path:
    """Return the default configuration file path (next to the executable)."""
    return get_executable_dir() / DEFAULT_CONFIG_NAME


def get_log_dir() -> Path:
    """
    Return the directory used for the default log file.

    - Windows : ``%PROGRAMDATA%\\FileDispatcher``
    - macOS   : ``~/Library/Logs/FileDispatcher``
    - Linux   : ``$XDG_STATE_HOME/file-dispatcher`` (default ``~/.local/state``)
    """
    if IS_WINDOWS:
        base = Path(os.environ.get("PROGRAMDATA", r"C:\ProgramData"))
        return base / "FileDispatcher"
    if IS_MACOS:
        return Path.home() / "Library" / "Logs" / "FileDispatcher"
    base = os.environ.get("XDG_STATE_HOME", str(Path.home() / ".local" / "state"))
    return Path(base) / "file-dispatcher"


def get_log_path() -> Path:
    """Return the default log file path."""
    return get_log_dir() / "file_dispatcher.log"


# ---- process context ---------------------------------------------------


def is_interactive() -> bool:
    """Return True when running from a terminal rather than a service manager.

    systemd exports ``INVOCATION_ID`` to the processes it starts, and both
    systemd and launchd parent their services directly under PID 1.
    On Windows the service host is detected via pywin32 when available.
    """
    if IS_WINDOWS:
        try:
            import servicemanager  # type: ignore[import-untyped]
        except ImportError:
            return True
        return not servicemanager.RunningAsService()
    if os.environ.get("INVOCATION_ID"):
        return False
    return os.getppid() != 1
