"""
Background service / daemon support for File Dispatcher.

Hosts the dispatch loop on a background thread and installs it with the
platform's service manager.

**Windows**: runs as a Windows service via pywin32:
    python -m file_dispatcher -c Dispatcher.json -m install
    python -m file_dispatcher -m uninstall

**macOS**: runs via a launchd agent:
    python -m file_dispatcher -c Dispatcher.json -m install   (writes and loads the plist)
    python -m file_dispatcher -m uninstall                    (unloads and deletes it)

**Linux**: runs as a systemd unit:
    python -m file_dispatcher -c Dispatcher.json -m install   (writes and enables the unit)
    python -m file_dispatcher -m uninstall

Any platform: run in the foreground until Ctrl-C / SIGTERM:
    python -m file_dispatcher -c Dispatcher.json [-m run]
"""

import argparse
import logging
import logging.handlers
import signal
import subprocess
import sys
import threading
from collections.abc import Callable
from pathlib import Path

from file_dispatcher import (
    SERVICE_DESCRIPTION,
    SERVICE_DISPLAY_NAME,
    SERVICE_NAME,
    __app_name__,
    __version__,
)
from file_dispatcher.config import Config, ConfigError, load_config
from file_dispatcher.dispatcher import DispatchLoop
from file_dispatcher.platform_utils import (
    IS_LINUX,
    IS_MACOS,
    IS_WINDOWS,
    default_config_path,
    get_log_path,
    is_interactive,
)
from file_dispatcher.watcher import WatchError, WatchSet

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

MODE_INSTALL = "install"
MODE_UNINSTALL = "uninstall"
MODE_RUN = "run"
MODES = (MODE_RUN, MODE_INSTALL, MODE_UNINSTALL, "")

_STOP_TIMEOUT = 5.0

# ---- Windows service (pywin32) -----------------------------------------

_HAS_WIN32 = False
if IS_WINDOWS:
    try:
        import servicemanager  # type: ignore[import-untyped]
        import win32event  # type: ignore[import-untyped]
        import win32service  # type: ignore[import-untyped]
        import win32serviceutil  # type: ignore[import-untyped]
        _HAS_WIN32 = True
    except ImportError:
        pass

# ---- launchd / systemd constants ---------------------------------------

_LAUNCHD_LABEL = "com.filedispatcher.agent"
_PLIST_DIR = Path.home() / "Library" / "LaunchAgents"
_SYSTEMD_UNIT_NAME = "file-dispatcher.service"
_SYSTEMD_UNIT_DIR = Path("/etc/systemd/system")


# ======================================================================
# Logging
# ======================================================================

def setup_logging(config: Config, interactive: bool, windows_service: bool = False) -> list[logging.Handler]:
    """Configure the root logger from *config*.  Returns the handlers added.

    A Windows service has no console, so it always logs to a file (the
    default log path unless ``log_file`` is set).  Everywhere else stderr
    is used; systemd and launchd capture it into their own logs.
    """
    level = getattr(logging, config.log_level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    fmt = logging.Formatter(LOG_FORMAT)
    handlers: list[logging.Handler] = []

    log_file = config.log_file
    if not log_file and windows_service:
        log_file = str(get_log_path())
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        fh = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=config.max_log_size_mb * 1024 * 1024,
            backupCount=config.log_backup_count,
            encoding="utf-8",
        )
        handlers.append(fh)

    if not windows_service:
        handlers.append(logging.StreamHandler(sys.stderr))

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(fmt)
        root_logger.addHandler(handler)

    logger.debug("Logging configured (level=%s, interactive=%s)", config.log_level, interactive)
    return handlers


# ======================================================================
# Service host
# ======================================================================

class DispatcherService:
    """
    Runs the dispatch loop on a dedicated background thread.

    ``on_start`` returns immediately; ``on_stop`` signals the loop and waits
    a few seconds at most for it to exit.
    """

    def __init__(
        self,
        config: Config,
        log: logging.Logger | None = None,
        watch_set: WatchSet | None = None,
        interactive: bool | None = None,
    ):
        self._config = config
        self._log = log or logger
        self._watch_set = watch_set
        self._interactive = interactive
        self.loop: DispatchLoop | None = None
        self.failure: BaseException | None = None
        self._thread: threading.Thread | None = None

    def on_start(self) -> None:
        """Start the dispatch loop asynchronously."""
        if self.is_running:
            self._log.warning("Service already running.")
            return
        interactive = is_interactive() if self._interactive is None else self._interactive
        if interactive:
            self._log.info("Running in terminal.")
        else:
            self._log.info("Running under service manager.")

        self.failure = None
        self.loop = DispatchLoop(self._config, log=self._log, watch_set=self._watch_set)
        self._thread = threading.Thread(
            target=self._run, daemon=True, name="DispatchLoop"
        )
        self._thread.start()

    def _run(self) -> None:
        try:
            self.loop.run()
        except WatchError as exc:
            self.failure = exc
            self._log.error("Service failed to start: %s", exc)
        except Exception as exc:
            self.failure = exc
            self._log.exception("Dispatch loop crashed.")

    def on_stop(self, timeout: float = _STOP_TIMEOUT) -> None:
        """Signal the dispatch loop to stop and wait briefly for it."""
        self._log.info("Service shutting down ...")
        if self.loop is not None:
            self.loop.request_stop()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                self._log.warning("Dispatch loop did not stop within %.0fs.", timeout)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


# ======================================================================
# Windows service
# ======================================================================

if _HAS_WIN32:

    class FileDispatcherWinService(win32serviceutil.ServiceFramework):
        """Windows service implementation for File Dispatcher."""

        _svc_name_ = SERVICE_NAME
        _svc_display_name_ = SERVICE_DISPLAY_NAME
        _svc_description_ = SERVICE_DESCRIPTION

        def __init__(self, args):
            super().__init__(args)
            self._stop_event = win32event.CreateEvent(None, 0, 0, None)
            self._service: DispatcherService | None = None

        def SvcStop(self):
            self.ReportServiceStatus(win32service.SERVICE_STOP_PENDING)
            win32event.SetEvent(self._stop_event)
            logger.info("Service stop requested.")

        def SvcDoRun(self):
            servicemanager.LogMsg(
                servicemanager.EVENTLOG_INFORMATION_TYPE,
                servicemanager.PYS_SERVICE_STARTED,
                (self._svc_name_, ""),
            )
            try:
                config_path = win32serviceutil.GetServiceCustomOption(
                    self._svc_name_, "config", str(default_config_path())
                )
                config = load_config(config_path)
                setup_logging(config, interactive=False, windows_service=True)
                self._service = DispatcherService(config, interactive=False)
                serve_until_stopped(self._service, _event_waiter(self._stop_event))
                if self._service.failure is not None:
                    raise RuntimeError(f"dispatch loop stopped: {self._service.failure}")
            except Exception as exc:
                logger.exception("Service error: %s", exc)
                servicemanager.LogErrorMsg(f"{__app_name__} error: {exc}")
            finally:
                if self._service and self._service.is_running:
                    self._service.on_stop()
            logger.info("Service stopped.")


def _event_waiter(stop_event) -> Callable[[float], bool]:
    """Wrap a win32 event handle as a ``stop_signalled(timeout)`` callable."""
    def _signalled(timeout: float) -> bool:
        result = win32event.WaitForSingleObject(stop_event, int(timeout * 1000))
        return result == win32event.WAIT_OBJECT_0
    return _signalled


def _windows_install(config_path: Path) -> None:
    sys.argv = [sys.argv[0], "install"]
    win32serviceutil.HandleCommandLine(FileDispatcherWinService)
    win32serviceutil.SetServiceCustomOption(SERVICE_NAME, "config", str(config_path))
    logger.info("Windows service %s installed (config %s).", SERVICE_NAME, config_path)


def _windows_uninstall() -> None:
    sys.argv = [sys.argv[0], "remove"]
    win32serviceutil.HandleCommandLine(FileDispatcherWinService)
    logger.info("Windows service %s removed.", SERVICE_NAME)


# ======================================================================
# macOS launchd helpers
# ======================================================================

def _service_args(config_path: Path) -> list[str]:
    return [sys.executable, "-m", "file_dispatcher", "-c", str(config_path), "-m", MODE_RUN]


def _macos_plist_content(config_path: Path) -> str:
    """Generate the launchd plist XML for the current Python environment."""
    log_dir = Path.home() / "Library" / "Logs" / "FileDispatcher"
    args = "\n".join(f"        <string>{arg}</string>" for arg in _service_args(config_path))
    return f"""\
<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE plist PUBLIC "-//Apple//DTD PLIST 1.0//EN"
  "http://www.apple.com/DTDs/PropertyList-1.0.dtd">
<plist version="1.0">
<dict>
    <key>Label</key>
    <string>{_LAUNCHD_LABEL}</string>
    <key>ProgramArguments</key>
    <array>
{args}
    </array>
    <key>RunAtLoad</key>
    <true/>
    <key>KeepAlive</key>
    <true/>
    <key>StandardOutPath</key>
    <string>{log_dir / 'stdout.log'}</string>
    <key>StandardErrorPath</key>
    <string>{log_dir / 'stderr.log'}</string>
</dict>
</plist>
"""


def _macos_install(config_path: Path, plist_dir: Path = _PLIST_DIR) -> Path:
    plist_dir.mkdir(parents=True, exist_ok=True)
    (Path.home() / "Library" / "Logs" / "FileDispatcher").mkdir(parents=True, exist_ok=True)
    plist_path = plist_dir / f"{_LAUNCHD_LABEL}.plist"
    plist_path.write_text(_macos_plist_content(config_path), encoding="utf-8")
    subprocess.run(["launchctl", "load", str(plist_path)], check=True)
    logger.info("Installed and loaded launchd agent: %s", plist_path)
    return plist_path


def _macos_uninstall(plist_dir: Path = _PLIST_DIR) -> None:
    plist_path = plist_dir / f"{_LAUNCHD_LABEL}.plist"
    if not plist_path.exists():
        logger.warning("Plist %s not found; nothing to uninstall.", plist_path)
        return
    subprocess.run(["launchctl", "unload", str(plist_path)], check=False)
    plist_path.unlink()
    logger.info("Removed launchd agent: %s", plist_path)


# ======================================================================
# Linux systemd helpers
# ======================================================================

def _systemd_unit_content(config_path: Path) -> str:
    exec_start = " ".join(f'"{arg}"' for arg in _service_args(config_path))
    return f"""\
[Unit]
Description={SERVICE_DISPLAY_NAME}
After=local-fs.target

[Service]
Type=simple
ExecStart={exec_start}
Restart=on-failure

[Install]
WantedBy=multi-user.target
"""


def _systemctl(*args: str) -> None:
    result = subprocess.run(["systemctl", *args], check=False)
    if result.returncode != 0:
        logger.warning("systemctl %s exited with status %d", " ".join(args), result.returncode)


def _systemd_install(config_path: Path, unit_dir: Path = _SYSTEMD_UNIT_DIR) -> Path:
    unit_path = unit_dir / _SYSTEMD_UNIT_NAME
    unit_path.write_text(_systemd_unit_content(config_path), encoding="utf-8")
    _systemctl("daemon-reload")
    _systemctl("enable", _SYSTEMD_UNIT_NAME)
    logger.info("Installed systemd unit: %s", unit_path)
    return unit_path


def _systemd_uninstall(unit_dir: Path = _SYSTEMD_UNIT_DIR) -> None:
    unit_path = unit_dir / _SYSTEMD_UNIT_NAME
    if not unit_path.exists():
        logger.warning("Unit %s not found; nothing to uninstall.", unit_path)
        return
    _systemctl("disable", "--now", _SYSTEMD_UNIT_NAME)
    unit_path.unlink()
    _systemctl("daemon-reload")
    logger.info("Removed systemd unit: %s", unit_path)


# ======================================================================
# Modes
# ======================================================================

def install_service(config_path: Path) -> None:
    """Register the dispatcher with the platform service manager."""
    config_path = config_path.resolve()
    if IS_WINDOWS:
        if not _HAS_WIN32:
            raise RuntimeError("pywin32 is required to install as a service (pip install pywin32).")
        _windows_install(config_path)
    elif IS_MACOS:
        _macos_install(config_path)
    elif IS_LINUX:
        _systemd_install(config_path)
    else:
        raise RuntimeError(f"Service installation is not supported on {sys.platform}.")


def uninstall_service() -> None:
    """Remove the dispatcher from the platform service manager."""
    if IS_WINDOWS:
        if not _HAS_WIN32:
            raise RuntimeError("pywin32 is required to uninstall the service (pip install pywin32).")
        _windows_uninstall()
    elif IS_MACOS:
        _macos_uninstall()
    elif IS_LINUX:
        _systemd_uninstall()
    else:
        raise RuntimeError(f"Service installation is not supported on {sys.platform}.")


def serve_until_stopped(
    service: DispatcherService,
    stop_signalled: Callable[[float], bool],
    poll_interval: float = 1.0,
) -> None:
    """Start *service* and block until a stop is signalled or its loop ends.

    *stop_signalled(timeout)* waits up to *timeout* seconds and returns True
    once the host has asked for a stop.  A loop that dies on its own (for
    example when a source cannot be watched) ends the wait too, so the host
    can report ``service.failure``.
    """
    service.on_start()
    while service.is_running:
        if stop_signalled(poll_interval):
            break
    service.on_stop()


def run_foreground(config: Config, service: DispatcherService | None = None) -> int:
    """Run the dispatcher until SIGINT/SIGTERM or until the loop ends."""
    service = service if service is not None else DispatcherService(config)
    stop = threading.Event()

    def _handler(sig, frame):
        logger.info("Received signal %d.", sig)
        stop.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)

    serve_until_stopped(service, stop.wait)

    if service.failure is not None:
        logger.critical("%s stopped with an error: %s", __app_name__, service.failure)
        return 1
    return 0


# ======================================================================
# CLI entry
# ======================================================================

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="file-dispatcher",
        description=SERVICE_DESCRIPTION,
    )
    parser.add_argument(
        "-c", dest="config", default="",
        help="Specify the config json. It will use Dispatcher.json next to "
             "the executable if not specified.",
    )
    parser.add_argument(
        "-m", dest="mode", default="",
        help="Specify the mode: install, uninstall, run.",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Entry point for ``python -m file_dispatcher``.  Returns the exit status."""
    args = parse_args(argv)

    root_logger = logging.getLogger()
    bootstrap = logging.StreamHandler(sys.stderr)
    bootstrap.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(bootstrap)
    if root_logger.level > logging.INFO:
        root_logger.setLevel(logging.INFO)

    try:
        if args.mode not in MODES:
            logger.critical("Unrecognized mode flag: %s", args.mode)
            return 1

        config_path = Path(args.config) if args.config else default_config_path()
        if not config_path.is_file():
            logger.critical("Config file %s does not exist.", config_path)
            return 1

        try:
            config = load_config(config_path)
        except ConfigError as exc:
            logger.critical("Loading config file error: %s", exc)
            return 1

        if args.mode in (MODE_INSTALL, MODE_UNINSTALL):
            try:
                if args.mode == MODE_INSTALL:
                    install_service(config_path)
                else:
                    uninstall_service()
            except (OSError, RuntimeError, subprocess.CalledProcessError) as exc:
                logger.critical("Service %s failed: %s", args.mode, exc)
                return 1
            return 0

        root_logger.removeHandler(bootstrap)
        setup_logging(config, interactive=is_interactive())
        logger.info("%s %s starting.", __app_name__, __version__)
        return run_foreground(config)
    finally:
        root_logger.removeHandler(bootstrap)
