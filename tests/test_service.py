"""Tests for file_dispatcher.service."""

import json
import logging
import logging.handlers
import os
import signal
import threading
import time
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from watchdog.observers.polling import PollingObserver

from file_dispatcher import service
from file_dispatcher.config import Config
from file_dispatcher.dispatcher import DispatchState
from file_dispatcher.platform_utils import IS_WINDOWS
from file_dispatcher.service import DispatcherService, main, parse_args
from file_dispatcher.watcher import WatchError, WatchSet


@pytest.fixture
def config_file(tmp_path, dirs):
    src, dst = dirs
    path = tmp_path / "Dispatcher.json"
    path.write_text(
        json.dumps({"threads": [{"source": str(src), "destination": str(dst)}]}),
        encoding="utf-8",
    )
    return path


@pytest.fixture
def restore_signals():
    saved = {sig: signal.getsignal(sig) for sig in (signal.SIGINT, signal.SIGTERM)}
    yield
    for sig, handler in saved.items():
        signal.signal(sig, handler)


class TestParseArgs:
    """Tests for command-line parsing."""

    def test_defaults(self):
        args = parse_args([])
        assert args.config == ""
        assert args.mode == ""

    def test_flags(self):
        args = parse_args(["-c", "x.json", "-m", "install"])
        assert args.config == "x.json"
        assert args.mode == "install"


class TestMain:
    """Tests for the CLI entry point."""

    def test_unrecognized_mode(self, config_file, caplog):
        """An unknown mode is fatal."""
        assert main(["-c", str(config_file), "-m", "start"]) == 1
        assert "Unrecognized mode flag" in caplog.text
        assert any(r.levelno == logging.CRITICAL for r in caplog.records)

    def test_missing_config_file(self, tmp_path, caplog):
        assert main(["-c", str(tmp_path / "none.json")]) == 1
        assert "does not exist" in caplog.text

    def test_default_config_path(self, tmp_path, monkeypatch, caplog):
        """Without -c the config next to the executable is used."""
        monkeypatch.setattr(service, "default_config_path", lambda: tmp_path / "Dispatcher.json")
        assert main([]) == 1
        assert "Dispatcher.json does not exist" in caplog.text

    def test_invalid_config(self, tmp_path, caplog):
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"threads": [{"source": str(tmp_path / "x"), "destination": str(tmp_path)}]}))
        assert main(["-c", str(path)]) == 1
        assert "Loading config file error" in caplog.text

    @pytest.mark.parametrize("mode", ["", "run"])
    def test_run_modes(self, config_file, monkeypatch, mode):
        """Empty mode and 'run' both run the dispatcher in the foreground."""
        calls = []
        monkeypatch.setattr(service, "setup_logging", lambda config, interactive: [])
        monkeypatch.setattr(service, "run_foreground", lambda config: calls.append(config) or 0)

        assert main(["-c", str(config_file), "-m", mode]) == 0
        assert len(calls) == 1
        assert isinstance(calls[0], Config)

    def test_install(self, config_file, monkeypatch):
        calls = []
        monkeypatch.setattr(service, "install_service", calls.append)
        assert main(["-c", str(config_file), "-m", "install"]) == 0
        assert calls == [config_file]

    def test_uninstall(self, config_file, monkeypatch):
        calls = []
        monkeypatch.setattr(service, "uninstall_service", lambda: calls.append(True))
        assert main(["-c", str(config_file), "-m", "uninstall"]) == 0
        assert calls == [True]

    def test_install_failure(self, config_file, monkeypatch, caplog):
        def _denied(path):
            raise PermissionError(13, "Permission denied", "/etc/systemd/system")

        monkeypatch.setattr(service, "install_service", _denied)
        assert main(["-c", str(config_file), "-m", "install"]) == 1
        assert "Service install failed" in caplog.text

    def test_bootstrap_handler_removed(self, config_file):
        before = list(logging.getLogger().handlers)
        main(["-c", str(config_file), "-m", "bogus"])
        assert logging.getLogger().handlers == before


class TestDispatcherService:
    """Tests for the on_start / on_stop host contract."""

    def test_start_is_non_blocking_and_stop_is_prompt(self, make_config, dirs, watch_set, wait_until):
        src, dst = dirs
        svc = DispatcherService(make_config((src, dst)), watch_set=watch_set, interactive=True)

        svc.on_start()
        assert svc.is_running
        assert wait_until(lambda: svc.loop.state is DispatchState.RUNNING)
        assert svc.loop.watch_set is watch_set

        svc.on_stop(timeout=2)
        assert not svc.is_running
        assert svc.loop.state is DispatchState.STOPPED
        assert svc.failure is None

    def test_logs_run_context(self, make_config, dirs, watch_set, caplog):
        src, dst = dirs
        svc = DispatcherService(make_config((src, dst)), watch_set=watch_set, interactive=False)
        with caplog.at_level(logging.INFO):
            svc.on_start()
            svc.on_stop(timeout=2)
        assert "Running under service manager." in caplog.text

    def test_start_failure_is_reported(self, make_config, dirs, watch_set, fake_observer, wait_until):
        src, dst = dirs
        fake_observer.fail_paths.add(src.as_posix())
        svc = DispatcherService(make_config((src, dst)), watch_set=watch_set, interactive=True)

        svc.on_start()

        assert wait_until(lambda: not svc.is_running)
        assert isinstance(svc.failure, WatchError)
        assert not svc.is_running

    def test_run_foreground_reports_start_failure(self, make_config, dirs, watch_set, fake_observer, restore_signals):
        src, dst = dirs
        fake_observer.fail_paths.add(src.as_posix())
        config = make_config((src, dst))
        svc = DispatcherService(config, watch_set=watch_set, interactive=True)

        assert service.run_foreground(config, svc) == 1

    @pytest.mark.skipif(IS_WINDOWS, reason="POSIX signals")
    def test_end_to_end_until_sigterm(self, make_config, dirs, wait_until, restore_signals):
        """Files are dispatched by a real observer until SIGTERM arrives."""
        src, dst = dirs
        config = make_config((src, dst), settle_delay_ms=200)
        watch_set = WatchSet(observer_factory=lambda: PollingObserver(timeout=0.1))
        svc = DispatcherService(config, watch_set=watch_set, interactive=True)
        result = []

        def _copy_then_stop():
            wait_until(lambda: svc.loop is not None and svc.loop.state is DispatchState.RUNNING)
            (src / "sub").mkdir()
            (src / "report.csv").write_bytes(b"a,b,c\n")
            wait_until(lambda: svc.loop.copier.stats.total_copied == 1 and (src / "sub").as_posix() in watch_set.paths)
            result.append((dst / "report.csv").read_bytes())
            os.kill(os.getpid(), signal.SIGTERM)

        helper = threading.Thread(target=_copy_then_stop, daemon=True)
        helper.start()
        assert service.run_foreground(config, svc) == 0
        helper.join(5)

        assert result == [b"a,b,c\n"]
        assert (src / "sub").as_posix() in watch_set.paths
        assert not svc.is_running


class TestServeUntilStopped:
    """Tests for the shared host wait loop."""

    def test_returns_when_loop_dies(self, make_config, dirs, watch_set, fake_observer):
        """A loop that fails to start ends the wait without a stop request."""
        src, dst = dirs
        fake_observer.fail_paths.add(src.as_posix())
        svc = DispatcherService(make_config((src, dst)), watch_set=watch_set, interactive=False)
        polls = []

        def _never(timeout):
            polls.append(timeout)
            time.sleep(0.01)
            return False

        service.serve_until_stopped(svc, _never, poll_interval=0.01)

        assert not svc.is_running
        assert isinstance(svc.failure, WatchError)

    def test_stop_signal_stops_healthy_loop(self, make_config, dirs, watch_set):
        src, dst = dirs
        svc = DispatcherService(make_config((src, dst)), watch_set=watch_set, interactive=False)
        calls = []

        def _second_poll(timeout):
            calls.append(timeout)
            return len(calls) >= 2

        service.serve_until_stopped(svc, _second_poll, poll_interval=0.01)

        assert len(calls) == 2
        assert not svc.is_running
        assert svc.failure is None
        assert svc.loop.state is DispatchState.STOPPED

    def test_win32_event_waiter(self, monkeypatch):
        """The service stop event is polled with a millisecond timeout."""
        waits = []
        results = iter([258, 0])  # WAIT_TIMEOUT, then WAIT_OBJECT_0
        fake = SimpleNamespace(
            WAIT_OBJECT_0=0,
            WaitForSingleObject=lambda handle, ms: waits.append((handle, ms)) or next(results),
        )
        monkeypatch.setattr(service, "win32event", fake, raising=False)

        signalled = service._event_waiter("stop-handle")

        assert signalled(1.0) is False
        assert signalled(0.5) is True
        assert waits == [("stop-handle", 1000), ("stop-handle", 500)]


class TestSetupLogging:
    """Tests for log sink configuration."""

    def _cleanup(self, handlers):
        root = logging.getLogger()
        for handler in handlers:
            root.removeHandler(handler)
            handler.close()

    def test_stderr_only_by_default(self, make_config):
        handlers = service.setup_logging(make_config(), interactive=True)
        try:
            assert [type(h) for h in handlers] == [logging.StreamHandler]
        finally:
            self._cleanup(handlers)

    def test_rotating_file(self, make_config, tmp_path):
        log_file = tmp_path / "logs" / "dispatcher.log"
        config = make_config(log_file=str(log_file), max_log_size_mb=2, log_backup_count=5)
        handlers = service.setup_logging(config, interactive=True)
        try:
            rotating = [h for h in handlers if isinstance(h, logging.handlers.RotatingFileHandler)]
            assert len(rotating) == 1
            assert rotating[0].maxBytes == 2 * 1024 * 1024
            assert rotating[0].backupCount == 5
            assert log_file.parent.is_dir()
        finally:
            self._cleanup(handlers)

    def test_windows_service_logs_to_default_file(self, make_config, tmp_path, monkeypatch):
        monkeypatch.setattr(service, "get_log_path", lambda: tmp_path / "default.log")
        handlers = service.setup_logging(make_config(), interactive=False, windows_service=True)
        try:
            assert len(handlers) == 1
            assert isinstance(handlers[0], logging.handlers.RotatingFileHandler)
            assert handlers[0].baseFilename == str(tmp_path / "default.log")
        finally:
            self._cleanup(handlers)


class TestServiceFiles:
    """Tests for launchd / systemd registration files."""

    def test_systemd_install_and_uninstall(self, tmp_path):
        config_path = tmp_path / "Dispatcher.json"
        with patch.object(service.subprocess, "run") as run:
            run.return_value.returncode = 0
            unit = service._systemd_install(config_path, unit_dir=tmp_path)
            content = unit.read_text(encoding="utf-8")
            assert f'"-c" "{config_path}" "-m" "run"' in content
            assert "WantedBy=multi-user.target" in content
            run.assert_any_call(["systemctl", "enable", "file-dispatcher.service"], check=False)

            service._systemd_uninstall(unit_dir=tmp_path)
            assert not unit.exists()

    def test_systemd_uninstall_missing_unit(self, tmp_path, caplog):
        with patch.object(service.subprocess, "run") as run:
            service._systemd_uninstall(unit_dir=tmp_path)
        run.assert_not_called()
        assert "nothing to uninstall" in caplog.text

    def test_launchd_plist(self, tmp_path):
        content = service._macos_plist_content(tmp_path / "Dispatcher.json")
        assert "<string>com.filedispatcher.agent</string>" in content
        assert f"<string>{tmp_path / 'Dispatcher.json'}</string>" in content
        assert "<string>run</string>" in content
