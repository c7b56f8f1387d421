"""Pytest configuration and fixtures."""

import threading
import time

import pytest

from file_dispatcher.config import Config
from file_dispatcher.dispatcher import DispatchLoop
from file_dispatcher.watcher import WatchSet


class FakeObserver:
    """In-memory stand-in for a watchdog observer.

    Records every scheduled path and lets tests inject events straight into
    the scheduled handler, the way watchdog's dispatcher thread would.
    """

    def __init__(self):
        self.handlers = {}
        self.started = False
        self.stopped = False
        self.fail_paths = set()

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True

    def join(self, timeout=None):
        pass

    def schedule(self, handler, path, recursive=False, event_filter=None):
        if path in self.fail_paths:
            raise PermissionError(13, "Permission denied", path)
        self.handlers[path] = handler
        return path

    def emit(self, event):
        handler = next(iter(self.handlers.values()))
        handler.dispatch(event)


@pytest.fixture
def fake_observer():
    return FakeObserver()


@pytest.fixture
def watch_set(fake_observer):
    return WatchSet(observer_factory=lambda: fake_observer)


@pytest.fixture
def dirs(tmp_path):
    """Create an empty source and destination folder."""
    src = tmp_path / "in"
    dst = tmp_path / "out"
    src.mkdir()
    dst.mkdir()
    return src, dst


@pytest.fixture
def make_config():
    """Build a Config from (source, destination) pairs plus options."""
    def _make(*pairs, **options):
        threads = [{"source": str(s), "destination": str(d)} for s, d in pairs]
        options.setdefault("settle_delay_ms", 0)
        return Config({"threads": threads, **options})
    return _make


@pytest.fixture
def wait_until():
    """Poll *predicate* until it is true or *timeout* expires."""
    def _wait(predicate, timeout=5.0, interval=0.02):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()
    return _wait


@pytest.fixture
def start_loop(watch_set):
    """Run a DispatchLoop on a background thread; stopped at teardown."""
    started = []

    def _start(config, **kwargs):
        kwargs.setdefault("watch_set", watch_set)
        loop = DispatchLoop(config, **kwargs)
        errors = []

        def _target():
            try:
                loop.run()
            except Exception as exc:
                errors.append(exc)

        thread = threading.Thread(target=_target, daemon=True)
        thread.start()
        started.append((loop, thread))
        loop.thread = thread
        loop.errors = errors
        return loop

    yield _start

    for loop, thread in started:
        loop.request_stop()
        thread.join(5)
