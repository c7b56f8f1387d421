"""File system watcher for File Dispatcher.

Uses the watchdog library to subscribe to creation events in a set of
directories.  Every directory gets its own non-recursive watch, so the
set of watched directories can grow one directory at a time as new
folders appear under a source.  Events and watcher errors from the
observer threads are funnelled into a single queue that the dispatch
loop blocks on.
"""

from __future__ import annotations

import logging
import os
import posixpath
import queue
import threading
from collections.abc import Callable
from typing import Any

from watchdog.events import (
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MOVED,
    DirCreatedEvent,
    DirDeletedEvent,
    DirMovedEvent,
    FileCreatedEvent,
    FileMovedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from file_dispatcher.platform_utils import to_slash

logger = logging.getLogger(__name__)

# Kinds of items carried on the notification queue
ITEM_EVENT = "event"
ITEM_ERROR = "error"
ITEM_WAKE = "wake"
ITEM_CLOSED = "closed"

# Directory deletions are only subscribed to so lost watches can be reported.
# Moves are relayed as creations of their destination.
_EVENT_FILTER = [
    FileCreatedEvent,
    DirCreatedEvent,
    DirDeletedEvent,
    FileMovedEvent,
    DirMovedEvent,
]


class WatchError(Exception):
    """Raised when a directory cannot be added to the watch set."""

    def __init__(self, path: str, reason: object):
        super().__init__(f"Cannot watch {path}: {reason}")
        self.path = path


class _QueueRelay(FileSystemEventHandler):
    """Watchdog handler that forwards events onto the notification queue."""

    def __init__(self, notifications: queue.Queue, is_watched: Callable[[str], bool]):
        super().__init__()
        self._notifications = notifications
        self._is_watched = is_watched

    def dispatch(self, event: FileSystemEvent) -> None:
        # Synthetic events describe the contents of a folder that was moved
        # in; only the folder itself is announced.
        if event.is_synthetic:
            return
        if event.event_type == EVENT_TYPE_DELETED:
            self._report_lost(event.src_path, event.is_directory, "watched folder was removed")
            return
        if event.event_type == EVENT_TYPE_MOVED:
            self._report_lost(event.src_path, event.is_directory, "watched folder was moved")
            created = self._as_created(event)
            if created is not None:
                self._notifications.put((ITEM_EVENT, created))
            return
        self._notifications.put((ITEM_EVENT, event))

    def _report_lost(self, src_path: bytes | str, is_directory: bool, reason: str) -> None:
        path = to_slash(os.fsdecode(src_path))
        if is_directory and self._is_watched(path):
            self._notifications.put((ITEM_ERROR, WatchError(path, reason)))

    def _as_created(self, event: FileSystemEvent) -> FileSystemEvent | None:
        """Return a creation event for the move's destination, if it is watched."""
        dest = to_slash(os.fsdecode(event.dest_path))
        if not self._is_watched(posixpath.dirname(dest)):
            return None
        if event.is_directory:
            return DirCreatedEvent(dest)
        return FileCreatedEvent(dest)


class WatchSet:
    """The live set of watched directories.

    Usage:
        watches = WatchSet()
        watches.open()
        watches.register_tree("/data/in")
        kind, payload = watches.get()
        ...
        watches.close()

    The path set is only mutated by the thread that owns the dispatch loop;
    the observer threads only read it through the relay.
    """

    def __init__(
        self,
        observer_factory: Callable[[], Any] = Observer,
        log: logging.Logger | None = None,
    ):
        """Create an empty watch set; *observer_factory* builds the watchdog observer."""
        self._observer_factory = observer_factory
        self._log = log or logger
        self._observer: Any | None = None
        self._notifications: queue.Queue = queue.Queue()
        self._paths: set[str] = set()
        self._paths_lock = threading.Lock()
        self._relay = _QueueRelay(self._notifications, self.is_watched)

    # ---- lifecycle ----

    def open(self) -> None:
        """Create and start the underlying observer."""
        if self._observer is not None:
            return
        try:
            observer = self._observer_factory()
            observer.start()
        except Exception as exc:
            raise WatchError("<observer>", exc) from exc
        self._observer = observer

    def close(self) -> None:
        """Stop the observer and release every subscription."""
        observer = self._observer
        if observer is None:
            return
        self._observer = None
        observer.stop()
        observer.join(timeout=5)
        self._notifications.put((ITEM_CLOSED, None))
        self._log.info("Watcher stopped (%d folders were watched).", len(self))

    @property
    def is_open(self) -> bool:
        return self._observer is not None

    # ---- registration ----

    def register_root(self, path: str) -> bool:
        """Watch *path* for new entries.  Returns False if it was already watched."""
        if self._observer is None:
            raise WatchError(path, "watcher is not running")
        path = to_slash(path)
        if self.is_watched(path):
            return False
        try:
            self._observer.schedule(
                self._relay, path, recursive=False, event_filter=_EVENT_FILTER
            )
        except Exception as exc:
            raise WatchError(path, exc) from exc
        with self._paths_lock:
            self._paths.add(path)
        self._log.debug("Watching %s", path)
        return True

    def register_tree(self, path: str) -> int:
        """Watch *path* and every directory beneath it.  Returns the number added."""
        def _raise(exc: OSError) -> None:
            raise WatchError(exc.filename or path, exc) from exc

        if not os.path.isdir(path):
            raise WatchError(path, "not a directory")
        added = 0
        for dirpath, _dirnames, _filenames in os.walk(path, onerror=_raise):
            if self.register_root(dirpath):
                added += 1
        return added

    def is_watched(self, path: str) -> bool:
        with self._paths_lock:
            return path in self._paths

    @property
    def paths(self) -> frozenset[str]:
        """Return a snapshot of the watched directories."""
        with self._paths_lock:
            return frozenset(self._paths)

    def __len__(self) -> int:
        with self._paths_lock:
            return len(self._paths)

    # ---- notifications ----

    def get(self, timeout: float | None = None) -> tuple[str, Any]:
        """Block until the next notification and return ``(kind, payload)``.

        Raises queue.Empty if *timeout* is given and nothing arrives in time.
        """
        return self._notifications.get(timeout=timeout)

    def wake(self) -> None:
        """Unblock a pending :meth:`get` so the consumer can re-check its state."""
        self._notifications.put((ITEM_WAKE, None))
