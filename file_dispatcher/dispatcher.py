"""
Event dispatch loop for File Dispatcher.

The loop owns the watch set.  It seeds it from the configured sources,
then blocks on a single notification queue that carries filesystem
events, watcher errors and stop wake-ups.  New folders are added to
the watch set; new files are matched to a thread mapping and copied
after a short settle delay.  Every event is handled to completion
before the next one is read, and no single event can stop the loop.
"""

import logging
import os
import stat
import threading
from enum import Enum

from watchdog.events import EVENT_TYPE_CREATED, FileSystemEvent

from file_dispatcher.config import Config
from file_dispatcher.copier import FileCopier
from file_dispatcher.matcher import match_mapping
from file_dispatcher.platform_utils import to_slash
from file_dispatcher.watcher import (
    ITEM_CLOSED,
    ITEM_ERROR,
    ITEM_EVENT,
    WatchError,
    WatchSet,
)

logger = logging.getLogger(__name__)


class DispatchState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"


class DispatchLoop:
    """
    Watches the configured sources and dispatches new files.

    Parameters
    ----------
    config : Config
        The loaded dispatcher configuration.
    log : logging.Logger, optional
        Logger for every outcome; defaults to this module's logger.
    watch_set : WatchSet, optional
        Subscription set to use; a watchdog-backed one is created if omitted.
    copier : FileCopier, optional
        Copy executor; one sharing *log* is created if omitted.
    """

    def __init__(
        self,
        config: Config,
        log: logging.Logger | None = None,
        watch_set: WatchSet | None = None,
        copier: FileCopier | None = None,
    ):
        self._config = config
        self._log = log or logger
        self._watches = watch_set if watch_set is not None else WatchSet(log=self._log)
        self.copier = copier if copier is not None else FileCopier(log=self._log)
        self._stop = threading.Event()
        self._state = DispatchState.STOPPED

    @property
    def state(self) -> DispatchState:
        return self._state

    @property
    def watch_set(self) -> WatchSet:
        return self._watches

    def request_stop(self) -> None:
        """Ask the loop to exit at its next iteration.  Safe from any thread."""
        self._stop.set()
        self._watches.wake()

    # ---- lifecycle ----

    def run(self) -> None:
        """Seed the watch set and process notifications until stopped.

        Raises WatchError if a configured source cannot be watched.
        """
        self._state = DispatchState.STARTING
        try:
            self._seed()
        except WatchError:
            self._watches.close()
            self._state = DispatchState.STOPPED
            raise

        self._state = DispatchState.RUNNING
        self._log.info(
            "Listening on %d folders for %d threads.",
            len(self._watches), len(self._config.mappings),
        )
        try:
            self._loop()
        finally:
            self._watches.close()
            self._state = DispatchState.STOPPED
            self._log.info("Dispatch loop stopped: %s", self.copier.stats.summary())

    def _seed(self) -> None:
        self._watches.open()
        for mapping in self._config.mappings:
            try:
                if self._config.recursive:
                    self._watches.register_tree(mapping.source)
                else:
                    self._watches.register_root(mapping.source)
            except WatchError as exc:
                self._log.error("Error on adding source folder %s: %s", mapping.source, exc)
                raise

    def _loop(self) -> None:
        while not self._stop.is_set():
            kind, payload = self._watches.get()
            if kind == ITEM_EVENT:
                try:
                    self._on_event(payload)
                except Exception:
                    self._log.exception("Unexpected error handling %s", payload)
            elif kind == ITEM_ERROR:
                self._log.error("Watcher error: %s", payload)
            elif kind == ITEM_CLOSED:
                self._log.info("Watcher closed; no more events will arrive.")
                return
            # Wake-ups only exist to re-check the stop flag.

    # ---- event handling ----

    def _on_event(self, event: FileSystemEvent) -> None:
        if event.event_type != EVENT_TYPE_CREATED:
            return
        path = to_slash(os.fsdecode(event.src_path))

        try:
            is_dir = stat.S_ISDIR(os.stat(path).st_mode)
        except OSError as exc:
            # Already gone (or unreadable) by the time we looked at it.
            self._log.error("Cannot inspect new entry %s: %s", path, exc)
            return

        if is_dir:
            self._on_new_folder(path)
        else:
            self._on_new_file(path)

    def _on_new_folder(self, path: str) -> None:
        if not self._config.recursive:
            self._log.info("New folder created: %s (recursive watching is off).", path)
            return
        self._log.info("New folder created: %s; adding it to the watcher.", path)
        try:
            self._watches.register_root(path)
        except WatchError as exc:
            self._log.error("Failed to watch new folder %s: %s", path, exc)

    def _on_new_file(self, path: str) -> None:
        self._log.info("New file created: %s", path)
        mappings = self._config.mappings
        index = match_mapping(path, mappings)
        if index is None:
            self._log.warning("New file %s does not match any configured source folder.", path)
            return

        delay = self._config.settle_delay
        if delay and self._stop.wait(delay):
            self._log.info("Stop requested before %s settled; not copied.", path)
            return

        destination = mappings[index].destination
        rec = self.copier.copy(path, destination)
        if rec.success:
            self._log.info("Dispatched %s to %s.", path, destination)
        elif not rec.skipped:
            self._log.error("Failed to dispatch %s to %s: %s", path, destination, rec.error)
