"""
File copy engine for File Dispatcher.

Copies a newly created file into the destination directory of the
mapping that owns it.  Copies are strictly non-destructive: a file that
already exists at the destination is never overwritten, and a missing
destination directory is reported rather than created.  The copy is a
one-shot operation; failures are recorded and logged, never retried.
"""

import logging
import os
import shutil
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)

_COPY_CHUNK = 1024 * 1024  # 1 MiB read chunks
_HISTORY_LIMIT = 1000


class CopyOutcome(str, Enum):
    """Result of a single copy attempt."""

    COPIED = "copied"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class CopyRecord:
    """Record of a single file copy operation."""
    source: str
    destination: str
    outcome: CopyOutcome = CopyOutcome.FAILED
    size_bytes: int = 0
    started: float = 0.0
    finished: float = 0.0
    error: str = ""

    @property
    def success(self) -> bool:
        return self.outcome is CopyOutcome.COPIED

    @property
    def skipped(self) -> bool:
        return self.outcome is CopyOutcome.SKIPPED


@dataclass
class CopyStats:
    """Aggregated copy statistics."""
    total_copied: int = 0
    total_failed: int = 0
    total_skipped: int = 0
    total_bytes: int = 0
    last_copied_file: str = ""
    history: deque = field(default_factory=lambda: deque(maxlen=_HISTORY_LIMIT))
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record(self, rec: CopyRecord) -> None:
        with self._lock:
            self.history.append(rec)
            if rec.skipped:
                self.total_skipped += 1
            elif rec.success:
                self.total_copied += 1
                self.total_bytes += rec.size_bytes
                self.last_copied_file = rec.destination
            else:
                self.total_failed += 1

    @property
    def total(self) -> int:
        with self._lock:
            return self.total_copied + self.total_skipped + self.total_failed

    def summary(self) -> str:
        """Return a one-line summary suitable for the log."""
        with self._lock:
            return (
                f"{self.total_copied} copied ({self.total_bytes:,} bytes), "
                f"{self.total_skipped} skipped, {self.total_failed} failed"
            )


class FileCopier:
    """
    Copies single files into a destination directory, never overwriting.

    Parameters
    ----------
    log : logging.Logger, optional
        Logger that receives every outcome; defaults to this module's logger.
    on_copy_complete : callable, optional
        Callback invoked after each copy attempt with the CopyRecord.
    """

    def __init__(
        self,
        log: logging.Logger | None = None,
        on_copy_complete: Callable[[CopyRecord], None] | None = None,
    ):
        self._log = log or logger
        self._on_copy_complete = on_copy_complete
        self.stats = CopyStats()

    def copy(self, source_file: str | Path, destination_dir: str | Path) -> CopyRecord:
        """Copy *source_file* into *destination_dir* and return the record."""
        source = Path(source_file)
        dest_dir = Path(destination_dir)
        rec = CopyRecord(source=str(source), destination=str(dest_dir / source.name))
        rec.started = time.time()
        try:
            self._do_copy(source, dest_dir, rec)
        finally:
            rec.finished = time.time()
            self.stats.record(rec)
            if self._on_copy_complete:
                try:
                    self._on_copy_complete(rec)
                except Exception:
                    self._log.exception("Error in on_copy_complete callback")
        return rec

    # ---- internals ----

    def _fail(self, rec: CopyRecord, message: str, *args: object, warn: bool = False) -> None:
        rec.outcome = CopyOutcome.FAILED
        rec.error = message % args
        if warn:
            self._log.warning(message, *args)
        else:
            self._log.error(message, *args)

    def _skip(self, rec: CopyRecord) -> None:
        rec.outcome = CopyOutcome.SKIPPED
        rec.error = "Destination file already exists"
        self._log.warning("The destination file %s already exists; skipping.", rec.destination)

    def _do_copy(self, source: Path, dest_dir: Path, rec: CopyRecord) -> None:
        # ---- pre-flight: destination directory ----
        try:
            dest_is_dir = dest_dir.is_dir()
            dest_exists = dest_is_dir or dest_dir.exists()
        except OSError as exc:
            self._fail(rec, "Cannot check the destination folder %s: %s", dest_dir, exc)
            return
        if not dest_exists:
            # Missing destination folders are a configuration problem; never create them.
            self._fail(rec, "Destination folder %s does not exist.", dest_dir, warn=True)
            return
        if not dest_is_dir:
            self._fail(rec, "Destination %s is not a folder.", dest_dir)
            return

        # ---- pre-flight: destination file ----
        target = Path(rec.destination)
        try:
            if os.path.lexists(target):
                self._skip(rec)
                return
        except OSError as exc:
            self._fail(rec, "Cannot check the destination file %s: %s", target, exc)
            return

        # ---- copy ----
        try:
            src_fh = open(source, "rb")
        except OSError as exc:
            self._fail(rec, "Cannot open source file %s: %s", source, exc)
            return

        with src_fh:
            try:
                dst_fh = open(target, "xb")
            except FileExistsError:
                # Created by someone else after the pre-flight check.
                self._skip(rec)
                return
            except OSError as exc:
                self._fail(rec, "Cannot create destination file %s: %s", target, exc)
                return

            try:
                with dst_fh:
                    shutil.copyfileobj(src_fh, dst_fh, _COPY_CHUNK)
                    rec.size_bytes = dst_fh.tell()
            except OSError as exc:
                self._fail(rec, "Copy of %s to %s failed: %s", source, target, exc)
                self._discard_partial(target)
                return

        rec.outcome = CopyOutcome.COPIED
        self._log.info(
            "Copied %s -> %s (%d bytes in %.2fs)",
            source, target, rec.size_bytes, time.time() - rec.started,
        )

    def _discard_partial(self, target: Path) -> None:
        try:
            target.unlink()
            self._log.info("Removed partially written file %s", target)
        except FileNotFoundError:
            pass
        except OSError as exc:
            self._log.error("Could not remove partially written file %s: %s", target, exc)
