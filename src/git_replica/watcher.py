"""Workspace change detection with a sliding-window debounce.

The watchdog observer thread only filters events and publishes them onto a
queue. A single consumer thread owns the debounce deadline: every accepted
event marks the workspace as pending and pushes the deadline out to the full
delay again, so a continuous stream of writes postpones the sync until the
workspace has been quiet for one whole window.
"""

import logging
import queue
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from watchdog.events import (
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from .constants import APP_NAME, GIT_DIR_NAME, IGNORED_SUFFIXES

logger = logging.getLogger(APP_NAME)


class ChangeKind(Enum):
    """Type of workspace change."""

    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


@dataclass(frozen=True)
class ChangeEvent:
    """A single accepted filesystem change. Never persisted."""

    path: Path
    kind: ChangeKind


def is_ignored(path: Path, root: Path) -> bool:
    """Checks whether a change to `path` is noise rather than content.

    Anything inside the git metadata directory is ignored, as are SQLite
    journals and editor temporaries. The rules must stay identical across
    installations that share a history.

    Args:
        path (Path): Absolute path of the changed file.
        root (Path): The workspace root.

    Returns:
        bool: True if the event should be dropped.
    """
    try:
        parts = path.relative_to(root).parts
    except ValueError:
        parts = path.parts
    if GIT_DIR_NAME in parts:
        return True
    return path.name.endswith(IGNORED_SUFFIXES)


def _as_path(raw: str | bytes) -> Path:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    return Path(raw)


class ChangeHandler(FileSystemEventHandler):
    """Translates watchdog file events into ChangeEvents.

    Directory events are skipped; a move is published as a deletion of the
    source followed by a creation of the destination.
    """

    def __init__(self, root: Path, publish: Callable[[ChangeEvent], None]) -> None:
        super().__init__()
        self._root = root
        self._publish = publish

    def _emit(self, path: Path, kind: ChangeKind) -> None:
        if is_ignored(path, self._root):
            return
        logger.debug(f"Change detected: {path.name} ({kind.value})")
        self._publish(ChangeEvent(path, kind))

    def on_created(self, event: FileSystemEvent) -> None:
        if isinstance(event, FileCreatedEvent):
            self._emit(_as_path(event.src_path), ChangeKind.CREATED)

    def on_modified(self, event: FileSystemEvent) -> None:
        if isinstance(event, FileModifiedEvent):
            self._emit(_as_path(event.src_path), ChangeKind.MODIFIED)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if isinstance(event, FileDeletedEvent):
            self._emit(_as_path(event.src_path), ChangeKind.DELETED)

    def on_moved(self, event: FileSystemEvent) -> None:
        if isinstance(event, FileMovedEvent):
            self._emit(_as_path(event.src_path), ChangeKind.DELETED)
            self._emit(_as_path(event.dest_path), ChangeKind.CREATED)


_STOP = object()
_CANCEL = object()
_REARM = object()

_JOIN_TIMEOUT = 5.0


class Debouncer:
    """Coalesces bursts of ChangeEvents into a single callback.

    Attributes:
        delay (float): The sliding window length in seconds.
    """

    def __init__(
        self,
        delay_ms: int,
        callback: Callable[[], object],
        pending: threading.Event,
    ) -> None:
        """Initializes the debouncer.

        Args:
            delay_ms (int): Quiet period required before `callback` runs.
            callback (Callable): Invoked from the consumer thread on expiry.
            pending (threading.Event): Flag set for every accepted event.
        """
        self.delay = delay_ms / 1000
        self._callback = callback
        self._pending = pending
        self._queue: queue.Queue = queue.Queue()
        self._thread: threading.Thread | None = None
        self._stopping = False

    @property
    def is_running(self) -> bool:
        """True while a consumer is alive and has not been asked to stop."""
        return (
            self._thread is not None
            and self._thread.is_alive()
            and not self._stopping
        )

    def start(self) -> None:
        """Starts a consumer thread with its own queue.

        A consumer still finishing a long sync after `stop()` keeps reading
        its old queue, so it can never take a sentinel meant for the new one.
        """
        if self.is_running:
            return
        self._stopping = False
        self._queue = queue.Queue()
        self._thread = threading.Thread(
            target=self._consume,
            args=(self._queue,),
            name="replica-debounce",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        """Disarms any pending deadline and ends the consumer thread."""
        thread = self._thread
        if thread is None:
            return
        self._stopping = True
        self._queue.put(_STOP)
        if thread is threading.current_thread():
            return
        thread.join(timeout=_JOIN_TIMEOUT)
        if thread.is_alive():
            logger.warning("Debounce consumer is busy with a sync; it exits afterwards.")
            return
        if self._thread is thread:
            self._thread = None

    def publish(self, event: ChangeEvent) -> None:
        self._queue.put(event)

    def cancel(self) -> None:
        """Drops the pending deadline without firing."""
        self._queue.put(_CANCEL)

    def rearm(self) -> None:
        """Starts a fresh window without a new event (used for leftover changes)."""
        self._queue.put(_REARM)

    def _consume(self, inbox: queue.Queue) -> None:
        deadline: float | None = None
        while True:
            timeout = None
            if deadline is not None:
                timeout = max(0.0, deadline - time.monotonic())
            try:
                item = inbox.get(timeout=timeout)
            except queue.Empty:
                deadline = None
                self._fire()
                continue

            if item is _STOP:
                return
            if item is _CANCEL:
                deadline = None
                continue
            if item is not _REARM:
                self._pending.set()
            deadline = time.monotonic() + self.delay

    def _fire(self) -> None:
        try:
            self._callback()
        except Exception:
            logger.exception("Debounced sync failed")


class FileWatcher:
    """Watches the workspace directory and feeds a Debouncer.

    The data directory is flat, so only its top level is observed.
    """

    def __init__(self, root: Path, debouncer: Debouncer) -> None:
        self._root = root
        self._debouncer = debouncer
        self._handler = ChangeHandler(root, debouncer.publish)
        self._observer: Observer | None = None

    @property
    def is_running(self) -> bool:
        return self._observer is not None

    def start(self) -> None:
        """Starts the debounce consumer and the filesystem observer."""
        if self._observer:
            return
        self._debouncer.start()
        observer = Observer()
        observer.schedule(self._handler, str(self._root), recursive=False)
        observer.start()
        self._observer = observer

    def stop(self) -> None:
        """Stops observing and disarms the debounce timer."""
        if not self._observer:
            return
        self._observer.stop()
        self._observer.join(timeout=5.0)
        self._observer = None
        self._debouncer.stop()
