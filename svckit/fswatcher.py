"""Watches directories or files and emits batched change notifications.

Watching a file's parent directory is preferred over watching the file
itself, since a file may be replaced by a new one on change. Changes are
batched per file before a notification is sent, because a single write
often produces several file system events.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from svckit.batcher import Batcher

_POLL = 0.05
_DEFAULT_INTERVAL = timedelta(milliseconds=500)
_IGNORED_EVENTS = frozenset({"opened", "closed_no_write"})


@dataclass
class Options:
    """Watcher options.

    ``targets`` are the paths to watch. ``interval`` is how long to wait after
    the last change to a file before notifying; it defaults to 0.5s.
    """

    targets: list[str] = field(default_factory=list)
    interval: Optional[timedelta | float] = None


class _Handler(FileSystemEventHandler):
    def __init__(self, on_change: Callable[[str], None], files: Optional[set[str]]) -> None:
        super().__init__()
        self._on_change = on_change
        self._files = files

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type in _IGNORED_EVENTS:
            return
        if event.is_directory and event.event_type == "modified":
            return
        paths = [event.src_path]
        dest = getattr(event, "dest_path", "")
        if dest:
            paths.append(dest)
        for raw in paths:
            path = os.path.abspath(os.fsdecode(raw))
            if self._files is None or path in self._files:
                self._on_change(path)


class FSWatcher:
    """Sends a notification to an event queue whenever a watched file changes."""

    def __init__(self, options: Optional[Options] = None) -> None:
        options = options if options is not None else Options()

        watched: dict[str, Optional[set[str]]] = {}
        for target in options.targets:
            path = os.path.abspath(target)
            if not os.path.exists(path):
                raise FileNotFoundError(
                    f"failed to add target {target}: no such file or directory"
                )
            if os.path.isdir(path):
                watched[path] = None
                continue
            parent = os.path.dirname(path)
            if parent in watched and watched[parent] is None:
                continue
            watched.setdefault(parent, set()).add(path)  # type: ignore[union-attr]

        interval = (
            options.interval if options.interval is not None else _DEFAULT_INTERVAL
        )
        if not isinstance(interval, timedelta):
            interval = timedelta(seconds=interval)
        if interval < timedelta(0):
            raise ValueError("interval must be positive")

        self._observer = Observer()
        for directory, files in watched.items():
            self._observer.schedule(_Handler(self._on_change, files), directory, recursive=False)

        self.batcher: Batcher[str, None] = Batcher(interval)
        self._lock = threading.Lock()
        self._running = False

    @property
    def running(self) -> bool:
        """True once :meth:`run` has been called."""
        with self._lock:
            return self._running

    def with_batcher(self, batcher: Batcher[str, Any]) -> "FSWatcher":
        """Use another batcher, such as one driven by a FakeClock in tests."""
        self.batcher = batcher
        return self

    def _on_change(self, path: str) -> None:
        self.batcher.batch(path, None)

    def run(self, events: Any, cancel: Optional[threading.Event] = None) -> None:
        """Watch until ``cancel`` is set, putting a notification on ``events`` per change.

        Raises RuntimeError if called twice or if the observer stops unexpectedly.
        """
        with self._lock:
            if self._running:
                raise RuntimeError("watcher already running")
            self._running = True

        cancel = cancel if cancel is not None else threading.Event()
        batcher = self.batcher
        try:
            batcher.subscribe(events, cancel=cancel)
            if cancel.is_set():
                return
            self._observer.start()
            try:
                while not cancel.wait(_POLL):
                    if not self._observer.is_alive():
                        raise RuntimeError(
                            "watcher error: file system observer stopped unexpectedly"
                        )
            finally:
                self._observer.stop()
                self._observer.join()
        finally:
            batcher.close()