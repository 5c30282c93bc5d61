"""Delayed-event queue and a processor that fires items at their scheduled time.

Items are kept in memory ordered by when they are due. While the queue holds
at least one item, the processor uses a single background thread that waits
for the next item and hands it to a callback.
"""

from __future__ import annotations

import heapq
import itertools
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Generic, Hashable, Optional, Protocol, TypeVar

_IMMEDIATE = timedelta(microseconds=500)


class ProcessorStoppedError(RuntimeError):
    """Raised when the processor has been closed."""

    def __init__(self, message: str = "processor is stopped") -> None:
        super().__init__(message)


class Queueable(Protocol):
    """An item that can be scheduled: it has a unique key and a due time."""

    @property
    def key(self) -> Hashable: ...

    @property
    def scheduled_time(self) -> datetime: ...


T = TypeVar("T", bound=Queueable)


class RealClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def wait(self, event: threading.Event, deadline: datetime) -> bool:
        """Block until ``deadline`` or until ``event`` is set; True if the event was set."""
        timeout = (deadline - self.now()).total_seconds()
        return event.wait(max(0.0, timeout))


class FakeClock:
    """A manually advanced clock, for tests."""

    _POLL = 0.005

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._now = start if start is not None else datetime.now(timezone.utc)
        self._cond = threading.Condition()
        self._waiters = 0

    def now(self) -> datetime:
        with self._cond:
            return self._now

    def wait(self, event: threading.Event, deadline: datetime) -> bool:
        """Block until the clock reaches ``deadline`` or ``event`` is set."""
        with self._cond:
            self._waiters += 1
            try:
                while not event.is_set() and self._now < deadline:
                    self._cond.wait(self._POLL)
            finally:
                self._waiters -= 1
        return event.is_set()

    def step(self, delta: timedelta | float) -> None:
        """Advance the clock by a timedelta or a number of seconds."""
        if not isinstance(delta, timedelta):
            delta = timedelta(seconds=delta)
        with self._cond:
            self._now += delta
            self._cond.notify_all()

    def has_waiters(self) -> bool:
        with self._cond:
            return self._waiters > 0


@dataclass(order=True)
class _Entry:
    when: datetime
    seq: int
    item: Any = field(compare=False)
    alive: bool = field(default=True, compare=False)


class Queue(Generic[T]):
    """Priority queue of items ordered by scheduled time, unique by key.

    Not safe for concurrent use; callers must hold a lock.
    """

    def __init__(self) -> None:
        self._heap: list[_Entry] = []
        self._entries: dict[Hashable, _Entry] = {}
        self._counter = itertools.count()

    def __len__(self) -> int:
        return len(self._entries)

    def insert(self, item: T, replace: bool = False) -> None:
        """Add an item; an item with the same key is kept unless ``replace``."""
        if item.key in self._entries:
            if replace:
                self._discard(item.key)
                self._push(item)
            return
        self._push(item)

    def pop(self) -> T:
        """Remove and return the next item; raise IndexError when empty."""
        self._prune()
        if not self._heap:
            raise IndexError("pop from an empty queue")
        entry = heapq.heappop(self._heap)
        del self._entries[entry.item.key]
        return entry.item

    def peek(self) -> Optional[T]:
        """Return the next item without removing it, or None when empty."""
        self._prune()
        return self._heap[0].item if self._heap else None

    def remove(self, key: Hashable) -> None:
        """Remove the item with ``key``; a missing key is ignored."""
        self._discard(key)

    def update(self, item: T) -> None:
        """Replace the item with the same key; a missing key is ignored."""
        if item.key in self._entries:
            self._discard(item.key)
            self._push(item)

    def _push(self, item: T) -> None:
        entry = _Entry(item.scheduled_time, next(self._counter), item)
        self._entries[item.key] = entry
        heapq.heappush(self._heap, entry)
        if len(self._heap) > 2 * len(self._entries) + 16:
            self._heap = [e for e in self._heap if e.alive]
            heapq.heapify(self._heap)

    def _discard(self, key: Hashable) -> None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            entry.alive = False

    def _prune(self) -> None:
        while self._heap and not self._heap[0].alive:
            heapq.heappop(self._heap)


class Processor(Generic[T]):
    """Runs ``execute_fn`` on each queued item when its scheduled time comes.

    The callback is invoked from a background thread.
    """

    def __init__(self, execute_fn: Callable[[T], Any], clock: Any = None) -> None:
        self._execute_fn = execute_fn
        self._queue: Queue[T] = Queue()
        self._clock = clock if clock is not None else RealClock()
        self._lock = threading.Lock()
        self._wake = threading.Event()
        self._running = False
        self._stopped = False
        self._thread: Optional[threading.Thread] = None

    def with_clock(self, clock: Any) -> "Processor[T]":
        """Use another clock, such as a FakeClock in tests."""
        self._clock = clock
        return self

    def enqueue(self, item: T) -> None:
        """Add an item, replacing any queued item with the same key."""
        with self._lock:
            if self._stopped:
                raise ProcessorStoppedError()
            peek = self._queue.peek()
            is_first = peek is not None and peek.key == item.key
            self._queue.insert(item, replace=True)
            is_first = is_first or self._queue.peek() is item
            self._process(is_first)

    def dequeue(self, key: Hashable) -> None:
        """Remove the item with ``key`` from the queue."""
        with self._lock:
            if self._stopped:
                raise ProcessorStoppedError()
            peek = self._queue.peek()
            self._queue.remove(key)
            if peek is not None and peek.key == key:
                self._process(True)

    def close(self) -> None:
        """Stop the processor and wait for its loop to end. Safe to call repeatedly."""
        with self._lock:
            self._stopped = True
            self._wake.set()
            thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()

    def _process(self, is_next: bool) -> None:
        # Caller holds the lock.
        if self._running:
            if is_next:
                self._wake.set()
            return
        self._running = True
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def _run(self) -> None:
        try:
            self._loop()
        except BaseException:
            with self._lock:
                self._running = False
            raise

    def _loop(self) -> None:
        while True:
            with self._lock:
                if self._stopped:
                    self._running = False
                    return
                self._wake.clear()
                item = self._queue.peek()
                if item is None:
                    self._running = False
                    return

            if item.scheduled_time - self._clock.now() < _IMMEDIATE:
                self._execute(item)
                continue

            if self._clock.wait(self._wake, item.scheduled_time):
                # Reset or stop: re-evaluate at the top of the loop.
                continue
            self._execute(item)

    def _execute(self, item: T) -> None:
        with self._lock:
            if self._queue.peek() is not item:
                return
            self._queue.pop()
        self._execute_fn(item)