"""Rate limiting of events by coalescing them within a backing-off window."""

from __future__ import annotations

import queue
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from svckit.queue import RealClock

_POLL = 0.01


def _as_timedelta(value: timedelta | float) -> timedelta:
    return value if isinstance(value, timedelta) else timedelta(seconds=value)


class RateLimiter(ABC):
    """Interface for rate limiting events."""

    @abstractmethod
    def run(self, events: Any, cancel: Optional[threading.Event] = None) -> None:
        """Send rate-limited events to ``events`` until cancelled or closed."""

    @abstractmethod
    def add(self) -> None:
        """Add a new event."""

    @abstractmethod
    def close(self) -> None:
        """Close the rate limiter and wait for its resources to be released."""


@dataclass
class OptionsCoalescing:
    """Configuration of a coalescing rate limiter.

    ``initial_delay`` defaults to 0.5s, ``max_delay`` to 5s and
    ``max_pending_events`` to unlimited.
    """

    initial_delay: Optional[timedelta | float] = None
    max_delay: Optional[timedelta | float] = None
    max_pending_events: Optional[int] = None


class Coalescing(RateLimiter):
    """Coalesces events that occur within a rate limiting window.

    The first event fires at once. Events arriving within the window are
    held back; each one doubles the window, up to the maximum delay. When the
    window expires a single event is fired for everything held back.
    """

    def __init__(self, options: Optional[OptionsCoalescing] = None) -> None:
        options = options if options is not None else OptionsCoalescing()

        initial = (
            _as_timedelta(options.initial_delay)
            if options.initial_delay is not None
            else timedelta(milliseconds=500)
        )
        if initial <= timedelta(0):
            raise ValueError("initial delay must be > 0")

        max_delay = (
            _as_timedelta(options.max_delay)
            if options.max_delay is not None
            else timedelta(seconds=5)
        )
        if max_delay <= timedelta(0):
            raise ValueError("max delay must be > 0")
        if max_delay < initial:
            raise ValueError("max delay must be >= base delay")

        if options.max_pending_events is not None and options.max_pending_events <= 0:
            raise ValueError("max pending events must be > 0")

        self._initial = initial
        self._max = max_delay
        self._max_pending = options.max_pending_events

        self._pending = 0
        self._deadline: Optional[datetime] = None
        self._current = initial
        self._factor = 1

        self._clock: Any = RealClock()
        self._lock = threading.Lock()
        self._inputs: "queue.SimpleQueue[None]" = queue.SimpleQueue()
        self._wake = threading.Event()
        self._closed = threading.Event()
        self._running = False
        self._idle = threading.Condition()
        self._active = 0

    @property
    def has_timer(self) -> bool:
        """True while a rate limiting window is open."""
        with self._lock:
            return self._deadline is not None

    def with_ticker(self, clock: Any) -> None:
        """Use another clock, such as a FakeClock in tests."""
        self._clock = clock

    def _enter(self) -> None:
        with self._idle:
            self._active += 1

    def _leave(self) -> None:
        with self._idle:
            self._active -= 1
            if self._active == 0:
                self._idle.notify_all()

    def run(self, events: Any, cancel: Optional[threading.Event] = None) -> None:
        """Send rate-limited events to ``events``; raise RuntimeError if already run."""
        with self._lock:
            if self._running:
                raise RuntimeError("already running")
            self._running = True
            self._enter()

        cancel = cancel if cancel is not None else threading.Event()
        run_done = threading.Event()
        watcher = threading.Thread(
            target=self._watch_cancel, args=(cancel, run_done), daemon=True
        )
        watcher.start()
        try:
            self._loop(events, cancel, run_done)
        finally:
            run_done.set()
            watcher.join()
            self._leave()

    def _watch_cancel(self, cancel: threading.Event, run_done: threading.Event) -> None:
        while not run_done.is_set():
            if cancel.wait(_POLL):
                self._wake.set()
                return

    def _loop(self, events: Any, cancel: threading.Event, run_done: threading.Event) -> None:
        while True:
            self._wake.clear()
            if cancel.is_set() or self._closed.is_set():
                return

            try:
                self._inputs.get_nowait()
            except queue.Empty:
                pass
            else:
                self._handle_input(events, cancel, run_done)
                continue

            with self._lock:
                deadline = self._deadline
            if deadline is None:
                self._wake.wait()
            elif not self._clock.wait(self._wake, deadline):
                self._handle_timer_fired(events, cancel, run_done)

    def _handle_input(self, events: Any, cancel: threading.Event, run_done: threading.Event) -> None:
        with self._lock:
            if self._deadline is None:
                # First event: fire now and open the window.
                self._deadline = self._clock.now() + self._initial
                self._fire(events, cancel, run_done)
                return

            if self._max_pending is not None and self._pending >= self._max_pending:
                self._fire(events, cancel, run_done)
                return

            # Exponential backoff, e.g. 500ms, 1s, 2s, 4s, 5s, 5s, ...
            if self._current < self._max:
                self._factor *= 2
                self._current = min(self._initial * self._factor, self._max)
            self._deadline = self._clock.now() + self._current

    def _handle_timer_fired(self, events: Any, cancel: threading.Event, run_done: threading.Event) -> None:
        with self._lock:
            self._fire(events, cancel, run_done)
            self._pending = 0
            self._current = self._initial
            self._factor = 1
            self._deadline = None

    def _fire(self, events: Any, cancel: threading.Event, run_done: threading.Event) -> None:
        # Caller holds the lock. Only fire when something is pending, so a
        # window expiring with no new events does not send a duplicate.
        if self._pending <= 0:
            return
        self._pending = 0
        try:
            events.put_nowait(None)
        except queue.Full:
            self._enter()
            threading.Thread(
                target=self._deliver, args=(events, cancel, run_done), daemon=True
            ).start()

    def _deliver(self, events: Any, cancel: threading.Event, run_done: threading.Event) -> None:
        try:
            while not (cancel.is_set() or run_done.is_set()):
                try:
                    events.put(None, timeout=_POLL)
                    return
                except queue.Full:
                    continue
        finally:
            self._leave()

    def add(self) -> None:
        """Add a new event."""
        with self._lock:
            self._pending += 1
        self._inputs.put(None)
        self._wake.set()

    def close(self) -> None:
        """Stop the rate limiter and wait for ``run`` and pending deliveries to end."""
        self._closed.set()
        self._wake.set()
        with self._idle:
            self._idle.wait_for(lambda: self._active == 0)


def new_coalescing(options: Optional[OptionsCoalescing] = None) -> Coalescing:
    """Create a coalescing rate limiter; raise ValueError for invalid options."""
    return Coalescing(options)