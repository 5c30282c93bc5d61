"""One-to-many event batcher.

Events are keyed. Each event is delivered to all subscribers once the
batching interval has passed. A new event for a key that is still pending
replaces it and restarts its timer.
"""

from __future__ import annotations

import queue
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Generic, Hashable, Optional, TypeVar

from svckit.queue import Processor, ProcessorStoppedError, RealClock

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

_POLL = 0.01
_SUBSCRIBER_BUFFER = 50


def _as_timedelta(value: timedelta | float) -> timedelta:
    return value if isinstance(value, timedelta) else timedelta(seconds=value)


@dataclass(frozen=True, eq=False)
class _Item(Generic[K, V]):
    key: K
    value: V
    scheduled_time: datetime


@dataclass(eq=False)
class _Subscriber:
    target: Any
    buffer: "queue.Queue[Any]"
    cancel: Optional[threading.Event]

    def cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.is_set()


class Batcher(Generic[K, V]):
    """Batches keyed events and fans them out to subscribed queues."""

    def __init__(self, interval: timedelta | float) -> None:
        self.interval = _as_timedelta(interval)
        self.clock: Any = RealClock()
        self._processor: Processor[_Item[K, V]] = Processor(self._execute, self.clock)
        self._lock = threading.Lock()
        self._subscribers: list[_Subscriber] = []
        self._threads: list[threading.Thread] = []
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        """True once :meth:`close` has been called."""
        return self._closed.is_set()

    @property
    def subscriber_count(self) -> int:
        """Number of subscribers currently receiving events."""
        with self._lock:
            return len(self._subscribers)

    def with_clock(self, clock: Any) -> None:
        """Use another clock, such as a FakeClock in tests."""
        self._processor.with_clock(clock)
        self.clock = clock

    def subscribe(self, *targets: Any, cancel: Optional[threading.Event] = None) -> None:
        """Deliver events to each target queue until ``cancel`` is set or the batcher closes.

        Subscriptions made after the batcher is closed are silently dropped.
        """
        with self._lock:
            for target in targets:
                self._subscribe(target, cancel)

    def _subscribe(self, target: Any, cancel: Optional[threading.Event]) -> None:
        if self._closed.is_set():
            return
        subscriber = _Subscriber(target, queue.Queue(maxsize=_SUBSCRIBER_BUFFER), cancel)
        self._subscribers.append(subscriber)
        thread = threading.Thread(target=self._forward, args=(subscriber,), daemon=True)
        self._threads.append(thread)
        thread.start()

    def _stopping(self, subscriber: _Subscriber) -> bool:
        return self._closed.is_set() or subscriber.cancelled()

    def _forward(self, subscriber: _Subscriber) -> None:
        try:
            while not self._stopping(subscriber):
                try:
                    value = subscriber.buffer.get(timeout=_POLL)
                except queue.Empty:
                    continue
                while not self._stopping(subscriber):
                    try:
                        subscriber.target.put(value, timeout=_POLL)
                        break
                    except queue.Full:
                        continue
        finally:
            with self._lock:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)

    def _execute(self, item: _Item[K, V]) -> None:
        with self._lock:
            if self._closed.is_set():
                return
            for subscriber in list(self._subscribers):
                while not self._stopping(subscriber):
                    try:
                        subscriber.buffer.put(item.value, timeout=_POLL)
                        break
                    except queue.Full:
                        continue

    def batch(self, key: K, value: V) -> None:
        """Schedule ``value`` under ``key``, restarting the timer of a pending key.

        After close the event is silently dropped.
        """
        item = _Item(key, value, self.clock.now() + self.interval)
        try:
            self._processor.enqueue(item)
        except ProcessorStoppedError:
            pass

    def close(self) -> None:
        """Stop batching and wait for the subscriber threads to finish."""
        self._processor.close()
        with self._lock:
            self._closed.set()
            threads = list(self._threads)
        for thread in threads:
            if thread is not threading.current_thread():
                thread.join()