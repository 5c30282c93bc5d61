import queue
import threading
import time
from datetime import timedelta

import pytest

from svckit.queue import FakeClock
from svckit.ratelimiting import (
    Coalescing,
    OptionsCoalescing,
    RateLimiter,
    new_coalescing,
)


def _eventually(predicate, timeout=2.0, interval=0.002):
    end = time.monotonic() + timeout
    while time.monotonic() < end:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def _count(events, timeout):
    """Number of events (0 or 1) that arrive within ``timeout`` seconds."""
    try:
        events.get(timeout=timeout)
    except queue.Empty:
        return 0
    return 1


def _settle(clock):
    time.sleep(0.05)
    return _eventually(clock.has_waiters)


@pytest.fixture
def start():
    started = []

    def _start(options, clock=None):
        limiter = new_coalescing(options)
        if clock is not None:
            limiter.with_ticker(clock)
        events = queue.Queue()
        errors = []

        def target():
            try:
                limiter.run(events)
            except BaseException as exc:  # noqa: BLE001
                errors.append(exc)

        thread = threading.Thread(target=target, daemon=True)
        thread.start()
        started.append((limiter, thread, errors))
        return limiter, events

    yield _start

    for limiter, thread, errors in started:
        limiter.close()
        thread.join(1)
        assert not thread.is_alive()
        assert errors == []


def test_is_rate_limiter():
    limiter = new_coalescing(OptionsCoalescing())
    assert isinstance(limiter, RateLimiter)
    assert isinstance(limiter, Coalescing)
    assert limiter.has_timer is False


def test_cancel_returns_run():
    limiter = new_coalescing(OptionsCoalescing())
    cancel = threading.Event()
    events = queue.Queue()
    results = []
    done = threading.Event()

    def target():
        results.append(limiter.run(events, cancel))
        done.set()

    threading.Thread(target=target, daemon=True).start()
    cancel.set()
    assert done.wait(1)
    assert len(results) == 1
    assert results[0] is None
    assert limiter.has_timer is False
    assert events.empty()
    with pytest.raises(RuntimeError, match="already running"):
        limiter.run(queue.Queue(), cancel)
    limiter.close()


def test_close_returns_run():
    limiter = new_coalescing(OptionsCoalescing())
    events = queue.Queue()
    results = []
    done = threading.Event()

    def target():
        results.append(limiter.run(events))
        done.set()

    threading.Thread(target=target, daemon=True).start()
    limiter.close()
    assert done.wait(1)
    assert len(results) == 1
    assert results[0] is None
    assert limiter.has_timer is False
    assert events.empty()
    with pytest.raises(RuntimeError, match="already running"):
        limiter.run(queue.Queue())


def test_run_twice_errors():
    limiter = new_coalescing(OptionsCoalescing())
    done = threading.Event()

    def target():
        limiter.run(queue.Queue())
        done.set()

    threading.Thread(target=target, daemon=True).start()
    assert _eventually(lambda: limiter._running)
    limiter.close()
    assert done.wait(1)
    with pytest.raises(RuntimeError, match="already running"):
        limiter.run(queue.Queue())


@pytest.mark.parametrize(
    "options",
    [
        OptionsCoalescing(initial_delay=timedelta(seconds=-1)),
        OptionsCoalescing(max_delay=timedelta(seconds=-1)),
        OptionsCoalescing(max_pending_events=0),
        OptionsCoalescing(max_pending_events=-1),
        OptionsCoalescing(
            initial_delay=timedelta(seconds=1), max_delay=timedelta(seconds=0.5)
        ),
    ],
)
def test_invalid_options(options):
    with pytest.raises(ValueError):
        new_coalescing(options)


def test_valid_options():
    limiter = new_coalescing(
        OptionsCoalescing(
            initial_delay=timedelta(seconds=1),
            max_delay=timedelta(seconds=2),
            max_pending_events=2,
        )
    )
    assert limiter.has_timer is False


def test_single_event_sent_immediately(start):
    limiter, events = start(OptionsCoalescing())
    assert limiter.has_timer is False
    limiter.add()
    assert _count(events, 1) == 1
    assert limiter.has_timer is True


def test_second_event_after_initial_delay_not_limited(start):
    clock = FakeClock()
    limiter, events = start(
        OptionsCoalescing(initial_delay=timedelta(seconds=1), max_delay=timedelta(seconds=2)),
        clock,
    )
    limiter.add()
    assert _count(events, 1) == 1
    assert limiter.has_timer is True

    assert _settle(clock)
    clock.step(timedelta(seconds=1))
    _eventually(lambda: not limiter.has_timer)
    assert limiter.has_timer is False

    limiter.add()
    assert _count(events, 1) == 1
    assert _count(events, 0.05) == 0
    assert limiter.has_timer is True


def test_second_event_before_initial_delay_limited(start):
    clock = FakeClock()
    limiter, events = start(
        OptionsCoalescing(initial_delay=timedelta(seconds=1), max_delay=timedelta(seconds=2)),
        clock,
    )
    limiter.add()
    assert _count(events, 1) == 1

    assert _settle(clock)
    clock.step(timedelta(seconds=0.5))
    limiter.add()
    assert _count(events, 0.05) == 0
    assert limiter.has_timer is True

    assert _settle(clock)
    clock.step(timedelta(seconds=2))
    assert _count(events, 1) == 1
    assert _count(events, 0.05) == 0
    _eventually(lambda: not limiter.has_timer)
    assert limiter.has_timer is False


def test_multiple_events_coalesced_to_one(start):
    clock = FakeClock()
    limiter, events = start(
        OptionsCoalescing(initial_delay=timedelta(seconds=1), max_delay=timedelta(seconds=2)),
        clock,
    )
    limiter.add()
    assert _count(events, 1) == 1

    assert _settle(clock)
    clock.step(timedelta(seconds=0.5))
    limiter.add()
    limiter.add()
    limiter.add()
    assert _count(events, 0.05) == 0
    assert limiter.has_timer is True

    assert _settle(clock)
    clock.step(timedelta(seconds=2))
    assert _count(events, 1) == 1
    assert _count(events, 0.05) == 0
    _eventually(lambda: not limiter.has_timer)
    assert limiter.has_timer is False


def test_rate_limiting_increases(start):
    clock = FakeClock()
    limiter, events = start(
        OptionsCoalescing(initial_delay=timedelta(seconds=1), max_delay=timedelta(seconds=5)),
        clock,
    )
    limiter.add()
    assert _count(events, 1) == 1

    for step in (0.5, 1, 2, 4, 4, 4, 4):
        assert _settle(clock)
        clock.step(timedelta(seconds=step))
        limiter.add()
        assert _count(events, 0.05) == 0
        assert limiter.has_timer is True

    assert _settle(clock)
    clock.step(timedelta(seconds=5))
    assert _count(events, 1) == 1
    assert _count(events, 0.05) == 0
    _eventually(lambda: not limiter.has_timer)
    assert limiter.has_timer is False


def test_fires_when_max_pending_reached(start):
    clock = FakeClock()
    limiter, events = start(
        OptionsCoalescing(
            initial_delay=timedelta(seconds=1),
            max_delay=timedelta(seconds=5),
            max_pending_events=3,
        ),
        clock,
    )
    limiter.add()
    assert _count(events, 1) == 1

    assert _settle(clock)
    clock.step(timedelta(seconds=0.5))
    limiter.add()
    assert _count(events, 0.05) == 0

    assert _settle(clock)
    clock.step(timedelta(seconds=1))
    limiter.add()
    assert _count(events, 0.05) == 0

    assert _settle(clock)
    clock.step(timedelta(seconds=1))
    limiter.add()
    assert _count(events, 1) == 1

    assert _settle(clock)
    clock.step(timedelta(seconds=2))
    limiter.add()
    assert _count(events, 0.05) == 0

    assert _settle(clock)
    clock.step(timedelta(seconds=5))
    assert _count(events, 1) == 1
    assert _count(events, 0.05) == 0

    limiter.add()
    assert _count(events, 1) == 1


def test_many_events_in_first_window_give_two_events(start):
    clock = FakeClock()
    limiter, events = start(
        OptionsCoalescing(initial_delay=timedelta(seconds=1), max_delay=timedelta(seconds=5)),
        clock,
    )
    limiter.add()
    assert _count(events, 1) == 1

    assert _eventually(lambda: limiter.has_timer)
    for _ in range(10):
        limiter.add()
    time.sleep(0.1)
    assert _eventually(clock.has_waiters)
    clock.step(timedelta(seconds=5))

    assert _count(events, 1) == 1
    assert clock.has_waiters() is False
    assert _count(events, 0.05) == 0