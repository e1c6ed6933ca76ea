"""Tests for the thread-based single-flight cache."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from flagcache.services.cache import CacheState, ThreadedSingleFlightExpiringCache
from flagcache.services.upstream import UpstreamUnavailable


class CountingSource:
    """Blocking fetcher with a call counter and an optional gate."""

    def __init__(self, items=None, delay: float = 0.0):
        self.items = set(items or [])
        self.delay = delay
        self.error: Exception | None = None
        self.gate: threading.Event | None = None
        self.started = threading.Event()
        self._lock = threading.Lock()
        self.calls = 0

    def __call__(self):
        with self._lock:
            self.calls += 1
        self.started.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return set(self.items)


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_concurrent_first_lookups_fetch_once():
    """Many threads hitting an empty cache cause a single fetch."""
    source = CountingSource({"item-3", "item-7"}, delay=0.1)
    cache = ThreadedSingleFlightExpiringCache(source, 60)

    with ThreadPoolExecutor(max_workers=50) as pool:
        results = list(pool.map(lambda _: cache.query("item-7"), range(50)))

    assert source.calls == 1
    assert results == [True] * 50


def test_fresh_snapshot_needs_no_fetch():
    clock = FakeClock()
    source = CountingSource({"item-1"})
    cache = ThreadedSingleFlightExpiringCache(source, 60, clock=clock)
    cache.query("item-1")

    clock.now = 30
    with ThreadPoolExecutor(max_workers=10) as pool:
        results = list(pool.map(lambda _: cache.query("item-1"), range(100)))

    assert all(results)
    assert source.calls == 1


def test_stale_read_while_another_thread_refreshes():
    """A reader does not block on a refresh started by another thread."""
    clock = FakeClock()
    source = CountingSource({"item-1"})
    cache = ThreadedSingleFlightExpiringCache(source, 60, clock=clock)
    cache.query("item-1")

    clock.now = 61
    source.items = {"item-2"}
    source.gate = threading.Event()
    source.started.clear()
    refresher = threading.Thread(target=cache.query, args=("item-2",))
    refresher.start()
    assert source.started.wait(timeout=5)

    result = cache.lookup("item-1")
    assert result.present is True
    assert result.stale is True
    assert result.state is CacheState.REFRESHING

    source.gate.set()
    refresher.join(timeout=5)
    assert cache.snapshot.items == frozenset({"item-2"})
    assert source.calls == 2


def test_failure_keeps_previous_snapshot():
    clock = FakeClock()
    source = CountingSource({"item-1"})
    cache = ThreadedSingleFlightExpiringCache(source, 60, clock=clock)
    cache.query("item-1")
    before = cache.snapshot

    clock.now = 120
    source.error = UpstreamUnavailable("connection reset")
    assert cache.query("item-1") is True
    assert cache.snapshot is before
    assert cache.get_status()["failure_count"] == 1

    source.error = None
    assert cache.refresh() is True
    assert cache.snapshot is not before
    assert source.calls == 3


@pytest.mark.parametrize("validity", [0, -5])
def test_rejects_non_positive_validity(validity):
    with pytest.raises(ValueError):
        ThreadedSingleFlightExpiringCache(CountingSource(), validity)


def test_expired_snapshot_many_threads_fetch_once():
    """Threads hitting an expired snapshot share one refresh and read stale meanwhile."""
    clock = FakeClock()
    source = CountingSource({"item-1"})
    cache = ThreadedSingleFlightExpiringCache(source, 60, clock=clock)
    cache.query("item-1")

    clock.now = 61
    source.items = {"item-2"}
    source.gate = threading.Event()
    source.started.clear()
    refresher = threading.Thread(target=cache.query, args=("item-2",))
    refresher.start()
    assert source.started.wait(timeout=5)

    with ThreadPoolExecutor(max_workers=20) as pool:
        results = list(pool.map(lambda _: cache.lookup("item-1"), range(40)))

    assert all(result.present is True and result.stale for result in results)

    source.gate.set()
    refresher.join(timeout=5)
    assert source.calls == 2
    assert cache.query("item-2") is True
    assert source.calls == 2


def test_threads_queued_behind_failed_first_refresh_do_not_retry():
    """Threads waiting on a failed first refresh answer unknown instead of refetching."""
    source = CountingSource()
    source.error = UpstreamUnavailable("connection refused")
    source.gate = threading.Event()
    cache = ThreadedSingleFlightExpiringCache(source, 60)

    results = []
    threads = [threading.Thread(target=lambda: results.append(cache.lookup("item-1"))) for _ in range(20)]
    threads[0].start()
    assert source.started.wait(timeout=5)
    for thread in threads[1:]:
        thread.start()
    # Let the other threads reach the refresh lock
    time.sleep(0.2)

    source.gate.set()
    for thread in threads:
        thread.join(timeout=5)

    assert source.calls == 1
    assert len(results) == 20
    assert all(result.present is None for result in results)
    assert cache.state is CacheState.EMPTY


def test_fetcher_returning_none_keeps_stale_snapshot():
    clock = FakeClock()
    source = CountingSource({"item-1"})
    cache = ThreadedSingleFlightExpiringCache(source, 60, clock=clock)
    cache.query("item-1")

    cache._fetcher = lambda: None
    clock.now = 61
    assert cache.query("item-1") is True
    assert cache.get_status()["failure_count"] == 1


def test_generator_failing_midway_is_absorbed():
    def broken_stream():
        yield "a"
        raise ConnectionError("stream reset")

    cache = ThreadedSingleFlightExpiringCache(broken_stream, 60)
    assert cache.query("a") is False
    assert cache.snapshot is None
    assert cache.get_status()["last_error"] == "stream reset"
