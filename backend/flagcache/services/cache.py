from __future__ import annotations

import asyncio
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable


logger = logging.getLogger(__name__)


class CacheState(str, Enum):
    EMPTY = "empty"
    FRESH = "fresh"
    STALE = "stale"
    REFRESHING = "refreshing"


class UnknownPolicy(str, Enum):
    """What a lookup does while the cache has never been populated."""

    BLOCK = "block"      # wait for the in-flight first population
    UNKNOWN = "unknown"  # answer immediately with an unknown result


@dataclass(frozen=True)
class Snapshot:
    items: frozenset[str]
    refreshed_at: float

    def __contains__(self, key: object) -> bool:
        return key in self.items

    def __len__(self) -> int:
        return len(self.items)


@dataclass(frozen=True)
class LookupResult:
    key: str
    present: bool | None
    state: CacheState
    stale: bool
    age_seconds: float | None = None

    @property
    def known(self) -> bool:
        return self.present is not None


class _SingleFlightBase(ABC):
    """Snapshot bookkeeping shared by the asyncio and threaded caches.

    The snapshot is replaced as a whole object, so readers never see a
    half-written value. Only the holder of the refresh lock writes it.
    """

    def __init__(
        self,
        validity_seconds: float,
        *,
        name: str = "flags",
        unknown_policy: UnknownPolicy | str = UnknownPolicy.BLOCK,
        clock: Callable[[], float] = time.monotonic,
    ):
        if validity_seconds <= 0:
            raise ValueError(f"validity_seconds must be positive, got {validity_seconds}")
        self.name = name
        self.validity_seconds = float(validity_seconds)
        self.unknown_policy = UnknownPolicy(unknown_policy)
        self._clock = clock

        self._snapshot: Snapshot | None = None
        self._invalidated = False
        # Bumped by every invalidate(); a fetch only clears the flag if none happened meanwhile.
        self._invalidations = 0
        # Bumped after every finished refresh attempt, successful or not.
        self._attempts = 0
        self._refresh_count = 0
        self._failure_count = 0
        self._last_error: str | None = None
        self._last_failure_time: float | None = None

    # Snapshot inspection ---------------------------------------------

    @property
    def snapshot(self) -> Snapshot | None:
        return self._snapshot

    @property
    def state(self) -> CacheState:
        if self._refresh_in_progress():
            return CacheState.REFRESHING
        if self._snapshot is None:
            return CacheState.EMPTY
        if self._is_expired(self._snapshot):
            return CacheState.STALE
        return CacheState.FRESH

    @abstractmethod
    def _refresh_in_progress(self) -> bool:
        ...

    def _is_expired(self, snapshot: Snapshot | None) -> bool:
        if snapshot is None or self._invalidated:
            return True
        return self._clock() - snapshot.refreshed_at >= self.validity_seconds

    def _age(self, snapshot: Snapshot | None) -> float | None:
        if snapshot is None:
            return None
        return max(self._clock() - snapshot.refreshed_at, 0.0)

    def invalidate(self) -> None:
        """Mark the current snapshot expired while keeping it for stale reads.

        A fetch already running when this is called does not clear the mark,
        since its data may predate the invalidation.
        """
        self._invalidated = True
        self._invalidations += 1

    # Answers ---------------------------------------------------------

    def _answer(self, key: str, snapshot: Snapshot | None) -> LookupResult:
        if snapshot is None:
            return LookupResult(key=key, present=None, state=self.state, stale=False)
        return LookupResult(
            key=key,
            present=key in snapshot,
            state=self.state,
            stale=self._is_expired(snapshot),
            age_seconds=self._age(snapshot),
        )

    def _fast_path(self, key: str) -> LookupResult | None:
        """Answer without touching the lock, or return None to take the refresh path."""
        snapshot = self._snapshot
        if not self._is_expired(snapshot):
            return self._answer(key, snapshot)
        if self._refresh_in_progress():
            if snapshot is not None:
                return self._answer(key, snapshot)
            if self.unknown_policy is UnknownPolicy.UNKNOWN:
                return self._answer(key, None)
        return None

    # Refresh bookkeeping (caller holds the lock) ---------------------

    def _needs_fetch(self, seen_attempts: int) -> bool:
        if not self._is_expired(self._snapshot):
            logger.debug(f"Cache '{self.name}' already refreshed by another caller, skipping fetch")
            return False
        if self._attempts != seen_attempts:
            logger.debug(f"Cache '{self.name}' refresh attempted while waiting, not retrying yet")
            return False
        return True

    def _store(self, items: frozenset[str], started: float, seen_invalidations: int) -> None:
        self._snapshot = Snapshot(items=items, refreshed_at=self._clock())
        if self._invalidations == seen_invalidations:
            self._invalidated = False
        self._attempts += 1
        self._refresh_count += 1
        logger.info(
            f"Cache '{self.name}' refreshed with {len(items)} items "
            f"in {(time.monotonic() - started) * 1000:.0f}ms"
        )

    def _record_failure(self, error: Exception) -> None:
        self._attempts += 1
        self._failure_count += 1
        self._last_error = str(error) or error.__class__.__name__
        self._last_failure_time = time.time()
        if self._snapshot is None:
            logger.warning(f"Cache '{self.name}' initial refresh failed, no snapshot available: {error}")
        else:
            logger.warning(
                f"Cache '{self.name}' refresh failed, serving snapshot from "
                f"{self._age(self._snapshot):.1f}s ago: {error}"
            )

    def get_status(self) -> dict[str, Any]:
        """Get cache status for monitoring."""
        snapshot = self._snapshot
        return {
            "name": self.name,
            "state": self.state.value,
            "item_count": len(snapshot) if snapshot is not None else 0,
            "age_seconds": self._age(snapshot),
            "validity_seconds": self.validity_seconds,
            "refresh_count": self._refresh_count,
            "failure_count": self._failure_count,
            "last_error": self._last_error,
            "last_failure_time": self._last_failure_time,
        }


class SingleFlightExpiringCache(_SingleFlightBase):
    """Expiring snapshot cache for asyncio callers with single-flight refresh.

    Fresh reads and reads during someone else's refresh never suspend. Only
    the caller that wins the refresh lock awaits the upstream fetcher.
    """

    def __init__(
        self,
        fetcher: Callable[[], Awaitable[Iterable[Any]]],
        validity_seconds: float,
        **kwargs: Any,
    ):
        super().__init__(validity_seconds, **kwargs)
        self._fetcher = fetcher
        self._lock = asyncio.Lock()

    def _refresh_in_progress(self) -> bool:
        return self._lock.locked()

    async def lookup(self, key: str) -> LookupResult:
        result = self._fast_path(key)
        if result is not None:
            return result

        seen_attempts = self._attempts
        async with self._lock:
            if self._needs_fetch(seen_attempts):
                await self._fetch_and_store()
            snapshot = self._snapshot
        return self._answer(key, snapshot)

    async def query(self, key: str) -> bool:
        """Return whether key is in the current snapshot. Unknown answers False."""
        result = await self.lookup(key)
        return bool(result.present)

    async def refresh(self) -> bool:
        """Force a refresh unless one is already running; wait for it either way."""
        seen_attempts = self._attempts
        async with self._lock:
            if self._attempts == seen_attempts:
                await self._fetch_and_store()
        return self._snapshot is not None

    async def _fetch_and_store(self) -> None:
        started = time.monotonic()
        seen_invalidations = self._invalidations
        try:
            values = await self._fetcher()
            items = frozenset(str(value) for value in values)
        except Exception as e:
            self._record_failure(e)
            return
        self._store(items, started, seen_invalidations)


class ThreadedSingleFlightExpiringCache(_SingleFlightBase):
    """Thread-safe variant of SingleFlightExpiringCache for blocking fetchers."""

    def __init__(
        self,
        fetcher: Callable[[], Iterable[Any]],
        validity_seconds: float,
        **kwargs: Any,
    ):
        super().__init__(validity_seconds, **kwargs)
        self._fetcher = fetcher
        self._lock = threading.Lock()

    def _refresh_in_progress(self) -> bool:
        return self._lock.locked()

    def lookup(self, key: str) -> LookupResult:
        result = self._fast_path(key)
        if result is not None:
            return result

        seen_attempts = self._attempts
        with self._lock:
            if self._needs_fetch(seen_attempts):
                self._fetch_and_store()
            snapshot = self._snapshot
        return self._answer(key, snapshot)

    def query(self, key: str) -> bool:
        """Return whether key is in the current snapshot. Unknown answers False."""
        return bool(self.lookup(key).present)

    def refresh(self) -> bool:
        """Force a refresh unless one is already running; wait for it either way."""
        seen_attempts = self._attempts
        with self._lock:
            if self._attempts == seen_attempts:
                self._fetch_and_store()
        return self._snapshot is not None

    def _fetch_and_store(self) -> None:
        started = time.monotonic()
        seen_invalidations = self._invalidations
        try:
            items = frozenset(str(value) for value in self._fetcher())
        except Exception as e:
            self._record_failure(e)
            return
        self._store(items, started, seen_invalidations)
