import math
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Hashable, List, Optional, TypeVar, Union

import structlog

from .errors import InvalidCapacityError

logger = structlog.get_logger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

#: Capacity sentinel for a cache with no size bound.
UNBOUNDED = math.inf


@dataclass
class Entry(Generic[K, V]):
    """A cached value plus the metadata used to decide its fate.

    Notes
    -----
    - `last_access` is a monotonic timestamp refreshed on every cache hit.
    - `holders` counts outstanding `Handle`s, i.e. parts of the application
      that still hold the value outside the cache.
    - Liveness is never stored here; `ReclaimTracker` derives it on demand.
    """

    key: K
    value: V
    created_at: float
    last_access: float
    holders: int = 0
    hits: int = 0


class ReclaimTracker:
    """Decide whether an entry's value may be discarded.

    Parameters
    ----------
    idle_seconds : Optional[float]
        Idle time after which an entry nobody holds becomes reclaimable.
        `None` never expires anything, which is exactly the behavior of a
        naive cache where every value stays live forever.
    clock : Callable[[], float]
        Monotonic time source, `time.monotonic` by default.
    """

    def __init__(self, idle_seconds: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        if idle_seconds is not None and idle_seconds < 0:
            raise ValueError(f"idle_seconds must be >= 0, got {idle_seconds!r}")
        self.idle_seconds = idle_seconds
        self.clock = clock

    def idle_for(self, entry: Entry, now: Optional[float] = None) -> float:
        now = self.clock() if now is None else now
        return max(0.0, now - entry.last_access)

    def is_live(self, entry: Entry, now: Optional[float] = None) -> bool:
        """Return True while something still needs `entry`.

        An entry is live when an external holder retains it, or when it has
        not been idle for longer than `idle_seconds`.
        """

        if entry.holders > 0:
            return True
        if self.idle_seconds is None:
            return True
        return self.idle_for(entry, now) <= self.idle_seconds


class Handle(Generic[V]):
    """An external claim on a cached value, obtained from `BoundedCache.acquire`.

    While at least one handle is unreleased the entry is live and survives
    sweeps. Releasing is idempotent. Usable as a context manager.
    """

    def __init__(self, cache: "BoundedCache", entry: Entry):
        self._cache = cache
        self._entry = entry
        self._released = False

    @property
    def key(self):
        return self._entry.key

    @property
    def value(self) -> V:
        return self._entry.value

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        self._cache._release(self)

    def __enter__(self) -> "Handle[V]":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class BoundedCache(Generic[K, V]):
    """Size-bounded, recency-ordered cache with reclaimable entries.

    Parameters
    ----------
    capacity : int or float
        Maximum number of entries, at least 1. Pass `UNBOUNDED` for no bound.
    tracker : Optional[ReclaimTracker]
        Liveness policy. Built from `idle_seconds` and `clock` when omitted.
    idle_seconds : Optional[float]
        Idle threshold for the default tracker.
    clock : Optional[Callable[[], float]]
        Monotonic time source; defaults to the tracker's clock.
    on_live_eviction : Optional[Callable[[Entry], None]]
        Called, outside the lock, with every entry evicted for capacity while
        the tracker still considered it live.

    Raises
    ------
    InvalidCapacityError
        If `capacity` is not an integer >= 1 and not `UNBOUNDED`.

    Notes
    -----
    - Entries live in an `OrderedDict` ordered least- to most-recently used.
      A hit moves the entry to the end, so recency is a strict order and
      entries never touched since insertion leave in insertion order.
    - `factory` is called without holding the internal lock. When two callers
      race on the same missing key, the first insert wins and the later
      caller gets the winner's value.
    - Capacity is a hard bound: when full, the least-recently-used entry is
      evicted even if it is still held. Such evictions are counted in
      `live_evictions` and reported to `on_live_eviction`.
    """

    def __init__(
        self,
        capacity: Union[int, float],
        tracker: Optional[ReclaimTracker] = None,
        idle_seconds: Optional[float] = None,
        clock: Optional[Callable[[], float]] = None,
        on_live_eviction: Optional[Callable[[Entry], None]] = None,
    ):
        self.capacity = _check_capacity(capacity)
        if tracker is None:
            tracker = ReclaimTracker(idle_seconds, clock or time.monotonic)
        self.tracker = tracker
        self._clock = clock or tracker.clock
        self._on_live_eviction = on_live_eviction
        self._entries: "OrderedDict[K, Entry[K, V]]" = OrderedDict()
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._live_evictions = 0
        self._expired = 0
        self._swept = 0

    @property
    def bounded(self) -> bool:
        return self.capacity != UNBOUNDED

    def get(self, key: K, factory: Callable[[K], V]) -> V:
        """Return the value for `key`, building it with `factory(key)` on a miss.

        Parameters
        ----------
        key : K
            Cache key.
        factory : Callable[[K], V]
            Builds the value when the key is absent or its entry was reclaimable.
            Any exception it raises propagates unchanged and nothing is cached.

        Returns
        -------
        V
            The cached value on a hit, the newly built one on a miss.
        """

        return self._obtain(key, factory, hold=False).value

    def acquire(self, key: K, factory: Callable[[K], V]) -> Handle[V]:
        """Like `get`, but register the caller as an external holder of the value."""

        return Handle(self, self._obtain(key, factory, hold=True))

    def remove(self, key: K) -> bool:
        """Drop `key`. Returns False when it was not cached."""

        with self._lock:
            return self._entries.pop(key, None) is not None

    def sweep(self) -> int:
        """Remove every entry the tracker no longer considers live.

        Returns
        -------
        int
            Number of entries removed. A second sweep with no access in
            between removes nothing more.
        """

        with self._lock:
            now = self._clock()
            stale = [k for k, e in self._entries.items() if not self.tracker.is_live(e, now)]
            for k in stale:
                del self._entries[k]
            self._swept += len(stale)
            size = len(self._entries)
        if stale:
            logger.debug("cache_swept", removed=len(stale), size=size)
        return len(stale)

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def keys(self) -> List[K]:
        """Keys from least- to most-recently used."""
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "size": len(self._entries),
                "capacity": self.capacity if self.bounded else None,
                "idle_seconds": self.tracker.idle_seconds,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "live_evictions": self._live_evictions,
                "expired": self._expired,
                "swept": self._swept,
            }

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, key) -> bool:
        with self._lock:
            return key in self._entries

    def _obtain(self, key: K, factory: Callable[[K], V], hold: bool) -> Entry[K, V]:
        with self._lock:
            entry = self._lookup(key)
            if entry is not None:
                self._hits += 1
                if hold:
                    entry.holders += 1
                return entry
            self._misses += 1

        value = factory(key)

        with self._lock:
            entry = self._lookup(key)
            if entry is not None:
                # another caller inserted the key while the factory ran
                if hold:
                    entry.holders += 1
                return entry
            now = self._clock()
            entry = Entry(key=key, value=value, created_at=now, last_access=now, holders=1 if hold else 0)
            victims = []
            while len(self._entries) >= self.capacity:
                victims.append(self._evict_lru(now))
            self._entries[key] = entry

        if self._on_live_eviction is not None:
            for victim in victims:
                if victim is not None:
                    self._on_live_eviction(victim)
        return entry

    def _lookup(self, key: K) -> Optional[Entry[K, V]]:
        """Return the live entry for `key`, refreshing its recency. Caller holds the lock."""

        entry = self._entries.get(key)
        if entry is None:
            return None
        now = self._clock()
        if not self.tracker.is_live(entry, now):
            del self._entries[key]
            self._expired += 1
            return None
        entry.last_access = now
        entry.hits += 1
        self._entries.move_to_end(key)
        return entry

    def _evict_lru(self, now: float) -> Optional[Entry[K, V]]:
        """Pop the least-recently-used entry. Returns it when it was still live."""

        key, victim = self._entries.popitem(last=False)
        self._evictions += 1
        if not self.tracker.is_live(victim, now):
            return None
        self._live_evictions += 1
        if victim.holders > 0:
            logger.warning("evicted_held_entry", key=key, holders=victim.holders, capacity=self.capacity)
        else:
            logger.debug("evicted_live_entry", key=key, capacity=self.capacity)
        return victim

    def _release(self, handle: Handle) -> None:
        with self._lock:
            if handle._released:
                return
            handle._released = True
            handle._entry.holders = max(0, handle._entry.holders - 1)


class CleanupSweeper:
    """Drive `BoundedCache.sweep` on demand or from an external schedule.

    The instance is callable, so it can be handed straight to a periodic
    runner such as `leaklab.scheduling.PeriodicTask`.
    """

    def __init__(self, cache: BoundedCache):
        self.cache = cache

    def run_once(self) -> int:
        removed = self.cache.sweep()
        logger.info("sweep_completed", removed=removed, size=self.cache.size())
        return removed

    def __call__(self) -> int:
        return self.run_once()


def _check_capacity(capacity):
    if capacity == UNBOUNDED:
        return capacity
    if isinstance(capacity, bool) or not isinstance(capacity, int) or capacity < 1:
        raise InvalidCapacityError(capacity)
    return capacity
