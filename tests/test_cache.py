"""Tests for the bounded cache, its liveness policy and the sweeper."""

import threading
import time

import pytest
from structlog.testing import capture_logs

from leaklab.cache import UNBOUNDED, BoundedCache, CleanupSweeper, Entry, ReclaimTracker
from leaklab.errors import InvalidCapacityError


class CountingFactory:
    def __init__(self):
        self.calls = []

    def __call__(self, key):
        self.calls.append(key)
        return {"key": key, "n": len(self.calls)}


@pytest.fixture
def factory() -> CountingFactory:
    return CountingFactory()


class TestConstruction:
    @pytest.mark.parametrize("capacity", [0, -1, 2.5, None, True])
    def test_rejects_invalid_capacity(self, capacity) -> None:
        with pytest.raises(InvalidCapacityError):
            BoundedCache(capacity)

    def test_invalid_capacity_is_a_value_error(self) -> None:
        with pytest.raises(ValueError):
            BoundedCache(0)

    def test_unbounded_sentinel(self) -> None:
        cache = BoundedCache(UNBOUNDED)
        assert not cache.bounded
        assert cache.stats()["capacity"] is None

    def test_tracker_rejects_negative_idle(self) -> None:
        with pytest.raises(ValueError):
            ReclaimTracker(idle_seconds=-1)

    def test_uses_tracker_clock(self, clock) -> None:
        tracker = ReclaimTracker(idle_seconds=5, clock=clock)
        cache = BoundedCache(2, tracker=tracker)
        cache.get("A", lambda k: 1)
        clock.advance(6)
        assert cache.sweep() == 1


class TestReclaimTracker:
    def _entry(self, last_access: float, holders: int = 0) -> Entry:
        return Entry(key="k", value=object(), created_at=last_access, last_access=last_access, holders=holders)

    def test_naive_tracker_keeps_everything(self, clock) -> None:
        tracker = ReclaimTracker(clock=clock)
        entry = self._entry(clock())
        clock.advance(10**6)
        assert tracker.is_live(entry)

    def test_idle_threshold_is_inclusive(self, clock) -> None:
        tracker = ReclaimTracker(idle_seconds=30, clock=clock)
        entry = self._entry(clock())
        clock.advance(30)
        assert tracker.is_live(entry)
        clock.advance(0.5)
        assert not tracker.is_live(entry)

    def test_holder_keeps_entry_live(self, clock) -> None:
        tracker = ReclaimTracker(idle_seconds=1, clock=clock)
        entry = self._entry(clock(), holders=1)
        clock.advance(100)
        assert tracker.is_live(entry)

    def test_idle_for_uses_explicit_now(self, clock) -> None:
        tracker = ReclaimTracker(idle_seconds=1, clock=clock)
        entry = self._entry(100.0)
        assert tracker.idle_for(entry, now=112.5) == 12.5
        assert tracker.idle_for(entry, now=50.0) == 0.0


class TestGet:
    def test_miss_then_hit_returns_same_instance(self, factory) -> None:
        cache = BoundedCache(3)
        first = cache.get("A", factory)
        second = cache.get("A", factory)
        assert first is second
        assert factory.calls == ["A"]
        assert cache.stats()["hits"] == 1
        assert cache.stats()["misses"] == 1

    def test_size_never_exceeds_capacity(self, factory) -> None:
        cache = BoundedCache(3)
        for i in range(20):
            cache.get(f"k{i}", factory)
            assert cache.size() <= 3
        assert len(cache) == 3

    def test_least_recently_used_is_evicted(self, factory) -> None:
        cache = BoundedCache(3)
        for key in "ABC":
            cache.get(key, factory)
        assert cache.size() == 3

        cache.get("D", factory)

        assert cache.size() == 3
        assert "A" not in cache
        cache.get("A", factory)
        assert factory.calls == ["A", "B", "C", "D", "A"]

    def test_hit_refreshes_recency(self, factory) -> None:
        cache = BoundedCache(2)
        cache.get("A", factory)
        cache.get("B", factory)
        cache.get("A", factory)
        cache.get("C", factory)
        assert "B" not in cache
        assert cache.keys() == ["A", "C"]

    def test_equal_access_times_evict_earliest_insert(self, clock, factory) -> None:
        cache = BoundedCache(2, clock=clock)
        cache.get("A", factory)
        cache.get("B", factory)
        cache.get("C", factory)
        assert cache.keys() == ["B", "C"]

    def test_factory_error_propagates_and_leaves_nothing(self, factory) -> None:
        cache = BoundedCache(2)
        cache.get("A", factory)
        error = RuntimeError("boom")

        def failing(key):
            raise error

        with pytest.raises(RuntimeError) as excinfo:
            cache.get("X", failing)

        assert excinfo.value is error
        assert cache.size() == 1
        assert "X" not in cache
        assert cache.get("X", factory) == {"key": "X", "n": 2}
        assert factory.calls == ["A", "X"]

    def test_reclaimable_entry_is_rebuilt(self, clock, factory) -> None:
        cache = BoundedCache(3, idle_seconds=10, clock=clock)
        first = cache.get("A", factory)
        clock.advance(11)
        second = cache.get("A", factory)
        assert first is not second
        assert cache.stats()["expired"] == 1

    def test_hit_resets_idle_time(self, clock, factory) -> None:
        cache = BoundedCache(3, idle_seconds=10, clock=clock)
        cache.get("A", factory)
        clock.advance(6)
        cache.get("A", factory)
        clock.advance(6)
        assert cache.sweep() == 0
        assert factory.calls == ["A"]

    def test_factory_may_use_the_cache(self, factory) -> None:
        cache = BoundedCache(4)

        def nested(key):
            return ("outer", cache.get("inner", factory))

        value = cache.get("outer", nested)
        assert value[0] == "outer"
        assert "inner" in cache and "outer" in cache


class TestSweep:
    def test_sweeps_idle_entries_from_unbounded_cache(self, clock, factory) -> None:
        cache = BoundedCache(UNBOUNDED, idle_seconds=30, clock=clock)
        for i in range(5):
            cache.get(f"k{i}", factory)
        assert cache.sweep() == 0

        clock.advance(31)

        assert cache.sweep() == 5
        assert cache.size() == 0
        assert cache.sweep() == 0

    def test_remaining_entries_are_live(self, clock, factory) -> None:
        cache = BoundedCache(10, idle_seconds=30, clock=clock)
        cache.get("A", factory)
        cache.get("B", factory)
        clock.advance(20)
        cache.get("C", factory)
        clock.advance(15)

        assert cache.sweep() == 2
        assert cache.keys() == ["C"]
        assert all(cache.tracker.is_live(e) for e in cache._entries.values())
        assert cache.sweep() == 0
        assert cache.stats()["swept"] == 2

    def test_naive_tracker_never_sweeps(self, clock, factory) -> None:
        cache = BoundedCache(UNBOUNDED, clock=clock)
        for i in range(5):
            cache.get(i, factory)
        clock.advance(10**6)
        assert cache.sweep() == 0
        assert cache.size() == 5


class TestHandles:
    def test_held_entry_survives_sweep(self, clock, factory) -> None:
        cache = BoundedCache(5, idle_seconds=10, clock=clock)
        handle = cache.acquire("A", factory)
        cache.get("B", factory)
        clock.advance(60)

        assert cache.sweep() == 1
        assert cache.keys() == ["A"]

        handle.release()
        assert handle.released
        assert cache.sweep() == 1
        assert cache.size() == 0

    def test_release_is_idempotent(self, clock, factory) -> None:
        cache = BoundedCache(5, idle_seconds=10, clock=clock)
        first = cache.acquire("A", factory)
        second = cache.acquire("A", factory)
        assert first.value is second.value

        first.release()
        first.release()
        clock.advance(60)
        assert cache.sweep() == 0

        second.release()
        assert cache.sweep() == 1

    def test_handle_as_context_manager(self, clock, factory) -> None:
        cache = BoundedCache(5, idle_seconds=1, clock=clock)
        with cache.acquire("A", factory) as handle:
            assert handle.key == "A"
            clock.advance(5)
            assert cache.sweep() == 0
        assert cache.sweep() == 1

    def test_evicting_held_entry_is_reported(self, factory) -> None:
        evicted = []
        cache = BoundedCache(1, on_live_eviction=evicted.append)
        handle = cache.acquire("A", factory)

        cache.get("B", factory)

        assert cache.keys() == ["B"]
        assert [e.key for e in evicted] == ["A"]
        assert evicted[0].holders == 1
        assert handle.value == {"key": "A", "n": 1}
        assert cache.stats()["live_evictions"] == 1

    def test_evicting_reclaimable_entry_is_not_reported(self, clock, factory) -> None:
        evicted = []
        cache = BoundedCache(1, idle_seconds=5, clock=clock, on_live_eviction=evicted.append)
        cache.get("A", factory)
        clock.advance(10)
        cache.get("B", factory)

        assert evicted == []
        assert cache.keys() == ["B"]
        stats = cache.stats()
        assert stats["evictions"] == 1
        assert stats["live_evictions"] == 0

    def test_evicting_fresh_unheld_entry_is_reported(self, clock, factory) -> None:
        evicted = []
        cache = BoundedCache(1, idle_seconds=5, clock=clock, on_live_eviction=evicted.append)
        cache.get("A", factory)
        clock.advance(3)
        cache.get("B", factory)

        assert [e.key for e in evicted] == ["A"]
        assert cache.stats()["live_evictions"] == 1

    def test_only_held_evictions_log_a_warning(self, clock, factory) -> None:
        cache = BoundedCache(1, idle_seconds=5, clock=clock)
        with capture_logs() as logs:
            handle = cache.acquire("A", factory)
            cache.get("B", factory)
            handle.release()
            cache.get("C", factory)

        evictions = [(e["event"], e["log_level"], e["key"]) for e in logs if e["event"].startswith("evicted_")]
        assert evictions == [
            ("evicted_held_entry", "warning", "A"),
            ("evicted_live_entry", "debug", "B"),
        ]
        assert cache.stats()["live_evictions"] == 2


class TestRemoveAndStats:
    def test_remove(self, factory) -> None:
        cache = BoundedCache(3)
        cache.get("A", factory)
        assert cache.remove("A") is True
        assert cache.remove("A") is False
        assert cache.size() == 0

    def test_clear(self, factory) -> None:
        cache = BoundedCache(3)
        for key in "AB":
            cache.get(key, factory)
        cache.clear()
        assert cache.size() == 0

    def test_stats_shape(self, factory) -> None:
        cache = BoundedCache(2, idle_seconds=5)
        for key in "ABCA":
            cache.get(key, factory)
        stats = cache.stats()
        assert stats["size"] == 2
        assert stats["capacity"] == 2
        assert stats["idle_seconds"] == 5
        assert stats["misses"] == 4
        assert stats["evictions"] == 2


class TestConcurrency:
    def test_racing_misses_share_one_value(self) -> None:
        cache = BoundedCache(4)
        barrier = threading.Barrier(8)
        results = []

        def slow_factory(key):
            time.sleep(0.01)
            return object()

        def worker():
            barrier.wait()
            results.append(cache.get("shared", slow_factory))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 8
        assert all(r is results[0] for r in results)
        assert cache.size() == 1

    def test_capacity_holds_under_contention(self, factory) -> None:
        cache = BoundedCache(10)

        def worker(n):
            for i in range(50):
                cache.get(f"{n}-{i}", factory)
                assert cache.size() <= 10

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert cache.size() == 10


class TestCleanupSweeper:
    def test_run_once_and_call(self, clock, factory) -> None:
        cache = BoundedCache(UNBOUNDED, idle_seconds=1, clock=clock)
        sweeper = CleanupSweeper(cache)
        cache.get("A", factory)
        cache.get("B", factory)
        clock.advance(2)

        assert sweeper.run_once() == 2
        assert sweeper() == 0
        assert sweeper.cache is cache
