"""Shared test fixtures."""

import gc

import pytest
import structlog

from leaklab.demos import StaticMemoryLeaker, stop_all_workers
from leaklab.settings import Settings


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def small_settings() -> Settings:
    """Settings with tiny payloads and short sleeps so demonstrations run fast."""
    return Settings(
        payload_bytes=64,
        cache_capacity=5,
        cache_idle_seconds=60.0,
        static_items=4,
        listener_count=3,
        worker_count=2,
        worker_tick_seconds=0.01,
        worker_run_seconds=0.1,
        closure_count=3,
        naive_cache_keys=30,
        report_every=10,
        resource_count=3,
        resource_task_seconds=0.01,
        resource_hold_seconds=0.05,
        mutable_key_count=5,
        weak_cache_keys=5,
    )


@pytest.fixture(autouse=True)
def clean_state():
    StaticMemoryLeaker.clear()
    yield
    StaticMemoryLeaker.clear()
    stop_all_workers()
    structlog.reset_defaults()
    gc.collect()
