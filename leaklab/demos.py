"""Small, self-contained snippets that each retain memory in a different way.

Every snippet takes an ``emit`` callable for its console output and returns a
``DemoReport`` carrying what was printed plus the numbers that prove the point
(how many objects are still reachable, how big a collection grew, ...).
Reachability is measured with weak references after a ``gc.collect()``, so the
reported leaks are real, not narrated.
"""

import gc
import threading
import time
import weakref
import zlib
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import structlog

from .cache import UNBOUNDED, BoundedCache
from .detector import detector
from .errors import UnknownDemoError
from .scheduling import PeriodicTask
from .schemas import DemoReport
from .settings import Settings, settings

logger = structlog.get_logger(__name__)

Emit = Callable[[str], None]


class _Output:
    """Forward lines to `emit` and keep a copy for the report."""

    def __init__(self, emit: Emit):
        self.emit = emit
        self.lines: List[str] = []

    def __call__(self, line: str = "") -> None:
        self.lines.append(line)
        self.emit(line)


class ExpensiveObject:
    """An object carrying a sizeable byte payload. Equal by `id`."""

    def __init__(self, id: int, payload_bytes: Optional[int] = None):
        self.id = id
        self.data = bytearray(settings.payload_bytes if payload_bytes is None else payload_bytes)
        detector.watch(self)

    def __eq__(self, other):
        if self is other:
            return True
        if type(other) is not type(self):
            return NotImplemented
        return self.id == other.id

    def __hash__(self):
        return hash(self.id)

    def __repr__(self):
        return f"ExpensiveObject(id={self.id}, payload={len(self.data)})"


def _alive(refs: List[weakref.ref]) -> int:
    gc.collect()
    return sum(1 for ref in refs if ref() is not None)


def _report(name: str, out: _Output, **stats) -> DemoReport:
    stats["live_expensive_objects"] = detector.count("ExpensiveObject")
    return DemoReport(name=name, title=DEMOS[name].title, lines=out.lines, stats=stats)


# 1. Static collection

class StaticMemoryLeaker:
    """Class-level storage: whatever goes in lives as long as the class does."""

    _items: List[ExpensiveObject] = []

    @classmethod
    def add_data(cls, data: ExpensiveObject) -> None:
        cls._items.append(data)

    @classmethod
    def size(cls) -> int:
        return len(cls._items)

    @classmethod
    def clear(cls) -> None:
        cls._items.clear()


def static_collection_leak(emit: Emit = print, config: Optional[Settings] = None) -> DemoReport:
    config = config or settings
    out = _Output(emit)
    out("1. Static Collection Leak Example")
    out("Adding objects to static collection...")

    before = StaticMemoryLeaker.size()
    for i in range(config.static_items):
        StaticMemoryLeaker.add_data(ExpensiveObject(i, config.payload_bytes))
        out(f"Added object {i}, collection size: {StaticMemoryLeaker.size()}")

    out("Objects remain in memory even after the function returns!")
    out("Fix: call StaticMemoryLeaker.clear() when done, or scope the collection to its owner")
    size = StaticMemoryLeaker.size()
    return _report(
        "static-collection",
        out,
        added=size - before,
        collection_size=size,
        retained_bytes=size * config.payload_bytes,
    )


# 2. Listener / observer

class EventPublisher:
    def __init__(self):
        self.listeners: List["LeakyComponent"] = []

    def add_listener(self, listener) -> None:
        self.listeners.append(listener)

    def remove_listener(self, listener) -> None:
        if listener in self.listeners:
            self.listeners.remove(listener)

    def publish(self, event: str) -> int:
        for listener in list(self.listeners):
            listener.on_event(event)
        return len(self.listeners)

    def listener_count(self) -> int:
        return len(self.listeners)


class LeakyComponent:
    def __init__(self, id: int, emit: Emit, payload_bytes: int):
        self.id = id
        self.heavy_resource = ExpensiveObject(id, payload_bytes)
        self.received: List[str] = []
        self._emit = emit

    def on_event(self, event: str) -> None:
        self.received.append(event)
        self._emit(f"LeakyComponent {self.id} received: {event}")


def _register_and_forget(publisher: EventPublisher, out: _Output, config: Settings) -> List[weakref.ref]:
    components = []
    for i in range(config.listener_count):
        component = LeakyComponent(i, out, config.payload_bytes)
        publisher.add_listener(component)
        components.append(component)
        out(f"Added listener {i}")
    refs = [weakref.ref(c) for c in components]
    # the owner drops its components but never unregisters them
    components.clear()
    return refs


def _unregister_all(publisher: EventPublisher) -> None:
    for listener in list(publisher.listeners):
        publisher.remove_listener(listener)


def listener_leak(emit: Emit = print, config: Optional[Settings] = None) -> DemoReport:
    config = config or settings
    out = _Output(emit)
    out("2. Listener/Callback Leak Example")
    publisher = EventPublisher()

    refs = _register_and_forget(publisher, out, config)
    leaked = _alive(refs)
    out(f"Components cleared, but {publisher.listener_count()} listeners still registered in publisher!")
    delivered = publisher.publish("Test event")

    out("Fix: call publisher.remove_listener(component) before dropping a component")
    _unregister_all(publisher)
    after_fix = _alive(refs)
    out(f"After unregistering: {publisher.listener_count()} listeners, {after_fix} components still alive")
    return _report(
        "listener",
        out,
        leaked_components=leaked,
        events_delivered=delivered,
        alive_after_fix=after_fix,
    )


# 3. Background threads

_workers: "weakref.WeakSet[BackgroundWorker]" = weakref.WeakSet()


class BackgroundWorker:
    """Owns a thread whose target is a bound method, so the thread keeps the worker reachable."""

    def __init__(self, id: int, emit: Emit, tick_seconds: float, payload_bytes: int):
        self.id = id
        self.tick_seconds = tick_seconds
        self.heavy = ExpensiveObject(id, payload_bytes)
        self.ticks = 0
        self._emit = emit
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start_background_work(self) -> None:
        self._thread = threading.Thread(target=self._run, name=f"leaklab-worker-{self.id}", daemon=True)
        self._thread.start()
        _workers.add(self)

    def _run(self) -> None:
        while not self._stop.wait(self.tick_seconds):
            self.ticks += 1
            self._emit(f"Background work running in {threading.current_thread().name}")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)


def running_workers() -> List[BackgroundWorker]:
    """Workers whose thread is still alive, whether or not anyone references them."""
    return [w for w in list(_workers) if w.alive]


def stop_all_workers(timeout: float = 5.0) -> int:
    workers = running_workers()
    for worker in workers:
        worker.stop(timeout)
    return len(workers)


def _start_and_forget(out: _Output, config: Settings) -> List[weakref.ref]:
    workers = []
    for i in range(config.worker_count):
        worker = BackgroundWorker(i, out, config.worker_tick_seconds, config.payload_bytes)
        worker.start_background_work()
        workers.append(worker)
        out(f"Started worker thread {i}")
    refs = [weakref.ref(w) for w in workers]
    workers.clear()
    return refs


def _stop_reachable(refs: List[weakref.ref]) -> int:
    stopped = 0
    for ref in refs:
        worker = ref()
        if worker is not None and worker.alive:
            worker.stop()
            stopped += 1
    return stopped


def thread_leak(emit: Emit = print, config: Optional[Settings] = None) -> DemoReport:
    config = config or settings
    out = _Output(emit)
    out("3. Thread Leak Example")

    refs = _start_and_forget(out, config)
    out("Workers cleared, but threads still running!")
    time.sleep(config.worker_run_seconds)

    reachable = _alive(refs)
    still_running = sum(1 for ref in refs if ref() is not None and ref().alive)
    out(f"{still_running} of {config.worker_count} forgotten workers are still running and reachable")

    out("Fix: call worker.stop() before dropping a worker")
    stopped = _stop_reachable(refs)
    after_fix = _alive(refs)
    out(f"Stopped {stopped} workers, {after_fix} still reachable")
    return _report(
        "thread",
        out,
        leaked_workers=reachable,
        still_running=still_running,
        stopped=stopped,
        alive_after_fix=after_fix,
    )


# 4. Closures and bound methods

class CallbackRegistry:
    def __init__(self):
        self.callbacks: List[Callable[[], None]] = []

    def add_callback(self, callback: Callable[[], None]) -> None:
        self.callbacks.append(callback)

    def execute_callbacks(self) -> int:
        for callback in self.callbacks:
            callback()
        return len(self.callbacks)


class HeavyHolder:
    """Outer object whose bound methods capture `self` and therefore the whole payload."""

    def __init__(self, id: int, payload_bytes: int):
        self.id = id
        self.heavy_data = ExpensiveObject(id, payload_bytes)
        self._emit: Emit = print

    def make_callback(self, emit: Emit) -> Callable[[], None]:
        self._emit = emit
        return self.announce

    def announce(self) -> None:
        self._emit(f"Bound method callback from holder {self.id}")


def _capture_everything(registry: CallbackRegistry, i: int, out: _Output, payload: int):
    heavy_data = ExpensiveObject(i, payload)
    more_heavy_data = ExpensiveObject(i, payload)
    registry.add_callback(lambda: out(f"Callback executed - captured {len(heavy_data.data)} bytes"))
    return weakref.ref(heavy_data), weakref.ref(more_heavy_data)


def _capture_bound_method(registry: CallbackRegistry, i: int, out: _Output, payload: int):
    holder = HeavyHolder(i, payload)
    registry.add_callback(holder.make_callback(out))
    return weakref.ref(holder)


def _capture_only_size(registry: CallbackRegistry, i: int, out: _Output, payload: int):
    heavy_data = ExpensiveObject(i, payload)
    size = len(heavy_data.data)
    registry.add_callback(lambda: out(f"Callback executed - size {size}"))
    return weakref.ref(heavy_data)


def closure_capture_leak(emit: Emit = print, config: Optional[Settings] = None) -> DemoReport:
    config = config or settings
    out = _Output(emit)
    out("4. Closure Capture Leak Example")
    registry = CallbackRegistry()

    captured, uncaptured, holders, fixed = [], [], [], []
    for i in range(config.closure_count):
        used, unused = _capture_everything(registry, i, out, config.payload_bytes)
        captured.append(used)
        uncaptured.append(unused)
        out(f"Created heavy objects and callback {i}")
    for i in range(config.closure_count):
        holders.append(_capture_bound_method(registry, i, out, config.payload_bytes))

    captured_alive = _alive(captured)
    uncaptured_alive = _alive(uncaptured)
    holders_alive = _alive(holders)
    out(f"{captured_alive} heavy objects kept alive by closures that reference them")
    out(f"{uncaptured_alive} unreferenced locals kept alive (Python closures capture only the names they use)")
    out(f"{holders_alive} holder objects kept alive by bound-method callbacks")
    registry.execute_callbacks()

    out("Fix: capture only what you need, e.g. size = len(heavy_data.data)")
    lean = CallbackRegistry()
    for i in range(config.closure_count):
        fixed.append(_capture_only_size(lean, i, out, config.payload_bytes))
    fixed_alive = _alive(fixed)
    lean.execute_callbacks()
    out(f"{fixed_alive} heavy objects alive when callbacks capture only the size")
    return _report(
        "closure",
        out,
        captured_alive=captured_alive,
        uncaptured_alive=uncaptured_alive,
        bound_method_alive=holders_alive,
        fixed_alive=fixed_alive,
        callbacks=len(registry.callbacks),
    )


# 5. Cache without eviction

def stable_id(key: str) -> int:
    return zlib.crc32(key.encode("utf-8"))


class NaiveCache:
    """A dict that only ever grows."""

    def __init__(self, emit: Emit, payload_bytes: int):
        self._cache: Dict[str, ExpensiveObject] = {}
        self._emit = emit
        self._payload_bytes = payload_bytes

    def get(self, key: str) -> ExpensiveObject:
        value = self._cache.get(key)
        if value is None:
            self._emit(f"Creating expensive object for key: {key}")
            value = self._cache[key] = ExpensiveObject(stable_id(key), self._payload_bytes)
        return value

    def size(self) -> int:
        return len(self._cache)

    def clear(self) -> None:
        self._cache.clear()


def cache_without_eviction_leak(emit: Emit = print, config: Optional[Settings] = None) -> DemoReport:
    config = config or settings
    out = _Output(emit)
    out("5. Cache without Eviction Leak Example")
    naive = NaiveCache(out, config.payload_bytes)

    for i in range(config.naive_cache_keys):
        naive.get(f"key_{i}")
        if i % config.report_every == 0:
            out(f"Cache size: {naive.size()}")
    out(f"Final cache size: {naive.size()}")
    out("All objects remain in cache forever!")

    out(f"Fix: bound the cache. Same keys through a cache of capacity {config.cache_capacity}:")
    bounded = BoundedCache(config.cache_capacity, idle_seconds=config.cache_idle_seconds)
    build = lambda key: ExpensiveObject(stable_id(key), config.payload_bytes)
    for i in range(config.naive_cache_keys):
        bounded.get(f"key_{i}", build)
        if i % config.report_every == 0:
            out(f"Bounded cache size: {bounded.size()}")
    stats = bounded.stats()
    out(f"Final bounded cache size: {stats['size']}, evictions: {stats['evictions']}")
    return _report(
        "naive-cache",
        out,
        naive_size=naive.size(),
        bounded_size=stats["size"],
        evictions=stats["evictions"],
    )


# 6. Proper resource management

class ResourceManager:
    """Scoped owner of resources and of a periodic task; leaving the scope releases both."""

    def __init__(self, emit: Emit = print):
        self.resources: List[ExpensiveObject] = []
        self.task: Optional[PeriodicTask] = None
        self.closed = False
        self._emit = emit

    def add_resource(self, resource: ExpensiveObject) -> None:
        self.resources.append(resource)

    def start_periodic_task(self, interval: float) -> PeriodicTask:
        self.task = PeriodicTask(self._tick, interval, name="leaklab-resource-task").start()
        return self.task

    def _tick(self) -> None:
        self._emit(f"Periodic task executed, managing {len(self.resources)} resources")

    def close(self) -> bool:
        """Release everything. Returns whether the periodic task finished in time."""

        if self.closed:
            return True
        self.closed = True
        self.resources.clear()
        finished = True
        if self.task is not None:
            finished = self.task.stop(timeout=5.0)
        self._emit("Resources properly cleaned up")
        return finished

    def __enter__(self) -> "ResourceManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def proper_resource_management(emit: Emit = print, config: Optional[Settings] = None) -> DemoReport:
    config = config or settings
    out = _Output(emit)
    out("6. Proper Resource Management Example")

    with ResourceManager(out) as manager:
        for i in range(config.resource_count):
            manager.add_resource(ExpensiveObject(i, config.payload_bytes))
        task = manager.start_periodic_task(config.resource_task_seconds)
        out("Resources added to manager")
        time.sleep(config.resource_hold_seconds)

    out("Resources cleaned up automatically!")
    return _report(
        "proper-cleanup",
        out,
        resources_after_close=len(manager.resources),
        task_runs=task.runs,
        task_running=task.running,
    )


# Mutable hash keys

class MutableKey:
    """Hashes by a value that can change after the object is stored in a set."""

    def __init__(self, value: int):
        self.value = value

    def set_value(self, value: int) -> None:
        self.value = value

    def __eq__(self, other):
        if type(other) is not type(self):
            return NotImplemented
        return self.value == other.value

    def __hash__(self):
        return hash(self.value)


def mutable_key_leak(emit: Emit = print, config: Optional[Settings] = None) -> DemoReport:
    config = config or settings
    out = _Output(emit)
    out("Mutable Hash Key Leak Example")
    items = set()
    objects = []
    for i in range(config.mutable_key_count):
        obj = MutableKey(i)
        items.add(obj)
        objects.append(obj)
        out(f"Added object with value {i} to set")
    before = len(items)
    out(f"Set size before modification: {before}")

    for obj in objects:
        obj.set_value(obj.value + 100)
    out("Modified all object values")
    objects.clear()

    removed = 0
    for obj in list(items):
        found = obj in items
        if found:
            items.remove(obj)
            removed += 1
        out(f"Attempted to remove object: {found}")
    out(f"Set size after removal attempts: {len(items)}")
    out("Objects are stuck in the set and cannot be removed!")
    out("Fix: never mutate the fields an object hashes on while it is a set member or dict key")
    return _report("mutable-key", out, size_before=before, removed=removed, stuck=len(items))


# Weak references

class WeakRefCache:
    """Holds values only weakly; `cleanup` drops the references whose target is gone."""

    def __init__(self, emit: Emit, payload_bytes: int):
        self._cache: Dict[str, weakref.ref] = {}
        self._emit = emit
        self._payload_bytes = payload_bytes

    def get(self, key: str) -> ExpensiveObject:
        ref = self._cache.get(key)
        obj = ref() if ref is not None else None
        if obj is None:
            obj = ExpensiveObject(stable_id(key), self._payload_bytes)
            self._cache[key] = weakref.ref(obj)
            self._emit(f"Created new object for key: {key}")
        else:
            self._emit(f"Retrieved cached object for key: {key}")
        return obj

    def cleanup(self) -> int:
        dead = [key for key, ref in self._cache.items() if ref() is None]
        for key in dead:
            del self._cache[key]
        return len(dead)

    def size(self) -> int:
        return len(self._cache)


def weak_reference_cache(emit: Emit = print, config: Optional[Settings] = None) -> DemoReport:
    config = config or settings
    out = _Output(emit)
    out("WeakReference Cache Example (Memory Leak Prevention)")
    cache = WeakRefCache(out, config.payload_bytes)
    keep = cache.get("key_0")
    for i in range(1, config.weak_cache_keys):
        cache.get(f"key_{i}")
    cache.get("key_0")
    out(f"Cache size: {cache.size()}")

    gc.collect()
    cleaned = cache.cleanup()
    out(f"Cache size after GC and cleanup: {cache.size()}")
    out("Weak references let unused objects be collected!")

    out("Same idea with explicit handles: held entries survive a sweep, the rest are reclaimed")
    bounded = BoundedCache(UNBOUNDED, idle_seconds=0.0)
    build = lambda key: ExpensiveObject(stable_id(key), config.payload_bytes)
    with bounded.acquire("held", build):
        for i in range(config.weak_cache_keys - 1):
            bounded.get(f"key_{i}", build)
        time.sleep(0.05)
        swept = bounded.sweep()
        out(f"Swept {swept} idle entries, {bounded.size()} held entry kept")
    time.sleep(0.05)
    swept_after_release = bounded.sweep()
    out(f"After releasing the handle, swept {swept_after_release} more, size {bounded.size()}")
    del keep
    return _report(
        "weak-cache",
        out,
        cleaned=cleaned,
        weak_cache_size=cache.size(),
        swept=swept,
        swept_after_release=swept_after_release,
        bounded_size=bounded.size(),
    )


@dataclass(frozen=True)
class Demo:
    name: str
    title: str
    run: Callable[..., DemoReport]
    option: Optional[str] = None


DEMOS: Dict[str, Demo] = {
    demo.name: demo
    for demo in (
        Demo("static-collection", "Static Collection Leak", static_collection_leak, "1"),
        Demo("listener", "Listener/Callback Leak", listener_leak, "2"),
        Demo("thread", "Thread Leak", thread_leak, "3"),
        Demo("closure", "Closure Capture Leak", closure_capture_leak, "4"),
        Demo("naive-cache", "Cache without Eviction", cache_without_eviction_leak, "5"),
        Demo("proper-cleanup", "Proper Resource Management", proper_resource_management, "6"),
        Demo("mutable-key", "Mutable Hash Key Leak", mutable_key_leak),
        Demo("weak-cache", "Weak Reference Cache", weak_reference_cache),
    )
}

MENU_OPTIONS: Dict[str, Demo] = {demo.option: demo for demo in DEMOS.values() if demo.option}


def get_demo(name: str) -> Demo:
    try:
        return DEMOS[name]
    except KeyError:
        raise UnknownDemoError(name) from None


def run_demo(name: str, emit: Emit = print, config: Optional[Settings] = None) -> DemoReport:
    demo = get_demo(name)
    logger.info("demo_started", demo=demo.name)
    report = demo.run(emit=emit, config=config)
    logger.info("demo_finished", demo=demo.name, **report.stats)
    return report
