import gc
import threading
import weakref
from typing import Dict, Optional


class LeakDetector:
    """Count live instances per class name.

    `track`/`untrack` can be called by hand. `watch` does both for you: the
    object is counted now and uncounted when it is garbage collected, so the
    numbers reflect objects that are genuinely still reachable.
    """

    def __init__(self):
        self._counts: Dict[str, int] = {}
        self._lock = threading.Lock()

    def track(self, name: str) -> None:
        with self._lock:
            self._counts[name] = self._counts.get(name, 0) + 1

    def untrack(self, name: str) -> None:
        with self._lock:
            count = self._counts.get(name, 0)
            if count > 0:
                self._counts[name] = count - 1

    def watch(self, obj: object, name: Optional[str] = None) -> None:
        name = name or type(obj).__name__
        self.track(name)
        weakref.finalize(obj, self.untrack, name)

    def count(self, name: str, collect: bool = True) -> int:
        if collect:
            gc.collect()
        with self._lock:
            return self._counts.get(name, 0)

    def snapshot(self, collect: bool = True) -> Dict[str, int]:
        if collect:
            gc.collect()
        with self._lock:
            return dict(self._counts)

    def reset(self) -> None:
        with self._lock:
            self._counts.clear()

    def format_stats(self) -> str:
        lines = ["Object counts:"]
        for name, count in sorted(self.snapshot().items()):
            lines.append(f"{name}: {count} instances")
        return "\n".join(lines)


detector = LeakDetector()
