import threading
from typing import Callable, Optional

import structlog

logger = structlog.get_logger(__name__)


class PeriodicTask:
    """Run a callable every `interval` seconds on a background thread.

    Parameters
    ----------
    func : Callable[[], object]
        Work to run. Exceptions are logged and the schedule keeps going.
    interval : float
        Seconds between the end of one run and the start of the next.
    name : str
        Thread name, handy when listing live threads.
    run_immediately : bool
        Run once right after `start()` instead of waiting a full interval.

    Notes
    -----
    - `stop()` is synchronous: it signals the thread and joins it for at most
      `timeout` seconds. The return value tells whether the thread finished.
    - The thread is a daemon so a forgotten task can never block interpreter
      exit; forgetting to stop it still keeps `func` and everything it
      references alive until the process ends.
    """

    def __init__(self, func: Callable[[], object], interval: float, name: str = "periodic-task",
                 run_immediately: bool = True):
        if interval <= 0:
            raise ValueError(f"interval must be > 0, got {interval!r}")
        self.func = func
        self.interval = interval
        self.name = name
        self.run_immediately = run_immediately
        self.runs = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> "PeriodicTask":
        if self.running:
            return self
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.debug("periodic_task_started", task=self.name, interval=self.interval)
        return self

    def stop(self, timeout: float = 5.0) -> bool:
        self._stop.set()
        thread = self._thread
        if thread is None:
            return True
        if thread is not threading.current_thread():
            thread.join(timeout)
        finished = not thread.is_alive()
        if finished:
            self._thread = None
            logger.debug("periodic_task_stopped", task=self.name, runs=self.runs)
        else:
            logger.warning("periodic_task_stop_timeout", task=self.name, timeout=timeout)
        return finished

    def _loop(self) -> None:
        if not self.run_immediately and self._stop.wait(self.interval):
            return
        while not self._stop.is_set():
            try:
                self.func()
            except Exception:
                logger.exception("periodic_task_failed", task=self.name)
            self.runs += 1
            if self._stop.wait(self.interval):
                break

    def __enter__(self) -> "PeriodicTask":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
