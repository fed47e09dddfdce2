from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, HTTPException

from .cache import BoundedCache, CleanupSweeper
from .demos import DEMOS, ExpensiveObject, run_demo, stable_id, stop_all_workers
from .errors import UnknownDemoError
from .scheduling import PeriodicTask
from .schemas import (
    CachedObjectResponse,
    CacheStatsResponse,
    DemoInfo,
    DemoListResponse,
    DemoReport,
    SweepResponse,
)
from .settings import settings

logger = structlog.get_logger(__name__)

cache = BoundedCache(settings.cache_capacity, idle_seconds=settings.cache_idle_seconds)
sweeper = CleanupSweeper(cache)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Run the cache sweeper on a schedule for the lifetime of the server."""

    task = None
    if settings.sweep_interval_seconds > 0:
        task = PeriodicTask(sweeper, settings.sweep_interval_seconds, name="leaklab-sweeper",
                            run_immediately=False).start()
    logger.info("api_started", capacity=settings.cache_capacity, sweep_interval=settings.sweep_interval_seconds)
    try:
        yield
    finally:
        if task is not None:
            task.stop()
        stopped = stop_all_workers()
        logger.info("api_stopped", stopped_workers=stopped)


app = FastAPI(title="Leak Lab API", version="1.0.0", lifespan=lifespan)


@app.get("/health")
async def health():
    """Liveness check for the service.

    Returns
    -------
    dict
        A fixed payload `{"status": "ok"}` used by orchestrators and uptime checks.
    """

    return {"status": "ok"}


@app.get("/v1/demos", response_model=DemoListResponse)
async def list_demos():
    """List the registered demonstrations.

    Returns
    -------
    DemoListResponse
        Envelope with `count` and `data`; `option` is the console menu key,
        `null` for snippets only reachable by name.
    """

    items = [DemoInfo(name=d.name, title=d.title, option=d.option) for d in DEMOS.values()]
    return {"count": len(items), "data": items}


@app.post("/v1/demos/{name}/run", response_model=DemoReport)
def run_demo_endpoint(name: str):
    """Run one demonstration and return what it printed.

    Parameters
    ----------
    name : str
        Demonstration name as listed by `/v1/demos` (e.g. `naive-cache`).

    Returns
    -------
    DemoReport
        Emitted lines plus the measurements backing the demonstration.

    Raises
    ------
    HTTPException
        404 if no demonstration is registered under `name`.

    Notes
    -----
    - Runs synchronously in the worker thread pool; the thread and cleanup
      snippets sleep for a few seconds by design.
    """

    try:
        return run_demo(name, emit=lambda line: None)
    except UnknownDemoError:
        raise HTTPException(status_code=404, detail=f"Unknown demo: {name}")


@app.get("/v1/cache/objects/{key}", response_model=CachedObjectResponse)
async def get_cached_object(key: str):
    """Fetch an `ExpensiveObject` through the shared bounded cache, building it on a miss.

    Parameters
    ----------
    key : str
        Cache key. The object id is derived from it deterministically.

    Returns
    -------
    CachedObjectResponse
        `cached` is False whenever the object had to be built, including when an
        idle entry was dropped and rebuilt.
    """

    built = []

    def build(k: str) -> ExpensiveObject:
        built.append(k)
        return ExpensiveObject(stable_id(k), settings.payload_bytes)

    obj = cache.get(key, build)
    return {"key": key, "id": obj.id, "payload_bytes": len(obj.data), "cached": not built}


@app.delete("/v1/cache/objects/{key}", status_code=204)
async def delete_cached_object(key: str):
    """Drop `key` from the shared cache.

    Raises
    ------
    HTTPException
        404 if the key is not cached.
    """

    if not cache.remove(key):
        raise HTTPException(status_code=404, detail="Key not cached")


@app.post("/v1/cache/sweep", response_model=SweepResponse)
async def sweep_cache():
    """Remove every reclaimable entry now instead of waiting for the scheduled sweep."""

    removed = sweeper.run_once()
    return {"removed": removed, "size": cache.size()}


@app.get("/v1/cache/stats", response_model=CacheStatsResponse)
async def cache_stats():
    return cache.stats()
