from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class DemoInfo(BaseModel):
    """A registered demonstration.

    Notes
    -----
    - `option` is the console menu key ("1".."6"), or `None` for the
      supplementary snippets that are only reachable by name.
    """

    name: str
    title: str
    option: Optional[str] = None


class DemoListResponse(BaseModel):
    count: int
    data: List[DemoInfo]


class DemoReport(BaseModel):
    """What a demonstration printed, plus the numbers that prove its point."""

    name: str
    title: str
    lines: List[str] = Field(default_factory=list)
    stats: Dict[str, Any] = Field(default_factory=dict)


class CachedObjectResponse(BaseModel):
    key: str
    id: int
    payload_bytes: int
    cached: bool


class CacheStatsResponse(BaseModel):
    size: int
    capacity: Optional[int] = None
    idle_seconds: Optional[float] = None
    hits: int
    misses: int
    evictions: int
    live_evictions: int
    expired: int
    swept: int


class SweepResponse(BaseModel):
    removed: int
    size: int
