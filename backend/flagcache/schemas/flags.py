from __future__ import annotations

from pydantic import BaseModel


class FlagLookupResponse(BaseModel):
    identifier: str
    flagged: bool
    known: bool = True  # False until the first successful refresh
    state: str
    stale: bool = False
    snapshot_age_seconds: float | None = None


class CacheStatusResponse(BaseModel):
    name: str
    state: str
    item_count: int = 0
    age_seconds: float | None = None
    validity_seconds: float
    refresh_count: int = 0
    failure_count: int = 0
    last_error: str | None = None
    last_failure_time: float | None = None
