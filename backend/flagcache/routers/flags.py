from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from flagcache.dependencies import get_flag_cache
from flagcache.schemas.flags import CacheStatusResponse, FlagLookupResponse
from flagcache.services.cache import SingleFlightExpiringCache


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/flags", tags=["flags"])


@router.get("/status", response_model=CacheStatusResponse)
async def get_cache_status(cache: SingleFlightExpiringCache = Depends(get_flag_cache)):
    return CacheStatusResponse(**cache.get_status())


@router.post("/refresh", response_model=CacheStatusResponse)
async def refresh_cache(cache: SingleFlightExpiringCache = Depends(get_flag_cache)):
    """Force a refresh. Upstream failures show up in the returned status, not as errors."""
    populated = await cache.refresh()
    if not populated:
        logger.warning("Forced refresh left the flag cache empty")
    return CacheStatusResponse(**cache.get_status())


@router.get("/lookup/{identifier:path}", response_model=FlagLookupResponse)
async def lookup_flag(identifier: str, cache: SingleFlightExpiringCache = Depends(get_flag_cache)):
    result = await cache.lookup(identifier)
    return FlagLookupResponse(
        identifier=identifier,
        flagged=bool(result.present),
        known=result.known,
        state=result.state.value,
        stale=result.stale,
        snapshot_age_seconds=result.age_seconds,
    )
