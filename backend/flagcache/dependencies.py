from typing import Any, Awaitable, Callable, Iterable

from fastapi import HTTPException, Request

from flagcache.config import Settings
from flagcache.services.cache import SingleFlightExpiringCache
from flagcache.services.upstream import FlagSourceClient


def build_flag_cache(
    settings: Settings,
    fetcher: Callable[[], Awaitable[Iterable[Any]]] | None = None,
) -> SingleFlightExpiringCache:
    """Construct the cache owned by one application instance."""
    if fetcher is None:
        fetcher = FlagSourceClient(settings).fetch_flags
    return SingleFlightExpiringCache(
        fetcher,
        settings.cache_validity_seconds,
        unknown_policy=settings.unknown_policy,
    )


def get_flag_cache(request: Request) -> SingleFlightExpiringCache:
    """Hand endpoints the cache created in the application lifespan."""
    cache = getattr(request.app.state, "flag_cache", None)
    if cache is None:
        raise HTTPException(status_code=503, detail="Flag cache is not initialised")
    return cache
