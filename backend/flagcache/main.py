from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Iterable

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from flagcache.config import Settings, get_settings, validate_config_on_startup
from flagcache.dependencies import build_flag_cache
from flagcache.routers import flags


logger = logging.getLogger(__name__)

VERSION = "0.1.0"


def create_app(
    settings: Settings | None = None,
    fetcher: Callable[[], Awaitable[Iterable[Any]]] | None = None,
) -> FastAPI:
    """Build the API. A custom fetcher replaces the HTTP flag source."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup and shutdown events."""
        # Upstream settings only matter when the HTTP flag source is used
        if fetcher is None:
            validate_config_on_startup(settings)

        cache = build_flag_cache(settings, fetcher)
        app.state.flag_cache = cache

        if settings.warm_cache_on_startup:
            if await cache.refresh():
                logger.info(f"Flag cache warmed with {len(cache.snapshot)} identifiers")
            else:
                logger.warning("Flag cache warm-up failed, first lookups will retry")

        yield

        app.state.flag_cache = None

    app = FastAPI(
        title="Flag Cache API",
        version=VERSION,
        lifespan=lifespan,
    )

    # Default restricts to localhost dev servers; in production set CORS_ALLOWED_ORIGINS env var
    cors_origins = [
        origin.strip()
        for origin in settings.cors_allowed_origins.split(",")
        if origin.strip()
    ]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    app.include_router(flags.router)

    @app.get("/api/ping")
    async def ping():
        """Simple health check for load balancers."""
        return {"status": "ok", "version": VERSION}

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("flagcache.main:app", host="0.0.0.0", port=8000)
