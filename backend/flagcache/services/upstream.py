from __future__ import annotations

import logging
from typing import Any

import httpx

from flagcache.config import Settings


logger = logging.getLogger(__name__)

# Keys under which the upstream may wrap the identifier list
_LIST_KEYS = ("result", "flagged", "items")


class UpstreamUnavailable(RuntimeError):
    """Raised when the flag source cannot produce a usable identifier set."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_overloaded(self) -> bool:
        return self.status_code in (429, 503)


class FlagSourceClient:
    """HTTP client for the upstream service listing every flagged identifier."""

    def __init__(self, settings: Settings, transport: httpx.BaseTransport | httpx.AsyncBaseTransport | None = None):
        self.settings = settings
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.settings.upstream_api_token:
            headers["Authorization"] = f"Bearer {self.settings.upstream_api_token}"
        return headers

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.settings.upstream_base_url,
            headers=self._headers(),
            timeout=self.settings.upstream_timeout,
            transport=self._transport,
        )

    def _async_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.settings.upstream_base_url,
            headers=self._headers(),
            timeout=self.settings.upstream_timeout,
            transport=self._transport,
        )

    async def fetch_flags(self) -> frozenset[str]:
        """Fetch the full flagged set from the upstream endpoint."""
        try:
            async with self._async_client() as client:
                response = await client.get(self.settings.upstream_flags_path)
        except httpx.TimeoutException as e:
            raise UpstreamUnavailable(f"Flag source timed out: {e}") from e
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"Flag source request failed: {e}") from e
        return self._parse_response(response)

    def fetch_flags_sync(self) -> frozenset[str]:
        """Blocking counterpart of fetch_flags for thread-based callers."""
        try:
            with self._client() as client:
                response = client.get(self.settings.upstream_flags_path)
        except httpx.TimeoutException as e:
            raise UpstreamUnavailable(f"Flag source timed out: {e}") from e
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"Flag source request failed: {e}") from e
        return self._parse_response(response)

    def _parse_response(self, response: httpx.Response) -> frozenset[str]:
        if not response.is_success:
            raise UpstreamUnavailable(
                f"Flag source returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamUnavailable(f"Flag source returned invalid JSON: {e}", response.status_code) from e

        return frozenset(_extract_identifiers(data, response.status_code))


def _extract_identifiers(data: Any, status_code: int) -> list[str]:
    if isinstance(data, dict):
        for key in _LIST_KEYS:
            if key in data:
                data = data[key]
                break
        else:
            raise UpstreamUnavailable(
                f"Flag source response has none of the keys {', '.join(_LIST_KEYS)}",
                status_code,
            )

    if not isinstance(data, list):
        raise UpstreamUnavailable(
            f"Flag source returned {type(data).__name__}, expected a list of identifiers",
            status_code,
        )

    identifiers = [str(item) for item in data if item is not None]
    logger.debug(f"Flag source returned {len(identifiers)} identifiers")
    return identifiers
