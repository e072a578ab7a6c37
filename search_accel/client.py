"""
HTTP client for the acceleration endpoints.

Used by the orchestrator (and by scripts that warm the cache). Each call
has its own time budget:
    check_cache  ~1s, aborted on timeout, reported as "not cached"
    prefetch     ~5s, fire-and-forget from the caller's point of view
    pre_render   ~5s
    search       no timeout, the user is waiting for these results
"""
import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import httpx

from search_accel.cache.keys import normalize_query
from search_accel.core.config import AccelConfig, get_config
from search_accel.utils.logger import get_logger

logger = get_logger("client")


class SearchRequestError(RuntimeError):
    """Raised when the standard search request fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class SearchResponse:
    body: str
    status_code: int
    cache_status: Optional[str] = None
    cache_type: Optional[str] = None
    tab_id: Optional[str] = None

    @property
    def is_cache_hit(self) -> bool:
        return self.cache_status == "HIT"


class AcceleratorClient:
    """Async client for /cache-check, /prefetch, /pre-render, /search and /suggestions."""

    def __init__(
        self,
        base_url: str,
        config: Optional[AccelConfig] = None,
        session_id: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.config = config or get_config()
        self.session_id = session_id
        self.transport = transport

    async def _request(self, method: str, path: str, timeout: Optional[float], **kwargs) -> httpx.Response:
        """
        Send one request. With a timeout, the whole exchange (connect, send,
        wait, read) is bounded, not just each socket operation.
        """
        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            transport=self.transport,
        ) as client:
            call = client.request(method, path, **kwargs)
            if timeout is None:
                return await call
            return await asyncio.wait_for(call, timeout=timeout)

    def _params(self, query: str, collection: Optional[str], profile: Optional[str]) -> Dict[str, str]:
        params = {
            "query": query,
            "collection": collection or self.config.default_collection,
            "profile": profile or self.config.default_profile,
        }
        if self.session_id:
            params["sessionId"] = self.session_id
        return params

    async def check_cache(
        self,
        query: str,
        collection: Optional[str] = None,
        profile: Optional[str] = None,
    ) -> bool:
        """True only if the server confirms the query is cached within the probe budget."""
        normalized = normalize_query(query)
        if len(normalized) < self.config.probe_min_query_length:
            return False
        try:
            response = await self._request(
                "GET", "/cache-check", self.config.probe_timeout,
                params=self._params(normalized, collection, profile),
            )
        except asyncio.TimeoutError:
            logger.info(f"Cache check aborted after {self.config.probe_timeout}s for '{normalized}'")
            return False
        except httpx.HTTPError as e:
            logger.info(f"Cache check failed for '{normalized}': {e}")
            return False
        if response.status_code != 200:
            return False
        return bool(response.json().get("exists"))

    async def prefetch(
        self,
        query: str,
        collection: Optional[str] = None,
        profile: Optional[str] = None,
    ) -> bool:
        """Ask the server to warm ``query``. Returns whether the request was accepted."""
        normalized = normalize_query(query)
        if len(normalized) < self.config.prefetch_min_query_length:
            return False
        try:
            response = await self._request(
                "GET", "/prefetch", self.config.prefetch_timeout,
                params=self._params(normalized, collection, profile),
            )
        except (asyncio.TimeoutError, httpx.HTTPError) as e:
            logger.info(f"Prefetch request failed for '{normalized}': {e!r}")
            return False
        return response.status_code == 202

    async def pre_render(
        self,
        query: str,
        collection: Optional[str] = None,
        profile: Optional[str] = None,
    ) -> bool:
        normalized = normalize_query(query)
        if not normalized:
            return False
        try:
            response = await self._request(
                "POST", "/pre-render", self.config.prefetch_timeout,
                json=self._params(normalized, collection, profile),
            )
        except (asyncio.TimeoutError, httpx.HTTPError) as e:
            logger.info(f"Pre-render request failed for '{normalized}': {e!r}")
            return False
        return response.status_code == 202

    async def search(
        self,
        query: str,
        collection: Optional[str] = None,
        profile: Optional[str] = None,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> SearchResponse:
        """
        Run the standard search request (form=partial). Not abortable.

        Raises:
            SearchRequestError: transport failure or non-2xx response
        """
        params = self._params(query, collection, profile)
        params["form"] = "partial"
        for key, value in (extra or {}).items():
            params[str(key)] = str(value)
        try:
            response = await self._request("GET", "/search", None, params=params)
        except httpx.HTTPError as e:
            raise SearchRequestError(f"Search request failed: {e}") from e

        if response.status_code >= 400:
            raise SearchRequestError(
                f"Search request returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return SearchResponse(
            body=response.text,
            status_code=response.status_code,
            cache_status=response.headers.get("X-Cache-Status"),
            cache_type=response.headers.get("X-Cache-Type"),
            tab_id=response.headers.get("X-Cache-Tab-ID"),
        )

    async def suggestions(self, query: str) -> Any:
        normalized = normalize_query(query)
        if len(normalized) < self.config.suggestion_min_query_length:
            return []
        try:
            response = await self._request(
                "GET", "/suggestions", self.config.prefetch_timeout,
                params=self._params(query, None, None),
            )
            response.raise_for_status()
        except (asyncio.TimeoutError, httpx.HTTPError) as e:
            logger.info(f"Suggestion request failed for '{normalized}': {e!r}")
            return []
        return response.json()
