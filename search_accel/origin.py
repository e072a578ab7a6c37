"""
Client for the origin search backend.

The origin renders HTML fragments for partial search requests:

    GET {base_url}/search?query=...&collection=...&profile=...&form=partial&sessionId=...

It is slow (seconds), which is why everything in front of it is a cache.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Hashable, Mapping, Optional

import httpx

from search_accel.core.config import AccelConfig, get_config
from search_accel.utils.logger import get_logger

logger = get_logger("origin")


class OriginError(RuntimeError):
    """Raised when the origin cannot be reached, times out or answers non-2xx."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class OriginResponse:
    body: str
    content_type: Optional[str] = None
    status_code: int = 200
    headers: Dict[str, str] = field(default_factory=dict)


def build_origin_params(
    query: str,
    collection: Optional[str] = None,
    profile: Optional[str] = None,
    session_id: Optional[str] = None,
    extra: Optional[Mapping[str, Any]] = None,
    config: Optional[AccelConfig] = None,
) -> Dict[str, str]:
    """
    Build the origin query parameters.

    ``extra`` carries pass-through parameters (facet filters such as
    ``f.Tabs|programs``); they never override the core parameters.
    """
    config = config or get_config()
    params: Dict[str, str] = {}
    for key, value in (extra or {}).items():
        if value is not None:
            params[str(key)] = str(value)
    params.update({
        "query": query,
        "collection": collection or config.default_collection,
        "profile": profile or config.default_profile,
        "form": params.get("form") or "partial",
    })
    if session_id:
        params["sessionId"] = session_id
    return params


class OriginClient:
    """Async HTTP client for the origin search backend."""

    def __init__(
        self,
        base_url: str,
        search_path: str = "/search",
        suggest_path: str = "/suggest",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.search_path = search_path
        self.suggest_path = suggest_path
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_config(
        cls,
        config: Optional[AccelConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "OriginClient":
        config = config or get_config()
        return cls(
            base_url=config.origin_base_url,
            search_path=config.origin_search_path,
            suggest_path=config.origin_suggest_path,
            timeout=config.origin_timeout,
            transport=transport,
        )

    async def fetch(
        self,
        path: str,
        params: Mapping[str, str],
        timeout: Optional[float] = None,
        client_ip: Optional[str] = None,
    ) -> OriginResponse:
        """
        GET ``path`` on the origin.

        Raises:
            OriginError: transport failure, timeout or non-2xx status
        """
        headers = {"Accept": "text/html, application/json;q=0.9, */*;q=0.8"}
        if client_ip:
            headers["X-Forwarded-For"] = client_ip

        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(
                timeout=timeout or self.timeout,
                transport=self.transport,
            ) as client:
                response = await client.get(url, params=dict(params), headers=headers)
                response.raise_for_status()
        except httpx.TimeoutException as e:
            logger.warning(f"Origin request timed out: {url}")
            raise OriginError(f"Origin request timed out: {e}") from e
        except httpx.HTTPStatusError as e:
            logger.warning(f"Origin returned {e.response.status_code} for {url}")
            raise OriginError(
                f"Origin returned HTTP {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            logger.warning(f"Origin request failed: {url}: {e}")
            raise OriginError(f"Origin request failed: {e}") from e

        return OriginResponse(
            body=response.text,
            content_type=response.headers.get("content-type"),
            status_code=response.status_code,
            headers=dict(response.headers),
        )

    async def search(
        self,
        params: Mapping[str, str],
        timeout: Optional[float] = None,
        client_ip: Optional[str] = None,
    ) -> OriginResponse:
        return await self.fetch(self.search_path, params, timeout=timeout, client_ip=client_ip)

    async def suggest(
        self,
        query: str,
        collection: str,
        profile: str,
        timeout: Optional[float] = None,
    ) -> OriginResponse:
        params = {"partial_query": query, "collection": collection, "profile": profile}
        return await self.fetch(self.suggest_path, params, timeout=timeout)


# Path classes; each gets its own single-flight slot per key
FLIGHT_STANDARD = "standard"
FLIGHT_PREFETCH = "prefetch"
FLIGHT_PRE_RENDER = "pre_render"
BACKGROUND_FLIGHTS = (FLIGHT_PRE_RENDER, FLIGHT_PREFETCH)


class SingleFlight:
    """
    Collapse concurrent calls for the same key into one.

    The first caller runs the function; callers arriving while it is in
    flight await the same result (or exception). The slot is cleared when
    the call finishes either way. Keys may be any hashable, e.g.
    ``(path_class, cache_key)``.
    """

    def __init__(self):
        self._inflight: Dict[Hashable, asyncio.Future] = {}

    def is_inflight(self, key: Hashable) -> bool:
        return key in self._inflight

    async def join(self, key: Hashable) -> Any:
        """
        Await the call already running for ``key``.

        Raises:
            KeyError: nothing is in flight for ``key``
        """
        return await asyncio.shield(self._inflight[key])

    async def do(self, key: Hashable, fn: Callable[[], Awaitable[Any]]) -> Any:
        if key in self._inflight:
            logger.debug(f"Joining in-flight fetch for {key}")
            return await self.join(key)

        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            result = await fn()
        except asyncio.CancelledError:
            # Joiners see a normal origin failure and can retry on their own
            future.set_exception(OriginError(f"In-flight fetch for {key} was cancelled"))
            future.exception()
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so a leader-only failure is not reported as unhandled
            future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            self._inflight.pop(key, None)
