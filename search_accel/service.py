"""
Server-side read-through for search, tab and suggestion requests.

Request path:
    classify tab -> derive key -> read store
      hit  -> return cached body
      miss -> fetch origin (one fetch per key at a time) -> write store -> return

Tab content is written with the tab TTLs (popular tabs live longer);
plain search results use the popularity-adjusted TTL.
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from search_accel.cache.formats import ResponseFormat, coerce_content
from search_accel.cache.keys import (
    TAB_PATTERN,
    normalize_query,
    parse_cache_key,
    query_pattern,
    search_key,
    suggestion_key,
    tab_key,
)
from search_accel.cache.policy import TTLPolicy
from search_accel.cache.popularity import PopularityTracker
from search_accel.cache.store import CacheEventCallback, CacheStore
from search_accel.core.config import AccelConfig, get_config
from search_accel.metrics import MetricsCollector
from search_accel.origin import (
    BACKGROUND_FLIGHTS,
    FLIGHT_STANDARD,
    OriginClient,
    OriginError,
    OriginResponse,
    SingleFlight,
    build_origin_params,
)
from search_accel.tabs import TabClassifier, get_classifier
from search_accel.utils.logger import get_logger

logger = get_logger("service")

CORE_PARAMS = ("query", "collection", "profile", "sessionId")

# Requests matching any of these skip the cache entirely
BYPASS_RULES = (
    ("cache", "false"),
    ("personalResults", "true"),
    ("type", "analytics"),
    ("trackingOnly", "true"),
)


@dataclass
class SearchResult:
    body: Any
    cache_key: Optional[str]
    cache_status: str
    cache_type: str
    content_type: Optional[str] = None
    tab_id: Optional[str] = None
    ttl_remaining: Optional[int] = None
    headers: Dict[str, str] = field(default_factory=dict)

    def cache_headers(self) -> Dict[str, str]:
        headers = {
            "X-Cache-Status": self.cache_status,
            "X-Cache-Type": self.cache_type,
        }
        if self.tab_id:
            headers["X-Cache-Tab-ID"] = self.tab_id
        if self.ttl_remaining is not None:
            headers["X-Cache-TTL"] = str(self.ttl_remaining)
        return headers


def make_cache_event_recorder(metrics: MetricsCollector, popularity: PopularityTracker) -> CacheEventCallback:
    """Store callback feeding both the metrics collector and popularity counters."""
    def _record(category: str, operation: str, key: str) -> None:
        metrics.record_cache_event(category, operation)
        popularity.record_event(parse_cache_key(key).get("query"), operation)
    return _record


def should_bypass_cache(params: Mapping[str, Any]) -> bool:
    for name, value in BYPASS_RULES:
        if str(params.get(name, "")).lower() == value:
            return True
    return False


class SearchService:
    """Read-through cache in front of the origin search backend."""

    def __init__(
        self,
        store: CacheStore,
        origin: OriginClient,
        ttl_policy: TTLPolicy,
        classifier: Optional[TabClassifier] = None,
        config: Optional[AccelConfig] = None,
    ):
        self.store = store
        self.origin = origin
        self.ttl_policy = ttl_policy
        self.classifier = classifier or get_classifier()
        self.config = config or get_config()
        self.single_flight = SingleFlight()

    def _defaults(self, collection: Optional[str], profile: Optional[str]):
        return (
            collection or self.config.default_collection,
            profile or self.config.default_profile,
        )

    async def fetch_and_cache(
        self,
        key: str,
        query: str,
        origin_params: Mapping[str, str],
        ttl: Optional[int] = None,
        timeout: Optional[float] = None,
        client_ip: Optional[str] = None,
        fetch: Optional[Callable] = None,
        flight: str = FLIGHT_STANDARD,
    ) -> OriginResponse:
        """
        Fetch from the origin and cache the body under ``key``.

        Concurrent calls for the same key and the same ``flight`` class
        share one origin request. A standard caller first joins a prefetch
        or pre-render already running for the key; if that fails it makes
        its own request under its own timeout. When ``ttl`` is None the
        popularity-adjusted TTL is used.

        Raises:
            OriginError: the origin fetch failed (nothing is cached)
        """
        async def _run() -> OriginResponse:
            if fetch is not None:
                response = await fetch()
            else:
                response = await self.origin.search(origin_params, timeout=timeout, client_ip=client_ip)
            write_ttl = ttl if ttl is not None else self.ttl_policy.recommend(query)
            self.store.set(key, response.body, write_ttl, content_type=response.content_type)
            return response

        if flight == FLIGHT_STANDARD:
            for background in BACKGROUND_FLIGHTS:
                if not self.single_flight.is_inflight((background, key)):
                    continue
                try:
                    return await self.single_flight.join((background, key))
                except OriginError as e:
                    logger.info(f"Joined {background} fetch for {key} failed ({e}), fetching directly")
                break

        return await self.single_flight.do((flight, key), _run)

    def _cached_body(self, payload: Any, fmt: ResponseFormat) -> Any:
        if fmt == ResponseFormat.HTML:
            return payload
        return coerce_content(payload, ResponseFormat.HTML)

    async def search(self, params: Mapping[str, Any], client_ip: Optional[str] = None) -> SearchResult:
        """
        Serve a search or tab request.

        Raises:
            OriginError: cache miss (or bypass) and the origin fetch failed
        """
        query = str(params.get("query") or "")
        collection, profile = self._defaults(params.get("collection"), params.get("profile"))
        session_id = params.get("sessionId")
        extra = {
            k: v for k, v in params.items()
            if k not in CORE_PARAMS and k != "cache"
        }
        origin_params = build_origin_params(query, collection, profile, session_id, extra, config=self.config)

        descriptor = self.classifier.classify(params)
        if descriptor.is_tab:
            tab_id = descriptor.normalized_id or self.classifier.rules.default_tab
            key = tab_key(query, collection, tab_id)
            cache_type = "tab"
            ttl: Optional[int] = self.ttl_policy.tab_ttl(self.ttl_policy.is_popular_tab(tab_id))
        else:
            tab_id = None
            key = search_key(query, collection, profile)
            cache_type = "search"
            ttl = None

        if should_bypass_cache(params):
            logger.info(f"Cache bypass for {key}")
            response = await self.origin.search(origin_params, client_ip=client_ip)
            return SearchResult(
                body=response.body,
                cache_key=None,
                cache_status="BYPASS",
                cache_type=cache_type,
                content_type=response.content_type,
                tab_id=tab_id,
            )

        entry = self.store.get(key)
        if entry is not None:
            return SearchResult(
                body=self._cached_body(entry.payload, entry.format),
                cache_key=key,
                cache_status="HIT",
                cache_type=cache_type,
                content_type=entry.content_type,
                tab_id=tab_id,
                ttl_remaining=self.store.ttl_remaining(key),
            )

        response = await self.fetch_and_cache(key, query, origin_params, ttl=ttl, client_ip=client_ip)
        return SearchResult(
            body=response.body,
            cache_key=key,
            cache_status="MISS",
            cache_type=cache_type,
            content_type=response.content_type,
            tab_id=tab_id,
        )

    async def suggestions(
        self,
        query: str,
        collection: Optional[str] = None,
        profile: Optional[str] = None,
    ) -> SearchResult:
        """Serve query suggestions through the cache (content TTL for suggestions)."""
        collection, profile = self._defaults(collection, profile)
        key = suggestion_key(query, collection, profile)

        entry = self.store.get(key)
        if entry is not None:
            return SearchResult(
                body=entry.payload,
                cache_key=key,
                cache_status="HIT",
                cache_type="suggestion",
                content_type=entry.content_type,
            )

        trimmed = query.strip()
        response = await self.fetch_and_cache(
            key,
            query,
            {},
            ttl=self.ttl_policy.content_ttl("suggestions"),
            fetch=lambda: self.origin.suggest(trimmed, collection, profile),
        )
        return SearchResult(
            body=response.body,
            cache_key=key,
            cache_status="MISS",
            cache_type="suggestion",
            content_type=response.content_type,
        )

    def is_search_cached(self, query: str, collection: Optional[str] = None, profile: Optional[str] = None) -> bool:
        collection, profile = self._defaults(collection, profile)
        return self.store.exists(search_key(query, collection, profile))

    def uncached_tabs(self, query: str, tab_ids: List[str], collection: Optional[str] = None) -> List[str]:
        collection, _ = self._defaults(collection, None)
        return [t for t in tab_ids if not self.store.exists(tab_key(query, collection, t))]

    def clear_query(self, query: str) -> int:
        """Drop every cached entry (search, tab, suggestion) for one query."""
        if not normalize_query(query):
            return 0
        return self.store.delete_pattern(query_pattern(query))

    def clear_tabs(self) -> int:
        return self.store.delete_pattern(TAB_PATTERN)

    def clear_pattern(self, pattern: str) -> int:
        return self.store.delete_pattern(pattern)
