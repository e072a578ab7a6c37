"""
Fire-and-forget prefetching.

The client asks for a query to be warmed while the user is still typing
(prefetch) or just before redirecting to the results page (pre-render).
``schedule`` and ``pre_render`` return an acknowledgement immediately; the
origin fetch and cache write happen in a background task. Failures are
logged and counted, never raised.
"""
import asyncio
from dataclasses import dataclass
from typing import Coroutine, List, Optional, Set

from search_accel.cache.keys import normalize_query, search_key, tab_key
from search_accel.core.config import AccelConfig, get_config
from search_accel.metrics import MetricsCollector, metrics_collector
from search_accel.origin import FLIGHT_PRE_RENDER, FLIGHT_PREFETCH, OriginError, build_origin_params
from search_accel.service import SearchService
from search_accel.utils.logger import get_logger

logger = get_logger("prefetch")


@dataclass
class PrefetchAck:
    status: str
    cache_key: str
    query: str
    message: str = ""
    session_id: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.status == "accepted"


class PrefetchWorker:
    """Runs prefetch and pre-render jobs as background asyncio tasks."""

    def __init__(
        self,
        service: SearchService,
        metrics: Optional[MetricsCollector] = None,
        config: Optional[AccelConfig] = None,
    ):
        self.service = service
        self.metrics = metrics or metrics_collector
        self.config = config or get_config()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def _spawn(self, coro: Coroutine) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        # Hold a reference until the task finishes
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for every scheduled job to finish (shutdown and tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def schedule(
        self,
        query: str,
        collection: Optional[str] = None,
        profile: Optional[str] = None,
        session_id: Optional[str] = None,
        ttl: Optional[int] = None,
        client_ip: Optional[str] = None,
    ) -> PrefetchAck:
        """
        Schedule a prefetch and return immediately.

        Must be called from a running event loop.
        """
        collection = collection or self.config.default_collection
        profile = profile or self.config.default_profile
        key = search_key(query, collection, profile)
        normalized = normalize_query(query)

        if len(normalized) < self.config.prefetch_min_query_length:
            self.metrics.record_prefetch("ignored")
            return PrefetchAck(
                status="ignored",
                cache_key=key,
                query=query,
                message=f"Query shorter than {self.config.prefetch_min_query_length} characters",
                session_id=session_id,
            )

        self._spawn(self._run(
            key, query, collection, profile, session_id,
            ttl=ttl, client_ip=client_ip, skip_if_cached=True, flight=FLIGHT_PREFETCH,
        ))
        self.metrics.record_prefetch("accepted")
        logger.info(f"Prefetch accepted: {key}")
        return PrefetchAck(
            status="accepted",
            cache_key=key,
            query=query,
            message="Prefetch request accepted",
            session_id=session_id,
        )

    def pre_render(
        self,
        query: str,
        collection: Optional[str] = None,
        profile: Optional[str] = None,
        session_id: Optional[str] = None,
        client_ip: Optional[str] = None,
    ) -> PrefetchAck:
        """Prepare results for an imminent redirect; always refetches."""
        collection = collection or self.config.default_collection
        profile = profile or self.config.default_profile
        key = search_key(query, collection, profile)

        self._spawn(self._run(
            key, query, collection, profile, session_id,
            ttl=self.config.pre_render_ttl, client_ip=client_ip, skip_if_cached=False,
            flight=FLIGHT_PRE_RENDER,
        ))
        self.metrics.record_prefetch("accepted")
        logger.info(f"Pre-render accepted: {key}")
        return PrefetchAck(
            status="accepted",
            cache_key=key,
            query=query,
            message="Pre-render request accepted",
            session_id=session_id,
        )

    def preload_tabs(
        self,
        query: str,
        tab_ids: List[str],
        collection: Optional[str] = None,
        profile: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> List[PrefetchAck]:
        """Warm tab content for every listed tab that is not cached yet."""
        collection = collection or self.config.default_collection
        profile = profile or self.config.default_profile
        acks = []
        for tab_id in self.service.uncached_tabs(query, tab_ids, collection):
            key = tab_key(query, collection, tab_id)
            ttl = self.service.ttl_policy.ttl_for_tab_type(tab_id)
            self._spawn(self._run(
                key, query, collection, profile, session_id,
                ttl=ttl, skip_if_cached=False, extra={"form": "partial", "tab": tab_id},
            ))
            self.metrics.record_prefetch("accepted")
            acks.append(PrefetchAck(status="accepted", cache_key=key, query=query,
                                    message=f"Preloading tab {tab_id}", session_id=session_id))
        return acks

    async def _run(
        self,
        key: str,
        query: str,
        collection: str,
        profile: str,
        session_id: Optional[str],
        ttl: Optional[int] = None,
        client_ip: Optional[str] = None,
        skip_if_cached: bool = True,
        extra: Optional[dict] = None,
        flight: str = FLIGHT_PREFETCH,
    ) -> None:
        if skip_if_cached and self.service.store.exists(key):
            logger.info(f"Prefetch skipped, already cached: {key}")
            self.metrics.record_prefetch("skipped_cached")
            return

        params = build_origin_params(query.strip(), collection, profile, session_id, extra, config=self.config)
        try:
            await self.service.fetch_and_cache(
                key,
                query,
                params,
                ttl=ttl,
                timeout=self.config.prefetch_timeout,
                client_ip=client_ip,
                flight=flight,
            )
        except OriginError as e:
            logger.warning(f"Prefetch failed for {key}: {e}")
            self.metrics.record_prefetch("failed")
            return
        except Exception as e:
            logger.error(f"Unexpected prefetch error for {key}: {e}")
            self.metrics.record_prefetch("failed")
            return

        logger.info(f"Prefetch cached: {key}")
        self.metrics.record_prefetch("cached")
