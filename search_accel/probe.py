"""
Cheap existence probe for cached search results.

The client asks "is this query already cached?" before deciding whether
to take the cache-first path. The probe only checks existence and TTL;
it never loads the payload. It is bounded by a timeout: a slow or hung
store answers "not cached" instead of holding the caller.
"""
import asyncio
import time
from dataclasses import dataclass
from typing import Optional, Tuple

from search_accel.cache.keys import KIND_SEARCH, derive_key
from search_accel.cache.store import CacheStore
from search_accel.core.config import AccelConfig, get_config
from search_accel.utils.logger import get_logger

logger = get_logger("probe")


@dataclass
class ProbeResult:
    exists: bool
    cache_key: str
    ttl_remaining: Optional[int] = None
    duration_ms: float = 0.0
    timed_out: bool = False


class CacheProbe:
    """Bounded existence check against the cache store."""

    def __init__(self, store: CacheStore, config: Optional[AccelConfig] = None, timeout: Optional[float] = None):
        self.store = store
        self.config = config or get_config()
        self.timeout = timeout if timeout is not None else self.config.probe_timeout

    def _check(self, key: str) -> Tuple[bool, Optional[int]]:
        if not self.store.exists(key):
            return False, None
        return True, self.store.ttl_remaining(key)

    async def probe(
        self,
        query: str,
        collection: Optional[str] = None,
        profile: Optional[str] = None,
    ) -> ProbeResult:
        """
        Check whether search results for ``query`` are cached.

        Never raises: timeouts and store errors resolve to ``exists=False``.
        """
        key = derive_key(
            KIND_SEARCH,
            query,
            collection or self.config.default_collection,
            profile or self.config.default_profile,
        )
        start = time.perf_counter()
        try:
            exists, ttl = await asyncio.wait_for(
                asyncio.to_thread(self._check, key),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.warning(f"Cache probe timed out after {duration_ms:.0f}ms: {key}")
            return ProbeResult(exists=False, cache_key=key, duration_ms=duration_ms, timed_out=True)
        except Exception as e:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.error(f"Cache probe failed for {key}: {e}")
            return ProbeResult(exists=False, cache_key=key, duration_ms=duration_ms)

        duration_ms = (time.perf_counter() - start) * 1000
        logger.debug(f"Cache probe {key}: exists={exists} ttl={ttl} ({duration_ms:.1f}ms)")
        return ProbeResult(exists=exists, cache_key=key, ttl_remaining=ttl, duration_ms=duration_ms)
