"""
In-process query popularity counters.

Every cache event (hit, miss or set) for a query bumps its counter; the
counters drive the popularity axis of the TTL policy. The map is bounded:
least-recently-touched queries are evicted once ``max_entries`` is reached,
and ``sweep`` drops counters idle for longer than a window.

Counters are per process and are lost on restart.
"""
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Optional

from search_accel.cache.keys import normalize_query
from search_accel.utils.logger import get_logger

logger = get_logger("cache.popularity")


@dataclass
class PopularityRecord:
    count: int = 0
    last_accessed: float = 0.0


class PopularityTracker:
    """Thread-safe, LRU-bounded map of normalized query -> access count."""

    def __init__(self, max_entries: int = 10000):
        self.max_entries = max(1, int(max_entries))
        self._records: "OrderedDict[str, PopularityRecord]" = OrderedDict()
        self._lock = threading.Lock()

    def record_event(self, query: Optional[str], kind: str = "hit") -> int:
        """
        Count one cache event for a query.

        Hits, misses and sets all count the same: the counter measures
        traffic, not cache efficiency.

        Returns:
            The new count (0 for an empty query, which is ignored)
        """
        normalized = normalize_query(query)
        if not normalized:
            return 0

        with self._lock:
            record = self._records.get(normalized)
            if record is None:
                record = PopularityRecord()
                self._records[normalized] = record
            else:
                self._records.move_to_end(normalized)
            record.count += 1
            record.last_accessed = time.time()
            count = record.count

            while len(self._records) > self.max_entries:
                evicted, _ = self._records.popitem(last=False)
                logger.debug(f"Evicted popularity counter for '{evicted}'")

        return count

    def get_count(self, query: Optional[str]) -> int:
        normalized = normalize_query(query)
        with self._lock:
            record = self._records.get(normalized)
            return record.count if record else 0

    def sweep(self, max_idle_seconds: float) -> int:
        """Drop counters not touched within ``max_idle_seconds``. Returns how many."""
        cutoff = time.time() - max_idle_seconds
        with self._lock:
            stale = [q for q, r in self._records.items() if r.last_accessed < cutoff]
            for query in stale:
                del self._records[query]
        if stale:
            logger.info(f"Swept {len(stale)} idle popularity counters")
        return len(stale)

    def tier_counts(self, popular_threshold: int, high_volume_threshold: int) -> Dict[str, int]:
        """Count tracked queries per popularity tier."""
        with self._lock:
            counts = [r.count for r in self._records.values()]
        return {
            "total_queries": len(counts),
            "popular_queries": sum(1 for c in counts if popular_threshold <= c < high_volume_threshold),
            "high_volume_queries": sum(1 for c in counts if c >= high_volume_threshold),
        }

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
