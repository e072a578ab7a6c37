"""Cache layer: key derivation, TTL policy, popularity tracking and storage."""
from search_accel.cache.formats import ResponseFormat, coerce_content, detect_format
from search_accel.cache.keys import derive_key, normalize_query, parse_cache_key
from search_accel.cache.policy import TTLPolicy
from search_accel.cache.popularity import PopularityTracker
from search_accel.cache.store import CacheEntry, CacheStore, MemoryBackend, RedisBackend

__all__ = [
    "CacheEntry",
    "CacheStore",
    "MemoryBackend",
    "PopularityTracker",
    "RedisBackend",
    "ResponseFormat",
    "TTLPolicy",
    "coerce_content",
    "derive_key",
    "detect_format",
    "normalize_query",
    "parse_cache_key",
]
