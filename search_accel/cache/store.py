"""
Key/value cache with per-key TTL.

Redis is the primary backend; when Redis is unreachable at startup the store
falls back to an in-process dictionary. The store never raises to callers:
backend errors are logged and surface as a miss (``get``), ``False``
(``set``/``exists``), ``None`` (``ttl_remaining``) or ``0``
(``delete_pattern``).

Entries are serialized as one JSON envelope so the payload, its detected
format and its metadata are written (and expire) together:

    {"payload": ..., "encoding": "text|base64|json", "format": "html",
     "created_at": 1700000000.0, "ttl_seconds": 43200,
     "content_type": "text/html", "etag": "...", "last_modified": "..."}

Supports both local Redis and Upstash (cloud-hosted) via REDIS_URL /
UPSTASH_REDIS_URL.
"""
import base64
import hashlib
import json
import math
import re
import threading
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import redis

from search_accel.cache.formats import ResponseFormat, coerce_content, detect_format
from search_accel.cache.keys import KIND_SEARCH, KIND_SUGGESTION, KIND_TAB
from search_accel.core.config import AccelConfig, get_config
from search_accel.utils.logger import get_logger

logger = get_logger("cache.store")

# (category, operation, key) -> None
CacheEventCallback = Callable[[str, str, str], None]

_CATEGORY_BY_KIND = {
    KIND_SEARCH: "search",
    KIND_TAB: "tabs",
    KIND_SUGGESTION: "suggestions",
}


class CacheStoreError(RuntimeError):
    """Raised by a backend when the underlying store cannot be reached."""


def category_for_key(key: str) -> str:
    return _CATEGORY_BY_KIND.get(key.split(":", 1)[0], "other")


def pattern_to_regex(pattern: str) -> "re.Pattern[str]":
    """``*`` matches any run of characters; everything else is literal."""
    return re.compile("^" + ".*".join(re.escape(part) for part in pattern.split("*")) + "$", re.DOTALL)


def _pattern_to_redis_glob(pattern: str) -> str:
    # Redis globs also treat ? [ ] and backslash as special
    return re.sub(r"([?\[\]\\])", r"\\\1", pattern)


@dataclass
class CacheEntry:
    """A cached payload plus the metadata written alongside it."""

    key: str
    payload: Any
    format: ResponseFormat
    created_at: float
    ttl_seconds: int
    content_type: Optional[str] = None
    etag: Optional[str] = None
    last_modified: Optional[str] = None

    def metadata(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("payload")
        data["format"] = self.format.value
        return data

    def to_json(self) -> str:
        if isinstance(self.payload, bytes):
            encoding, payload = "base64", base64.b64encode(self.payload).decode("ascii")
        elif isinstance(self.payload, str):
            encoding, payload = "text", self.payload
        else:
            encoding, payload = "json", self.payload
        envelope = self.metadata()
        envelope["payload"] = payload
        envelope["encoding"] = encoding
        return json.dumps(envelope)

    @classmethod
    def from_json(cls, key: str, raw: str) -> "CacheEntry":
        envelope = json.loads(raw)
        payload = envelope.get("payload")
        if envelope.get("encoding") == "base64":
            payload = base64.b64decode(payload)
        try:
            fmt = ResponseFormat(envelope.get("format", "unknown"))
        except ValueError:
            fmt = ResponseFormat.UNKNOWN
        return cls(
            key=key,
            payload=payload,
            format=fmt,
            created_at=float(envelope.get("created_at", 0.0)),
            ttl_seconds=int(envelope.get("ttl_seconds", 0)),
            content_type=envelope.get("content_type"),
            etag=envelope.get("etag"),
            last_modified=envelope.get("last_modified"),
        )


def _etag_for(payload: Any) -> str:
    if isinstance(payload, bytes):
        data = payload
    elif isinstance(payload, str):
        data = payload.encode("utf-8")
    else:
        data = json.dumps(payload, sort_keys=True).encode("utf-8")
    return hashlib.sha256(data).hexdigest()[:16]


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

class CacheBackend:
    """Minimal string key/value interface with per-key expiry."""

    name = "none"
    shared = False

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def ttl(self, key: str) -> Optional[int]:
        raise NotImplementedError

    def delete(self, key: str) -> int:
        raise NotImplementedError

    def delete_pattern(self, pattern: str) -> int:
        raise NotImplementedError

    def keys(self, pattern: str = "*") -> List[str]:
        raise NotImplementedError

    def ping(self) -> bool:
        raise NotImplementedError


class RedisBackend(CacheBackend):
    """Redis backend. Shared across every process pointed at the same server."""

    name = "redis"
    shared = True

    def __init__(self, client: "redis.Redis"):
        self.client = client

    @classmethod
    def from_config(cls, config: AccelConfig) -> "RedisBackend":
        if config.redis_url:
            client = redis.from_url(
                config.redis_url,
                decode_responses=True,
                socket_connect_timeout=config.redis_socket_timeout,
                socket_timeout=config.redis_socket_timeout,
            )
        else:
            client = redis.Redis(
                host=config.redis_host,
                port=config.redis_port,
                db=config.redis_db,
                decode_responses=True,
                socket_connect_timeout=config.redis_socket_timeout,
                socket_timeout=config.redis_socket_timeout,
            )
        return cls(client)

    def get(self, key: str) -> Optional[str]:
        return self.client.get(key)

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        # SET with EX writes value and expiry in one command
        self.client.set(key, value, ex=ttl_seconds)

    def exists(self, key: str) -> bool:
        return bool(self.client.exists(key))

    def ttl(self, key: str) -> Optional[int]:
        remaining = self.client.ttl(key)
        if remaining is None or remaining <= 0:
            return None
        return int(remaining)

    def delete(self, key: str) -> int:
        return int(self.client.delete(key))

    def delete_pattern(self, pattern: str) -> int:
        matched = self.keys(pattern)
        deleted = 0
        for i in range(0, len(matched), 500):
            deleted += int(self.client.delete(*matched[i:i + 500]))
        return deleted

    def keys(self, pattern: str = "*") -> List[str]:
        return list(self.client.scan_iter(match=_pattern_to_redis_glob(pattern), count=500))

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except Exception:
            return False


class MemoryBackend(CacheBackend):
    """
    In-process dictionary backend used when Redis is unreachable.

    NOT shared across processes: each worker has its own copy, so a prefetch
    handled by one worker is invisible to the others. Expiry is passive
    (checked on read); pattern deletes scan every key.
    """

    name = "memory"
    shared = False

    def __init__(self):
        self._data: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str, now: float) -> Optional[Tuple[str, float]]:
        item = self._data.get(key)
        if item is None:
            return None
        if item[1] <= now:
            del self._data[key]
            return None
        return item

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            item = self._live(key, time.monotonic())
            return item[0] if item else None

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._data[key] = (value, time.monotonic() + ttl_seconds)

    def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key, time.monotonic()) is not None

    def ttl(self, key: str) -> Optional[int]:
        with self._lock:
            now = time.monotonic()
            item = self._live(key, now)
            if item is None:
                return None
            return max(1, math.ceil(item[1] - now))

    def delete(self, key: str) -> int:
        with self._lock:
            return 1 if self._data.pop(key, None) is not None else 0

    def delete_pattern(self, pattern: str) -> int:
        regex = pattern_to_regex(pattern)
        with self._lock:
            matched = [key for key in self._data if regex.match(key)]
            for key in matched:
                del self._data[key]
        return len(matched)

    def keys(self, pattern: str = "*") -> List[str]:
        regex = pattern_to_regex(pattern)
        with self._lock:
            now = time.monotonic()
            return [key for key in list(self._data) if self._live(key, now) and regex.match(key)]

    def ping(self) -> bool:
        return True


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class CacheStore:
    """
    Cache facade used by the probe, prefetch worker and search service.

    An optional ``on_event(category, operation, key)`` callback is invoked
    for every hit, miss and set. Callback failures are logged and never
    change what the store returns.
    """

    def __init__(self, backend: CacheBackend, on_event: Optional[CacheEventCallback] = None):
        self.backend = backend
        self.on_event = on_event

    @classmethod
    def from_config(
        cls,
        config: Optional[AccelConfig] = None,
        on_event: Optional[CacheEventCallback] = None,
    ) -> "CacheStore":
        """
        Build a store from configuration.

        Connection priority:
        1. REDIS_URL / UPSTASH_REDIS_URL (redis:// or rediss://)
        2. REDIS_HOST + REDIS_PORT + REDIS_DB
        Falls back to the in-memory backend if Redis does not answer a ping.
        """
        config = config or get_config()
        if config.skip_redis:
            logger.info("Redis disabled (ACCEL_SKIP_REDIS=1), using in-memory cache")
            return cls(MemoryBackend(), on_event=on_event)

        backend = RedisBackend.from_config(config)
        if backend.ping():
            logger.info("Connected to Redis cache")
            return cls(backend, on_event=on_event)

        logger.warning("Redis not reachable, falling back to in-memory cache (not shared across workers)")
        return cls(MemoryBackend(), on_event=on_event)

    @property
    def provider(self) -> str:
        return self.backend.name

    def _emit(self, operation: str, key: str, category: Optional[str] = None) -> None:
        if self.on_event is None:
            return
        try:
            self.on_event(category or category_for_key(key), operation, key)
        except Exception as e:
            logger.warning(f"Cache event callback failed for {key}: {e}")

    def get(self, key: str, category: Optional[str] = None) -> Optional[CacheEntry]:
        """Get a cached entry. Returns None on miss, expiry or backend error."""
        try:
            raw = self.backend.get(key)
        except Exception as e:
            logger.error(f"Cache read error for {key}: {e}")
            self._emit("miss", key, category)
            return None

        if raw is None:
            logger.info(f"Cache miss: {key}")
            self._emit("miss", key, category)
            return None

        try:
            entry = CacheEntry.from_json(key, raw)
        except (ValueError, TypeError) as e:
            logger.error(f"Corrupt cache entry for {key}: {e}")
            self._emit("miss", key, category)
            return None

        logger.info(f"Cache hit: {key}")
        self._emit("hit", key, category)
        return entry

    def get_content(
        self,
        key: str,
        expected: ResponseFormat = ResponseFormat.HTML,
        category: Optional[str] = None,
    ) -> Optional[Any]:
        """Get a cached payload coerced to the expected format."""
        entry = self.get(key, category=category)
        if entry is None:
            return None
        if entry.format == expected:
            return entry.payload
        return coerce_content(entry.payload, expected)

    def set(
        self,
        key: str,
        payload: Any,
        ttl_seconds: int,
        content_type: Optional[str] = None,
        format: Optional[ResponseFormat] = None,
        category: Optional[str] = None,
    ) -> bool:
        """
        Cache a payload. Overwrites any existing entry and resets its TTL.

        TTLs below one second are raised to one second.
        """
        ttl = max(1, int(ttl_seconds))
        now = time.time()
        entry = CacheEntry(
            key=key,
            payload=payload,
            format=format or detect_format(payload, content_type),
            created_at=now,
            ttl_seconds=ttl,
            content_type=content_type,
            etag=_etag_for(payload),
            last_modified=datetime.fromtimestamp(now, tz=timezone.utc).isoformat(),
        )
        try:
            self.backend.set(key, entry.to_json(), ttl)
        except Exception as e:
            logger.error(f"Cache write error for {key}: {e}")
            return False

        logger.info(f"Cache set: {key} (TTL {ttl}s, {entry.format.value})")
        self._emit("set", key, category)
        return True

    def exists(self, key: str) -> bool:
        try:
            return self.backend.exists(key)
        except Exception as e:
            logger.error(f"Cache exists check failed for {key}: {e}")
            return False

    def ttl_remaining(self, key: str) -> Optional[int]:
        try:
            return self.backend.ttl(key)
        except Exception as e:
            logger.error(f"Cache TTL lookup failed for {key}: {e}")
            return None

    def get_metadata(self, key: str) -> Optional[Dict[str, Any]]:
        """Entry metadata without the payload (no metrics event)."""
        try:
            raw = self.backend.get(key)
            if raw is None:
                return None
            metadata = CacheEntry.from_json(key, raw).metadata()
        except Exception as e:
            logger.error(f"Cache metadata lookup failed for {key}: {e}")
            return None
        metadata["ttl_remaining"] = self.ttl_remaining(key)
        return metadata

    def delete(self, key: str) -> bool:
        try:
            return self.backend.delete(key) > 0
        except Exception as e:
            logger.error(f"Cache delete failed for {key}: {e}")
            return False

    def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching ``pattern`` (``*`` wildcard). Returns the count."""
        try:
            deleted = self.backend.delete_pattern(pattern)
        except Exception as e:
            logger.error(f"Cache pattern delete failed for {pattern}: {e}")
            return 0
        logger.info(f"Invalidated {deleted} keys matching {pattern}")
        return deleted

    def ping(self) -> bool:
        try:
            return self.backend.ping()
        except Exception:
            return False

    def health(self) -> Dict[str, str]:
        """healthy (Redis answering), degraded (memory fallback) or offline."""
        if self.provider == "memory":
            return {"status": "degraded", "provider": "memory"}
        if self.ping():
            return {"status": "healthy", "provider": self.provider}
        return {"status": "offline", "provider": self.provider}

    def stats(self) -> Dict[str, Any]:
        """Key counts by prefix plus backend details."""
        stats: Dict[str, Any] = {
            "provider": self.provider,
            "shared_across_processes": self.backend.shared,
            "keys": {"search": 0, "tabs": 0, "suggestions": 0, "other": 0},
            "total_keys": 0,
        }
        try:
            keys = self.backend.keys("*")
        except Exception as e:
            logger.error(f"Cache stats failed: {e}")
            stats["error"] = str(e)
            return stats

        for key in keys:
            stats["keys"][category_for_key(key)] += 1
        stats["total_keys"] = len(keys)
        return stats
