"""
search_accel - cache-first acceleration layer for a slow site-search backend.

A Redis-backed (in-memory fallback) cache sits in front of the origin search
service. Queries are probed, prefetched while the user types, pre-rendered
before redirects and served read-through, with TTLs that grow with query
popularity and vary by content class.
"""

__version__ = '0.1.0'

from search_accel.cache.keys import derive_key, normalize_query
from search_accel.core.config import AccelConfig, get_config, set_config

__all__ = [
    'AccelConfig',
    'derive_key',
    'get_config',
    'normalize_query',
    'set_config',
]
