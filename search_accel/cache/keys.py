"""
Cache key derivation.

Every component (client prefetch check, probe, server read-through, server
write, popularity tracking) derives keys through this module so the same
logical request always maps to the same key.

Key formats (colon-delimited):
- search:{query}:{collection}:{profile}
- tab:{query}:{collection}:{tab_id}
- suggestion:{query}:{collection}:{profile}
- {kind}:{query}:{collection}:{profile}:tab-{tab_id}   (any other kind with a tab)

Session identifiers never appear in keys.
"""
import re
from typing import Dict, Optional

from search_accel.tabs import normalize_tab_id

DEFAULT_SENTINEL = "default"

KIND_SEARCH = "search"
KIND_TAB = "tab"
KIND_SUGGESTION = "suggestion"

TAB_PATTERN = f"{KIND_TAB}:*"

_STRIP_CHARS = re.compile(r"[\'\"?!.,]")
_WHITESPACE = re.compile(r"\s+")


def normalize_query(query: Optional[str]) -> str:
    """Lower-case, trim, collapse whitespace and strip ' \" ? ! . ,"""
    if not query:
        return ""
    text = _STRIP_CHARS.sub("", str(query).lower())
    return _WHITESPACE.sub(" ", text).strip()


def _or_default(value: Optional[str]) -> str:
    if value is None:
        return DEFAULT_SENTINEL
    value = str(value).strip()
    return value or DEFAULT_SENTINEL


def derive_key(
    kind: str,
    query: Optional[str],
    collection: Optional[str] = None,
    profile: Optional[str] = None,
    tab: Optional[str] = None,
) -> str:
    """
    Derive the cache key for a logical request.

    Args:
        kind: "search", "tab", "suggestion" (any string is accepted)
        query: Raw user query, normalized here
        collection: Search collection, "default" when absent
        profile: Search profile, "default" when absent
        tab: Tab id, normalized here

    Returns:
        Deterministic key string
    """
    normalized = normalize_query(query)
    collection_part = _or_default(collection)

    if kind == KIND_TAB:
        tab_part = normalize_tab_id(tab) or DEFAULT_SENTINEL
        return f"{KIND_TAB}:{normalized}:{collection_part}:{tab_part}"

    key = f"{kind}:{normalized}:{collection_part}:{_or_default(profile)}"
    tab_id = normalize_tab_id(tab)
    if tab_id:
        key = f"{key}:tab-{tab_id}"
    return key


def search_key(query: Optional[str], collection: Optional[str] = None, profile: Optional[str] = None) -> str:
    return derive_key(KIND_SEARCH, query, collection, profile)


def tab_key(query: Optional[str], collection: Optional[str] = None, tab: Optional[str] = None) -> str:
    return derive_key(KIND_TAB, query, collection, tab=tab)


def suggestion_key(query: Optional[str], collection: Optional[str] = None, profile: Optional[str] = None) -> str:
    return derive_key(KIND_SUGGESTION, query, collection, profile)


def query_pattern(query: Optional[str]) -> str:
    """Pattern matching every cached entry for one query, whatever its kind."""
    return f"*:{normalize_query(query)}:*"


def parse_cache_key(key: str) -> Dict[str, Optional[str]]:
    """
    Split a key back into its parts.

    Queries never contain ':' in practice; if one does, the parts after
    the kind are split from the right so collection and profile stay intact.
    """
    kind, _, rest = key.partition(":")
    result: Dict[str, Optional[str]] = {
        "type": kind,
        "query": None,
        "collection": None,
        "profile": None,
        "tab": None,
    }
    if kind == KIND_TAB:
        parts = rest.rsplit(":", 2)
        if len(parts) == 3:
            result["query"], result["collection"], result["tab"] = parts
        return result

    tab = None
    match = re.search(r":tab-([^:]+)$", rest)
    if match:
        tab = match.group(1)
        rest = rest[:match.start()]
    parts = rest.rsplit(":", 2)
    if len(parts) == 3:
        result["query"], result["collection"], result["profile"] = parts
    result["tab"] = tab
    return result
