"""
Caching policy: what gets cached, for how long, and how it is invalidated.

The origin search backend is the source of truth. Redis (or the in-memory
fallback) is only a read-through cache; every entry expires by TTL.

Two independent TTL axes:
  - popularity axis: ``recommend()`` lengthens the TTL of frequently
    requested queries
  - content axis: ``content_ttl()`` picks a TTL from what the content is
    (staff directory vs. events)
Callers choose one axis per write. Neither function calls the other.
"""
from typing import Optional, Tuple

from search_accel.cache.popularity import PopularityTracker
from search_accel.core.config import AccelConfig, get_config
from search_accel.tabs import normalize_tab_id

# ────────────────────────────────────────────────────────────────────────────
# Cache Policy Table
# ────────────────────────────────────────────────────────────────────────────
#
# Data Type         | Key Pattern                        | TTL            | Axis
# ------------------+------------------------------------+----------------+-----------
# Search results    | search:{q}:{collection}:{profile}  | 12h / 16h / 18h | popularity
# Tab content       | tab:{q}:{collection}:{tab_id}      | 14h            | fixed
# Popular tab       | tab:{q}:{collection}:{tab_id}      | 20h            | fixed
# Pre-rendered page | search:{q}:{collection}:{profile}  | 2h             | fixed
# Suggestions       | suggestion:{q}:{collection}:{prof} | 15 min         | content
# Preloaded tabs    | tab:{q}:{collection}:{tab_id}      | 1 min - 4h     | tab type
#
# ────────────────────────────────────────────────────────────────────────────
# Popularity tiers
# ────────────────────────────────────────────────────────────────────────────
#
# Tier        | Count    | TTL
# ------------+----------+---------------------
# Default     | < 5      | default TTL
# Popular     | 5 - 19   | default x 1.3
# High volume | >= 20    | default x 1.5
#
# ────────────────────────────────────────────────────────────────────────────
# Invalidation
# ────────────────────────────────────────────────────────────────────────────
#
# Primary: TTL expiry. Secondary: pattern delete, e.g. "tab:*" after a
# frontend tab change, or "*:{q}:*" to drop every entry for one query.

# Content class -> keywords matched as substrings of the class name, first match wins
CONTENT_CLASS_KEYWORDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("staff", ("staff", "faculty", "directory", "people")),
    ("programs", ("program", "academic", "degree", "major")),
    ("events", ("event", "calendar")),
    ("news", ("news", "article", "announcement")),
    ("courses", ("course", "class")),
    ("locations", ("location", "building", "place")),
    ("tabs", ("tab",)),
    ("suggestions", ("suggestion",)),
)

TIME_SENSITIVE_TERMS = ("today", "now", "current", "latest", "breaking")

# Tab type -> label synonyms used when preloading tabs
TAB_TYPE_LABELS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("all", ("all", "results", "everything")),
    ("programs", ("programs", "academics", "courses", "degrees", "majors", "minors")),
    ("staff", ("staff", "faculty", "people", "directory", "faculty_staff")),
    ("news", ("news", "articles", "announcements", "press")),
)


class TTLPolicy:
    """Chooses TTLs for cache writes."""

    def __init__(self, popularity: PopularityTracker, config: Optional[AccelConfig] = None):
        self.popularity = popularity
        self.config = config or get_config()

    def tier(self, query: Optional[str]) -> str:
        count = self.popularity.get_count(query)
        if count >= self.config.high_volume_threshold:
            return "high_volume"
        if count >= self.config.popular_threshold:
            return "popular"
        return "default"

    def recommend(
        self,
        query: Optional[str],
        content_class: Optional[str] = None,
        default_ttl: Optional[int] = None,
    ) -> int:
        """
        TTL for a query on the popularity axis.

        ``content_class`` is accepted for callers that carry one but does not
        change the result; use ``content_ttl()`` for the content axis.

        Each tier is strictly longer than the one below it, even for tiny
        defaults where the multiplier would round back to the same value.
        """
        base = int(default_ttl if default_ttl is not None else self.config.search_default_ttl)
        base = max(base, 1)
        tier = self.tier(query)
        if tier == "default":
            return base

        popular = max(int(round(base * self.config.popular_multiplier)), base + 1)
        if tier == "popular":
            return popular
        return max(int(round(base * self.config.high_volume_multiplier)), popular + 1)

    def content_ttl(self, content_class: Optional[str], query: Optional[str] = None) -> int:
        """
        TTL for a content class on the content axis.

        Class names are matched by keyword; anything unmatched gets the
        default TTL unless the query itself is time-sensitive.
        """
        ttls = self.config.content_ttls
        name = (content_class or "").lower()
        if name:
            for ttl_class, keywords in CONTENT_CLASS_KEYWORDS:
                if any(keyword in name for keyword in keywords):
                    return int(ttls[ttl_class])

        if query:
            lowered = query.lower()
            if any(term in lowered for term in TIME_SENSITIVE_TERMS):
                return int(ttls["news"])

        return int(ttls["default"])

    def is_popular_tab(self, tab_id: Optional[str]) -> bool:
        return normalize_tab_id(tab_id) in self.config.popular_tabs

    def tab_ttl(self, is_popular: bool) -> int:
        return int(self.config.popular_tab_ttl if is_popular else self.config.tab_content_ttl)

    def ttl_for_tab_type(self, tab_id: Optional[str], tab_name: Optional[str] = None) -> int:
        """TTL for preloaded tab content, by tab label or id."""
        ttls = self.config.tab_type_ttls
        tab_id = tab_id or ""
        if "debug" in tab_id.lower():
            return int(ttls["debug"])

        label = (tab_name or normalize_tab_id(tab_id) or "").lower()
        for tab_type, labels in TAB_TYPE_LABELS:
            if label in labels:
                return int(ttls[tab_type])
        return int(ttls["default"])
