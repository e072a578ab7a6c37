"""
Tab classification for partial search requests.

The search page renders result tabs (Results, Programs, Faculty_Staff, News)
through "partial" requests that carry either an explicit tab parameter, a
non-default profile, or a facet filter such as ``f.Tabs|programs=Programs``.
This module decides whether a request is a tab request, extracts the raw tab
identifier and normalizes it into the canonical id used in cache keys.

The rules are data (``TabRuleSet``), loaded from ``config/default.yaml``,
so a frontend change only needs a config bump and not a code change.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union
from urllib.parse import parse_qsl, urlencode, urlsplit

from search_accel.core.config import get_config
from search_accel.utils.logger import get_logger

logger = get_logger("tabs")

TabInput = Union[str, Mapping[str, Any]]

_NUMERIC_SUFFIX = re.compile(r"^(\D+)(\d+)$")


@dataclass
class TabRuleSet:
    """Versioned set of rules describing how the frontend encodes tabs."""

    version: int = 1
    partial_param: str = "form"
    partial_value: str = "partial"
    tab_params: List[str] = field(default_factory=lambda: ["tab", "Tab"])
    profile_param: str = "profile"
    default_profile: str = "_default"
    facet_prefix: str = "f.Tabs|"
    known_tabs: List[str] = field(
        default_factory=lambda: ["Results", "Programs", "Faculty_Staff", "News", "People", "Events"]
    )
    synonyms: Dict[str, str] = field(
        default_factory=lambda: {
            "FacultyStaff": "Faculty_Staff",
            "Faculty": "Faculty_Staff",
            "Staff": "Faculty_Staff",
        }
    )
    default_tab: str = "Results"

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "TabRuleSet":
        """Build a rule set from a config mapping, ignoring unknown keys."""
        if not data:
            return cls()
        known = {name for name in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in known})

    def known_tab_pattern(self) -> "re.Pattern[str]":
        names = "|".join(re.escape(name) for name in self.known_tabs)
        return re.compile(rf"({names})(?:\d+)?(?=&|$)")


@dataclass
class TabDescriptor:
    """Result of classifying a request."""

    is_tab: bool
    raw_id: Optional[str] = None
    normalized_id: Optional[str] = None


def _split_input(url_or_params: TabInput) -> Tuple[Dict[str, str], str]:
    """Return (params, decoded query string) for a URL, query string or mapping."""
    if url_or_params is None:
        return {}, ""
    if isinstance(url_or_params, Mapping):
        params = {
            str(k): "" if v is None else str(v)
            for k, v in url_or_params.items()
        }
        return params, urlencode(params, safe="|~")

    text = str(url_or_params)
    if "?" in text:
        query = urlsplit(text).query
    else:
        query = text.lstrip("?")
    pairs = parse_qsl(query, keep_blank_values=True)
    params: Dict[str, str] = {}
    for key, value in pairs:
        params.setdefault(key, value)
    return params, "&".join(f"{k}={v}" for k, v in pairs)


class TabClassifier:
    """Applies a ``TabRuleSet`` to incoming requests."""

    def __init__(self, rules: Optional[TabRuleSet] = None):
        self.rules = rules or TabRuleSet()
        self._known_pattern = self.rules.known_tab_pattern()

    def _is_partial(self, params: Mapping[str, str]) -> bool:
        return params.get(self.rules.partial_param) == self.rules.partial_value

    def _facet_value(self, params: Mapping[str, str]) -> Optional[str]:
        for key, value in params.items():
            if key.startswith(self.rules.facet_prefix) and value:
                return value
        return None

    def _tab_param(self, params: Mapping[str, str]) -> Optional[str]:
        for name in self.rules.tab_params:
            value = params.get(name)
            if value:
                return value
        return None

    def _custom_profile(self, params: Mapping[str, str]) -> Optional[str]:
        profile = params.get(self.rules.profile_param)
        if profile and profile != self.rules.default_profile:
            return profile
        return None

    def is_tab_request(self, url_or_params: TabInput) -> bool:
        """
        A tab request is a partial request that also names a tab, either
        directly, through a non-default profile, or through a facet filter.
        """
        params, _ = _split_input(url_or_params)
        if not self._is_partial(params):
            return False
        has_facet = any(key.startswith(self.rules.facet_prefix) for key in params)
        return bool(self._tab_param(params) or self._custom_profile(params) or has_facet)

    def extract_tab_id(self, url_or_params: TabInput) -> Optional[str]:
        """
        Extract the raw tab id.

        Checked in order: facet filter value, tab parameter, non-default
        profile, a known tab name appearing in the query string, then the
        default tab for partial requests. The last two are classification
        misses and are logged.
        """
        params, decoded = _split_input(url_or_params)

        value = self._facet_value(params) or self._tab_param(params) or self._custom_profile(params)
        if value:
            return value

        match = self._known_pattern.search(decoded)
        if match:
            logger.info(
                f"Tab classification miss (rules v{self.rules.version}): "
                f"guessed '{match.group(1)}' from query string"
            )
            return match.group(1)

        if self._is_partial(params):
            logger.info(
                f"Tab classification miss (rules v{self.rules.version}): "
                f"defaulting partial request to '{self.rules.default_tab}'"
            )
            return self.rules.default_tab

        return None

    def normalize_tab_id(self, raw: Optional[str]) -> Optional[str]:
        """Strip a trailing numeric suffix and map synonyms. Unknown ids pass through."""
        if raw is None:
            return None
        tab_id = str(raw).strip()
        if not tab_id:
            return None
        match = _NUMERIC_SUFFIX.match(tab_id)
        if match:
            # "News 2" -> "News"
            tab_id = match.group(1).strip()
        return self.rules.synonyms.get(tab_id, tab_id)

    def classify(self, url_or_params: TabInput) -> TabDescriptor:
        if not self.is_tab_request(url_or_params):
            return TabDescriptor(is_tab=False)
        raw_id = self.extract_tab_id(url_or_params)
        return TabDescriptor(
            is_tab=True,
            raw_id=raw_id,
            normalized_id=self.normalize_tab_id(raw_id),
        )

    def predict_next_tabs(self, current: Optional[str], available: List[str], limit: int = 3) -> List[str]:
        """
        Guess which tabs the user opens next: the main results tab first,
        then the neighbours of the current tab.
        """
        current_id = self.normalize_tab_id(current)
        tabs = [self.normalize_tab_id(t) for t in available if self.normalize_tab_id(t)]
        predictions: List[str] = []

        def _add(tab_id: str) -> None:
            if tab_id != current_id and tab_id not in predictions:
                predictions.append(tab_id)

        for tab_id in tabs:
            if tab_id.lower() in ("all", "results", self.rules.default_tab.lower()):
                _add(tab_id)
                break

        if current_id in tabs:
            idx = tabs.index(current_id)
            if idx + 1 < len(tabs):
                _add(tabs[idx + 1])
            if idx - 1 >= 0:
                _add(tabs[idx - 1])

        return predictions[:limit]


# Global classifier instance
_classifier: Optional[TabClassifier] = None


def get_classifier() -> TabClassifier:
    """Get the global classifier built from the configured rule set."""
    global _classifier
    if _classifier is None:
        _classifier = TabClassifier(TabRuleSet.from_dict(get_config().tab_rules))
    return _classifier


def set_classifier(classifier: Optional[TabClassifier]) -> None:
    global _classifier
    _classifier = classifier


def is_tab_request(url_or_params: TabInput) -> bool:
    return get_classifier().is_tab_request(url_or_params)


def extract_tab_id(url_or_params: TabInput) -> Optional[str]:
    return get_classifier().extract_tab_id(url_or_params)


def normalize_tab_id(raw: Optional[str]) -> Optional[str]:
    return get_classifier().normalize_tab_id(raw)
