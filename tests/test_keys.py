"""Tests for cache key derivation and query normalization."""

from search_accel.cache.keys import (
    derive_key,
    normalize_query,
    parse_cache_key,
    query_pattern,
    search_key,
    suggestion_key,
    tab_key,
)


class TestNormalizeQuery:
    def test_lowercases_and_trims(self):
        assert normalize_query("  Nursing Program  ") == "nursing program"

    def test_collapses_whitespace(self):
        assert normalize_query("nursing \t  program\n") == "nursing program"

    def test_strips_punctuation(self):
        assert normalize_query('"Admissions?!", office.') == "admissions office"

    def test_keeps_other_characters(self):
        assert normalize_query("c++ & java-script") == "c++ & java-script"

    def test_empty_and_none(self):
        assert normalize_query("") == ""
        assert normalize_query(None) == ""
        assert normalize_query("  ?!  ") == ""

    def test_idempotent(self):
        once = normalize_query("  Financial   AID?? ")
        assert normalize_query(once) == once


class TestDeriveKey:
    def test_deterministic(self):
        k1 = derive_key("search", "Nursing Program", "seattleu~sp-search", "_default")
        k2 = derive_key("search", "Nursing Program", "seattleu~sp-search", "_default")
        assert k1 == k2

    def test_normalization_equivalence(self):
        """Queries differing only in case, spacing or stripped punctuation share a key."""
        k1 = search_key("Nursing  Program?", "seattleu~sp-search", "_default")
        k2 = search_key("nursing program", "seattleu~sp-search", "_default")
        assert k1 == k2

    def test_search_key_format(self):
        key = search_key("admissions", "seattleu~sp-search", "_default")
        assert key == "search:admissions:seattleu~sp-search:_default"

    def test_missing_collection_and_profile_use_sentinel(self):
        assert search_key("admissions") == "search:admissions:default:default"
        assert search_key("admissions", "  ", "") == "search:admissions:default:default"

    def test_tab_key_format(self):
        key = tab_key("Nursing Program", "seattleu~sp-search", "Programs")
        assert key == "tab:nursing program:seattleu~sp-search:Programs"

    def test_tab_key_normalizes_tab_id(self):
        assert tab_key("biology", "c", "Faculty3") == "tab:biology:c:Faculty_Staff"
        assert tab_key("biology", "c", None) == "tab:biology:c:default"

    def test_other_kind_with_tab_suffix(self):
        key = derive_key("search", "biology", "c", "p", tab="News2")
        assert key == "search:biology:c:p:tab-News"

    def test_suggestion_key(self):
        assert suggestion_key("Bio", "c", "p") == "suggestion:bio:c:p"

    def test_empty_query_is_total(self):
        assert search_key("") == "search::default:default"

    def test_different_collections_differ(self):
        assert search_key("bio", "a") != search_key("bio", "b")


class TestParseCacheKey:
    def test_parse_search_key(self):
        parts = parse_cache_key("search:nursing program:seattleu~sp-search:_default")
        assert parts["type"] == "search"
        assert parts["query"] == "nursing program"
        assert parts["collection"] == "seattleu~sp-search"
        assert parts["profile"] == "_default"
        assert parts["tab"] is None

    def test_parse_tab_key(self):
        parts = parse_cache_key("tab:nursing program:seattleu~sp-search:Programs")
        assert parts["type"] == "tab"
        assert parts["query"] == "nursing program"
        assert parts["tab"] == "Programs"

    def test_parse_tab_suffix(self):
        parts = parse_cache_key("search:bio:c:p:tab-News")
        assert parts["query"] == "bio"
        assert parts["profile"] == "p"
        assert parts["tab"] == "News"

    def test_query_pattern(self):
        assert query_pattern("Nursing Program?") == "*:nursing program:*"
