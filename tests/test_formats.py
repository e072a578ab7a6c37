"""Tests for response format detection and HTML coercion."""

import json

from search_accel.cache.formats import ResponseFormat, coerce_content, detect_format
from search_accel.cache.store import CacheStore, MemoryBackend


class TestDetectFormat:
    def test_content_type_wins_over_sniffing(self):
        assert detect_format('{"a": 1}', "text/html; charset=utf-8") == ResponseFormat.HTML
        assert detect_format("<div>x</div>", "application/json") == ResponseFormat.JSON

    def test_sniff_json(self):
        assert detect_format('{"results": [1, 2]}') == ResponseFormat.JSON
        assert detect_format({"a": 1}) == ResponseFormat.JSON

    def test_braces_without_valid_json_are_not_json(self):
        assert detect_format("{not json}") == ResponseFormat.TEXT

    def test_sniff_html(self):
        assert detect_format('  <div class="results">hi</div>') == ResponseFormat.HTML
        assert detect_format("<!DOCTYPE html><html></html>") == ResponseFormat.HTML

    def test_plain_text(self):
        assert detect_format("no results found") == ResponseFormat.TEXT

    def test_unknown(self):
        assert detect_format(None) == ResponseFormat.UNKNOWN
        assert detect_format("   ") == ResponseFormat.UNKNOWN


class TestCoerceContent:
    def test_unwraps_html_field(self):
        assert coerce_content({"html": "<p>a</p>"}) == "<p>a</p>"

    def test_unwraps_data_and_content_fields(self):
        assert coerce_content({"data": "<p>d</p>"}) == "<p>d</p>"
        assert coerce_content(json.dumps({"content": "<p>c</p>"})) == "<p>c</p>"

    def test_unwrappable_object_returned_unchanged(self):
        payload = {"results": [1, 2, 3]}
        assert coerce_content(payload) is payload

    def test_html_string_untouched(self):
        assert coerce_content("<div>x</div>") == "<div>x</div>"

    def test_non_html_expectation_is_noop(self):
        payload = {"html": "<p>a</p>"}
        assert coerce_content(payload, ResponseFormat.JSON) is payload


class TestStoreCoercion:
    def test_get_content_unwraps_json_entry(self):
        store = CacheStore(MemoryBackend())
        store.set("search:q:c:p", {"html": "<div>cached</div>"}, 60)
        assert store.get_content("search:q:c:p") == "<div>cached</div>"

    def test_get_content_passes_html_through(self):
        store = CacheStore(MemoryBackend())
        store.set("search:q:c:p", "<div>cached</div>", 60, content_type="text/html")
        assert store.get_content("search:q:c:p") == "<div>cached</div>"

    def test_get_content_miss(self):
        assert CacheStore(MemoryBackend()).get_content("search:none:c:p") is None
