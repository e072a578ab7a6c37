"""
HTTP tests for the acceleration API via TestClient.

The origin is faked with httpx.MockTransport and the cache is the in-memory
backend, so no network or Redis is needed.
"""

import time

import pytest
from fastapi.testclient import TestClient

from search_accel.api.server import app, build_accelerator, set_accelerator
from search_accel.cache.keys import search_key, tab_key
from search_accel.cache.store import CacheStore, MemoryBackend

COLLECTION = "seattleu~sp-search"


def wait_until(predicate, timeout=3.0):
    """Poll until background work lands (prefetch runs after the 202)."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


@pytest.fixture
def accel(config, fake_origin):
    accelerator = build_accelerator(
        config=config,
        store=CacheStore(MemoryBackend()),
        origin_transport=fake_origin.transport(),
    )
    set_accelerator(accelerator)
    yield accelerator
    set_accelerator(None)


@pytest.fixture
def api(accel):
    with TestClient(app) as c:
        yield c


# ── Probe ────────────────────────────────────────────────────────────────

class TestCacheCheck:
    def test_short_query_is_400(self, api):
        r = api.get("/cache-check", params={"query": "a"})
        assert r.status_code == 400
        assert r.json()["exists"] is False

    def test_missing_query_is_400(self, api):
        assert api.get("/cache-check").status_code == 400

    def test_uncached_is_404(self, api):
        r = api.get("/cache-check", params={"query": "nursing"})
        assert r.status_code == 404
        body = r.json()
        assert body["exists"] is False
        assert body["cacheKey"] == search_key("nursing", COLLECTION, "_default")
        assert r.headers["X-Cache-Status"] == "MISS"
        assert "X-Cache-Check-Time" in r.headers

    def test_cached_is_200_with_ttl(self, api, accel):
        accel.store.set(search_key("nursing", COLLECTION, "_default"), "<div/>", 300)
        r = api.get("/cache-check", params={"query": "Nursing?"})
        assert r.status_code == 200
        body = r.json()
        assert body["exists"] is True
        assert 0 < body["ttl"] <= 300
        assert r.headers["X-Cache-Status"] == "HIT"
        assert int(r.headers["X-Cache-TTL"]) <= 300


# ── Prefetch / pre-render ────────────────────────────────────────────────

class TestPrefetch:
    def test_accepted_then_cached(self, api, accel):
        r = api.get("/prefetch", params={"query": "Nursing Program", "sessionId": "s1"})
        assert r.status_code == 202
        body = r.json()
        assert body["status"] == "accepted"
        assert body["cacheKey"] == search_key("nursing program", COLLECTION, "_default")
        assert wait_until(lambda: accel.store.exists(body["cacheKey"]))
        assert api.get("/cache-check", params={"query": "nursing program"}).status_code == 200

    def test_custom_ttl(self, api, accel):
        r = api.get("/prefetch", params={"query": "campus map", "ttl": 120})
        key = r.json()["cacheKey"]
        assert wait_until(lambda: accel.store.exists(key))
        assert accel.store.ttl_remaining(key) <= 120

    def test_short_query_ignored(self, api, fake_origin):
        r = api.get("/prefetch", params={"query": "bio"})
        assert r.status_code == 202
        assert r.json()["status"] == "ignored"
        assert fake_origin.search_calls == 0

    def test_missing_query(self, api):
        assert api.get("/prefetch").status_code == 400

    def test_invalid_ttl(self, api):
        assert api.get("/prefetch", params={"query": "nursing", "ttl": 0}).status_code == 400

    def test_origin_failure_still_202(self, api, accel, fake_origin):
        fake_origin.status_code = 500
        r = api.get("/prefetch", params={"query": "nursing"})
        assert r.status_code == 202
        assert wait_until(lambda: accel.metrics.prefetch_counts["failed"] == 1)


class TestPreRender:
    def test_accepted_and_cached_for_two_hours(self, api, accel):
        r = api.post("/pre-render", json={"query": "nursing", "sessionId": "s9"})
        assert r.status_code == 202
        body = r.json()
        assert body["accepted"] is True
        assert body["sessionId"] == "s9"
        key = body["cacheKey"]
        assert wait_until(lambda: accel.store.exists(key))
        assert accel.store.get(key).ttl_seconds == 7200

    def test_missing_query(self, api):
        assert api.post("/pre-render", json={"sessionId": "s9"}).status_code == 400


class TestTabPreload:
    def test_predicted_tabs(self, api, accel):
        r = api.post("/tabs/preload", json={"query": "nursing", "currentTab": "Programs"})
        assert r.status_code == 202
        scheduled = r.json()["scheduled"]
        assert scheduled == [
            tab_key("nursing", COLLECTION, "Results"),
            tab_key("nursing", COLLECTION, "Faculty_Staff"),
        ]
        assert wait_until(lambda: all(accel.store.exists(k) for k in scheduled))


# ── Read-through ─────────────────────────────────────────────────────────

class TestSearch:
    def test_miss_then_hit(self, api, fake_origin):
        params = {"query": "nursing", "collection": COLLECTION, "form": "partial"}
        first = api.get("/search", params=params)
        second = api.get("/search", params=params)
        assert first.status_code == 200
        assert first.headers["X-Cache-Status"] == "MISS"
        assert second.headers["X-Cache-Status"] == "HIT"
        assert second.headers["X-Cache-Type"] == "search"
        assert second.text == first.text
        assert "text/html" in second.headers["content-type"]
        assert fake_origin.search_calls == 1

    def test_tab_request(self, api, accel):
        params = {"query": "nursing program", "collection": COLLECTION, "form": "partial", "tab": "Programs"}
        r = api.get("/search", params=params)
        assert r.headers["X-Cache-Type"] == "tab"
        assert r.headers["X-Cache-Tab-ID"] == "Programs"
        entry = accel.store.get("tab:nursing program:seattleu~sp-search:Programs")
        assert entry.ttl_seconds == 20 * 3600

    def test_facet_tab_request(self, api, accel):
        r = api.get("/search?query=nursing&form=partial&f.Tabs%7Cseattleu%7Esp-staff=Faculty")
        assert r.headers["X-Cache-Tab-ID"] == "Faculty_Staff"
        assert accel.store.exists(tab_key("nursing", COLLECTION, "Faculty_Staff"))

    def test_origin_failure_is_502(self, api, fake_origin):
        fake_origin.status_code = 503
        r = api.get("/search", params={"query": "nursing"})
        assert r.status_code == 502
        assert r.json()["error"] == "Failed to fetch search results"

    def test_missing_query(self, api):
        assert api.get("/search").status_code == 400


class TestSuggestions:
    def test_suggestions_cached(self, api, fake_origin):
        first = api.get("/suggestions", params={"query": "nurs"})
        second = api.get("/suggestions", params={"query": "nurs"})
        assert first.json() == ["nurs program", "nurs office"]
        assert second.headers["X-Cache-Status"] == "HIT"
        assert len(fake_origin.calls_for("/suggest")) == 1

    def test_short_query(self, api, fake_origin):
        assert api.get("/suggestions", params={"query": "nu"}).json() == []
        assert fake_origin.requests == []


# ── Administration ───────────────────────────────────────────────────────

class TestCacheAdmin:
    def test_delete_tab_pattern_leaves_search(self, api, accel):
        accel.store.set("tab:nursing:c:Programs", "<div/>", 60)
        accel.store.set("tab:biology:c:News", "<div/>", 60)
        accel.store.set("search:nursing:c:p", "<div/>", 60)
        r = api.delete("/cache", params={"pattern": "tab:*"})
        assert r.json() == {"pattern": "tab:*", "deleted": 2}
        assert accel.store.exists("search:nursing:c:p")

    def test_delete_by_query(self, api, accel):
        accel.store.set("tab:nursing:c:Programs", "<div/>", 60)
        accel.store.set("search:nursing:c:p", "<div/>", 60)
        r = api.delete("/cache", params={"query": "Nursing"})
        assert r.json() == {"pattern": "*:nursing:*", "deleted": 2}

    def test_delete_all_tabs(self, api, accel):
        accel.store.set("tab:nursing:c:Programs", "<div/>", 60)
        assert api.delete("/cache", params={"tabs": "true"}).json()["deleted"] == 1

    def test_delete_requires_selector(self, api):
        assert api.delete("/cache").status_code == 400

    def test_stats(self, api, accel):
        api.get("/search", params={"query": "nursing"})
        api.get("/search", params={"query": "nursing"})
        stats = api.get("/cache/stats").json()
        assert stats["store"]["provider"] == "memory"
        assert stats["store"]["keys"]["search"] == 1
        assert stats["popularity"]["total_queries"] == 1
        assert stats["hit_rates"]["search"]["hits"] == 1
        assert stats["hit_rates"]["search"]["misses"] == 1
        assert stats["hit_rates"]["search"]["sets"] == 1
        assert stats["hit_rates"]["total"]["hit_rate_pct"] == 50.0

    def test_metadata(self, api, accel):
        key = search_key("nursing", COLLECTION, "_default")
        assert api.get("/cache/metadata", params={"key": key}).status_code == 404
        accel.store.set(key, "<div/>", 60, content_type="text/html")
        body = api.get("/cache/metadata", params={"key": key}).json()
        assert body["format"] == "html"
        assert "payload" not in body


class TestHealthAndMetrics:
    def test_health_memory_is_degraded(self, api):
        body = api.get("/health").json()
        assert body["status"] == "degraded"
        assert body["cache"] == {"status": "degraded", "provider": "memory"}

    def test_metrics_records_endpoints(self, api):
        api.get("/search", params={"query": "nursing"})
        summary = api.get("/metrics").json()
        assert summary["endpoints"]["/search"]["total_requests"] == 1
        assert "cache" in summary
        assert "prefetch" in summary

    def test_root(self, api):
        assert api.get("/").json()["status"] == "operational"
