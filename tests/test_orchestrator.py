"""
Tests for the client-side orchestrator: attempt ordering and timeouts,
branch selection, stale-render protection, telemetry isolation and the
debounced prefetch trigger.
"""

import asyncio
import time
from typing import Dict, List

import httpx
import pytest

from search_accel.client import AcceleratorClient
from search_accel.core.config import AccelConfig
from search_accel.orchestrator import (
    Attempt,
    AttemptsExhausted,
    BranchTelemetry,
    Debouncer,
    PrefetchTrigger,
    RenderTarget,
    SearchOrchestrator,
    SessionMarkers,
    run_attempts,
)

from conftest import run


class FakeAcceleratorServer:
    """Minimal stand-in for the acceleration API."""

    def __init__(self):
        self.cached = set()
        self.check_delay = 0.0
        self.search_delays: Dict[str, float] = {}
        self.search_status = 200
        self.requests: List[httpx.Request] = []

    def paths(self) -> List[str]:
        return [r.url.path for r in self.requests]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        query = request.url.params.get("query", "")

        if path == "/cache-check":
            await asyncio.sleep(self.check_delay)
            exists = query in self.cached
            return httpx.Response(200 if exists else 404, json={"exists": exists})

        if path == "/search":
            await asyncio.sleep(self.search_delays.get(query, 0.0))
            if self.search_status >= 400:
                return httpx.Response(self.search_status, json={"error": "Failed to fetch search results"})
            status = "HIT" if query in self.cached else "MISS"
            return httpx.Response(
                200,
                text=f"<div>{query}</div>",
                headers={"content-type": "text/html", "X-Cache-Status": status, "X-Cache-Type": "search"},
            )

        if path == "/prefetch":
            return httpx.Response(202, json={"status": "accepted"})

        if path == "/pre-render":
            return httpx.Response(202, json={"status": "accepted"})

        if path == "/suggestions":
            return httpx.Response(200, json=[f"{query} program"])

        return httpx.Response(404)


@pytest.fixture
def client_config():
    return AccelConfig(
        skip_redis=True,
        probe_timeout=0.2,
        prefetch_timeout=1.0,
        prefetch_debounce_ms=50,
        suggestion_debounce_ms=30,
    )


@pytest.fixture
def server():
    return FakeAcceleratorServer()


@pytest.fixture
def client(server, client_config):
    return AcceleratorClient(
        "http://accel.test",
        config=client_config,
        session_id="sess-1",
        transport=httpx.MockTransport(server.handler),
    )


@pytest.fixture
def telemetry():
    return BranchTelemetry()


@pytest.fixture
def orchestrator(client, telemetry, client_config):
    return SearchOrchestrator(client, telemetry=telemetry, config=client_config)


# ── run_attempts ─────────────────────────────────────────────────────────

class TestRunAttempts:
    def test_first_success_wins(self):
        calls = []

        async def a():
            calls.append("a")
            return "A"

        async def b():
            calls.append("b")
            return "B"

        outcome = run(run_attempts([Attempt("a", a), Attempt("b", b)]))
        assert outcome.name == "a"
        assert outcome.value == "A"
        assert calls == ["a"]

    def test_falls_through_failures_empties_and_timeouts(self):
        cancelled = []

        async def slow():
            try:
                await asyncio.sleep(5)
            except asyncio.CancelledError:
                cancelled.append(True)
                raise
            return "never"

        async def empty():
            return None

        async def broken():
            raise ValueError("boom")

        async def ok():
            return "ok"

        start = time.perf_counter()
        outcome = run(run_attempts([
            Attempt("slow", slow, timeout=0.1),
            Attempt("empty", empty),
            Attempt("broken", broken),
            Attempt("ok", ok),
        ]))
        assert time.perf_counter() - start < 2
        assert outcome.name == "ok"
        assert outcome.failures == {"slow": "timeout", "empty": "empty", "broken": "boom"}
        assert cancelled == [True]

    def test_all_fail(self):
        async def empty():
            return None

        with pytest.raises(AttemptsExhausted) as exc_info:
            run(run_attempts([Attempt("x", empty), Attempt("y", empty)]))
        assert set(exc_info.value.failures) == {"x", "y"}


# ── Branch selection ─────────────────────────────────────────────────────

class TestSearchOrchestrator:
    def test_standard_path_without_markers(self, orchestrator, server, telemetry):
        outcome = run(orchestrator.run("Nursing Program"))
        assert outcome.name == "standard"
        assert orchestrator.target.html == "<div>nursing program</div>"
        assert orchestrator.target.branch == "standard"
        assert "/cache-check" not in server.paths()
        assert telemetry.counts["standard"] == 1

    def test_standard_search_is_partial_and_carries_session(self, orchestrator, server):
        run(orchestrator.run("nursing"))
        params = server.requests[-1].url.params
        assert params["form"] == "partial"
        assert params["sessionId"] == "sess-1"

    def test_cache_first_when_last_query_matches(self, orchestrator, server, telemetry):
        server.cached.add("nursing")
        orchestrator.markers.mark_search("Nursing")
        outcome = run(orchestrator.run("nursing"))
        assert outcome.name == "cache_first"
        assert server.paths() == ["/cache-check", "/search"]
        assert telemetry.counts["cache_first"] == 1

    def test_cache_first_miss_falls_back_to_standard(self, orchestrator, server):
        orchestrator.markers.mark_search("nursing")
        outcome = run(orchestrator.run("nursing"))
        assert outcome.name == "standard"
        assert outcome.failures == {"cache_first": "empty"}

    def test_slow_probe_is_abandoned(self, orchestrator, server, client_config):
        server.cached.add("nursing")
        server.check_delay = 2.0
        orchestrator.markers.mark_search("nursing")
        start = time.perf_counter()
        outcome = run(orchestrator.run("nursing"))
        assert time.perf_counter() - start < 1.5
        assert outcome.name == "standard"
        assert orchestrator.target.html == "<div>nursing</div>"

    def test_pre_render_hit(self, orchestrator, server, telemetry):
        server.cached.add("nursing")
        orchestrator.markers.mark_pre_render("Nursing")
        outcome = run(orchestrator.run("nursing"))
        assert outcome.name == "pre_render"
        assert outcome.value.is_cache_hit
        assert server.paths() == ["/cache-check", "/search"]
        assert orchestrator.markers.consume_pre_render() is None
        assert telemetry.counts["pre_render"] == 1

    def test_pre_render_miss_falls_through(self, orchestrator, server):
        orchestrator.markers.mark_pre_render("nursing")
        outcome = run(orchestrator.run("nursing"))
        assert outcome.name == "standard"
        assert "pre_render" in outcome.failures
        assert server.paths() == ["/cache-check", "/search"]
        assert server.paths().count("/search") == 1

    def test_pre_render_marker_for_other_query_ignored(self, orchestrator, server):
        orchestrator.markers.mark_pre_render("biology")
        attempts = orchestrator.build_attempts("nursing")
        assert [a.name for a in attempts] == ["standard"]

    def test_marker_updated_after_run(self, orchestrator):
        run(orchestrator.run("Financial Aid?"))
        assert orchestrator.markers.last_search_query == "financial aid"

    def test_standard_failure_renders_error(self, orchestrator, server, telemetry):
        server.search_status = 502
        outcome = run(orchestrator.run("nursing"))
        assert outcome is None
        assert orchestrator.target.error
        assert orchestrator.target.html is None
        assert telemetry.counts["failed"] == 1

    def test_stale_result_never_overwrites_newer(self, orchestrator, server):
        server.search_delays["first"] = 0.3

        async def scenario():
            slow = asyncio.ensure_future(orchestrator.run("first"))
            await asyncio.sleep(0.05)
            await orchestrator.run("second")
            await slow

        run(scenario())
        assert orchestrator.target.query == "second"
        assert orchestrator.target.html == "<div>second</div>"
        assert orchestrator.target.render_count == 1

    def test_telemetry_failure_does_not_break_render(self, client, client_config):
        def broken_telemetry(*args):
            raise RuntimeError("telemetry down")

        orchestrator = SearchOrchestrator(client, telemetry=broken_telemetry, config=client_config)
        outcome = run(orchestrator.run("nursing"))
        assert outcome.name == "standard"
        assert orchestrator.target.html == "<div>nursing</div>"


class TestSessionMarkers:
    def test_pre_render_marker_is_one_shot(self):
        markers = SessionMarkers()
        markers.mark_pre_render("Nursing?")
        assert markers.consume_pre_render() == "nursing"
        assert markers.consume_pre_render() is None


# ── Client ───────────────────────────────────────────────────────────────

class TestAcceleratorClient:
    def test_check_cache_short_query_skips_request(self, client, server):
        assert run(client.check_cache("a")) is False
        assert server.requests == []

    def test_check_cache_normalizes(self, client, server):
        server.cached.add("nursing")
        assert run(client.check_cache("  NURSING? ")) is True

    def test_prefetch_threshold(self, client, server):
        assert run(client.prefetch("bio")) is False
        assert run(client.prefetch("biology")) is True
        assert server.paths() == ["/prefetch"]

    def test_pre_render(self, client, server):
        assert run(client.pre_render("nursing")) is True
        assert server.requests[0].method == "POST"


# ── Debounced trigger ────────────────────────────────────────────────────

class TestDebounce:
    def test_debouncer_fires_once_with_last_value(self):
        seen = []

        async def record(value):
            seen.append(value)

        async def scenario():
            debouncer = Debouncer(50, record)
            for value in ("n", "nu", "nur"):
                debouncer.call(value)
                await asyncio.sleep(0.01)
            await debouncer.drain()

        run(scenario())
        assert seen == ["nur"]

    def test_started_call_is_not_cancelled(self):
        finished = []

        async def slow(value):
            await asyncio.sleep(0.1)
            finished.append(value)

        async def scenario():
            debouncer = Debouncer(10, slow)
            debouncer.call("first")
            await asyncio.sleep(0.05)  # first has started
            debouncer.call("second")
            await debouncer.drain()

        run(scenario())
        assert sorted(finished) == ["first", "second"]

    def test_prefetch_trigger(self, client, server, client_config):
        suggestions = []

        async def scenario():
            trigger = PrefetchTrigger(client, config=client_config,
                                      on_suggestions=lambda text, s: suggestions.append((text, s)))
            for text in ("nu", "nur", "nurs", "nursing"):
                trigger.on_input(text)
                await asyncio.sleep(0.005)
            await trigger.drain()

        run(scenario())
        prefetches = [r for r in server.requests if r.url.path == "/prefetch"]
        assert len(prefetches) == 1
        assert prefetches[0].url.params["query"] == "nursing"
        assert suggestions == [("nursing", ["nursing program"])]
