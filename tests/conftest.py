"""Pytest configuration for search_accel tests."""

import asyncio
from typing import Dict, List, Optional

import httpx
import pytest

from search_accel.cache.store import CacheStore, MemoryBackend
from search_accel.core.config import AccelConfig, set_config
from search_accel.metrics import metrics_collector
from search_accel.tabs import set_classifier

ORIGIN_URL = "http://origin.test/s"


def run(coro):
    return asyncio.run(coro)


class FakeOrigin:
    """
    Stand-in for the origin search backend, served through httpx.MockTransport.

    Returns an HTML fragment naming the query and tab, records every request,
    and can be told to fail or to respond slowly.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.status_code = 200
        self.delay = 0.0
        self.content_type = "text/html; charset=utf-8"
        self.body_override: Optional[str] = None
        # Number of leading requests answered with 503
        self.fail_first = 0

    def calls_for(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(path)]

    @property
    def search_calls(self) -> int:
        return len(self.calls_for("/search"))

    def params(self, index: int = -1) -> Dict[str, str]:
        return dict(self.requests[index].url.params)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_first:
            self.fail_first -= 1
            return httpx.Response(503, text="origin error")
        if self.status_code >= 400:
            return httpx.Response(self.status_code, text="origin error")

        if request.url.path.endswith("/suggest"):
            partial = request.url.params.get("partial_query", "")
            return httpx.Response(
                200,
                json=[f"{partial} program", f"{partial} office"],
            )

        if self.body_override is not None:
            body = self.body_override
        else:
            query = request.url.params.get("query", "")
            tab = request.url.params.get("tab") or request.url.params.get("profile", "")
            body = f'<div class="results" data-tab="{tab}">Results for {query}</div>'
        return httpx.Response(200, text=body, headers={"content-type": self.content_type})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture(scope="function", autouse=True)
def _isolate_globals():
    """Reset module-level singletons before and after every test."""
    metrics_collector.reset()
    set_classifier(None)
    set_config(AccelConfig(skip_redis=True, origin_base_url=ORIGIN_URL))
    yield
    metrics_collector.reset()
    set_classifier(None)
    set_config(None)


@pytest.fixture
def config():
    return AccelConfig(skip_redis=True, origin_base_url=ORIGIN_URL)


@pytest.fixture
def memory_store():
    return CacheStore(MemoryBackend())


@pytest.fixture
def fake_origin():
    return FakeOrigin()
