"""
Client-side result loading.

When the results page loads, results can come from three places, tried in
order:

    1. pre-render   - the previous page asked the server to prepare this
                      query just before redirecting
    2. cache-first  - the query matches the last one searched this session;
                      probe the cache and use it if present
    3. standard     - plain search request, always reached if 1 and 2 fail

Each step is an ``Attempt`` with its own timeout; the first success wins.
Renders go through a ``RenderGate`` so a slow response for an old query
can never overwrite a newer one.
"""
import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Coroutine, Dict, List, Optional, Set

from search_accel.cache.keys import normalize_query
from search_accel.client import AcceleratorClient, SearchResponse
from search_accel.core.config import AccelConfig, get_config
from search_accel.utils.logger import get_logger

logger = get_logger("orchestrator")

BRANCH_PRE_RENDER = "pre_render"
BRANCH_CACHE_FIRST = "cache_first"
BRANCH_STANDARD = "standard"


@dataclass
class Attempt:
    name: str
    run: Callable[[], Awaitable[Any]]
    timeout: Optional[float] = None


@dataclass
class AttemptOutcome:
    name: str
    value: Any
    duration_ms: float
    failures: Dict[str, str] = field(default_factory=dict)


class AttemptsExhausted(RuntimeError):
    """Raised when every attempt failed, timed out or came back empty."""

    def __init__(self, failures: Dict[str, str]):
        super().__init__(f"All attempts failed: {failures}")
        self.failures = failures


async def run_attempts(attempts: List[Attempt]) -> AttemptOutcome:
    """
    Run attempts in order and return the first one producing a value.

    An attempt fails by raising, by returning None or by exceeding its
    timeout (it is cancelled in that case).

    Raises:
        AttemptsExhausted: no attempt succeeded
    """
    failures: Dict[str, str] = {}
    for attempt in attempts:
        start = time.perf_counter()
        try:
            if attempt.timeout is not None:
                value = await asyncio.wait_for(attempt.run(), timeout=attempt.timeout)
            else:
                value = await attempt.run()
        except asyncio.TimeoutError:
            failures[attempt.name] = "timeout"
            logger.info(f"Attempt '{attempt.name}' timed out after {attempt.timeout}s")
            continue
        except Exception as e:
            failures[attempt.name] = str(e) or type(e).__name__
            logger.info(f"Attempt '{attempt.name}' failed: {e}")
            continue

        if value is None:
            failures[attempt.name] = "empty"
            continue

        return AttemptOutcome(
            name=attempt.name,
            value=value,
            duration_ms=(time.perf_counter() - start) * 1000,
            failures=failures,
        )

    raise AttemptsExhausted(failures)


class RenderTarget:
    """Where results end up. Keeps the last rendered state."""

    def __init__(self):
        self.html: Optional[str] = None
        self.query: Optional[str] = None
        self.branch: Optional[str] = None
        self.error: Optional[str] = None
        self.render_count = 0

    def show_results(self, html: str, query: str, branch: str) -> None:
        self.html = html
        self.query = query
        self.branch = branch
        self.error = None
        self.render_count += 1

    def show_error(self, message: str, query: str) -> None:
        self.html = None
        self.query = query
        self.branch = None
        self.error = message
        self.render_count += 1


class RenderGate:
    """Only the most recently started run may render."""

    def __init__(self, target: RenderTarget):
        self.target = target
        self._latest = 0

    def begin(self) -> int:
        self._latest += 1
        return self._latest

    def is_current(self, seq: int) -> bool:
        return seq == self._latest

    def render(self, seq: int, html: str, query: str, branch: str) -> bool:
        if not self.is_current(seq):
            logger.debug(f"Dropping stale render #{seq} for '{query}' (latest #{self._latest})")
            return False
        self.target.show_results(html, query, branch)
        return True

    def render_error(self, seq: int, message: str, query: str) -> bool:
        if not self.is_current(seq):
            return False
        self.target.show_error(message, query)
        return True


class SessionMarkers:
    """
    Per-session markers that gate the fast paths.

    The pre-render marker is one-shot: reading it clears it. The last-search
    marker is replaced after every run.
    """

    def __init__(self):
        self._pre_render: Optional[str] = None
        self.last_search_query: Optional[str] = None

    def mark_pre_render(self, query: str) -> None:
        self._pre_render = normalize_query(query)

    def consume_pre_render(self) -> Optional[str]:
        value, self._pre_render = self._pre_render, None
        return value

    def mark_search(self, query: str) -> None:
        self.last_search_query = normalize_query(query)


class BranchTelemetry:
    """Counts which branch served each run."""

    def __init__(self):
        self.counts: Dict[str, int] = {
            BRANCH_PRE_RENDER: 0,
            BRANCH_CACHE_FIRST: 0,
            BRANCH_STANDARD: 0,
            "failed": 0,
        }
        self.events: List[Dict[str, Any]] = []

    def __call__(self, query: str, branch: str, duration_ms: float, failures: Dict[str, str]) -> None:
        self.counts[branch] = self.counts.get(branch, 0) + 1
        self.events.append({
            "query": query,
            "branch": branch,
            "duration_ms": round(duration_ms, 1),
            "failures": dict(failures),
        })


TelemetryCallback = Callable[[str, str, float, Dict[str, str]], None]


class SearchOrchestrator:
    """Loads results for a query through pre-render, cache-first or standard search."""

    def __init__(
        self,
        client: AcceleratorClient,
        target: Optional[RenderTarget] = None,
        markers: Optional[SessionMarkers] = None,
        telemetry: Optional[TelemetryCallback] = None,
        config: Optional[AccelConfig] = None,
    ):
        self.client = client
        self.target = target or RenderTarget()
        self.gate = RenderGate(self.target)
        self.markers = markers or SessionMarkers()
        self.telemetry = telemetry
        self.config = config or get_config()

    def _emit(self, query: str, branch: str, duration_ms: float, failures: Dict[str, str]) -> None:
        if self.telemetry is None:
            return
        try:
            self.telemetry(query, branch, duration_ms, failures)
        except Exception as e:
            logger.warning(f"Telemetry callback failed: {e}")

    async def _from_cache(self, query: str, collection: Optional[str], profile: Optional[str]) -> Optional[SearchResponse]:
        """Search only when the cache holds the entry; a miss costs one cache check."""
        if not await self.client.check_cache(query, collection, profile):
            return None
        return await self.client.search(query, collection, profile)

    def build_attempts(self, query: str, collection: Optional[str] = None, profile: Optional[str] = None) -> List[Attempt]:
        normalized = normalize_query(query)
        attempts: List[Attempt] = []

        if self.markers.consume_pre_render() == normalized:
            attempts.append(Attempt(
                BRANCH_PRE_RENDER,
                lambda: self._from_cache(normalized, collection, profile),
                timeout=self.config.prefetch_timeout,
            ))

        if self.markers.last_search_query == normalized:
            attempts.append(Attempt(
                BRANCH_CACHE_FIRST,
                lambda: self._from_cache(normalized, collection, profile),
                timeout=self.config.probe_timeout + self.config.prefetch_timeout,
            ))

        attempts.append(Attempt(
            BRANCH_STANDARD,
            lambda: self.client.search(normalized, collection, profile),
            timeout=None,
        ))
        return attempts

    async def run(self, query: str, collection: Optional[str] = None, profile: Optional[str] = None) -> Optional[AttemptOutcome]:
        """
        Load and render results for ``query``.

        Returns the winning outcome, or None when every path failed (an
        error state is rendered in that case).
        """
        seq = self.gate.begin()
        normalized = normalize_query(query)
        attempts = self.build_attempts(query, collection, profile)
        start = time.perf_counter()

        try:
            outcome = await run_attempts(attempts)
        except AttemptsExhausted as e:
            logger.error(f"Search failed for '{normalized}': {e.failures}")
            self.gate.render_error(seq, "Search results could not be loaded. Please try again.", normalized)
            self._emit(normalized, "failed", (time.perf_counter() - start) * 1000, e.failures)
            return None

        if self.gate.render(seq, outcome.value.body, normalized, outcome.name):
            self.markers.mark_search(normalized)
        self._emit(normalized, outcome.name, (time.perf_counter() - start) * 1000, outcome.failures)
        return outcome


class Debouncer:
    """
    Trailing-edge debounce for async callbacks.

    A call made within ``delay_ms`` of the previous one replaces it. Once
    the callback has started it runs to completion; it is never cancelled
    by later calls.
    """

    def __init__(self, delay_ms: int, fn: Callable[..., Awaitable[Any]]):
        self.delay = delay_ms / 1000.0
        self.fn = fn
        self._timer: Optional[asyncio.Task] = None
        self._running: Set[asyncio.Task] = set()

    def call(self, *args: Any) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = asyncio.get_running_loop().create_task(self._fire(*args))

    async def _fire(self, *args: Any) -> None:
        await asyncio.sleep(self.delay)
        self._spawn(self.fn(*args))

    def _spawn(self, coro: Coroutine) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    async def drain(self) -> None:
        if self._timer is not None:
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
        while self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)


class PrefetchTrigger:
    """Turns keystrokes into debounced suggestion and prefetch requests."""

    def __init__(
        self,
        client: AcceleratorClient,
        config: Optional[AccelConfig] = None,
        on_suggestions: Optional[Callable[[str, Any], None]] = None,
    ):
        self.client = client
        self.config = config or get_config()
        self.on_suggestions = on_suggestions
        self._suggest = Debouncer(self.config.suggestion_debounce_ms, self._fetch_suggestions)
        self._prefetch = Debouncer(self.config.prefetch_debounce_ms, self.client.prefetch)

    async def _fetch_suggestions(self, text: str) -> None:
        suggestions = await self.client.suggestions(text)
        if self.on_suggestions is not None:
            self.on_suggestions(text, suggestions)

    def on_input(self, text: str) -> None:
        length = len(normalize_query(text))
        if length >= self.config.suggestion_min_query_length:
            self._suggest.call(text)
        if length >= self.config.prefetch_min_query_length:
            self._prefetch.call(text)

    async def drain(self) -> None:
        await self._suggest.drain()
        await self._prefetch.drain()
