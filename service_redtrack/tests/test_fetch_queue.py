"""
Unit tests for the throttled RedTrack fetch queue.
"""

import asyncio

import httpx
import pytest

from service_redtrack.app.throttling import ThrottledFetchQueue, redact_url
from shared.errors import RateLimitError, UpstreamError
from shared.test_helpers import FakeClock, FakeUpstream


BASE = "https://api.redtrack.io"
URL_A = f"{BASE}/report?api_key=k&group_by=source"
URL_B = f"{BASE}/conversions?api_key=k&per=10000"


class DummyMetrics:
    """Minimal metrics collector stub."""

    def __init__(self):
        self.counters = []
        self.gauges = []
        self.histograms = []

    def increment_counter(self, metric_name: str, **labels):
        self.counters.append((metric_name, labels))

    def set_gauge(self, metric_name: str, value: float, **labels):
        self.gauges.append((metric_name, value))

    def observe_histogram(self, metric_name: str, value: float, **labels):
        self.histograms.append((metric_name, value, labels))

    def names(self):
        return [name for name, _ in self.counters]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def upstream(clock):
    return FakeUpstream(clock)


@pytest.fixture
def metrics():
    return DummyMetrics()


class Gate:
    """Sleep stand-in that blocks until opened, holding the drain loop mid-wait."""

    def __init__(self):
        self._event = None

    @property
    def event(self) -> asyncio.Event:
        # Created lazily so it belongs to the test's running loop
        if self._event is None:
            self._event = asyncio.Event()
        return self._event

    def open(self):
        self.event.set()

    async def sleep(self, seconds: float) -> None:
        await self.event.wait()


@pytest.fixture
def gate():
    return Gate()


@pytest.fixture
def queue(clock, upstream, metrics):
    return ThrottledFetchQueue(
        upstream.client(),
        min_interval=5.0,
        rate_limit_cooldown=10.0,
        cache_ttl=300.0,
        clock=clock,
        sleep=clock.sleep,
        metrics=metrics,
    )


class TestSpacing:
    """Outbound calls leave the queue in order and spaced apart."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("count", [2, 3, 5, 8])
    async def test_distinct_urls_are_spaced_by_min_interval(self, queue, upstream, count):
        """Distinct URLs go out in FIFO order, each at least min_interval apart."""
        urls = [f"{BASE}/report?api_key=k&page={i}" for i in range(count)]

        await asyncio.gather(*(queue.fetch_throttled(url) for url in urls))

        assert upstream.call_urls == urls
        times = upstream.call_times
        assert len(times) == count
        for earlier, later in zip(times, times[1:]):
            assert later - earlier >= 5.0

    @pytest.mark.asyncio
    async def test_first_request_does_not_wait(self, queue, clock):
        """The first request is sent without sleeping."""
        await queue.fetch_throttled(URL_A)

        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_request_after_quiet_period_does_not_wait(self, queue, clock, upstream):
        """No wait is added once min_interval has already passed."""
        await queue.fetch_throttled(URL_A)
        clock.advance(60)

        await queue.fetch_throttled(URL_B)

        assert clock.sleeps == []
        assert len(upstream.calls) == 2

    @pytest.mark.asyncio
    async def test_scenario_duplicate_url_within_burst(self, queue, upstream):
        """A, B, A enqueued together: two outbound calls, the second A is shared."""
        first_a, b, second_a = await asyncio.gather(
            queue.fetch_throttled(URL_A),
            queue.fetch_throttled(URL_B),
            queue.fetch_throttled(URL_A),
        )

        assert upstream.call_urls == [URL_A, URL_B]
        assert upstream.call_times[1] - upstream.call_times[0] >= 5.0
        assert second_a == first_a
        assert b == {"url": URL_B}


class TestCaching:
    """Successful responses are memoized by URL for the TTL."""

    @pytest.mark.asyncio
    async def test_same_url_within_ttl_issues_one_call(self, queue, upstream, clock):
        """A repeat within the TTL is answered from the cache."""
        first = await queue.fetch_throttled(URL_A)
        clock.advance(120)
        second = await queue.fetch_throttled(URL_A)

        assert len(upstream.calls) == 1
        assert second == first

    @pytest.mark.asyncio
    async def test_same_url_after_ttl_is_refetched(self, queue, upstream, clock):
        """A repeat after the TTL goes upstream again."""
        await queue.fetch_throttled(URL_A)
        clock.advance(301)
        await queue.fetch_throttled(URL_A)

        assert len(upstream.calls) == 2

    @pytest.mark.asyncio
    async def test_invalidate_forces_refetch(self, queue, upstream):
        """Invalidating a URL forces the next fetch upstream."""
        await queue.fetch_throttled(URL_A)

        assert queue.invalidate(URL_A) == 1
        await queue.fetch_throttled(URL_A)

        assert len(upstream.calls) == 2

    @pytest.mark.asyncio
    async def test_cache_hit_is_counted(self, queue, metrics):
        """Cache hits are counted in stats and metrics."""
        await queue.fetch_throttled(URL_A)
        await queue.fetch_throttled(URL_A)

        assert "upstream_cache_hits_total" in metrics.names()
        assert queue.stats.cache_hits == 1
        assert queue.stats.sent == 1

    @pytest.mark.asyncio
    async def test_cache_stays_bounded_across_distinct_urls(self, queue, clock):
        """Expired responses for URLs never requested again are swept."""
        for page in range(50):
            await queue.fetch_throttled(f"{BASE}/report?api_key=k&page={page}")
            clock.advance(400)

        assert len(queue.cache) <= 1


class TestRateLimitRetry:
    """HTTP 429 is retried exactly once after the cooldown."""

    @pytest.mark.asyncio
    async def test_429_then_success_resolves_with_retry_body(self, queue, upstream, clock):
        """A 429 is retried after the cooldown and the retry body is returned."""
        upstream.reply("/report", 429, json={"error": "Too many requests"})
        upstream.reply("/report", 200, json={"items": [1, 2]})

        result = await queue.fetch_throttled(URL_A)

        assert result == {"items": [1, 2]}
        assert len(upstream.calls) == 2
        assert 10.0 in clock.sleeps
        assert upstream.call_times[1] - upstream.call_times[0] >= 10.0

    @pytest.mark.asyncio
    async def test_recovered_response_is_cached(self, queue, upstream):
        """A body recovered by the retry is cached."""
        upstream.reply("/report", 429)
        upstream.reply("/report", 200, json={"items": []})

        await queue.fetch_throttled(URL_A)
        await queue.fetch_throttled(URL_A)

        assert len(upstream.calls) == 2

    @pytest.mark.asyncio
    async def test_two_429s_resolve_with_empty_result(self, queue, upstream, metrics):
        """Two 429s in a row resolve with an empty list."""
        upstream.reply("/report", 429)
        upstream.reply("/report", 429)

        result = await queue.fetch_throttled(URL_A)

        assert result == []
        assert len(upstream.calls) == 2
        assert ("upstream_rate_limited_total", {"outcome": "degraded"}) in metrics.counters

    @pytest.mark.asyncio
    async def test_degraded_result_is_not_cached(self, queue, upstream):
        """The degraded empty result is not cached."""
        upstream.reply("/report", 429)
        upstream.reply("/report", 429)

        await queue.fetch_throttled(URL_A)
        await queue.fetch_throttled(URL_A)

        assert len(upstream.calls) == 3

    @pytest.mark.asyncio
    async def test_custom_empty_result(self, clock, upstream):
        """The empty result comes from the configured factory."""
        queue = ThrottledFetchQueue(
            upstream.client(),
            clock=clock,
            sleep=clock.sleep,
            empty_result_factory=lambda: {"items": [], "total": 0},
        )
        upstream.reply("/report", 429)
        upstream.reply("/report", 429)

        assert await queue.fetch_throttled(URL_A) == {"items": [], "total": 0}

    @pytest.mark.asyncio
    async def test_strict_mode_raises_rate_limit_error(self, clock, upstream):
        """Strict mode raises RateLimitError after two 429s."""
        queue = ThrottledFetchQueue(
            upstream.client(),
            clock=clock,
            sleep=clock.sleep,
            raise_on_rate_limit=True,
        )
        upstream.reply("/report", 429)
        upstream.reply("/report", 429)

        with pytest.raises(RateLimitError):
            await queue.fetch_throttled(URL_A)

    @pytest.mark.asyncio
    async def test_short_cooldown_still_respects_spacing(self, clock, upstream):
        """The retry never goes out sooner than min_interval."""
        queue = ThrottledFetchQueue(
            upstream.client(),
            min_interval=5.0,
            rate_limit_cooldown=1.0,
            clock=clock,
            sleep=clock.sleep,
        )
        upstream.reply("/report", 429)

        await queue.fetch_throttled(URL_A)

        assert upstream.call_times[1] - upstream.call_times[0] >= 5.0

    @pytest.mark.asyncio
    async def test_server_error_on_retry_degrades(self, queue, upstream, metrics):
        """A 500 on the retry resolves with the empty result by default."""
        upstream.reply("/report", 429)
        upstream.reply("/report", 500, json={"error": "boom"})

        assert await queue.fetch_throttled(URL_A) == []
        assert queue.stats.degraded == 1
        assert ("upstream_rate_limited_total", {"outcome": "degraded"}) in metrics.counters

    @pytest.mark.asyncio
    async def test_server_error_on_retry_raises_when_strict(self, clock, upstream):
        """In strict mode a 500 on the retry surfaces as an upstream error."""
        queue = ThrottledFetchQueue(
            upstream.client(),
            clock=clock,
            sleep=clock.sleep,
            raise_on_rate_limit=True,
        )
        upstream.reply("/report", 429)
        upstream.reply("/report", 500, json={"error": "boom"})

        with pytest.raises(UpstreamError) as exc_info:
            await queue.fetch_throttled(URL_A)

        assert exc_info.value.upstream_status == 500
        assert "boom" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_network_error_on_retry_rejects(self, queue, upstream):
        """A connection failure on the retry rejects the caller."""
        upstream.reply("/report", 429)
        upstream.fail("/report", httpx.ConnectError("refused"))

        with pytest.raises(UpstreamError) as exc_info:
            await queue.fetch_throttled(URL_A)

        assert "ConnectError" in exc_info.value.message
        assert len(upstream.calls) == 2
        assert URL_A not in queue.cache


class TestFailures:
    """Non-429 failures reject only the affected caller."""

    @pytest.mark.asyncio
    async def test_500_rejects_with_status(self, queue, upstream):
        """A 500 rejects with the upstream status and message."""
        upstream.reply("/report", 500, json={"error": "boom"})

        with pytest.raises(UpstreamError) as exc_info:
            await queue.fetch_throttled(URL_A)

        assert exc_info.value.upstream_status == 500
        assert "boom" in exc_info.value.message
        assert len(upstream.calls) == 1

    @pytest.mark.asyncio
    async def test_error_without_json_body_mentions_status(self, queue, upstream):
        """Non-JSON error bodies fall back to a status message."""
        upstream.reply("/report", 503, content=b"<html>down</html>")

        with pytest.raises(UpstreamError) as exc_info:
            await queue.fetch_throttled(URL_A)

        assert "503" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_malformed_json_is_upstream_error(self, queue, upstream):
        """A 2xx with a non-JSON body rejects and is not cached."""
        upstream.reply("/report", 200, content=b"not json")

        with pytest.raises(UpstreamError) as exc_info:
            await queue.fetch_throttled(URL_A)

        assert "Malformed" in exc_info.value.message
        assert URL_A not in queue.cache

    @pytest.mark.asyncio
    async def test_network_error_is_upstream_error(self, queue, upstream):
        """Transport errors reject with UpstreamError."""
        upstream.fail("/report", httpx.ConnectError("refused"))

        with pytest.raises(UpstreamError):
            await queue.fetch_throttled(URL_A)

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_the_drain_loop(self, queue, upstream):
        """A failed request does not stop later ones."""
        upstream.reply("/report", 500)

        failed, succeeded = await asyncio.gather(
            queue.fetch_throttled(URL_A),
            queue.fetch_throttled(URL_B),
            return_exceptions=True,
        )

        assert isinstance(failed, UpstreamError)
        assert succeeded == {"url": URL_B}
        assert upstream.call_times[1] - upstream.call_times[0] >= 5.0


class TestDrainLoop:
    """Only one drain loop runs at a time."""

    @pytest.mark.asyncio
    async def test_second_trigger_is_a_no_op(self, queue):
        """Triggering the drain while it runs keeps the same task."""
        pending = asyncio.ensure_future(queue.fetch_throttled(URL_A))
        await asyncio.sleep(0)

        drain_task = queue._drain_task
        assert drain_task is not None
        queue._ensure_draining()

        assert queue._drain_task is drain_task
        await pending

    @pytest.mark.asyncio
    async def test_state_is_clean_after_drain(self, queue):
        """The queue is idle and empty once drained."""
        await asyncio.gather(queue.fetch_throttled(URL_A), queue.fetch_throttled(URL_B))
        await asyncio.sleep(0)

        assert queue.pending_count == 0
        assert not queue.is_draining
        snapshot = queue.snapshot()
        assert snapshot["cached_responses"] == 2
        assert snapshot["sent"] == 2

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_shared_request(self, clock, upstream, gate):
        """A joiner still gets the body after the first caller is cancelled."""
        queue = ThrottledFetchQueue(upstream.client(), clock=clock, sleep=gate.sleep)
        queue.limiter.last_request_at = clock.now

        first = asyncio.ensure_future(queue.fetch_throttled(URL_A))
        second = asyncio.ensure_future(queue.fetch_throttled(URL_A))
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        first.cancel()
        await asyncio.sleep(0)
        gate.open()

        assert await second == {"url": URL_A}
        assert first.cancelled()
        assert len(upstream.calls) == 1
        assert queue.stats.coalesced == 1

    @pytest.mark.asyncio
    async def test_aclose_cancels_unsettled_requests(self, clock, upstream, gate):
        """Closing a busy queue cancels the in-flight and queued callers."""
        queue = ThrottledFetchQueue(upstream.client(), clock=clock, sleep=gate.sleep)
        queue.limiter.last_request_at = clock.now

        callers = [
            asyncio.ensure_future(queue.fetch_throttled(URL_A)),
            asyncio.ensure_future(queue.fetch_throttled(URL_B)),
        ]
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert queue.pending_count == 2

        await queue.aclose()
        results = await asyncio.gather(*callers, return_exceptions=True)

        assert all(isinstance(result, asyncio.CancelledError) for result in results)
        assert queue._pending == {}
        assert queue.pending_count == 0
        assert not queue.is_draining
        assert upstream.calls == []


def test_redact_url_masks_api_key():
    """The api_key parameter is masked for logging."""
    redacted = redact_url("https://api.redtrack.io/report?api_key=secret&group_by=source")

    assert "secret" not in redacted
    assert "group_by=source" in redacted
