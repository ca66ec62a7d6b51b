"""
Throttled fetch queue for the RedTrack API.

RedTrack answers bursts with HTTP 429 and publishes no Retry-After header,
so every outbound call is funnelled through one FIFO drain loop that keeps
a minimum spacing between requests, retries a rate-limited request once
after a cooldown, and memoizes successful JSON bodies by request URL.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, asdict
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

import httpx

from shared.errors import RateLimitError, UpstreamError
from shared.logging import get_logger

from .response_cache import DEFAULT_CACHE_TTL, ResponseCache


DEFAULT_MIN_INTERVAL = 5.0  # seconds between outbound calls
DEFAULT_RATE_LIMIT_COOLDOWN = 10.0  # seconds before the single 429 retry
DEFAULT_TIMEOUT = 30.0


def redact_url(url: str) -> str:
    """Mask the api_key query parameter so URLs are safe to log."""
    parsed = httpx.URL(url)
    if "api_key" in parsed.params:
        parsed = parsed.copy_set_param("api_key", "***")
    return str(parsed)


@dataclass
class QueuedRequest:
    """A pending outbound GET; ``future`` settles exactly once."""

    url: str
    headers: Dict[str, str]
    future: "asyncio.Future[Any]"
    enqueued_at: float


@dataclass
class RateLimiterState:
    """Spacing bookkeeping shared by every request the queue sends."""

    min_interval: float = DEFAULT_MIN_INTERVAL
    last_request_at: Optional[float] = None

    def wait_time(self, now: float) -> float:
        if self.last_request_at is None:
            return 0.0
        return max(0.0, self.min_interval - (now - self.last_request_at))


@dataclass
class QueueStats:
    sent: int = 0
    cache_hits: int = 0
    coalesced: int = 0
    rate_limited: int = 0
    degraded: int = 0
    failed: int = 0


class ThrottledFetchQueue:
    """Serializes GET requests to a rate-limited upstream behind a TTL cache.

    One instance is meant to live for the whole process and be shared by all
    handlers that talk to the same upstream host. All mutable state (queue,
    cache, limiter) is touched only from the event loop thread.
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        *,
        min_interval: float = DEFAULT_MIN_INTERVAL,
        rate_limit_cooldown: float = DEFAULT_RATE_LIMIT_COOLDOWN,
        cache_ttl: float = DEFAULT_CACHE_TTL,
        timeout: float = DEFAULT_TIMEOUT,
        raise_on_rate_limit: bool = False,
        empty_result_factory: Callable[[], Any] = list,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        metrics: Optional[Any] = None,
        service_name: str = "redtrack",
    ):
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self.rate_limit_cooldown = rate_limit_cooldown
        self.raise_on_rate_limit = raise_on_rate_limit
        self.empty_result_factory = empty_result_factory
        self.service_name = service_name
        self.metrics = metrics
        self.logger = get_logger(f"{service_name}.fetch_queue")

        self._clock = clock
        self._sleep = sleep
        self.cache = ResponseCache(cache_ttl, clock=clock)
        self.limiter = RateLimiterState(min_interval=min_interval)
        self.stats = QueueStats()

        self._queue: Deque[QueuedRequest] = deque()
        self._pending: Dict[str, "asyncio.Future[Any]"] = {}
        self._in_flight: Optional[QueuedRequest] = None
        self._drain_task: Optional["asyncio.Task[None]"] = None

    @property
    def pending_count(self) -> int:
        """Requests waiting in the queue plus the one being served."""
        return len(self._queue) + (1 if self._in_flight is not None else 0)

    @property
    def is_draining(self) -> bool:
        return self._drain_task is not None and not self._drain_task.done()

    def snapshot(self) -> Dict[str, Any]:
        """Queue state for health checks."""
        return {
            "pending": self.pending_count,
            "draining": self.is_draining,
            "cached_responses": len(self.cache),
            "min_interval_seconds": self.limiter.min_interval,
            **asdict(self.stats),
        }

    async def fetch_throttled(self, url: str, headers: Optional[Dict[str, str]] = None) -> Any:
        """Return the JSON body for ``url``, from cache or via the drain loop.

        ``url`` must be canonical (all query parameters included, stable
        order) because it is the cache key.

        Raises:
            UpstreamError: non-2xx (other than 429), network failure or a
                body that is not JSON.
            RateLimitError: only with ``raise_on_rate_limit=True``, when the
                single retry after a 429 is rate limited again.
        """
        entry = self.cache.get_entry(url)
        if entry is not None:
            self.stats.cache_hits += 1
            self._count("upstream_cache_hits_total")
            self.logger.debug("Upstream response served from cache", url=redact_url(url))
            return entry.value

        self._count("upstream_cache_misses_total")

        pending = self._pending.get(url)
        if pending is not None:
            self.stats.coalesced += 1
            self.logger.debug("Joining pending upstream request", url=redact_url(url))
            return await asyncio.shield(pending)

        future: "asyncio.Future[Any]" = asyncio.get_running_loop().create_future()
        self._queue.append(QueuedRequest(
            url=url,
            headers=dict(headers or {}),
            future=future,
            enqueued_at=self._clock(),
        ))
        self._pending[url] = future
        self._update_depth()
        self._ensure_draining()

        # A cancelled caller must not cancel the shared request.
        return await asyncio.shield(future)

    def invalidate(self, url: Optional[str] = None) -> int:
        """Forget cached responses (one URL, or all of them)."""
        removed = self.cache.invalidate(url)
        if removed:
            self.logger.info(
                "Upstream cache invalidated",
                url=redact_url(url) if url else "*",
                removed=removed,
            )
        return removed

    async def aclose(self) -> None:
        if self._drain_task is not None and not self._drain_task.done():
            self._drain_task.cancel()
            try:
                await self._drain_task
            except asyncio.CancelledError:
                pass
        if self._owns_client:
            await self._client.aclose()

    def _ensure_draining(self) -> None:
        if self.is_draining:
            return
        self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        try:
            while self._queue:
                request = self._queue.popleft()
                self._in_flight = request
                try:
                    await self._process(request)
                except asyncio.CancelledError:
                    request.future.cancel()
                    raise
                except Exception as exc:  # pragma: no cover - _process settles its own errors
                    self.logger.error("Fetch queue failure", url=redact_url(request.url), error=str(exc), exc_info=True)
                    self._reject(request, UpstreamError(self.service_name, str(exc)))
                finally:
                    self._in_flight = None
                    if self._pending.get(request.url) is request.future:
                        del self._pending[request.url]
                    self._update_depth()
        except asyncio.CancelledError:
            for request in list(self._queue):
                if not request.future.done():
                    request.future.cancel()
            self._queue.clear()
            self._pending.clear()
            raise
        finally:
            self._drain_task = None

    async def _process(self, request: QueuedRequest) -> None:
        # An earlier request for the same URL may have filled the cache
        # while this one was waiting.
        entry = self.cache.get_entry(request.url)
        if entry is not None:
            self.stats.cache_hits += 1
            self._count("upstream_cache_hits_total")
            self._resolve(request, entry.value)
            return

        await self._wait_for_slot()

        safe_url = redact_url(request.url)
        try:
            response = await self._send(request)
        except httpx.HTTPError as exc:
            self._reject_connection_error(request, exc)
            return

        if response.status_code == 429:
            self.stats.rate_limited += 1
            self._count("upstream_rate_limited_total", outcome="retry_scheduled")
            cooldown = max(self.rate_limit_cooldown, self.limiter.wait_time(self._clock()))
            self.logger.warning(
                "Upstream rate limit hit, retrying once after cooldown",
                url=safe_url,
                cooldown_seconds=cooldown,
            )
            await self._sleep(cooldown)

            try:
                response = await self._send(request)
            except httpx.HTTPError as exc:
                self._reject_connection_error(request, exc)
                return

            if not response.is_success:
                self._handle_failed_retry(request, response)
                return

            self._count("upstream_rate_limited_total", outcome="recovered")
            self.logger.info("Upstream retry succeeded", url=safe_url)

        if not response.is_success:
            self.stats.failed += 1
            message = self._error_message(response)
            self.logger.error(
                "Upstream request failed",
                url=safe_url,
                status_code=response.status_code,
                message=message,
            )
            self._reject(request, UpstreamError(
                self.service_name,
                message,
                upstream_status=response.status_code,
                details={"path": response.request.url.path},
            ))
            return

        try:
            data = response.json()
        except ValueError as exc:
            self.stats.failed += 1
            self.logger.error("Upstream returned malformed JSON", url=safe_url, error=str(exc))
            self._reject(request, UpstreamError(
                self.service_name,
                "Malformed JSON response",
                upstream_status=response.status_code,
            ))
            return

        self.cache.set(request.url, data)
        self._resolve(request, data)

    def _handle_failed_retry(self, request: QueuedRequest, response: httpx.Response) -> None:
        safe_url = redact_url(request.url)
        if self.raise_on_rate_limit:
            self._count("upstream_rate_limited_total", outcome="raised")
            self.stats.failed += 1
            self.logger.warning("Upstream still failing after retry", url=safe_url, status_code=response.status_code)
            if response.status_code == 429:
                error: Exception = RateLimitError(
                    "Upstream rate limit persisted after retry",
                    details={"service": self.service_name},
                )
            else:
                error = UpstreamError(
                    self.service_name,
                    self._error_message(response),
                    upstream_status=response.status_code,
                )
            self._reject(request, error)
            return

        self.stats.degraded += 1
        self._count("upstream_rate_limited_total", outcome="degraded")
        self.logger.warning(
            "Upstream rate limit persisted, returning empty result",
            url=safe_url,
            status_code=response.status_code,
        )
        self._resolve(request, self.empty_result_factory())

    async def _wait_for_slot(self) -> None:
        wait = self.limiter.wait_time(self._clock())
        if wait > 0:
            self.logger.debug("Waiting for upstream rate limit slot", wait_seconds=round(wait, 3))
            await self._sleep(wait)

    async def _send(self, request: QueuedRequest) -> httpx.Response:
        endpoint = httpx.URL(request.url).path
        started = self._clock()
        status = "error"
        try:
            response = await self._client.get(request.url, headers=request.headers)
            status = str(response.status_code)
            return response
        finally:
            self.limiter.last_request_at = self._clock()
            self.stats.sent += 1
            self._count("upstream_requests_total", endpoint=endpoint, status=status)
            if self.metrics is not None:
                self.metrics.observe_histogram(
                    "upstream_request_duration_seconds",
                    self.limiter.last_request_at - started,
                    endpoint=endpoint,
                )

    def _reject_connection_error(self, request: QueuedRequest, exc: httpx.HTTPError) -> None:
        self.stats.failed += 1
        self.logger.error("Upstream connection error", url=redact_url(request.url), error=str(exc))
        self._reject(request, UpstreamError(
            self.service_name,
            f"Connection error: {exc.__class__.__name__}",
        ))

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            for key in ("error", "message", "detail"):
                if body.get(key):
                    return str(body[key])
        return f"Unexpected status {response.status_code}"

    @staticmethod
    def _resolve(request: QueuedRequest, value: Any) -> None:
        if not request.future.done():
            request.future.set_result(value)

    @staticmethod
    def _reject(request: QueuedRequest, error: Exception) -> None:
        if not request.future.done():
            request.future.set_exception(error)

    def _count(self, metric_name: str, **labels) -> None:
        if self.metrics is not None:
            self.metrics.increment_counter(metric_name, **labels)

    def _update_depth(self) -> None:
        if self.metrics is not None:
            self.metrics.set_gauge("fetch_queue_depth", self.pending_count)
