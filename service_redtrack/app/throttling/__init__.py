"""
Throttling package for the RedTrack service.

Holds the FIFO fetch queue that spaces outbound calls, retries once on
HTTP 429 and memoizes responses by canonical request URL.
"""

from .fetch_queue import QueuedRequest, RateLimiterState, ThrottledFetchQueue, redact_url
from .response_cache import CacheEntry, ResponseCache

__all__ = [
    "CacheEntry",
    "QueuedRequest",
    "RateLimiterState",
    "ResponseCache",
    "ThrottledFetchQueue",
    "redact_url",
]
