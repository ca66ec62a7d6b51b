"""
Adapters package for the RedTrack service.

Contains the HTTP client wrapper for the RedTrack API. The adapter
encapsulates base URLs, canonical query strings and default headers;
pacing, retries and caching are delegated to the shared fetch queue.
"""

from .redtrack_client import RedTrackClient

__all__ = ["RedTrackClient"]
