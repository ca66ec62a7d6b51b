"""
RedTrack API client for the RedTrack service.
"""

from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

import httpx

from shared.logging import get_logger

from ..throttling import ThrottledFetchQueue


DEFAULT_BASE_URL = "https://api.redtrack.io"
DEFAULT_USER_AGENT = "TrackView-Dashboard/1.0"
CONVERSIONS_PAGE_SIZE = 10000


class RedTrackClient:
    """Client for the RedTrack reporting API.

    Every call goes through the shared ``ThrottledFetchQueue``; the URLs it
    builds are canonical (sorted query parameters, empty values dropped) so
    identical requests share one cache entry.
    """

    def __init__(
        self,
        fetch_queue: ThrottledFetchQueue,
        base_url: str = DEFAULT_BASE_URL,
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        self.fetch_queue = fetch_queue
        self.base_url = base_url.rstrip('/')
        self.user_agent = user_agent
        self.logger = get_logger("redtrack.client")

    @property
    def default_headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": self.user_agent,
        }

    def build_url(self, path: str, api_key: str, **params: Any) -> str:
        """Build the canonical request URL (also the cache key)."""
        return self._canonical_url(path, api_key, params)

    def _canonical_url(self, path: str, api_key: str, params: Mapping[str, Any]) -> str:
        query: Dict[str, str] = {"api_key": api_key}
        for key, value in params.items():
            if value is None or value == "":
                continue
            if isinstance(value, bool):
                value = "true" if value else "false"
            query[key] = str(value)

        ordered: Iterable[Tuple[str, str]] = sorted(query.items())
        return str(httpx.URL(f"{self.base_url}/{path.lstrip('/')}", params=list(ordered)))

    async def _get(self, path: str, api_key: str, force_refresh: bool = False, **params: Any) -> Any:
        return await self._fetch(path, api_key, params, force_refresh)

    async def _fetch(self, path: str, api_key: str, params: Mapping[str, Any], force_refresh: bool) -> Any:
        url = self._canonical_url(path, api_key, params)
        if force_refresh:
            self.fetch_queue.invalidate(url)
        self.logger.debug("RedTrack request queued", path=path, params=sorted(params))
        return await self.fetch_queue.fetch_throttled(url, self.default_headers)

    async def get_report(
        self,
        api_key: str,
        date_from: str,
        date_to: str,
        group_by: str,
        *,
        force_refresh: bool = False,
        **extra: Any,
    ) -> Any:
        """Fetch ``/report`` rows grouped by ``group_by`` (source, campaign, date, ...)."""
        return await self._get(
            "/report",
            api_key,
            force_refresh=force_refresh,
            date_from=date_from,
            date_to=date_to,
            group_by=group_by,
            **extra,
        )

    async def fetch_report(
        self,
        api_key: str,
        params: Mapping[str, Any],
        *,
        force_refresh: bool = False,
    ) -> Any:
        """Fetch ``/report`` with caller-supplied parameters passed through as-is."""
        passthrough = {key: value for key, value in params.items() if key != "api_key"}
        return await self._fetch("/report", api_key, passthrough, force_refresh)

    async def get_conversions(
        self,
        api_key: str,
        date_from: str,
        date_to: str,
        *,
        per: int = CONVERSIONS_PAGE_SIZE,
        conversion_type: Optional[str] = None,
        campaign: Optional[str] = None,
        country: Optional[str] = None,
        force_refresh: bool = False,
    ) -> Any:
        """Fetch ``/conversions`` for a date range in one large page.

        ``conversion_type``, ``campaign`` and ``country`` are optional
        upstream filters; unset ones are left out of the URL.
        """
        return await self._get(
            "/conversions",
            api_key,
            force_refresh=force_refresh,
            date_from=date_from,
            date_to=date_to,
            per=per,
            type=conversion_type,
            campaign=campaign,
            country=country,
        )

    async def get_tracks(
        self,
        api_key: str,
        date_from: str,
        date_to: str,
        *,
        force_refresh: bool = False,
    ) -> Any:
        """Fetch ``/tracks`` (individual clicks) for a date range."""
        return await self._get(
            "/tracks",
            api_key,
            force_refresh=force_refresh,
            date_from=date_from,
            date_to=date_to,
        )

    async def get_campaigns(
        self,
        api_key: str,
        date_from: str,
        date_to: str,
        *,
        per: Optional[int] = None,
        timezone: Optional[str] = None,
        force_refresh: bool = False,
    ) -> Any:
        """Fetch ``/campaigns`` with click stats and totals."""
        return await self._get(
            "/campaigns",
            api_key,
            force_refresh=force_refresh,
            date_from=date_from,
            date_to=date_to,
            with_clicks=True,
            total=True,
            per=per,
            timezone=timezone,
        )

    async def get_settings(self, api_key: str, *, force_refresh: bool = False) -> Optional[Dict[str, Any]]:
        """Fetch ``/me/settings``; also confirms that an API key is valid."""
        return await self._get("/me/settings", api_key, force_refresh=force_refresh)
