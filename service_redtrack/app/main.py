"""
RedTrack reporting service for the VMetrics Access Layer.
"""

import asyncio
import re
from datetime import date
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import httpx
from fastapi import Query, Request

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.errors import AuthenticationError, UpstreamError, ValidationError

from service_redtrack.app.adapters import RedTrackClient
from service_redtrack.app.domain import (
    NO_CLICKS_MESSAGE,
    NO_CONVERSIONS_MESSAGE,
    campaign_period_ranges,
    detect_currency,
    summarize_campaign_periods,
    summarize_dashboard,
    summarize_funnel,
    summarize_performance,
    summarize_sources,
    with_empty_message,
)
from service_redtrack.app.throttling import ThrottledFetchQueue


SERVICE_NAME = "redtrack"
SERVICE_PORT = 8020

_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_CONTROL_PARAMS = ("api_key", "_t", "force_refresh")
FUNNEL_PAGE_SIZE = 100


class RedTrackService(BaseService):
    """RedTrack reporting service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        fetch_queue: Optional[ThrottledFetchQueue] = None,
        today: Callable[[], date] = date.today,
    ):
        super().__init__(SERVICE_NAME, SERVICE_PORT, config=config or get_config(SERVICE_NAME, SERVICE_PORT))
        self._today = today

        # One queue per process: every handler shares its spacing and cache.
        self.fetch_queue = fetch_queue or ThrottledFetchQueue(
            http_client,
            min_interval=self.config.redtrack_min_interval_seconds,
            rate_limit_cooldown=self.config.redtrack_rate_limit_cooldown_seconds,
            cache_ttl=self.config.redtrack_cache_ttl_seconds,
            timeout=self.config.redtrack_timeout_seconds,
            raise_on_rate_limit=self.config.redtrack_raise_on_rate_limit,
            metrics=self.metrics if self.config.enable_metrics else None,
            service_name=SERVICE_NAME,
        )
        self.redtrack_client = RedTrackClient(
            self.fetch_queue,
            base_url=self.config.redtrack_base_url,
            user_agent=self.config.redtrack_user_agent,
        )

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.fetch_queue.aclose()

        self._setup_redtrack_routes()

        # Expose service instance via app state for introspection/testing
        self.app.state.redtrack_service = self

    async def _check_dependencies(self) -> Dict[str, Any]:
        return {"redtrack_queue": self.fetch_queue.snapshot()}

    def _extract_api_key(self, request: Request, api_key: Optional[str]) -> str:
        """API key from the query string, else from a Bearer Authorization header."""
        if api_key:
            return api_key

        authorization = request.headers.get("Authorization", "")
        if authorization.lower().startswith("bearer "):
            token = authorization[7:].strip()
            if token:
                return token

        raise AuthenticationError("API key required")

    def _validate_dates(self, date_from: Optional[str], date_to: Optional[str]) -> Tuple[str, str]:
        if not date_from or not date_to:
            raise ValidationError(
                "date_from and date_to are required (YYYY-MM-DD)",
                details={"date_from": date_from, "date_to": date_to},
            )

        for field, value in (("date_from", date_from), ("date_to", date_to)):
            if not _DATE_PATTERN.match(value):
                raise ValidationError(f"{field} must use the YYYY-MM-DD format", details={field: value})
            try:
                date.fromisoformat(value)
            except ValueError:
                raise ValidationError(f"{field} is not a valid date", details={field: value})

        if date_from > date_to:
            raise ValidationError(
                "date_from must not be after date_to",
                details={"date_from": date_from, "date_to": date_to},
            )
        return date_from, date_to

    @staticmethod
    def _wants_refresh(refresh_marker: Optional[str], force_refresh: Optional[str]) -> bool:
        return bool(refresh_marker) or (force_refresh or "").lower() == "true"

    async def _call_upstream(self, call: Awaitable[Any]) -> Any:
        """Await a RedTrack call, turning rejected credentials into a 401."""
        try:
            return await call
        except UpstreamError as exc:
            if exc.upstream_status in (401, 403):
                raise AuthenticationError(
                    "Invalid RedTrack API key",
                    details={"upstream_status": exc.upstream_status},
                )
            raise

    def _setup_redtrack_routes(self):
        """Set up RedTrack report routes."""

        @self.app.get("/api/sources")
        async def get_sources(
            request: Request,
            api_key: Optional[str] = Query(None),
            date_from: Optional[str] = Query(None),
            date_to: Optional[str] = Query(None),
            refresh_marker: Optional[str] = Query(None, alias="_t"),
            force_refresh: Optional[str] = Query(None),
        ):
            """Traffic sources for a date range (defaults to the current year)."""
            key = self._extract_api_key(request, api_key)
            year = self._today().year
            date_from, date_to = self._validate_dates(
                date_from or f"{year}-01-01",
                date_to or f"{year}-12-31",
            )

            report = await self._call_upstream(self.redtrack_client.get_report(
                key,
                date_from,
                date_to,
                group_by="source",
                force_refresh=self._wants_refresh(refresh_marker, force_refresh),
            ))
            return summarize_sources(report)

        @self.app.get("/api/performance")
        async def get_performance(
            request: Request,
            api_key: Optional[str] = Query(None),
            date_from: Optional[str] = Query(None),
            date_to: Optional[str] = Query(None),
            refresh_marker: Optional[str] = Query(None, alias="_t"),
            force_refresh: Optional[str] = Query(None),
        ):
            """Top campaigns, ads and offers from the period's conversions."""
            key = self._extract_api_key(request, api_key)
            date_from, date_to = self._validate_dates(date_from, date_to)

            conversions = await self._call_upstream(self.redtrack_client.get_conversions(
                key,
                date_from,
                date_to,
                force_refresh=self._wants_refresh(refresh_marker, force_refresh),
            ))
            return summarize_performance(conversions)

        @self.app.get("/api/dashboard")
        async def get_dashboard(
            request: Request,
            api_key: Optional[str] = Query(None),
            date_from: Optional[str] = Query(None),
            date_to: Optional[str] = Query(None),
            refresh_marker: Optional[str] = Query(None, alias="_t"),
            force_refresh: Optional[str] = Query(None),
        ):
            """Headline totals; checks the API key against /me/settings first."""
            key = self._extract_api_key(request, api_key)
            date_from = date_from or self._today().isoformat()
            date_from, date_to = self._validate_dates(date_from, date_to or date_from)
            refresh = self._wants_refresh(refresh_marker, force_refresh)

            await self._call_upstream(self.redtrack_client.get_settings(key, force_refresh=refresh))
            report = await self._call_upstream(self.redtrack_client.get_report(
                key,
                date_from,
                date_to,
                group_by="date",
                force_refresh=refresh,
            ))
            return summarize_dashboard(report)

        @self.app.get("/api/campaigns")
        async def get_campaigns(
            request: Request,
            api_key: Optional[str] = Query(None),
            refresh_marker: Optional[str] = Query(None, alias="_t"),
            force_refresh: Optional[str] = Query(None),
        ):
            """Spend/revenue/ROAS for today, yesterday, this month and last month."""
            key = self._extract_api_key(request, api_key)
            refresh = self._wants_refresh(refresh_marker, force_refresh)
            ranges = campaign_period_ranges(self._today())

            # All four land in the same queue and go out spaced, in this order.
            payloads = await self._call_upstream(asyncio.gather(*[
                self.redtrack_client.get_campaigns(key, start, end, force_refresh=refresh)
                for start, end in ranges.values()
            ]))
            return summarize_campaign_periods(dict(zip(ranges.keys(), payloads)))

        @self.app.get("/api/conversions")
        async def get_conversions(
            request: Request,
            api_key: Optional[str] = Query(None),
            date_from: Optional[str] = Query(None),
            date_to: Optional[str] = Query(None),
            conversion_type: Optional[str] = Query(None, alias="type"),
            campaign: Optional[str] = Query(None),
            country: Optional[str] = Query(None),
            refresh_marker: Optional[str] = Query(None, alias="_t"),
            force_refresh: Optional[str] = Query(None),
        ):
            """Raw conversions, optionally filtered by type, campaign or country."""
            key = self._extract_api_key(request, api_key)
            date_from, date_to = self._validate_dates(date_from, date_to)

            conversions = await self._call_upstream(self.redtrack_client.get_conversions(
                key,
                date_from,
                date_to,
                conversion_type=conversion_type,
                campaign=campaign,
                country=country,
                force_refresh=self._wants_refresh(refresh_marker, force_refresh),
            ))
            return with_empty_message(conversions, NO_CONVERSIONS_MESSAGE)

        @self.app.get("/api/tracks")
        async def get_tracks(
            request: Request,
            api_key: Optional[str] = Query(None),
            date_from: Optional[str] = Query(None),
            date_to: Optional[str] = Query(None),
            refresh_marker: Optional[str] = Query(None, alias="_t"),
            force_refresh: Optional[str] = Query(None),
        ):
            """Raw clicks for a date range."""
            key = self._extract_api_key(request, api_key)
            date_from, date_to = self._validate_dates(date_from, date_to)

            tracks = await self._call_upstream(self.redtrack_client.get_tracks(
                key,
                date_from,
                date_to,
                force_refresh=self._wants_refresh(refresh_marker, force_refresh),
            ))
            return with_empty_message(tracks, NO_CLICKS_MESSAGE)

        @self.app.get("/api/report")
        async def get_report(
            request: Request,
            api_key: Optional[str] = Query(None),
            refresh_marker: Optional[str] = Query(None, alias="_t"),
            force_refresh: Optional[str] = Query(None),
        ):
            """Pass-through to /report with every other query parameter forwarded."""
            key = self._extract_api_key(request, api_key)
            params = {
                name: value
                for name, value in request.query_params.items()
                if name not in _CONTROL_PARAMS
            }

            return await self._call_upstream(self.redtrack_client.fetch_report(
                key,
                params,
                force_refresh=self._wants_refresh(refresh_marker, force_refresh),
            ))

        @self.app.get("/api/settings")
        async def get_settings(
            request: Request,
            api_key: Optional[str] = Query(None),
            debug: Optional[str] = Query(None),
            refresh_marker: Optional[str] = Query(None, alias="_t"),
            force_refresh: Optional[str] = Query(None),
        ):
            """Account settings; ``debug=true`` adds the currency analysis."""
            key = self._extract_api_key(request, api_key)

            settings = await self._call_upstream(self.redtrack_client.get_settings(
                key,
                force_refresh=self._wants_refresh(refresh_marker, force_refresh),
            ))
            if (debug or "").lower() == "true":
                return {"settings": settings, "currency_analysis": detect_currency(settings)}
            return settings

        @self.app.get("/api/funnel")
        async def get_funnel(
            request: Request,
            api_key: Optional[str] = Query(None),
            date_from: Optional[str] = Query(None),
            date_to: Optional[str] = Query(None),
            campaign_id: Optional[str] = Query(None),
            per: int = Query(FUNNEL_PAGE_SIZE, ge=1),
            timezone: Optional[str] = Query(None),
            refresh_marker: Optional[str] = Query(None, alias="_t"),
            force_refresh: Optional[str] = Query(None),
        ):
            """Click-to-conversion funnel for one campaign or all of them."""
            key = self._extract_api_key(request, api_key)
            date_from, date_to = self._validate_dates(date_from, date_to)

            campaigns = await self._call_upstream(self.redtrack_client.get_campaigns(
                key,
                date_from,
                date_to,
                per=per,
                timezone=timezone,
                force_refresh=self._wants_refresh(refresh_marker, force_refresh),
            ))
            return summarize_funnel(campaigns, campaign_id)


def create_app(config: Optional[ServiceConfig] = None, **kwargs):
    """Create FastAPI application."""
    service = RedTrackService(config, **kwargs)
    return service.app


if __name__ == "__main__":
    service = RedTrackService()
    service.run()
