"""
Reshaping of RedTrack payloads into dashboard views.

Everything here is pure: callers fetch through the RedTrack client and pass
the decoded JSON in. RedTrack returns lists of rows for most endpoints but
sometimes a single object or an ``{"items": [...]}`` envelope, so every
entry point normalises its input with ``_rows`` first.
"""

from __future__ import annotations

from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Tuple


PERFORMANCE_TOP_N = 3
AD_ID_PLACEHOLDER = "{{ad.id}}"
CAMPAIGN_PERIODS = ("today", "yesterday", "this_month", "last_month")

_CAMPAIGN_STATUS = {1: "active", 2: "paused", 3: "deleted"}

NO_CONVERSIONS_MESSAGE = "No conversions found for the period."
NO_CLICKS_MESSAGE = "No clicks found for the period."
NO_CAMPAIGNS_MESSAGE = "No campaigns found"
DEFAULT_CURRENCY = "USD"


def _to_float(value: Any) -> float:
    if value is None or value == "":
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator else 0.0


def _rows(payload: Any) -> List[Dict[str, Any]]:
    if payload is None:
        return []
    if isinstance(payload, list):
        return [row for row in payload if isinstance(row, dict)]
    if isinstance(payload, dict):
        items = payload.get("items")
        if isinstance(items, list):
            return [row for row in items if isinstance(row, dict)]
        return [payload] if payload else []
    return []


def calculate_ratios(cost: float, revenue: float, clicks: float, conversions: float) -> Dict[str, float]:
    """Cost/return ratios shown next to every dashboard row.

    ``roi`` is a percentage, ``roas`` a plain multiple; each is 0 when its
    denominator is 0.
    """
    return {
        "cpc": _ratio(cost, clicks),
        "cpa": _ratio(cost, conversions),
        "roi": _ratio(revenue - cost, cost) * 100,
        "roas": _ratio(revenue, cost),
    }


class _Bucket:
    """Running totals for one campaign/ad/offer."""

    def __init__(self, key: str, name: str):
        self.key = key
        self.name = name
        self.ids: List[str] = []
        self.revenue = 0.0
        self.cost = 0.0
        self.payout = 0.0
        self.conversions = 0

    def add(self, conversion: Mapping[str, Any]) -> None:
        payout = _to_float(conversion.get("payout"))
        self.revenue += payout
        self.payout += payout
        self.cost += _to_float(conversion.get("cost"))
        self.conversions += 1

    def to_dict(self, with_ids: bool = False) -> Dict[str, Any]:
        ratios = calculate_ratios(self.cost, self.revenue, 0, self.conversions)
        payload: Dict[str, Any] = {
            "id": self.key,
            "name": self.name,
            "revenue": self.revenue,
            "conversions": self.conversions,
            "cost": self.cost,
            "payout": self.payout,
            "cpa": ratios["cpa"],
            "roi": ratios["roi"],
        }
        if with_ids:
            payload["id"] = self.ids[0] if self.ids else self.key
            payload["all_ids"] = list(self.ids)
        return payload


def _top(buckets: Iterable[_Bucket], limit: int, with_ids: bool = False) -> List[Dict[str, Any]]:
    ranked = sorted(buckets, key=lambda bucket: (-bucket.conversions, -bucket.revenue))
    return [bucket.to_dict(with_ids=with_ids) for bucket in ranked[:limit]]


def summarize_performance(conversions: Any, limit: int = PERFORMANCE_TOP_N) -> Dict[str, Any]:
    """Top campaigns, ads and offers by conversions (then revenue).

    Ads are grouped by name because RedTrack issues a new ``rt_ad_id`` each
    time an ad is duplicated; every id seen for a name is kept in
    ``all_ids``.
    """
    campaigns: Dict[str, _Bucket] = {}
    ads: Dict[str, _Bucket] = {}
    offers: Dict[str, _Bucket] = {}

    rows = _rows(conversions)
    for row in rows:
        campaign_id = row.get("campaign_id")
        if row.get("campaign") and campaign_id:
            key = str(campaign_id)
            campaigns.setdefault(key, _Bucket(key, row["campaign"])).add(row)

        ad_id = row.get("rt_ad_id")
        ad_name = row.get("rt_ad")
        if ad_name and ad_id and ad_id != AD_ID_PLACEHOLDER:
            bucket = ads.setdefault(ad_name, _Bucket(ad_name, ad_name))
            if str(ad_id) not in bucket.ids:
                bucket.ids.append(str(ad_id))
            bucket.add(row)

        offer_id = row.get("offer_id")
        if row.get("offer") and offer_id:
            key = str(offer_id)
            offers.setdefault(key, _Bucket(key, row["offer"])).add(row)

    return {
        "campaigns": _top(campaigns.values(), limit),
        "ads": _top(ads.values(), limit, with_ids=True),
        "offers": _top(offers.values(), limit),
        "totals": {
            "conversions": len(rows),
            "campaigns": len(campaigns),
            "ads": len(ads),
            "offers": len(offers),
        },
    }


def summarize_sources(report: Any) -> List[Dict[str, Any]]:
    """Traffic sources from ``/report?group_by=source``, busiest first."""
    sources = []
    for index, row in enumerate(_rows(report)):
        name = row.get("source") or row.get("rt_source") or row.get("source_title") or f"Source {index + 1}"
        clicks = _to_float(row.get("clicks"))
        conversions = _to_float(row.get("conversions"))
        revenue = _to_float(row.get("revenue"))
        cost = _to_float(row.get("cost", row.get("spend")))
        entry = {
            "name": name,
            "clicks": int(clicks),
            "conversions": int(conversions),
            "revenue": revenue,
            "cost": cost,
        }
        entry.update(calculate_ratios(cost, revenue, clicks, conversions))
        sources.append(entry)

    sources.sort(key=lambda entry: entry["clicks"], reverse=True)
    return sources


def summarize_dashboard(report: Any) -> Dict[str, Any]:
    """Headline totals from ``/report?group_by=date``."""
    revenue = cost = clicks = impressions = conversions = 0.0
    for row in _rows(report):
        revenue += _to_float(row.get("revenue"))
        cost += _to_float(row.get("cost", row.get("spend")))
        clicks += _to_float(row.get("clicks"))
        impressions += _to_float(row.get("impressions"))
        conversions += _to_float(row.get("conversions"))

    has_data = revenue > 0 or conversions > 0 or clicks > 0 or impressions > 0
    ratios = calculate_ratios(cost, revenue, clicks, conversions)

    summary = {
        "revenue": revenue,
        "conversions": int(conversions),
        "clicks": int(clicks),
        "impressions": int(impressions),
        "spend": cost,
        "profit": revenue - cost,
        "ctr": _ratio(clicks, impressions) * 100,
        "conversion_rate": _ratio(conversions, clicks) * 100,
        "epc": _ratio(revenue, clicks),
        "cpc": ratios["cpc"],
        "cpa": ratios["cpa"],
        "roi": ratios["roi"],
        "roas": ratios["roas"],
        "is_demo": not has_data,
    }
    summary["message"] = (
        "Live RedTrack data"
        if has_data
        else "New account: configure your campaigns in RedTrack to start seeing real data."
    )
    return summary


def campaign_status(status: Any) -> str:
    return _CAMPAIGN_STATUS.get(status, "inactive")


def campaign_period_ranges(today: date) -> Dict[str, Tuple[str, str]]:
    """Date ranges (inclusive, ISO strings) for each dashboard period."""
    yesterday = today - timedelta(days=1)
    first_of_month = today.replace(day=1)
    last_month_end = first_of_month - timedelta(days=1)
    last_month_start = last_month_end.replace(day=1)
    return {
        "today": (today.isoformat(), today.isoformat()),
        "yesterday": (yesterday.isoformat(), yesterday.isoformat()),
        "this_month": (first_of_month.isoformat(), today.isoformat()),
        "last_month": (last_month_start.isoformat(), last_month_end.isoformat()),
    }


def _period_totals(campaigns: List[Dict[str, Any]]) -> Dict[str, float]:
    ad_spend = sum(_to_float((campaign.get("stat") or {}).get("cost")) for campaign in campaigns)
    revenue = sum(_to_float((campaign.get("stat") or {}).get("revenue")) for campaign in campaigns)
    return {"ad_spend": ad_spend, "revenue": revenue, "roas": _ratio(revenue, ad_spend)}


def _top_campaigns(campaigns: List[Dict[str, Any]], limit: int = PERFORMANCE_TOP_N) -> List[Dict[str, Any]]:
    ranked = [
        {
            "name": campaign.get("title") or "",
            "conversions": _to_float((campaign.get("stat") or {}).get("conversions")),
            "revenue": _to_float((campaign.get("stat") or {}).get("revenue")),
        }
        for campaign in campaigns
    ]
    ranked.sort(key=lambda item: item["revenue"], reverse=True)
    return ranked[:limit]


def summarize_campaign_periods(periods: Mapping[str, Any]) -> Dict[str, Any]:
    """Period comparison cards plus the current campaign list.

    ``periods`` maps each name in ``CAMPAIGN_PERIODS`` to a ``/campaigns``
    payload; missing periods count as empty.
    """
    rows = {name: _rows(periods.get(name)) for name in CAMPAIGN_PERIODS}
    totals = {name: _period_totals(rows[name]) for name in CAMPAIGN_PERIODS}

    metric_categories = []
    for metric in ("ad_spend", "revenue", "roas"):
        values: List[Dict[str, Any]] = []
        for name in CAMPAIGN_PERIODS:
            value: Dict[str, Any] = {"period": name, "value": totals[name][metric]}
            if name == "today":
                value["trend"] = "fall" if totals["today"][metric] < totals["yesterday"][metric] else "rise"
            values.append(value)
        metric_categories.append({"type": metric, "values": values})

    return {
        "metric_categories": metric_categories,
        "performance_categories": [
            {
                "type": "campaigns",
                "values": [
                    {"type": "today", "values": _top_campaigns(rows["today"])},
                    {"type": "yesterday", "values": _top_campaigns(rows["yesterday"])},
                ],
            }
        ],
        "campaigns": [
            {
                "id": campaign.get("id"),
                "title": campaign.get("title"),
                "source_title": campaign.get("source_title") or "",
                "status": campaign_status(campaign.get("status")),
                "stat": campaign.get("stat") or {},
            }
            for campaign in rows["today"]
        ],
    }


def with_empty_message(payload: Any, message: str) -> Any:
    """Attach ``message`` to an empty listing so the dashboard can show it.

    An empty list becomes ``{"items": [], "total": 0, "message": ...}``; an
    envelope whose ``items`` is empty gets the message added. Anything else
    is returned unchanged.
    """
    if isinstance(payload, list) and not payload:
        return {"items": [], "total": 0, "message": message}
    if isinstance(payload, dict) and payload.get("items") == []:
        return {**payload, "message": message}
    return payload


_FUNNEL_FIELDS = (
    "clicks", "unique_clicks", "prelp_views", "lp_views", "lp_clicks", "offer_views",
    "offer_clicks", "conversions", "approved", "pending", "declined", "revenue", "cost",
)


def summarize_funnel(campaigns: Any, campaign_id: Any = None) -> Dict[str, Any]:
    """Click-to-conversion funnel built from ``/campaigns`` stats.

    Stages only appear when they have volume. Each stage's percentage is
    relative to the nearest earlier stage that has data (clicks when none
    does); the final stage counts approved conversions only.
    """
    rows = _rows(campaigns)
    if campaign_id:
        rows = [row for row in rows if str(row.get("id")) == str(campaign_id)]

    if not rows:
        return {
            "stages": [],
            "total_volume": 0,
            "total_conversion_rate": 0,
            "total_stages": 0,
            "summary": {"total_clicks": 0, "total_conversions": 0, "total_conversion_rate": "0%"},
            "message": NO_CAMPAIGNS_MESSAGE,
        }

    totals = {field: 0.0 for field in _FUNNEL_FIELDS}
    for row in rows:
        stat = row.get("stat") or {}
        for field in _FUNNEL_FIELDS:
            totals[field] += _to_float(stat.get(field))

    stages: List[Dict[str, Any]] = []
    base = totals["clicks"]

    def add_stage(name: str, value: float, description: str) -> None:
        nonlocal base
        percentage = 100.0 if name == "Clicks" else _ratio(value, base) * 100
        stages.append({"name": name, "value": value, "percentage": percentage, "description": description})
        base = value

    if totals["clicks"] > 0:
        add_stage("Clicks", totals["clicks"], "Total clicks received")
    if totals["prelp_views"] > 0:
        add_stage("Pre-LP", totals["prelp_views"], "Pre-landing page views")
    if totals["lp_views"] > 0:
        add_stage("LP", totals["lp_views"], "Landing page views")
    offer_value = totals["offer_views"] or totals["offer_clicks"]
    if offer_value > 0:
        add_stage("Offer", offer_value, "Offer views or clicks")
    if totals["approved"] > 0:
        add_stage("Conversion", totals["approved"], "Approved conversions")

    total_volume = stages[0]["value"] if stages else 0
    total_rate = _ratio(stages[-1]["value"], total_volume) * 100 if stages else 0.0

    return {
        "stages": stages,
        "total_volume": total_volume,
        "total_conversion_rate": total_rate,
        "total_stages": len(stages),
        "summary": {
            "total_clicks": totals["clicks"],
            "total_conversions": totals["approved"],
            "total_conversion_rate": f"{total_rate:.2f}%",
        },
        "campaigns": [
            {"id": row.get("id"), "title": row.get("title"), "source_title": row.get("source_title") or ""}
            for row in rows
        ],
    }


def detect_currency(settings: Any) -> Dict[str, Any]:
    """Work out which currency an account reports in from ``/me/settings``.

    Looks at ``currency``/``default_currency``, then a ``currency`` key on
    nested account objects, then currency codes inside string values, and
    falls back to USD.
    """
    settings = settings if isinstance(settings, dict) else {}
    details: Dict[str, Any] = {}
    detected = None

    for field in ("currency", "default_currency"):
        if settings.get(field):
            detected = settings[field]
            details["direct_field"] = field
            break

    if detected is None:
        for field in ("account", "user", "settings", "preferences"):
            nested = settings.get(field)
            if isinstance(nested, dict) and nested.get("currency"):
                detected = nested["currency"]
                details["nested_field"] = f"{field}.currency"
                break

    if detected is None:
        details["pattern_search"] = []
        for field, value in settings.items():
            if not isinstance(value, str):
                continue
            code = next((code for code in ("BRL", "USD", "EUR") if code in value), None)
            if code:
                detected = code
                details["pattern_search"].append(f"{field}: {code} found")
                break

    if detected is None:
        detected = DEFAULT_CURRENCY
        details["fallback"] = f"No currency detected, defaulting to {DEFAULT_CURRENCY}"

    return {
        "fields_count": len(settings),
        "fields_available": list(settings),
        "currency_detected": detected,
        "analysis_details": details,
    }
