"""
Domain helpers for the RedTrack service: report aggregation and ratios.
"""

from .reporting import (
    NO_CLICKS_MESSAGE,
    NO_CONVERSIONS_MESSAGE,
    calculate_ratios,
    campaign_period_ranges,
    detect_currency,
    summarize_campaign_periods,
    summarize_dashboard,
    summarize_funnel,
    summarize_performance,
    summarize_sources,
    with_empty_message,
)

__all__ = [
    "NO_CLICKS_MESSAGE",
    "NO_CONVERSIONS_MESSAGE",
    "calculate_ratios",
    "campaign_period_ranges",
    "detect_currency",
    "summarize_campaign_periods",
    "summarize_dashboard",
    "summarize_funnel",
    "summarize_performance",
    "summarize_sources",
    "with_empty_message",
]
