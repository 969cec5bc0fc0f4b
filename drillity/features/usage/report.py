"""
drillity/features/usage/report.py

AI matching usage report.

Summarizes the current month's ai_matches events and applies the
time-saved heuristic (hours saved per matched candidate at an hourly rate).
"""

from datetime import datetime
from typing import Optional

from drillity.core.clock import month_bounds, normalize_now
from drillity.core.config import settings
from drillity.features.usage.service import get_usage_events
from drillity.models.report import AIUsageReport


AI_MATCH_COUNTER = "ai_matches"


def _matches_found(event) -> int:
    metadata = event.metadata or {}
    value = metadata.get("matches_found", 0)
    return value if isinstance(value, int) and not isinstance(value, bool) else 0


def summarize_ai_usage(actor_id: str, now: Optional[datetime] = None) -> AIUsageReport:
    """Build the AI usage / ROI report for the calendar month containing `now`."""
    now = normalize_now(now)
    period_start, period_end = month_bounds(now)

    events = get_usage_events(
        actor_id,
        counter_key=AI_MATCH_COUNTER,
        start_time=period_start,
        end_time=period_end,
    )

    total_matches = sum(_matches_found(event) for event in events)
    total_cost = round(sum(event.cost_estimate for event in events), 4)
    free_runs = sum(1 for event in events if event.was_free)

    time_saved_hours = total_matches * settings.ROI_HOURS_PER_MATCH
    labor_value = round(time_saved_hours * settings.ROI_HOURLY_RATE_EUR, 2)
    net_savings = round(labor_value - total_cost, 2)
    roi_percent = round((net_savings / total_cost) * 100) if total_cost > 0 else None

    return AIUsageReport(
        actor_id=actor_id,
        period_start=period_start,
        runs=len(events),
        total_matches=total_matches,
        total_cost_eur=total_cost,
        free_runs=free_runs,
        paid_runs=len(events) - free_runs,
        time_saved_hours=time_saved_hours,
        labor_value_eur=labor_value,
        net_savings_eur=net_savings,
        roi_percent=roi_percent,
    )
