"""
On-page metric definitions.

Additive counts come straight from SQL; rates are derived from them after
rows are collapsed, so they stay correct when rows are summed.
"""

from typing import Dict, Mapping, Optional

ACTIVE_TIME_EXPRESSION = "COALESCE(pv.time_on_page_final_ms / 1000.0, hb.cumulative_active_ms / 1000.0)"
BOUNCE_THRESHOLD_SECONDS = 5

# SQL alias -> aggregate expression
METRIC_SQL: Dict[str, str] = {
    "page_views": "COUNT(*)",
    "unique_visitors": "COUNT(DISTINCT s.visitor_id)",
    "bounced_count": (
        f"COUNT(*) FILTER (WHERE {ACTIVE_TIME_EXPRESSION} IS NOT NULL "
        f"AND {ACTIVE_TIME_EXPRESSION} < {BOUNCE_THRESHOLD_SECONDS})"
    ),
    "active_time_count": f"COUNT(*) FILTER (WHERE {ACTIVE_TIME_EXPRESSION} IS NOT NULL)",
    "total_active_time": f"COALESCE(SUM({ACTIVE_TIME_EXPRESSION}), 0)",
    "scroll_past_hero": "COUNT(*) FILTER (WHERE COALESCE(ev.hero_scroll_passed, false) = true)",
    "form_views": "COUNT(*) FILTER (WHERE COALESCE(ev.form_view, false) = true)",
    "form_starters": "COUNT(*) FILTER (WHERE COALESCE(ev.form_started, false) = true)",
}

METRIC_COLUMNS = tuple(METRIC_SQL)

# Client metric id -> SQL alias that can be ordered in the database
SORTABLE_COLUMNS: Dict[str, str] = {
    "pageViews": "page_views",
    "uniqueVisitors": "unique_visitors",
    "scrollPastHero": "scroll_past_hero",
    "formViews": "form_views",
    "formStarters": "form_starters",
}

CONVERSION_METRICS = frozenset({"trials", "approved", "approvalRate", "conversionRate"})

METRIC_IDS = (
    "pageViews",
    "uniqueVisitors",
    "bounceRate",
    "avgActiveTime",
    "scrollPastHero",
    "scrollRate",
    "formViews",
    "formViewRate",
    "formStarters",
    "formStartRate",
    "trials",
    "approved",
    "approvalRate",
    "conversionRate",
)

DEFAULT_SORT = "pageViews"


def _ratio(numerator: float, denominator: float, scale: float = 1.0) -> float:
    if not denominator:
        return 0.0
    return round(numerator * scale / denominator, 4)


def derive_metrics(row: Mapping[str, float], include_conversions: bool = False) -> Dict[str, float]:
    """Client-facing metric dict from additive counts."""
    page_views = row.get("page_views", 0)
    unique_visitors = row.get("unique_visitors", 0)
    active_count = row.get("active_time_count", 0)
    form_views = row.get("form_views", 0)
    metrics = {
        "pageViews": page_views,
        "uniqueVisitors": unique_visitors,
        "bounceRate": _ratio(row.get("bounced_count", 0), active_count, 100.0),
        "avgActiveTime": _ratio(row.get("total_active_time", 0), active_count),
        "scrollPastHero": row.get("scroll_past_hero", 0),
        "scrollRate": _ratio(row.get("scroll_past_hero", 0), page_views, 100.0),
        "formViews": form_views,
        "formViewRate": _ratio(form_views, page_views, 100.0),
        "formStarters": row.get("form_starters", 0),
        "formStartRate": _ratio(row.get("form_starters", 0), form_views, 100.0),
    }
    if include_conversions:
        trials = row.get("trials", 0)
        approved = row.get("approved", 0)
        metrics.update({
            "trials": trials,
            "approved": approved,
            "approvalRate": _ratio(approved, trials, 100.0),
            "conversionRate": _ratio(trials, unique_visitors, 100.0),
        })
    return metrics


def sort_column(metric_id: Optional[str]) -> str:
    """SQL alias used for database-side ordering (falls back to page views)."""
    return SORTABLE_COLUMNS.get(metric_id or DEFAULT_SORT, "page_views")
