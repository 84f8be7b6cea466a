"""
Row Normalizer
==============

Post-processing between the database and the HTTP response.

WHAT:
    normalize_rows      dates -> "YYYY-MM-DD" (UTC), NULL -> "Unknown",
                        metrics -> numbers (0 when missing/invalid),
                        enriched "_<dim>_id" sidecars preserved
    collapse_rows       merge rows that share every dimension value by
                        summing additive counts (window-dimension grouping)
    build_report_rows   hierarchical rows {key, attribute, depth,
                        hasChildren, metrics}
    normalize_detail_record
                        snake_case page-view record -> camelCase record

WHY:
    Both stores return drivers' native types (datetime, Decimal, None).
    The client only ever sees strings for dimensions and plain numbers for
    metrics, and drill-down keys must be stable across requests.
"""

from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .enrichment import EnrichedDimensionResolver, id_key
from .filters import UNKNOWN
from .metrics import METRIC_COLUMNS, derive_metrics


KEY_SEPARATOR = "::"


# =============================================================================
# VALUE COERCION
# =============================================================================

def format_dimension_value(value: Any) -> str:
    if value is None:
        return UNKNOWN
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def to_number(value: Any) -> float:
    """Coerce driver values to int/float; anything unusable becomes 0."""
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if value == value else 0
    if isinstance(value, Decimal):
        if not value.is_finite():
            return 0
        return int(value) if value == value.to_integral_value() else float(value)
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return 0
    return to_number(number)


# =============================================================================
# AGGREGATE ROWS
# =============================================================================

def normalize_rows(
    rows: Iterable[Mapping[str, Any]],
    dimensions: Sequence[str],
    metric_columns: Sequence[str] = METRIC_COLUMNS,
    passthrough: Sequence[str] = (),
) -> List[Dict[str, Any]]:
    normalized = []
    for row in rows:
        result: Dict[str, Any] = {}
        for dim in dimensions:
            result[dim] = format_dimension_value(row.get(dim))
            sidecar = row.get(id_key(dim))
            if sidecar is not None:
                result[id_key(dim)] = str(sidecar)
        for column in passthrough:
            value = row.get(column)
            result[column] = None if value is None else str(value)
        for column in metric_columns:
            result[column] = to_number(row.get(column))
        normalized.append(result)
    return normalized


def collapse_rows(rows: Iterable[Mapping[str, Any]], metric_columns: Sequence[str] = METRIC_COLUMNS) -> List[Dict[str, Any]]:
    """Sum additive columns of rows whose non-metric fields are identical."""
    merged: Dict[tuple, Dict[str, Any]] = {}
    for row in rows:
        identity = tuple(sorted((k, v) for k, v in row.items() if k not in metric_columns))
        existing = merged.get(identity)
        if existing is None:
            merged[identity] = dict(row)
            continue
        for column in metric_columns:
            existing[column] = existing.get(column, 0) + row.get(column, 0)
    return list(merged.values())


def row_key_value(row: Mapping[str, Any], dimension_id: str) -> str:
    """Drill-down key part: enriched raw id when present, else the value."""
    pair = EnrichedDimensionResolver.pair_from_row(row, dimension_id)
    return pair.raw_id if pair.raw_id is not None else pair.display_name


def attribution_key(row: Mapping[str, Any], dimension_id: str) -> str:
    """Lower-cased key used to join conversion buckets onto rows."""
    return row_key_value(row, dimension_id).lower()


def build_report_rows(
    rows: Iterable[Mapping[str, Any]],
    dimensions: Sequence[str],
    depth: int,
    parent_filters: Optional[Mapping[str, str]] = None,
    include_conversions: bool = False,
) -> List[Dict[str, Any]]:
    parent_filters = parent_filters or {}
    dimension = dimensions[depth]
    prefix = [parent_filters.get(d, UNKNOWN) for d in dimensions[:depth]]
    has_children = depth < len(dimensions) - 1

    report = []
    for row in rows:
        report.append({
            "key": KEY_SEPARATOR.join(prefix + [row_key_value(row, dimension)]),
            "attribute": row.get(dimension, UNKNOWN),
            "depth": depth,
            "hasChildren": has_children,
            "metrics": derive_metrics(row, include_conversions),
        })
    return report


def sort_report_rows(
    rows: List[Dict[str, Any]],
    sort_by: Optional[str],
    direction: str = "DESC",
    dimension: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Order rows by a metric with the key as a stable tie-break."""
    ordered = sorted(rows, key=lambda r: r["key"])
    descending = direction == "DESC"
    if sort_by is None and dimension == "date":
        return sorted(ordered, key=lambda r: r["attribute"], reverse=True)
    metric = sort_by or "pageViews"
    return sorted(ordered, key=lambda r: r["metrics"].get(metric, 0), reverse=descending)


# =============================================================================
# DETAIL RECORDS
# =============================================================================

DETAIL_FIELDS = (
    ("id", "id"),
    ("created_at", "createdAt"),
    ("url_path", "urlPath"),
    ("url_full", "urlFull"),
    ("ff_visitor_id", "ffVisitorId"),
    ("session_id", "sessionId"),
    ("device_type", "deviceType"),
    ("country_code", "countryCode"),
    ("page_type", "pageType"),
    ("utm_source", "utmSource"),
    ("utm_campaign", "utmCampaign"),
    ("utm_content", "utmContent"),
    ("utm_medium", "utmMedium"),
    ("utm_term", "utmTerm"),
    ("keyword", "keyword"),
    ("placement", "placement"),
    ("referrer", "referrer"),
    ("user_agent", "userAgent"),
    ("language", "language"),
    ("platform", "platform"),
    ("os_name", "osName"),
    ("browser_name", "browserName"),
    ("timezone", "timezone"),
    ("local_hour_of_day", "localHourOfDay"),
    ("form_errors_detail", "formErrorsDetail"),
)

DETAIL_NUMERIC_FIELDS = (
    ("visit_number", "visitNumber"),
    ("active_time_s", "activeTimeS"),
    ("scroll_percent", "scrollPercent"),
    ("fcp_s", "fcpS"),
    ("lcp_s", "lcpS"),
    ("tti_s", "ttiS"),
    ("dcl_s", "dclS"),
    ("load_s", "loadS"),
)

DETAIL_FLAG_FIELDS = (
    ("hero_scroll_passed", "heroScrollPassed"),
    ("form_view", "formView"),
    ("form_started", "formStarted"),
    ("cta_viewed", "ctaViewed"),
    ("cta_clicked", "ctaClicked"),
)


def normalize_detail_record(row: Mapping[str, Any]) -> Dict[str, Any]:
    record: Dict[str, Any] = {}
    for source, target in DETAIL_FIELDS:
        value = row.get(source)
        if isinstance(value, datetime):
            value = value.isoformat()
        elif value is not None and source in ("id", "session_id", "ff_visitor_id"):
            value = str(value)
        record[target] = value
    for source, target in DETAIL_NUMERIC_FIELDS:
        value = row.get(source)
        record[target] = None if value is None else to_number(value)
    for source, target in DETAIL_FLAG_FIELDS:
        record[target] = bool(row.get(source))
    record["formErrors"] = to_number(row.get("form_errors"))
    return record
