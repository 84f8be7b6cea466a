"""
Detail Query Builder
====================

Drill-through from one report cell to its page-view records.

WHAT:
    Given the dimension values that identify a cell (`dimensionFilters`)
    and optionally the metric that was clicked, builds a paginated data
    query and a matching count query.

    - Page-level dimensions filter the page view directly.
    - Entry-level dimensions are folded into ONE session sub-filter over
      the first page view of each session (aliases `fpv` / `s2`).
    - `classifiedProduct` / `classifiedCountry` filter through the URL
      classification table.
    - `metricId` narrows to page views that scored on that metric.

COUNTING:
    uniqueVisitors      one record per visitor (latest page view), count
                        distinct visitors
    entry filters set   one record per session (first matching page view),
                        count sessions
    otherwise           every page view, count page views

Values are matched exactly after case folding; "Unknown" matches NULL.
"""

from dataclasses import dataclass, field
from typing import List
import logging
import re

from .builder import CompiledQuery, SqlBuilder, and_join, date_range_sql
from .catalog import Aliases, DimensionCatalog, QueryMode, ResolvedDimension
from .filters import UNKNOWN
from .metrics import ACTIVE_TIME_EXPRESSION
from .model import DetailQuery
from .modes import FIRST_PAGE_VIEW_SELECT, HEARTBEAT_JOIN, SESSION_JOIN, product_join


logger = logging.getLogger(__name__)

ENTRY_SUBQUERY_ALIASES = Aliases(pv="fpv", s="s2")

FIRST_PAGE_VIEWS = f"({FIRST_PAGE_VIEW_SELECT}) fpv"

DETAIL_EVENTS_JOIN = (
    "LEFT JOIN LATERAL (SELECT "
    "MAX((e.event_properties->>'scroll_percent')::int) FILTER (WHERE e.event_name = 'page_scroll') AS scroll_percent, "
    "bool_or(e.event_name = 'element_signal' AND e.signal_id IN ('hero-section', 'hero') "
    "AND e.action = 'out_view') AS hero_scroll_passed, "
    "bool_or(e.event_name = 'form' AND e.action = 'visible') AS form_view, "
    "bool_or(e.event_name = 'form' AND e.action = 'started') AS form_started, "
    "bool_or(e.event_name = 'element_signal' AND e.signal_id LIKE 'CTA-%' AND e.action = 'in_view') AS cta_viewed, "
    "bool_or(e.event_name = 'element_signal' AND e.signal_id LIKE 'CTA-%' AND e.action = 'click') AS cta_clicked, "
    "COUNT(*) FILTER (WHERE e.event_name = 'form' AND e.action = 'errors') AS form_errors, "
    "(array_agg(e.event_properties) FILTER (WHERE e.event_name = 'form' AND e.action = 'errors'))[1] "
    "AS form_errors_detail "
    "FROM tracker_events e WHERE e.page_view_id = pv.page_view_id) ev ON true"
)

DETAIL_COLUMNS = (
    "pv.page_view_id AS id",
    "pv.viewed_at AS created_at",
    "pv.url_path",
    "pv.url_full",
    "s.visitor_id AS ff_visitor_id",
    "pv.session_id",
    "DENSE_RANK() OVER (PARTITION BY s.visitor_id ORDER BY s.created_at) AS visit_number",
    f"{ACTIVE_TIME_EXPRESSION} AS active_time_s",
    "ev.scroll_percent",
    "COALESCE(ev.hero_scroll_passed, false) AS hero_scroll_passed",
    "COALESCE(ev.form_view, false) AS form_view",
    "COALESCE(ev.form_started, false) AS form_started",
    "COALESCE(ev.cta_viewed, false) AS cta_viewed",
    "COALESCE(ev.cta_clicked, false) AS cta_clicked",
    "s.device_type",
    "s.country_code",
    "pv.page_type",
    "s.utm_source",
    "s.utm_campaign",
    "s.utm_content",
    "s.utm_medium",
    "s.utm_term",
    "s.keyword",
    "s.placement",
    "s.refferer AS referrer",
    "s.user_agent",
    "s.language",
    "NULL::text AS platform",
    "s.os_name",
    "s.browser_name",
    "pv.fcp_ms / 1000.0 AS fcp_s",
    "pv.lcp_ms / 1000.0 AS lcp_s",
    "pv.tti_ms / 1000.0 AS tti_s",
    "pv.dcl_ms / 1000.0 AS dcl_s",
    "pv.load_ms / 1000.0 AS load_s",
    "s.timezone",
    "EXTRACT(HOUR FROM pv.viewed_at AT TIME ZONE COALESCE(s.timezone, 'UTC'))::int AS local_hour_of_day",
    "COALESCE(ev.form_errors, 0) AS form_errors",
    "ev.form_errors_detail",
)

METRIC_FILTERS = {
    "scrollPastHero": "COALESCE(ev.hero_scroll_passed, false) = true",
    "formViews": "COALESCE(ev.form_view, false) = true",
    "formStarters": "COALESCE(ev.form_started, false) = true",
}

# Same predicates evaluated on a session's first page view
SESSION_METRIC_FILTERS = {
    "scrollPastHero": (
        "EXISTS (SELECT 1 FROM tracker_events e WHERE e.page_view_id = fpv.page_view_id "
        "AND e.event_name = 'element_signal' AND e.signal_id IN ('hero-section', 'hero') AND e.action = 'out_view')"
    ),
    "formViews": (
        "EXISTS (SELECT 1 FROM tracker_events e WHERE e.page_view_id = fpv.page_view_id "
        "AND e.event_name = 'form' AND e.action = 'visible')"
    ),
    "formStarters": (
        "EXISTS (SELECT 1 FROM tracker_events e WHERE e.page_view_id = fpv.page_view_id "
        "AND e.event_name = 'form' AND e.action = 'started')"
    ),
}

CLASSIFIED_UNKNOWN = (
    "pv.url_path NOT IN (SELECT uc_f.url_path FROM app_url_classifications uc_f WHERE uc_f.is_ignored = false)"
)


@dataclass
class DetailConditions:
    page: List[str] = field(default_factory=list)
    entry: List[str] = field(default_factory=list)
    joins: List[str] = field(default_factory=list)
    entry_needs_product: bool = False


@dataclass(frozen=True)
class DetailQueries:
    data: CompiledQuery
    count: CompiledQuery
    session_scoped: bool


class DetailQueryBuilder:
    """Builds the data + count query pair for a detail request."""

    def __init__(self, catalog: DimensionCatalog):
        self.catalog = catalog

    def _equals(self, resolved: ResolvedDimension, value: str, sql: SqlBuilder) -> str:
        if value == UNKNOWN:
            return f"{resolved.unknown_expression} IS NULL"
        return f"LOWER({resolved.filter_expression}::text) = LOWER({sql.bind(value)})"

    def _conditions(self, query: DetailQuery, sql: SqlBuilder) -> DetailConditions:
        conditions = DetailConditions()

        for dim_id, value in query.dimension_filters.items():
            if dim_id == "classifiedProduct":
                if value == UNKNOWN:
                    conditions.page.append(CLASSIFIED_UNKNOWN)
                else:
                    conditions.page.append(
                        "pv.url_path IN (SELECT uc_f.url_path FROM app_url_classifications uc_f "
                        "JOIN app_products ap_f ON uc_f.product_id = ap_f.id "
                        f"WHERE uc_f.is_ignored = false AND ap_f.id::text = {sql.bind(value)})"
                    )
                continue
            if dim_id == "classifiedCountry":
                if value == UNKNOWN:
                    conditions.page.append(CLASSIFIED_UNKNOWN)
                else:
                    conditions.page.append(
                        "pv.url_path IN (SELECT uc_f.url_path FROM app_url_classifications uc_f "
                        f"WHERE uc_f.is_ignored = false AND uc_f.country_code = {sql.bind(value)})"
                    )
                continue

            if self.catalog.is_entry_only(dim_id):
                resolved = self.catalog.resolve(dim_id, QueryMode.ENTRY, ENTRY_SUBQUERY_ALIASES)
                conditions.entry.append(self._equals(resolved, value, sql))
                if resolved.product_url:
                    conditions.entry_needs_product = True
                continue

            resolved = self.catalog.try_resolve(dim_id, QueryMode.PAGE_VIEW)
            if resolved is None:
                logger.debug("[DETAIL] Dropping filter on unknown dimension %s", dim_id)
                continue
            if resolved.product_url and not conditions.joins:
                conditions.joins.append(product_join(resolved.product_url))
            conditions.page.append(self._equals(resolved, value, sql))

        return conditions

    def build(self, query: DetailQuery) -> DetailQueries:
        sql = SqlBuilder(query.date_range.start, query.date_range.end)
        conditions = self._conditions(query, sql)

        session_joins = ["JOIN tracker_sessions s2 ON fpv.session_id = s2.session_id"]
        if conditions.entry_needs_product:
            session_joins.append(product_join("fpv.url_path"))
        session_source = f"{FIRST_PAGE_VIEWS} " + " ".join(session_joins)
        session_where = and_join([date_range_sql("s2.created_at")] + conditions.entry)
        session_scoped = bool(conditions.entry)

        where = [date_range_sql("pv.viewed_at")] + conditions.page
        if session_scoped:
            where.append(f"pv.session_id IN (SELECT fpv.session_id FROM {session_source} WHERE {session_where})")
        if query.metric_id in METRIC_FILTERS:
            where.append(METRIC_FILTERS[query.metric_id])

        from_clause = "\n".join(
            ["FROM tracker_page_views pv", SESSION_JOIN, HEARTBEAT_JOIN, DETAIL_EVENTS_JOIN] + conditions.joins
        )
        where_clause = "WHERE " + and_join(where)
        columns = ", ".join(DETAIL_COLUMNS)
        unique_visitors = query.metric_id == "uniqueVisitors"
        paging = f"LIMIT {sql.bind(query.page_size)} OFFSET {sql.bind(query.offset)}"

        if unique_visitors:
            data_sql = (
                f"SELECT * FROM (SELECT DISTINCT ON (s.visitor_id) {columns}\n{from_clause}\n{where_clause}\n"
                f"ORDER BY s.visitor_id, pv.viewed_at DESC) sub\nORDER BY created_at DESC\n{paging}"
            )
        elif session_scoped:
            data_sql = (
                f"SELECT * FROM (SELECT DISTINCT ON (pv.session_id) {columns}\n{from_clause}\n{where_clause}\n"
                f"ORDER BY pv.session_id, pv.viewed_at ASC) sub\nORDER BY created_at DESC\n{paging}"
            )
        else:
            data_sql = f"SELECT {columns}\n{from_clause}\n{where_clause}\nORDER BY pv.viewed_at DESC\n{paging}"

        if session_scoped:
            metric_filter = SESSION_METRIC_FILTERS.get(query.metric_id)
            counted = "COUNT(DISTINCT s2.visitor_id)" if unique_visitors else "COUNT(*)"
            count_sql = (
                f"SELECT {counted} AS total FROM {session_source} "
                f"WHERE {and_join([session_where, metric_filter])}"
            )
        else:
            counted = "COUNT(DISTINCT s.visitor_id)" if unique_visitors else "COUNT(*)"
            count_sql = f"SELECT {counted} AS total\n{from_clause}\n{where_clause}"

        params = sql.params
        logger.debug("[DETAIL] filters=%s metric=%s session_scoped=%s", list(query.dimension_filters), query.metric_id, session_scoped)
        return DetailQueries(
            data=CompiledQuery(sql=data_sql, params=_referenced(params, data_sql)),
            count=CompiledQuery(sql=count_sql, params=_referenced(params, count_sql)),
            session_scoped=session_scoped,
        )


def _referenced(params, statement: str):
    """Subset of a shared bind namespace that a statement actually uses."""
    return {name: value for name, value in params.items() if re.search(rf":{name}(?!\w)", statement)}
