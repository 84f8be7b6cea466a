"""
Query Mode Builders
===================

Builds the aggregate SQL for the three row granularities.

ARCHITECTURE
------------
```
AggregateRequest (dimensions, filters, shape)
    |
    v
select_mode()  ->  EntryModeBuilder | PageViewModeBuilder | FunnelModeBuilder
    |                      |
    |        DimensionCatalog.resolve()   (expressions per mode)
    |        FilterCompiler.compile()     (WHERE fragments)
    |        EnrichedDimensionResolver    (name join + sidecar ids)
    v
CompiledQuery (sql, params)
```

MODES
-----
ENTRY       `entry_pv` CTE keeps the first page view of every session
            (DISTINCT ON session_id ORDER BY viewed_at).
PAGE_VIEW   Every page view in range.
FUNNEL      `matching_sessions` CTE holds sessions whose entry page view
            passes the session-level filters, with just the entry columns
            the main query needs. The main query walks every page view of
            those sessions; `funnelStep` and `date` filters apply there.

SHAPES
------
METRICS     Dimension values + additive on-page counts (report rows).
TRACKING    Dimension values + normalized tracking tuple + unique visitors
            (input for proportional conversion attribution).
VISITORS    Dimension values + visitor id (input for visitor-id matching).

Window dimensions (visitNumber) are grouped by their partition keys; the
normalizer collapses the duplicate rows this produces.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
import logging

from .builder import CompiledQuery, SqlBuilder, and_join, date_range_sql
from .catalog import (
    Aliases,
    DEFAULT_ALIASES,
    FUNNEL_ALIASES,
    FUNNEL_CTE_ALIAS,
    ColumnRef,
    DimensionCatalog,
    QueryMode,
    ResolvedDimension,
    Stage,
)
from .enrichment import EnrichedDimensionResolver
from .filters import FilterClause, FilterCompiler
from .metrics import METRIC_SQL
from .model import DateRange


logger = logging.getLogger(__name__)


# =============================================================================
# SHARED SQL FRAGMENTS
# =============================================================================

# First page view of every session; entry mode and the detail session
# sub-filter both read it.
FIRST_PAGE_VIEW_SELECT = (
    "SELECT DISTINCT ON (session_id) * FROM tracker_page_views ORDER BY session_id, viewed_at ASC"
)

ENTRY_CTE = f"entry_pv AS ({FIRST_PAGE_VIEW_SELECT})"

SESSION_JOIN = "JOIN tracker_sessions s ON pv.session_id = s.session_id"

HEARTBEAT_JOIN = (
    "LEFT JOIN LATERAL (SELECT MAX(cumulative_active_ms) AS cumulative_active_ms "
    "FROM tracker_raw_heartbeats rh WHERE rh.page_view_id = pv.page_view_id) hb ON true"
)

EVENTS_JOIN = (
    "LEFT JOIN LATERAL (SELECT "
    "bool_or(e.event_name = 'element_signal' AND e.signal_id IN ('hero-section', 'hero') "
    "AND e.action = 'out_view') AS hero_scroll_passed, "
    "bool_or(e.event_name = 'form' AND e.action = 'visible') AS form_view, "
    "bool_or(e.event_name = 'form' AND e.action = 'started') AS form_started "
    "FROM tracker_events e WHERE e.page_view_id = pv.page_view_id) ev ON true"
)

# Source spellings that refer to the same ad network on both stores.
SOURCE_ALIASES: Dict[str, Tuple[str, ...]] = {
    "google": ("google", "adwords"),
    "facebook": ("facebook", "meta"),
}


def normalized_source_sql(column: str) -> str:
    """CASE expression folding source aliases to their canonical name."""
    whens = " ".join(
        "WHEN LOWER({col}) IN ({values}) THEN '{canonical}'".format(
            col=column,
            values=", ".join(f"'{v}'" for v in variants),
            canonical=canonical,
        )
        for canonical, variants in SOURCE_ALIASES.items()
    )
    return f"CASE {whens} ELSE LOWER(COALESCE({column}, '')) END"


TRACKING_COLUMNS: Tuple[Tuple[str, str], ...] = (
    ("tracking_source", normalized_source_sql("s.utm_source")),
    ("tracking_campaign_id", "COALESCE(s.utm_campaign::text, '')"),
    ("tracking_adset_id", "COALESCE(s.utm_content::text, '')"),
    ("tracking_ad_id", "COALESCE(s.utm_medium::text, '')"),
)


def product_join(url_expression: str) -> str:
    return (
        f"LEFT JOIN app_url_classifications uc ON {url_expression} = uc.url_path AND uc.is_ignored = false "
        "LEFT JOIN app_products ap ON uc.product_id = ap.id"
    )


# =============================================================================
# REQUEST / SHAPE
# =============================================================================

class AggregateShape(str, Enum):
    METRICS = "metrics"
    TRACKING = "tracking"
    VISITORS = "visitors"


@dataclass(frozen=True)
class AggregateRequest:
    """What one aggregate query should group, filter and return."""
    date_range: DateRange
    dimensions: Tuple[str, ...]
    filters: Tuple[FilterClause, ...] = ()
    shape: AggregateShape = AggregateShape.METRICS
    order_by: Optional[str] = None
    direction: str = "DESC"
    limit: Optional[int] = None


def select_mode(catalog: DimensionCatalog, dimensions: Iterable[str], parent_keys: Iterable[str] = ()) -> QueryMode:
    """
    Pick the row granularity.

    funnelStep anywhere -> FUNNEL; any entry-only dimension -> ENTRY;
    otherwise PAGE_VIEW.
    """
    ids = list(dimensions) + list(parent_keys)
    if "funnelStep" in ids:
        return QueryMode.FUNNEL
    if any(catalog.is_entry_only(d) for d in ids):
        return QueryMode.ENTRY
    return QueryMode.PAGE_VIEW


# =============================================================================
# BUILDERS
# =============================================================================

class ModeBuilder:
    """Shared SELECT / GROUP BY assembly."""

    mode: QueryMode = QueryMode.PAGE_VIEW

    def __init__(
        self,
        catalog: DimensionCatalog,
        filters: Optional[FilterCompiler] = None,
        enrichment: Optional[EnrichedDimensionResolver] = None,
    ):
        self.catalog = catalog
        self.filters = filters or FilterCompiler(catalog)
        self.enrichment = enrichment or EnrichedDimensionResolver()

    # -- public ---------------------------------------------------------

    def build(self, request: AggregateRequest) -> CompiledQuery:
        raise NotImplementedError

    def resolve_all(self, dimension_ids: Sequence[str], aliases: Aliases = DEFAULT_ALIASES) -> List[ResolvedDimension]:
        return [self.catalog.resolve(d, self.mode, aliases) for d in dimension_ids]

    # -- helpers --------------------------------------------------------

    def _dimension_parts(self, resolved: Sequence[ResolvedDimension]) -> Tuple[List[str], List[str]]:
        select: List[str] = []
        group_by: List[str] = []
        for dim in resolved:
            if dim.enriched is not None:
                parts = self.enrichment.select_parts(dim)
                select.extend(parts.select)
                group_by.extend(parts.group_by)
            else:
                select.append(f'{dim.expression} AS "{dim.id}"')
                group_by.extend(dim.group_by)
        return select, group_by

    def _shape_parts(self, shape: AggregateShape) -> Tuple[List[str], List[str], List[str]]:
        """(select items, extra group by, extra where) for a shape."""
        if shape is AggregateShape.TRACKING:
            select = [f"{expr} AS {alias}" for alias, expr in TRACKING_COLUMNS]
            select.append(f"{METRIC_SQL['unique_visitors']} AS unique_visitors")
            return select, [expr for _, expr in TRACKING_COLUMNS], []
        if shape is AggregateShape.VISITORS:
            return ["s.visitor_id::text AS visitor_id"], ["s.visitor_id"], ["s.visitor_id IS NOT NULL"]
        return [f"{expr} AS {alias}" for alias, expr in METRIC_SQL.items()], [], []

    def _metric_joins(self, shape: AggregateShape) -> List[str]:
        if shape is AggregateShape.METRICS:
            return [HEARTBEAT_JOIN, EVENTS_JOIN]
        return []

    def _product_join_url(
        self,
        resolved: Sequence[ResolvedDimension],
        filters: Sequence[FilterClause],
        mode: QueryMode,
        aliases: Aliases,
    ) -> Optional[str]:
        for dim in resolved:
            if dim.product_url:
                return dim.product_url
        for f in filters:
            dim = self.catalog.try_resolve(f.field, mode, aliases)
            if dim is not None and dim.product_url:
                return dim.product_url
        return None

    def _tail(self, request: AggregateRequest, resolved: Sequence[ResolvedDimension], sql: SqlBuilder) -> str:
        """ORDER BY / LIMIT for metric aggregates without window grouping."""
        if request.shape is not AggregateShape.METRICS or any(d.is_window for d in resolved):
            return ""
        parts = []
        if request.order_by:
            parts.append(f"ORDER BY {request.order_by} {request.direction} NULLS LAST")
        if request.limit:
            parts.append(f"LIMIT {sql.bind(request.limit)}")
        return " ".join(parts)

    def _assemble(
        self,
        *,
        cte: List[str],
        select: List[str],
        source: str,
        joins: List[str],
        where: List[str],
        group_by: List[str],
        tail: str,
    ) -> str:
        statement = []
        if cte:
            statement.append("WITH " + ", ".join(cte))
        statement.append("SELECT " + ", ".join(select))
        statement.append(f"FROM {source}")
        statement.extend(j for j in joins if j)
        statement.append("WHERE " + and_join(where))
        statement.append("GROUP BY " + ", ".join(_dedupe(group_by)))
        if tail:
            statement.append(tail)
        return "\n".join(statement)


class _FlatModeBuilder(ModeBuilder):
    """Entry and page-view modes differ only in source table and date column."""

    source = "tracker_page_views pv"
    date_column = "pv.viewed_at"
    cte: Tuple[str, ...] = ()

    def build(self, request: AggregateRequest) -> CompiledQuery:
        sql = SqlBuilder(request.date_range.start, request.date_range.end)
        resolved = self.resolve_all(request.dimensions)

        dim_select, group_by = self._dimension_parts(resolved)
        shape_select, shape_group, shape_where = self._shape_parts(request.shape)

        joins = [SESSION_JOIN] + self._metric_joins(request.shape)
        joins.append(self.enrichment.build_join(resolved))
        product_url = self._product_join_url(resolved, request.filters, self.mode, DEFAULT_ALIASES)
        if product_url:
            joins.append(product_join(product_url))

        where = [date_range_sql(self.date_column)]
        where.append(self.filters.compile(request.filters, self.mode, sql))
        where.extend(shape_where)

        statement = self._assemble(
            cte=list(self.cte),
            select=dim_select + shape_select,
            source=self.source,
            joins=joins,
            where=where,
            group_by=group_by + shape_group,
            tail=self._tail(request, resolved, sql),
        )
        logger.debug("[MODES] %s query over %s (%s)", self.mode.value, list(request.dimensions), request.shape.value)
        return sql.finish(statement)


class EntryModeBuilder(_FlatModeBuilder):
    mode = QueryMode.ENTRY
    source = "entry_pv pv"
    date_column = "s.created_at"
    cte = (ENTRY_CTE,)


class PageViewModeBuilder(_FlatModeBuilder):
    mode = QueryMode.PAGE_VIEW


class FunnelModeBuilder(ModeBuilder):
    """All page views of sessions whose entry page view matches."""

    mode = QueryMode.FUNNEL

    def split_filters(self, filters: Sequence[FilterClause]) -> Tuple[List[FilterClause], List[FilterClause]]:
        """(session-stage, step-stage) filters; unknown fields are dropped."""
        session: List[FilterClause] = []
        step: List[FilterClause] = []
        for f in filters:
            definition = self.catalog.definition(f.field, QueryMode.FUNNEL)
            if definition is None:
                continue
            if definition.stage is Stage.STEP:
                step.append(f)
            elif self.catalog.has(f.field, QueryMode.ENTRY):
                session.append(f)
        return session, step

    def cte_projection(self, resolved: Sequence[ResolvedDimension]) -> List[str]:
        items = ["pv.session_id"]
        names = {"session_id"}
        columns: List[ColumnRef] = []
        for dim in resolved:
            if dim.stage is Stage.STEP:
                continue
            if dim.cte_projection:
                items.append(dim.cte_projection)
                continue
            columns.extend(dim.columns)
        columns.extend(self.enrichment.join_raw_columns(resolved))
        for column in columns:
            if column.name in names:
                continue
            names.add(column.name)
            items.append(column.render(DEFAULT_ALIASES))
        return items

    def build(self, request: AggregateRequest) -> CompiledQuery:
        sql = SqlBuilder(request.date_range.start, request.date_range.end)
        resolved = self.resolve_all(request.dimensions, FUNNEL_ALIASES)
        session_filters, step_filters = self.split_filters(request.filters)

        # matching_sessions CTE
        cte_joins = [SESSION_JOIN]
        cte_product_url = self._product_join_url((), session_filters, QueryMode.ENTRY, DEFAULT_ALIASES)
        if cte_product_url:
            cte_joins.append(product_join(cte_product_url))
        cte_where = and_join([
            date_range_sql("s.created_at"),
            self.filters.compile(session_filters, QueryMode.ENTRY, sql),
        ])
        matching_sessions = (
            "matching_sessions AS (SELECT "
            + ", ".join(self.cte_projection(resolved))
            + " FROM entry_pv pv "
            + " ".join(cte_joins)
            + f" WHERE {cte_where})"
        )

        dim_select, group_by = self._dimension_parts(resolved)
        shape_select, shape_group, shape_where = self._shape_parts(request.shape)

        joins = [SESSION_JOIN] + self._metric_joins(request.shape)
        joins.append(f"JOIN matching_sessions {FUNNEL_CTE_ALIAS} ON pv.session_id = {FUNNEL_CTE_ALIAS}.session_id")
        joins.append(self.enrichment.build_join(resolved, FUNNEL_ALIASES))
        product_url = self._product_join_url(resolved, (), QueryMode.FUNNEL, FUNNEL_ALIASES)
        if product_url:
            joins.append(product_join(product_url))

        where = [date_range_sql("pv.viewed_at")]
        where.append(self.filters.compile(step_filters, QueryMode.FUNNEL, sql))
        where.extend(shape_where)

        statement = self._assemble(
            cte=[ENTRY_CTE, matching_sessions],
            select=dim_select + shape_select,
            source="tracker_page_views pv",
            joins=joins,
            where=where,
            group_by=group_by + shape_group,
            tail=self._tail(request, resolved, sql),
        )
        logger.debug("[MODES] funnel query over %s (%s)", list(request.dimensions), request.shape.value)
        return sql.finish(statement)


def build_mode_builders(
    catalog: DimensionCatalog,
    filters: Optional[FilterCompiler] = None,
    enrichment: Optional[EnrichedDimensionResolver] = None,
) -> Dict[QueryMode, ModeBuilder]:
    filters = filters or FilterCompiler(catalog)
    enrichment = enrichment or EnrichedDimensionResolver()
    return {
        QueryMode.ENTRY: EntryModeBuilder(catalog, filters, enrichment),
        QueryMode.PAGE_VIEW: PageViewModeBuilder(catalog, filters, enrichment),
        QueryMode.FUNNEL: FunnelModeBuilder(catalog, filters, enrichment),
    }


def _dedupe(items: Iterable[str]) -> List[str]:
    seen = set()
    out = []
    for item in items:
        if item in seen:
            continue
        seen.add(item)
        out.append(item)
    return out
