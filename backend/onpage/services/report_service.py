"""
On-Page Report Service
======================

Runs hierarchical report, flat and detail queries end to end.

WHAT: Validates a query, builds the SQL for the selected mode, runs it on
      the behavioral store (and the conversion store when conversion
      metrics are asked for), then normalizes, attributes and sorts rows.
WHY:  Routers stay thin; every query path shares one validation and
      execution pipeline.
HOW:  Independent datastore calls run as one concurrent wave; a failure
      in any of them cancels the rest.

Report pipeline:
    validate -> select mode -> resolve dimensions (fail fast)
        |
        +-- wave 1: metrics aggregate
        |           + direct CRM query            (direct attribution)
        |           + tracking / visitor rows     (tracking attribution)
        +-- wave 2: CRM tracking + visitor queries (tracking attribution)
        |
    normalize -> collapse -> merge conversions -> report rows -> sort -> limit

Usage:
    >>> service = OnPageReportService(catalog, behavioral, conversion)
    >>> result = await service.run_report(query)
    >>> result.rows[0]["metrics"]["pageViews"]
    1204

References:
- onpage/query/modes.py: aggregate SQL per mode and shape
- onpage/services/attribution.py: CRM matching strategies
- onpage/query/normalizer.py: row shaping
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
import logging

from ..query.catalog import DimensionCatalog, QueryMode
from ..query.conversion import ConversionQueryBuilder
from ..query.detail import DetailQueryBuilder
from ..query.metrics import (
    DEFAULT_SORT,
    METRIC_COLUMNS,
    SORTABLE_COLUMNS,
    sort_column,
)
from ..query.model import DEFAULT_ROW_LIMIT, DetailQuery, FlatQuery, ReportQuery
from ..query.modes import AggregateRequest, AggregateShape, ModeBuilder, build_mode_builders, select_mode
from ..query.normalizer import (
    attribution_key,
    build_report_rows,
    collapse_rows,
    normalize_detail_record,
    normalize_rows,
    sort_report_rows,
    to_number,
)
from ..utils.aio import gather_cancelling
from .attribution import (
    AttributionMatcher,
    AttributionMode,
    AttributionPlan,
    ConversionIndex,
    canonical_source,
    plan_attribution,
)


logger = logging.getLogger(__name__)

TRACKING_PASSTHROUGH = ("tracking_source", "tracking_campaign_id", "tracking_adset_id", "tracking_ad_id")


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class ReportResult:
    """One level of a hierarchical report."""
    rows: List[Dict[str, Any]]
    dimension: str
    depth: int
    mode: QueryMode
    attribution: Optional[AttributionMode] = None


@dataclass
class FlatResult:
    rows: List[Dict[str, Any]]
    mode: QueryMode


@dataclass
class DetailResult:
    """Paginated page-view records behind one report cell."""
    records: List[Dict[str, Any]] = field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 100


# =============================================================================
# MATCHER ROW SHAPES
# =============================================================================

def tracking_match_rows(rows: Sequence[Mapping[str, Any]], dimension: str) -> List[Dict[str, Any]]:
    """Normalized TRACKING-shape rows -> rows the tracking matcher reads."""
    return [
        {
            "dimension_value": attribution_key(row, dimension),
            "source": row.get("tracking_source"),
            "campaign_id": row.get("tracking_campaign_id"),
            "adset_id": row.get("tracking_adset_id"),
            "ad_id": row.get("tracking_ad_id"),
            "unique_visitors": row.get("unique_visitors", 0),
        }
        for row in rows
    ]


def visitor_match_rows(rows: Sequence[Mapping[str, Any]], dimension: str) -> List[Dict[str, Any]]:
    """Normalized VISITORS-shape rows -> rows the visitor matcher reads."""
    return [
        {"dimension_value": attribution_key(row, dimension), "ff_visitor_id": row.get("visitor_id")}
        for row in rows
        if row.get("visitor_id")
    ]


def spelling_shares(rows: Sequence[Mapping[str, Any]], dimension: str) -> List[float]:
    """
    Share of its canonical source bucket each row receives.

    Rows spelling the same source differently (google / adwords) split the
    bucket by unique visitors, then page views, then evenly.
    """
    groups: Dict[str, List[int]] = {}
    for position, row in enumerate(rows):
        groups.setdefault(canonical_source(attribution_key(row, dimension)), []).append(position)

    shares = [1.0] * len(rows)
    for positions in groups.values():
        if len(positions) == 1:
            continue
        for column in ("unique_visitors", "page_views"):
            weights = [to_number(rows[p].get(column)) for p in positions]
            total = sum(weights)
            if total > 0:
                break
        else:
            weights, total = [1.0] * len(positions), float(len(positions))
        for position, weight in zip(positions, weights):
            shares[position] = weight / total
    return shares


def apply_conversions(
    rows: List[Dict[str, Any]],
    dimension: str,
    index: ConversionIndex,
    plan: AttributionPlan,
) -> None:
    """Write trials / approved onto each row; unmatched rows get zero."""
    fold_source = plan.mode is AttributionMode.DIRECT and plan.is_source
    shares = spelling_shares(rows, dimension) if fold_source else [1.0] * len(rows)
    for row, share in zip(rows, shares):
        key = attribution_key(row, dimension)
        if fold_source:
            key = canonical_source(key)
        totals = index.get(key)
        row["trials"] = round(totals.trials * share, 4) if totals else 0
        row["approved"] = round(totals.approved * share, 4) if totals else 0


# =============================================================================
# SERVICE
# =============================================================================

class OnPageReportService:
    """
    Query engine facade used by the on-page router.

    Holds no per-request state; one instance may serve concurrent requests.
    """

    def __init__(
        self,
        catalog: DimensionCatalog,
        behavioral,
        conversion,
        row_limit: int = DEFAULT_ROW_LIMIT,
        builders: Optional[Dict[QueryMode, ModeBuilder]] = None,
    ):
        self.catalog = catalog
        self.behavioral = behavioral
        self.conversion = conversion
        self.row_limit = row_limit
        self.builders = builders or build_mode_builders(catalog)
        self.matcher = AttributionMatcher(conversion, ConversionQueryBuilder())
        self.detail_builder = DetailQueryBuilder(catalog)

    # -------------------------------------------------------------------------
    # Report
    # -------------------------------------------------------------------------

    def _database_order(self, query: ReportQuery, limit: int) -> Tuple[Optional[str], Optional[int]]:
        """ORDER BY column and LIMIT the database may apply, if any."""
        if query.sort_by is None and query.current_dimension == "date":
            return None, None
        if (query.sort_by or DEFAULT_SORT) not in SORTABLE_COLUMNS:
            return None, None
        return sort_column(query.sort_by), limit

    async def run_report(self, query: ReportQuery) -> ReportResult:
        query.validate()
        mode = select_mode(self.catalog, query.dimensions, query.parent_filters)
        builder = self.builders[mode]
        builder.resolve_all(query.dimensions)

        dimension = query.current_dimension
        filters = query.all_filters()
        limit = min(query.limit, self.row_limit)
        order_by, sql_limit = self._database_order(query, limit)

        def aggregate(shape: AggregateShape) -> AggregateRequest:
            return AggregateRequest(
                date_range=query.date_range,
                dimensions=(dimension,),
                filters=filters,
                shape=shape,
                order_by=order_by,
                direction=query.sort_direction,
                limit=sql_limit,
            )

        metrics_query = builder.build(aggregate(AggregateShape.METRICS))
        logger.info(
            "[REPORT] %s depth=%d mode=%s parents=%s filters=%d",
            dimension, query.depth, mode.value, list(query.parent_filters), len(query.filters),
        )

        plan: Optional[AttributionPlan] = None
        index: ConversionIndex = {}
        if not query.wants_conversions:
            raw_rows = await self.behavioral.fetch_all(metrics_query)
        else:
            plan = plan_attribution(query)
            if plan.mode is AttributionMode.DIRECT:
                raw_rows, index = await gather_cancelling(
                    self.behavioral.fetch_all(metrics_query),
                    self.matcher.direct(plan, query),
                )
            else:
                raw_rows, raw_tracking, raw_visitors = await gather_cancelling(
                    self.behavioral.fetch_all(metrics_query),
                    self.behavioral.fetch_all(builder.build(aggregate(AggregateShape.TRACKING))),
                    self.behavioral.fetch_all(builder.build(aggregate(AggregateShape.VISITORS))),
                )
                tracking = collapse_rows(
                    normalize_rows(raw_tracking, (dimension,), ("unique_visitors",), TRACKING_PASSTHROUGH),
                    ("unique_visitors",),
                )
                visitors = collapse_rows(normalize_rows(raw_visitors, (dimension,), (), ("visitor_id",)), ())
                index = await self.matcher.reconcile(
                    plan,
                    query,
                    tracking_match_rows(tracking, dimension),
                    visitor_match_rows(visitors, dimension),
                )

        rows = collapse_rows(normalize_rows(raw_rows, (dimension,)), METRIC_COLUMNS)
        if plan is not None:
            apply_conversions(rows, dimension, index, plan)

        report = build_report_rows(
            rows,
            query.dimensions,
            query.depth,
            query.parent_filters,
            include_conversions=query.wants_conversions,
        )
        report = sort_report_rows(report, query.sort_by, query.sort_direction, dimension)[:limit]
        logger.info(
            "[REPORT] %s: %d rows (attribution=%s)",
            dimension, len(report), plan.mode.value if plan else "none",
        )
        return ReportResult(
            rows=report,
            dimension=dimension,
            depth=query.depth,
            mode=mode,
            attribution=plan.mode if plan else None,
        )

    # -------------------------------------------------------------------------
    # Flat
    # -------------------------------------------------------------------------

    async def run_flat(self, query: FlatQuery) -> FlatResult:
        """All dimensions grouped together; raw additive counts per row."""
        query.validate()
        mode = select_mode(self.catalog, query.dimensions)
        builder = self.builders[mode]
        builder.resolve_all(query.dimensions)

        compiled = builder.build(AggregateRequest(
            date_range=query.date_range,
            dimensions=tuple(query.dimensions),
            filters=tuple(query.filters),
        ))
        raw_rows = await self.behavioral.fetch_all(compiled)
        rows = collapse_rows(normalize_rows(raw_rows, query.dimensions), METRIC_COLUMNS)
        rows.sort(key=lambda r: tuple(r[d] for d in query.dimensions))
        rows.sort(key=lambda r: r["page_views"], reverse=True)
        rows = rows[: self.row_limit]
        logger.info("[REPORT] flat %s mode=%s: %d rows", list(query.dimensions), mode.value, len(rows))
        return FlatResult(rows=rows, mode=mode)

    # -------------------------------------------------------------------------
    # Detail
    # -------------------------------------------------------------------------

    async def run_detail(self, query: DetailQuery) -> DetailResult:
        query.validate()
        queries = self.detail_builder.build(query)
        data_rows, count_rows = await gather_cancelling(
            self.behavioral.fetch_all(queries.data),
            self.behavioral.fetch_all(queries.count),
        )
        total = int(to_number(count_rows[0].get("total"))) if count_rows else 0
        logger.info(
            "[REPORT] detail filters=%s metric=%s: %d of %d records",
            list(query.dimension_filters), query.metric_id, len(data_rows), total,
        )
        return DetailResult(
            records=[normalize_detail_record(row) for row in data_rows],
            total=total,
            page=query.page,
            page_size=query.page_size,
        )
