"""
Attribution Matcher
===================

Reconciles on-page dimension values with CRM conversions (trials /
approved) across two stores that share no foreign keys.

MODES
-----
DIRECT      The grouped dimension and every parent filter exist in the CRM
            vocabulary (source, campaign/adset/ad ids, country, date), and
            no table filters are applied. The CRM is grouped by the same
            column and buckets are matched by lower-cased value. Source
            aliases (adwords -> google, meta -> facebook) fold here only; on-page
            rows spelling one source differently split its bucket by
            unique visitors.

TRACKING    Anything else (device, URL path, funnel step, ...). Two
            best-effort strategies run and are merged per value:

            tracking  CRM rows grouped by (source, campaign, adset, ad) are
                      split across dimension values in proportion to the
                      unique visitors each value has for that tuple.
            visitor   CRM subscriptions carrying a visitor id are split
                      evenly across the dimension values that visitor
                      appeared in.

            A value takes its visitor result when non-zero, else its
            tracking result, else zero.

Tracking fields that are the grouped dimension or a parent filter are
left out of the tuple key; the behavioral side is already scoped by them.

Values with no CRM counterpart simply stay at zero. Sums across children
can differ from the parent total because of that and because of the
proportional split; see tests/test_attribution_tolerance.py for the bounds.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
import logging

from ..query.conversion import (
    CONVERSION_DIMENSIONS,
    TRACKING_FIELDS,
    ConversionQueryBuilder,
    is_matchable,
)
from ..query.modes import SOURCE_ALIASES
from ..query.model import ReportQuery
from ..utils.aio import gather_cancelling


logger = logging.getLogger(__name__)

TRACKING_KEY_FIELDS = ("source", "campaign_id", "adset_id", "ad_id")


# =============================================================================
# BUCKETS
# =============================================================================

@dataclass
class ConversionTotals:
    trials: float = 0.0
    approved: float = 0.0

    def add(self, trials: float, approved: float) -> None:
        self.trials += trials
        self.approved += approved

    @property
    def is_zero(self) -> bool:
        return not self.trials and not self.approved


ConversionIndex = Dict[str, ConversionTotals]


def bucket_key(value: Any) -> str:
    return "unknown" if value is None else str(value).lower()


def _number(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def canonical_source(value: str) -> str:
    lowered = value.lower()
    for canonical, variants in SOURCE_ALIASES.items():
        if lowered in variants:
            return canonical
    return lowered


def build_tracking_key(
    source: Optional[str],
    campaign_id: Optional[str],
    adset_id: Optional[str],
    ad_id: Optional[str],
    exclude_fields: Iterable[str] = (),
) -> str:
    """
    Join the tracking tuple with '::', omitting excluded fields.

    The CRM stores missing ids as the literal string 'null'; it and real
    NULLs both become ''.
    """
    excluded = set(exclude_fields)
    values = dict(zip(TRACKING_KEY_FIELDS, (source, campaign_id, adset_id, ad_id)))
    parts = []
    for name in TRACKING_KEY_FIELDS:
        if name in excluded:
            continue
        value = values[name]
        parts.append("" if value is None or value == "null" else str(value))
    return "::".join(parts)


def _tracking_key(row: Mapping[str, Any], exclude_fields: Iterable[str]) -> str:
    return build_tracking_key(*(row.get(name) for name in TRACKING_KEY_FIELDS), exclude_fields=exclude_fields)


# =============================================================================
# MATCHING STRATEGIES
# =============================================================================

def match_direct(crm_rows: Iterable[Mapping[str, Any]], is_source: bool = False) -> ConversionIndex:
    """Index CRM rows grouped by the equivalent column."""
    result: ConversionIndex = {}
    for row in crm_rows:
        key = bucket_key(row.get("dimension_value"))
        if is_source:
            key = canonical_source(key)
        result.setdefault(key, ConversionTotals()).add(_number(row.get("trials")), _number(row.get("approved")))
    return result


def match_by_tracking(
    crm_rows: Iterable[Mapping[str, Any]],
    behavioral_rows: Sequence[Mapping[str, Any]],
    exclude_fields: Iterable[str] = (),
) -> ConversionIndex:
    """Split each tracking tuple's conversions by unique-visitor share."""
    exclude_fields = tuple(exclude_fields)

    crm_index: ConversionIndex = {}
    for row in crm_rows:
        crm_index.setdefault(_tracking_key(row, exclude_fields), ConversionTotals()).add(
            _number(row.get("trials")), _number(row.get("approved"))
        )

    tuple_visitors: Dict[str, float] = {}
    for row in behavioral_rows:
        key = _tracking_key(row, exclude_fields)
        tuple_visitors[key] = tuple_visitors.get(key, 0.0) + _number(row.get("unique_visitors"))

    result: ConversionIndex = {}
    for row in behavioral_rows:
        key = _tracking_key(row, exclude_fields)
        crm = crm_index.get(key)
        if crm is None:
            continue
        total = tuple_visitors.get(key) or 1.0
        share = _number(row.get("unique_visitors")) / total
        result.setdefault(bucket_key(row.get("dimension_value")), ConversionTotals()).add(
            crm.trials * share, crm.approved * share
        )
    return result


def match_by_visitor(
    crm_rows: Iterable[Mapping[str, Any]],
    behavioral_rows: Sequence[Mapping[str, Any]],
) -> ConversionIndex:
    """Split each identified visitor's conversions evenly over their values."""
    crm_index: Dict[str, Tuple[float, float]] = {
        str(row["ff_vid"]): (_number(row.get("trials")), _number(row.get("approved")))
        for row in crm_rows
        if row.get("ff_vid") is not None
    }

    appearances: Dict[str, int] = {}
    for row in behavioral_rows:
        visitor = row.get("ff_visitor_id")
        if visitor in crm_index:
            appearances[visitor] = appearances.get(visitor, 0) + 1

    result: ConversionIndex = {}
    for row in behavioral_rows:
        visitor = row.get("ff_visitor_id")
        if visitor not in crm_index:
            continue
        trials, approved = crm_index[visitor]
        count = appearances.get(visitor) or 1
        result.setdefault(bucket_key(row.get("dimension_value")), ConversionTotals()).add(
            trials / count, approved / count
        )
    return result


def merge_matches(visitor: ConversionIndex, tracking: ConversionIndex) -> ConversionIndex:
    """Visitor result when non-zero, else tracking result."""
    merged: ConversionIndex = {}
    for key in set(visitor) | set(tracking):
        chosen = visitor.get(key)
        if chosen is None or chosen.is_zero:
            chosen = tracking.get(key, ConversionTotals())
        merged[key] = chosen
    return merged


# =============================================================================
# PLANNING
# =============================================================================

class AttributionMode(str, Enum):
    DIRECT = "direct"
    TRACKING = "tracking"


@dataclass(frozen=True)
class AttributionPlan:
    mode: AttributionMode
    dimension: str
    crm_parent_filters: Dict[str, str] = field(default_factory=dict)
    exclude_fields: Tuple[str, ...] = ()

    @property
    def is_source(self) -> bool:
        mapping = CONVERSION_DIMENSIONS.get(self.dimension)
        return bool(mapping and mapping.is_source)


def excluded_tracking_fields(dimension: str, parent_keys: Iterable[str]) -> Tuple[str, ...]:
    fields = []
    for dim in [dimension, *parent_keys]:
        name = TRACKING_FIELDS.get(dim)
        if name and name not in fields:
            fields.append(name)
    return tuple(f for f in TRACKING_KEY_FIELDS if f in fields)


def plan_attribution(query: ReportQuery) -> AttributionPlan:
    dimension = query.current_dimension
    crm_parents = {k: v for k, v in query.parent_filters.items() if is_matchable(k)}
    direct = (
        is_matchable(dimension)
        and len(crm_parents) == len(query.parent_filters)
        and not query.filters
    )
    if direct:
        return AttributionPlan(AttributionMode.DIRECT, dimension, crm_parents)
    return AttributionPlan(
        AttributionMode.TRACKING,
        dimension,
        crm_parents,
        excluded_tracking_fields(dimension, query.parent_filters),
    )


# =============================================================================
# MATCHER
# =============================================================================

class AttributionMatcher:
    """Runs CRM queries through the conversion store and matches buckets."""

    def __init__(self, store, queries: Optional[ConversionQueryBuilder] = None):
        self.store = store
        self.queries = queries or ConversionQueryBuilder()

    async def direct(self, plan: AttributionPlan, query: ReportQuery) -> ConversionIndex:
        compiled = self.queries.direct(query.date_range, plan.dimension, plan.crm_parent_filters)
        rows = await self.store.fetch_all(compiled)
        logger.info("[ATTRIBUTION] direct %s: %d CRM buckets", plan.dimension, len(rows))
        return match_direct(rows, is_source=plan.is_source)

    async def reconcile(
        self,
        plan: AttributionPlan,
        query: ReportQuery,
        tracking_rows: List[Mapping[str, Any]],
        visitor_rows: List[Mapping[str, Any]],
    ) -> ConversionIndex:
        """Second wave: CRM tracking + visitor queries restricted to observed keys."""
        pending = {}
        if tracking_rows:
            campaign_ids = None
            if "campaign_id" not in plan.exclude_fields:
                campaign_ids = {r.get("campaign_id") or "" for r in tracking_rows}
                if "" in campaign_ids:
                    campaign_ids.add("null")
            pending["tracking"] = self.queries.tracking(query.date_range, plan.crm_parent_filters, campaign_ids)
        visitor_ids = sorted({str(r["ff_visitor_id"]) for r in visitor_rows if r.get("ff_visitor_id")})
        if visitor_ids:
            pending["visitors"] = self.queries.visitors(query.date_range, plan.crm_parent_filters, visitor_ids)

        if not pending:
            return {}

        names = list(pending)
        results = await gather_cancelling(*(self.store.fetch_all(pending[n]) for n in names))
        fetched = dict(zip(names, results))

        tracking = match_by_tracking(fetched.get("tracking", []), tracking_rows, plan.exclude_fields)
        visitor = match_by_visitor(fetched.get("visitors", []), visitor_rows)
        logger.info(
            "[ATTRIBUTION] %s: tracking buckets=%d visitor buckets=%d",
            plan.dimension, len(tracking), len(visitor),
        )
        return merge_matches(visitor, tracking)
