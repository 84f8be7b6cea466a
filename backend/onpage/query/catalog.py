"""
Dimension Catalog
=================

Single source of truth for every dimension the drill-down engine can group
or filter by.

WHAT:
    Maps dimension ids (as the UI sends them, e.g. "entryCampaign",
    "deviceType", "funnelStep") to the SQL expression that computes them
    in each query mode:

        ENTRY       one row per session (its first page view)
        PAGE_VIEW   one row per page view
        FUNNEL      every page view of sessions whose first page view
                    matches the entry-level filters

WHY:
    Builders, the filter compiler and the detail path all need the same
    expressions. Keeping them here means a new dimension is one entry,
    and a dimension that is not valid for a mode fails loudly with
    UnknownDimension instead of producing SQL that errors at runtime.

HOW ALIASES WORK:
    Expressions are templates over two table aliases, `{pv}` (page view)
    and `{s}` (session). Rendering with different Aliases lets the same
    definition serve the entry CTE, the detail session sub-filter (`fpv`,
    `s2`) and the funnel matching-sessions CTE (`ms` for both). The funnel
    map is derived from the entry map this way; only `funnelStep`, `date`
    and `visitNumber` are written out by hand.

RELATED FILES
-------------
- onpage/query/modes.py: consumes resolved dimensions to build aggregates
- onpage/query/filters.py: consumes filter expressions
- onpage/query/enrichment.py: name join for EnrichedSpec dimensions
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import FrozenSet, Iterable, Mapping, Optional, Tuple

from .errors import unknown_dimension


# =============================================================================
# MODES AND ALIASES
# =============================================================================

class QueryMode(str, Enum):
    """Row granularity of an aggregate query."""
    ENTRY = "entry"
    PAGE_VIEW = "pageView"
    FUNNEL = "funnel"


class Stage(str, Enum):
    """
    Where a funnel-mode filter applies.

    SESSION filters narrow the matching-sessions CTE (entry attributes).
    STEP filters narrow the page views inside those sessions.
    """
    SESSION = "session"
    STEP = "step"


@dataclass(frozen=True)
class Aliases:
    """Table aliases substituted into expression templates."""
    pv: str = "pv"
    s: str = "s"

    def render(self, template: str) -> str:
        return template.format(pv=self.pv, s=self.s)


DEFAULT_ALIASES = Aliases()
FUNNEL_CTE_ALIAS = "ms"
FUNNEL_ALIASES = Aliases(pv=FUNNEL_CTE_ALIAS, s=FUNNEL_CTE_ALIAS)


@dataclass(frozen=True)
class ColumnRef:
    """A physical column on the page-view ("pv") or session ("s") table."""
    table: str
    name: str

    def render(self, aliases: Aliases = DEFAULT_ALIASES) -> str:
        alias = aliases.pv if self.table == "pv" else aliases.s
        return f"{alias}.{self.name}"


@dataclass(frozen=True)
class EnrichedSpec:
    """
    Name lookup for a tracking-id dimension.

    `level` orders specificity (campaign < adset < ad); the enrichment
    resolver joins on the most specific level requested.
    """
    level: str
    id_column: str
    name_column: str
    raw: ColumnRef


CAMPAIGN = EnrichedSpec("campaign", "campaign_id", "campaign_name", ColumnRef("s", "utm_campaign"))
ADSET = EnrichedSpec("adset", "adset_id", "adset_name", ColumnRef("s", "utm_content"))
AD = EnrichedSpec("ad", "ad_id", "ad_name", ColumnRef("s", "utm_medium"))

ENRICHMENT_LEVELS: Tuple[EnrichedSpec, ...] = (CAMPAIGN, ADSET, AD)


# =============================================================================
# DIMENSION DEFINITIONS
# =============================================================================

@dataclass(frozen=True)
class DimensionDef:
    """
    Template-level definition of one dimension in one mode.

    ATTRIBUTES:
        id: Dimension id as sent by the client
        expression: SELECT/GROUP BY expression template
        columns: Physical columns the expression reads (funnel CTE projection)
        enriched: Name lookup spec for tracking-id dimensions
        partition_by: Non-empty for window dimensions; rows are grouped by
            these instead of the window expression
        filter_expression: WHERE-safe replacement when `expression` is not
            legal in WHERE (window functions)
        null_test: Column tested for "Unknown" when `expression` maps NULL
            to a label of its own
        product_url: URL column template when the product join is needed
        stage: Funnel filter placement
        cte_projection: Explicit matching-sessions CTE select item
    """
    id: str
    expression: str
    columns: Tuple[ColumnRef, ...] = ()
    enriched: Optional[EnrichedSpec] = None
    partition_by: Tuple[str, ...] = ()
    filter_expression: Optional[str] = None
    null_test: Optional[str] = None
    product_url: Optional[str] = None
    stage: Stage = Stage.SESSION
    cte_projection: Optional[str] = None


@dataclass(frozen=True)
class ResolvedDimension:
    """A dimension rendered for a concrete mode and alias set."""
    id: str
    mode: QueryMode
    expression: str
    filter_expression: str
    group_by: Tuple[str, ...]
    null_test: Optional[str] = None
    columns: Tuple[ColumnRef, ...] = ()
    enriched: Optional[EnrichedSpec] = None
    product_url: Optional[str] = None
    stage: Stage = Stage.SESSION
    cte_projection: Optional[str] = None

    @property
    def is_window(self) -> bool:
        return self.group_by != (self.expression,)

    @property
    def unknown_expression(self) -> str:
        """Expression that is NULL exactly for the "Unknown" rows."""
        return self.null_test or self.filter_expression


def clean_url(column: str) -> str:
    """Strip the protocol from a URL column for display."""
    return f"REGEXP_REPLACE({column}, '^https?://', '')"


def bot_score_bucket(prefix: str) -> str:
    return (
        f"CASE WHEN {prefix}.bot_score >= 0.8 THEN 'High Risk' "
        f"WHEN {prefix}.bot_score >= 0.5 THEN 'Medium Risk' "
        f"WHEN {prefix}.bot_score IS NOT NULL THEN 'Low Risk' "
        f"ELSE 'Unknown' END"
    )


def _bot_score(dim_id: str) -> DimensionDef:
    return DimensionDef(
        dim_id,
        bot_score_bucket("{s}"),
        columns=(ColumnRef("s", "bot_score"),),
        null_test="{s}.bot_score",
    )


PRODUCT_EXPRESSION = "COALESCE(ap.name, 'Unclassified')"

VISIT_NUMBER_WINDOW = "DENSE_RANK() OVER (PARTITION BY {s}.visitor_id ORDER BY {s}.created_at)"

# Non-window rank: the visitor's distinct session starts from the range start
# up to and including this session.
VISIT_NUMBER_FILTER = (
    "(SELECT COUNT(DISTINCT vn.created_at) FROM tracker_sessions vn "
    "WHERE vn.visitor_id = {s}.visitor_id "
    "AND vn.created_at >= CAST(:start_date AS date) "
    "AND vn.created_at <= {s}.created_at)"
)

LOCAL_HOUR = "EXTRACT(HOUR FROM {pv}.viewed_at AT TIME ZONE COALESCE({s}.timezone, 'UTC'))::int"


def _column(dim_id: str, table: str, name: str, enriched: Optional[EnrichedSpec] = None) -> DimensionDef:
    ref = ColumnRef(table, name)
    return DimensionDef(
        id=dim_id,
        expression="{" + table + "}." + name,
        columns=(ref,),
        enriched=enriched,
    )


def _visit_number() -> DimensionDef:
    return DimensionDef(
        id="visitNumber",
        expression=VISIT_NUMBER_WINDOW,
        columns=(ColumnRef("s", "visitor_id"), ColumnRef("s", "created_at")),
        partition_by=("{s}.visitor_id", "{s}.created_at"),
        filter_expression=VISIT_NUMBER_FILTER,
    )


def _entry_definitions() -> Tuple[DimensionDef, ...]:
    url = ColumnRef("pv", "url_path")
    return (
        DimensionDef("entryUrlPath", clean_url("{pv}.url_path"), columns=(url,)),
        _column("entryPageType", "pv", "page_type"),
        DimensionDef("entryProduct", PRODUCT_EXPRESSION, columns=(url,), product_url="{pv}.url_path"),
        _column("entryUtmSource", "s", "utm_source"),
        _column("entryCampaign", "s", "utm_campaign", CAMPAIGN),
        _column("entryAdset", "s", "utm_content", ADSET),
        _column("entryAd", "s", "utm_medium", AD),
        _column("entryWebmasterId", "s", "utm_medium"),
        _column("entryUtmTerm", "s", "utm_term"),
        _column("entryKeyword", "s", "keyword"),
        _column("entryPlacement", "s", "placement"),
        _column("entryReferrer", "s", "refferer"),
        _column("funnelId", "s", "ff_funnel_id"),
        _column("entryCountryCode", "s", "country_code"),
        _column("entryDeviceType", "s", "device_type"),
        _column("entryOsName", "s", "os_name"),
        _column("entryBrowserName", "s", "browser_name"),
        _bot_score("entryBotScore"),
        _visit_number(),
        DimensionDef("date", "{s}.created_at::date", columns=(ColumnRef("s", "created_at"),)),
    )


def _page_view_definitions() -> Tuple[DimensionDef, ...]:
    url = ColumnRef("pv", "url_path")
    return (
        DimensionDef("urlPath", clean_url("{pv}.url_path"), columns=(url,)),
        _column("pageType", "pv", "page_type"),
        DimensionDef("product", PRODUCT_EXPRESSION, columns=(url,), product_url="{pv}.url_path"),
        _column("utmSource", "s", "utm_source"),
        _column("campaign", "s", "utm_campaign", CAMPAIGN),
        _column("adset", "s", "utm_content", ADSET),
        _column("ad", "s", "utm_medium", AD),
        _column("webmasterId", "s", "utm_medium"),
        _column("utmTerm", "s", "utm_term"),
        _column("keyword", "s", "keyword"),
        _column("placement", "s", "placement"),
        _column("referrer", "s", "refferer"),
        _column("funnelId", "s", "ff_funnel_id"),
        _column("countryCode", "s", "country_code"),
        _column("deviceType", "s", "device_type"),
        _column("osName", "s", "os_name"),
        _column("browserName", "s", "browser_name"),
        _column("timezone", "s", "timezone"),
        _bot_score("botScore"),
        DimensionDef("localHour", LOCAL_HOUR, columns=(ColumnRef("pv", "viewed_at"), ColumnRef("s", "timezone"))),
        _visit_number(),
        DimensionDef("date", "{pv}.viewed_at::date", columns=(ColumnRef("pv", "viewed_at"),)),
    )


def derive_funnel_definitions(entry: Iterable[DimensionDef]) -> Tuple[DimensionDef, ...]:
    """
    Derive the funnel map from the entry map.

    Entry-level dimensions read from the matching-sessions CTE, so their
    templates are rendered with both aliases pointing at it. The explicit
    overrides target the live page view or a CTE-computed column.
    """
    overrides = {
        "funnelStep": DimensionDef(
            "funnelStep", clean_url("pv.url_path"), columns=(ColumnRef("pv", "url_path"),), stage=Stage.STEP,
        ),
        "date": DimensionDef("date", "pv.viewed_at::date", columns=(ColumnRef("pv", "viewed_at"),), stage=Stage.STEP),
        "visitNumber": DimensionDef(
            "visitNumber",
            f"{FUNNEL_CTE_ALIAS}.visit_number",
            filter_expression=VISIT_NUMBER_FILTER,
            cte_projection="DENSE_RANK() OVER (PARTITION BY s.visitor_id ORDER BY s.created_at) AS visit_number",
        ),
    }
    derived = []
    for definition in entry:
        if definition.id in overrides:
            continue
        derived.append(replace(
            definition,
            expression=FUNNEL_ALIASES.render(definition.expression),
            null_test=FUNNEL_ALIASES.render(definition.null_test) if definition.null_test else None,
            product_url=FUNNEL_ALIASES.render(definition.product_url) if definition.product_url else None,
        ))
    derived.extend(overrides.values())
    return tuple(derived)


# =============================================================================
# CATALOG
# =============================================================================

@dataclass(frozen=True)
class DimensionCatalog:
    """
    Immutable registry of dimension definitions per mode.

    Built once at startup (see `build_default_catalog`) and injected into
    builders. Tests may construct a smaller catalog directly.
    """
    maps: Mapping[QueryMode, Mapping[str, DimensionDef]] = field(default_factory=dict)

    @classmethod
    def from_definitions(
        cls,
        entry: Iterable[DimensionDef],
        page_view: Iterable[DimensionDef],
        funnel: Optional[Iterable[DimensionDef]] = None,
    ) -> "DimensionCatalog":
        entry = tuple(entry)
        if funnel is None:
            funnel = derive_funnel_definitions(entry)
        return cls(maps={
            QueryMode.ENTRY: {d.id: d for d in entry},
            QueryMode.PAGE_VIEW: {d.id: d for d in page_view},
            QueryMode.FUNNEL: {d.id: d for d in funnel},
        })

    def ids(self, mode: QueryMode) -> FrozenSet[str]:
        return frozenset(self.maps.get(mode, {}))

    def definition(self, dimension_id: str, mode: QueryMode) -> Optional[DimensionDef]:
        return self.maps.get(mode, {}).get(dimension_id)

    def has(self, dimension_id: str, mode: QueryMode) -> bool:
        return self.definition(dimension_id, mode) is not None

    def is_entry_only(self, dimension_id: str) -> bool:
        """True for dimensions that exist only at session-entry granularity."""
        return self.has(dimension_id, QueryMode.ENTRY) and not self.has(dimension_id, QueryMode.PAGE_VIEW)

    def is_enriched(self, dimension_id: str) -> bool:
        return any(
            d.enriched is not None
            for d in (self.definition(dimension_id, mode) for mode in QueryMode)
            if d is not None
        )

    def resolve(
        self,
        dimension_id: str,
        mode: QueryMode,
        aliases: Aliases = DEFAULT_ALIASES,
    ) -> ResolvedDimension:
        """
        Render a dimension for a mode.

        RAISES:
            UnknownDimension: the id has no expression in this mode
        """
        definition = self.definition(dimension_id, mode)
        if definition is None:
            raise unknown_dimension(dimension_id, mode.value, self.ids(mode))

        expression = aliases.render(definition.expression)
        if definition.partition_by:
            group_by = tuple(aliases.render(p) for p in definition.partition_by)
        else:
            group_by = (expression,)
        filter_template = definition.filter_expression or definition.expression
        return ResolvedDimension(
            id=definition.id,
            mode=mode,
            expression=expression,
            filter_expression=aliases.render(filter_template),
            group_by=group_by,
            null_test=aliases.render(definition.null_test) if definition.null_test else None,
            columns=definition.columns,
            enriched=definition.enriched,
            product_url=aliases.render(definition.product_url) if definition.product_url else None,
            stage=definition.stage,
            cte_projection=definition.cte_projection,
        )

    def try_resolve(
        self,
        dimension_id: str,
        mode: QueryMode,
        aliases: Aliases = DEFAULT_ALIASES,
    ) -> Optional[ResolvedDimension]:
        if not self.has(dimension_id, mode):
            return None
        return self.resolve(dimension_id, mode, aliases)


def build_default_catalog() -> DimensionCatalog:
    """Catalog of the tracker_* schema."""
    return DimensionCatalog.from_definitions(
        entry=_entry_definitions(),
        page_view=_page_view_definitions(),
    )

