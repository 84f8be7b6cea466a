"""
Enriched-Dimension Resolver
===========================

Attaches human-readable names to tracking-id dimensions.

WHAT:
    Sessions store raw tracking ids (utm_campaign / utm_content /
    utm_medium hold campaign / adset / ad ids). The named-entity dataset
    `marketing_merged_ads_spending` knows their names. For every enriched
    dimension in a query the resolver emits:

        <raw>::text                                    AS "_<dim>_id"
        COALESCE(MAX(mas.<name>), <raw>::text, 'Unknown') AS "<dim>"

    grouped by the raw column, plus one LEFT JOIN keyed on the most
    specific tracking level requested (ad > adset > campaign).

WHY:
    The sidecar id keeps drill-down keys and conversion matching on ids
    while users see names. The named-entity rows are limited to the request
    date range and grouped by the id columns before joining, so there is one
    row per id combination and the join never multiplies page views.
"""

from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple

from .builder import SqlBuilder
from .catalog import Aliases, DEFAULT_ALIASES, ENRICHMENT_LEVELS, EnrichedSpec, ResolvedDimension
from .filters import NAMED_ENTITY_TABLE, UNKNOWN


ENRICHED_ALIAS = "mas"


def id_key(dimension_id: str) -> str:
    """Row key holding the raw id of an enriched dimension."""
    return f"_{dimension_id}_id"


@dataclass(frozen=True)
class EnrichedValue:
    """(raw id, display name) pair for one enriched cell."""
    raw_id: Optional[str]
    display_name: str


@dataclass(frozen=True)
class EnrichedSelect:
    select: Tuple[str, ...]
    group_by: Tuple[str, ...]


class EnrichedDimensionResolver:
    """Builds select items and the name join for enriched dimensions."""

    def enriched_dimensions(self, dimensions: Iterable[ResolvedDimension]) -> List[ResolvedDimension]:
        return [d for d in dimensions if d.enriched is not None]

    def join_level(self, dimensions: Iterable[ResolvedDimension]) -> Optional[EnrichedSpec]:
        """Most specific tracking level among the enriched dimensions."""
        levels = {d.enriched.level for d in dimensions if d.enriched is not None}
        chosen = None
        for spec in ENRICHMENT_LEVELS:
            if spec.level in levels:
                chosen = spec
        return chosen

    def join_columns(self, level: EnrichedSpec) -> Tuple[EnrichedSpec, ...]:
        """Levels whose ids participate in the join (campaign down to `level`)."""
        index = ENRICHMENT_LEVELS.index(level)
        return ENRICHMENT_LEVELS[: index + 1]

    def build_join(self, dimensions: Sequence[ResolvedDimension], aliases: Aliases = DEFAULT_ALIASES) -> str:
        """LEFT JOIN clause for the name lookup, or "" when not needed."""
        enriched = self.enriched_dimensions(dimensions)
        level = self.join_level(enriched)
        if level is None:
            return ""

        key_specs = self.join_columns(level)
        id_columns = [spec.id_column for spec in key_specs]
        name_columns = sorted({d.enriched.name_column for d in enriched})
        projections = id_columns + [f"MAX({name}) AS {name}" for name in name_columns]
        conditions = [
            f"{spec.raw.render(aliases)}::text = {ENRICHED_ALIAS}.{spec.id_column}::text"
            for spec in key_specs
        ]
        return (
            f"LEFT JOIN (SELECT {', '.join(projections)} FROM {NAMED_ENTITY_TABLE} ne "
            f"WHERE ne.date::date BETWEEN CAST(:{SqlBuilder.START_DATE} AS date) AND CAST(:{SqlBuilder.END_DATE} AS date) "
            f"GROUP BY {', '.join(id_columns)}) {ENRICHED_ALIAS} ON {' AND '.join(conditions)}"
        )

    def select_parts(self, dimension: ResolvedDimension) -> EnrichedSelect:
        raw = dimension.expression
        name = dimension.enriched.name_column
        return EnrichedSelect(
            select=(
                f'{raw}::text AS "{id_key(dimension.id)}"',
                f"COALESCE(MAX({ENRICHED_ALIAS}.{name}), {raw}::text, '{UNKNOWN}') AS \"{dimension.id}\"",
            ),
            group_by=(raw,),
        )

    def join_raw_columns(self, dimensions: Sequence[ResolvedDimension]):
        """Session columns the join reads (for the funnel CTE projection)."""
        level = self.join_level(self.enriched_dimensions(dimensions))
        if level is None:
            return ()
        return tuple(spec.raw for spec in self.join_columns(level))

    @staticmethod
    def pair_from_row(row: Mapping[str, Any], dimension_id: str) -> EnrichedValue:
        """Extract the (raw id, display name) pair, falling back to the id then Unknown."""
        raw = row.get(id_key(dimension_id))
        raw_id = str(raw) if raw is not None else None
        name = row.get(dimension_id)
        if name is None or name == "":
            name = raw_id if raw_id is not None else UNKNOWN
        return EnrichedValue(raw_id=raw_id, display_name=str(name))
