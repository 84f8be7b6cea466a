"""
Filter Compiler
===============

Turns `(field, operator, value)` triples into a parameterized boolean SQL
fragment.

RULES:
    - Filters on the same field are OR'ed, groups of different fields are
      AND'ed: `country = US OR country = CA` AND `device = mobile`.
    - Comparisons are case-insensitive (`LOWER(col::text)`). `contains`
      matches the value literally; `%` and `_` in it are escaped.
    - The literal value "Unknown" is the normalizer's label for NULL, so it
      compiles to `IS NULL` (`IS NOT NULL` for not_equals / not_contains)
      instead of a string comparison. Dimensions whose expression labels
      NULL itself (bot score buckets) test their raw column instead.
    - Enriched dimensions (campaign/adset/ad) also match by display name
      through a date-scoped subquery on the named-entity dataset.
    - Fields the catalog does not know in the active mode are dropped.

Parameters are registered on the caller's SqlBuilder; the compiler only
returns SQL text.
"""

from collections import OrderedDict
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence
import logging

from .builder import SqlBuilder
from .catalog import Aliases, DEFAULT_ALIASES, DimensionCatalog, EnrichedSpec, QueryMode, ResolvedDimension


logger = logging.getLogger(__name__)

UNKNOWN = "Unknown"
NAMED_ENTITY_TABLE = "marketing_merged_ads_spending"

OPERATORS = ("equals", "not_equals", "contains", "not_contains")
NEGATIVE_OPERATORS = ("not_equals", "not_contains")

LIKE_ESCAPE = "\\"


def escape_like(value: str) -> str:
    """Escape LIKE wildcards so `value` matches literally."""
    return (
        value.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", LIKE_ESCAPE + "%")
        .replace("_", LIKE_ESCAPE + "_")
    )


@dataclass(frozen=True)
class FilterClause:
    """A single table or parent filter."""
    field: str
    operator: str
    value: str

    @classmethod
    def equals(cls, field: str, value: str) -> "FilterClause":
        return cls(field=field, operator="equals", value=value)


def parent_filter_clauses(parent_filters) -> List[FilterClause]:
    """Parent filters are equality filters keyed by dimension id."""
    return [FilterClause.equals(field, value) for field, value in (parent_filters or {}).items()]


def group_by_field(filters: Iterable[FilterClause]) -> "OrderedDict[str, List[FilterClause]]":
    grouped: "OrderedDict[str, List[FilterClause]]" = OrderedDict()
    for f in filters:
        grouped.setdefault(f.field, []).append(f)
    return grouped


class FilterCompiler:
    """Compiles filters against a catalog for a given mode."""

    def __init__(self, catalog: DimensionCatalog):
        self.catalog = catalog

    def compile(
        self,
        filters: Sequence[FilterClause],
        mode: QueryMode,
        sql: SqlBuilder,
        aliases: Aliases = DEFAULT_ALIASES,
    ) -> str:
        """
        Compile filters to a WHERE fragment (no leading AND).

        RETURNS:
            "" when nothing applies, otherwise `(…) AND (…)`.
        """
        groups = []
        for field_name, clauses in group_by_field(filters).items():
            resolved = self.catalog.try_resolve(field_name, mode, aliases)
            if resolved is None:
                logger.debug("[FILTERS] Dropping filter on unknown field %s (%s mode)", field_name, mode.value)
                continue
            parts = [self.compile_condition(resolved, clause, sql) for clause in clauses]
            parts = [p for p in parts if p]
            if parts:
                groups.append("(" + " OR ".join(parts) + ")")
        return " AND ".join(groups)

    def compile_condition(self, resolved: ResolvedDimension, clause: FilterClause, sql: SqlBuilder) -> Optional[str]:
        column = resolved.filter_expression
        operator = clause.operator
        if operator not in OPERATORS:
            logger.debug("[FILTERS] Ignoring unsupported operator %s", operator)
            return None

        if clause.value == UNKNOWN:
            if operator in NEGATIVE_OPERATORS:
                return f"{resolved.unknown_expression} IS NOT NULL"
            return f"{resolved.unknown_expression} IS NULL"

        lowered = f"LOWER({column}::text)"
        if operator in ("equals", "not_equals"):
            param = sql.bind(clause.value)
            predicate = f"= LOWER({param})"
        else:
            param = sql.bind(escape_like(clause.value))
            predicate = f"LIKE '%' || LOWER({param}) || '%' ESCAPE '{LIKE_ESCAPE}'"
        match = f"{lowered} {predicate}"
        name_match = _name_condition(resolved.enriched, predicate)

        if operator in NEGATIVE_OPERATORS:
            negated = f"NOT ({match})"
            if name_match is None:
                return negated
            return f"({negated} AND {column}::text NOT IN ({name_match}))"

        if name_match is None:
            return match
        return f"({match} OR {column}::text IN ({name_match}))"


def _name_condition(enriched: Optional[EnrichedSpec], predicate: str) -> Optional[str]:
    """Ids whose display name matches, within the request date range."""
    if enriched is None:
        return None
    return (
        f"SELECT DISTINCT ne.{enriched.id_column}::text FROM {NAMED_ENTITY_TABLE} ne "
        f"WHERE ne.date::date BETWEEN CAST(:{SqlBuilder.START_DATE} AS date) AND CAST(:{SqlBuilder.END_DATE} AS date) "
        f"AND ne.{enriched.id_column} IS NOT NULL "
        f"AND LOWER(ne.{enriched.name_column}) {predicate}"
    )
