"""
Conversion Store Queries
========================

SQL for the MariaDB CRM (`subscription`, `invoice`, `source`, `customer`).

COUNTING RULES
--------------
    - subscriptions created in the date range, `s.deleted = 0`
    - primary invoices only (`i.type = 1`)
    - upsells excluded (`invoice.tag` containing `parent-sub-id=`)
    - trials   = COUNT(DISTINCT s.id)
    - approved = distinct subscriptions with a marked, non-deleted invoice

THREE QUERIES
-------------
    direct      grouped by the CRM column equivalent to the on-page
                dimension (only for dimensions in CONVERSION_DIMENSIONS)
    tracking    grouped by the normalized (source, campaign, adset, ad)
                tuple, restricted to campaign ids seen on-page
    visitors    grouped by the visitor id embedded in the subscription
                tag (`ff_vid=`), restricted to visitors seen on-page

Parent filters that have a CRM equivalent are translated; the rest cannot
be expressed on this store and are skipped.
"""

from dataclasses import dataclass
from datetime import datetime, time
from typing import Collection, Dict, List, Mapping, Optional, Sequence, Tuple

from .builder import CompiledQuery, SqlBuilder, and_join
from .filters import UNKNOWN
from .model import DateRange
from .modes import SOURCE_ALIASES


@dataclass(frozen=True)
class ConversionDimension:
    """CRM equivalent of an on-page dimension."""
    group_by: str
    filter_column: str
    is_source: bool = False
    needs_customer: bool = False


_SOURCE = ConversionDimension("LOWER(COALESCE(sr.source, 'unknown'))", "sr.source", is_source=True)
_CAMPAIGN = ConversionDimension("s.tracking_id_4", "s.tracking_id_4")
_ADSET = ConversionDimension("s.tracking_id_2", "s.tracking_id_2")
_AD = ConversionDimension("s.tracking_id", "s.tracking_id")
_COUNTRY = ConversionDimension("UPPER(c.country)", "c.country", needs_customer=True)
_DATE = ConversionDimension("DATE_FORMAT(s.date_create, '%Y-%m-%d')", "DATE(s.date_create)")

CONVERSION_DIMENSIONS: Dict[str, ConversionDimension] = {
    "utmSource": _SOURCE,
    "entryUtmSource": _SOURCE,
    "campaign": _CAMPAIGN,
    "entryCampaign": _CAMPAIGN,
    "adset": _ADSET,
    "entryAdset": _ADSET,
    "ad": _AD,
    "entryAd": _AD,
    "countryCode": _COUNTRY,
    "entryCountryCode": _COUNTRY,
    "date": _DATE,
}

# On-page dimensions that carry a tracking tuple field
TRACKING_FIELDS: Dict[str, str] = {
    "utmSource": "source",
    "entryUtmSource": "source",
    "campaign": "campaign_id",
    "entryCampaign": "campaign_id",
    "adset": "adset_id",
    "entryAdset": "adset_id",
    "ad": "ad_id",
    "entryAd": "ad_id",
}

CRM_FROM = (
    "FROM subscription s "
    "INNER JOIN invoice i ON i.subscription_id = s.id AND i.type = 1 "
    "LEFT JOIN source sr ON sr.id = s.source_id"
)
CUSTOMER_JOIN = "LEFT JOIN customer c ON s.customer_id = c.id"

CRM_COUNTS = (
    "COUNT(DISTINCT s.id) AS trials, "
    "COUNT(DISTINCT CASE WHEN i.is_marked = 1 AND i.deleted = 0 THEN s.id END) AS approved"
)

CRM_NORMALIZED_SOURCE = (
    "CASE "
    + " ".join(
        "WHEN LOWER(sr.source) IN ({}) THEN '{}'".format(", ".join(f"'{v}'" for v in variants), canonical)
        for canonical, variants in SOURCE_ALIASES.items()
    )
    + " ELSE LOWER(COALESCE(sr.source, '')) END"
)

CRM_TRACKING_COLUMNS: Tuple[Tuple[str, str], ...] = (
    ("source", CRM_NORMALIZED_SOURCE),
    ("campaign_id", "COALESCE(s.tracking_id_4, '')"),
    ("adset_id", "COALESCE(s.tracking_id_2, '')"),
    ("ad_id", "COALESCE(s.tracking_id, '')"),
)

CRM_VISITOR_ID = "TRIM(SUBSTRING_INDEX(SUBSTRING_INDEX(s.tag, 'ff_vid=', -1), ',', 1))"


def is_matchable(dimension_id: str) -> bool:
    return dimension_id in CONVERSION_DIMENSIONS


def source_variants(value: str) -> Tuple[str, ...]:
    """Every CRM spelling of the source group `value` belongs to."""
    lowered = value.lower()
    for variants in SOURCE_ALIASES.values():
        if lowered in variants:
            return variants
    return (lowered,)


class ConversionQueryBuilder:
    """Builds the three CRM query shapes."""

    def _base_where(
        self,
        date_range: DateRange,
        parent_filters: Mapping[str, str],
        sql: SqlBuilder,
    ) -> Tuple[List[str], bool]:
        """(conditions, customer join needed)."""
        start = datetime.combine(date_range.start, time(0, 0, 0))
        end = datetime.combine(date_range.end, time(23, 59, 59))
        conditions = [
            f"s.date_create BETWEEN {sql.bind(start)} AND {sql.bind(end)}",
            "s.deleted = 0",
            "(i.tag IS NULL OR i.tag NOT LIKE '%parent-sub-id=%')",
        ]
        needs_customer = False
        for dimension_id, value in parent_filters.items():
            mapping = CONVERSION_DIMENSIONS.get(dimension_id)
            if mapping is None:
                continue
            needs_customer = needs_customer or mapping.needs_customer
            if value == UNKNOWN:
                conditions.append(f"{mapping.filter_column} IS NULL")
            elif mapping.is_source:
                conditions.append(f"LOWER(sr.source) IN {sql.bind_list(source_variants(value))}")
            else:
                conditions.append(f"{mapping.filter_column} = {sql.bind(value)}")
        return conditions, needs_customer

    def _from(self, needs_customer: bool) -> str:
        return CRM_FROM + (" " + CUSTOMER_JOIN if needs_customer else "")

    def direct(
        self,
        date_range: DateRange,
        dimension_id: str,
        parent_filters: Mapping[str, str],
    ) -> CompiledQuery:
        mapping = CONVERSION_DIMENSIONS[dimension_id]
        sql = SqlBuilder()
        conditions, needs_customer = self._base_where(date_range, parent_filters, sql)
        statement = (
            f"SELECT {mapping.group_by} AS dimension_value, {CRM_COUNTS} "
            f"{self._from(needs_customer or mapping.needs_customer)} "
            f"WHERE {and_join(conditions)} "
            f"GROUP BY {mapping.group_by}"
        )
        return sql.finish(statement)

    def tracking(
        self,
        date_range: DateRange,
        parent_filters: Mapping[str, str],
        campaign_ids: Optional[Collection[str]] = None,
    ) -> CompiledQuery:
        sql = SqlBuilder()
        conditions, needs_customer = self._base_where(date_range, parent_filters, sql)
        if campaign_ids is not None:
            conditions.append(f"COALESCE(s.tracking_id_4, '') IN {sql.bind_list(sorted(campaign_ids))}")
        select = ", ".join(f"{expr} AS {alias}" for alias, expr in CRM_TRACKING_COLUMNS)
        group_by = ", ".join(expr for _, expr in CRM_TRACKING_COLUMNS)
        statement = (
            f"SELECT {select}, {CRM_COUNTS} "
            f"{self._from(needs_customer)} "
            f"WHERE {and_join(conditions)} "
            f"GROUP BY {group_by}"
        )
        return sql.finish(statement)

    def visitors(
        self,
        date_range: DateRange,
        parent_filters: Mapping[str, str],
        visitor_ids: Sequence[str],
    ) -> CompiledQuery:
        sql = SqlBuilder()
        conditions, needs_customer = self._base_where(date_range, parent_filters, sql)
        conditions.append("s.tag LIKE '%ff_vid=%'")
        conditions.append(f"{CRM_VISITOR_ID} IN {sql.bind_list(sorted(set(visitor_ids)))}")
        statement = (
            f"SELECT {CRM_VISITOR_ID} AS ff_vid, {CRM_COUNTS} "
            f"{self._from(needs_customer)} "
            f"WHERE {and_join(conditions)} "
            f"GROUP BY {CRM_VISITOR_ID}"
        )
        return sql.finish(statement)
