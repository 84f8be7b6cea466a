"""
Generated SQL Parses as PostgreSQL
==================================

WHAT: Every aggregate the mode builders can emit is parsed with sqlglot
      (postgres dialect) after binds are inlined as literals.
WHY: SQL is assembled from fragments owned by different components; a
     stray comma or unbalanced parenthesis would otherwise only show up
     against a live database.

REFERENCES:
- onpage/query/modes.py
- onpage/tests/helpers.py: inline_binds
"""

from datetime import date

import pytest
import sqlglot
from sqlglot import exp

from onpage.query.filters import FilterClause
from onpage.query.model import DateRange
from onpage.query.modes import AggregateRequest, AggregateShape, build_mode_builders, select_mode

from .helpers import inline_binds


RANGE = DateRange(start=date(2026, 2, 4), end=date(2026, 2, 6))

CASES = [
    # (dimensions, filters)
    (("countryCode",), ()),
    (("urlPath",), (FilterClause("countryCode", "equals", "DK"), FilterClause("countryCode", "equals", "Unknown"))),
    (("campaign",), (FilterClause("campaign", "contains", "spring"),)),
    (("ad",), (FilterClause("adset", "not_equals", "Retargeting"),)),
    (("product",), (FilterClause("deviceType", "not_contains", "tab"),)),
    (("visitNumber",), (FilterClause("visitNumber", "equals", "2"),)),
    (("localHour",), ()),
    (("botScore",), ()),
    (("date",), (FilterClause("utmSource", "equals", "google"),)),
    (("entryUrlPath",), (FilterClause("entryCountryCode", "equals", "DK"),)),
    (("entryCampaign",), ()),
    (("entryProduct",), ()),
    (("entryBotScore",), (FilterClause("visitNumber", "not_equals", "1"),)),
    (("funnelStep",), ()),
    (("entryCountryCode", "funnelStep"), (FilterClause("entryProduct", "equals", "Shoes"),)),
    (("visitNumber", "funnelStep"), (FilterClause("funnelStep", "contains", "checkout"),)),
    (("entryAd", "funnelStep"), (FilterClause("date", "equals", "2026-02-05"),)),
    (("date", "funnelStep"), (FilterClause("entryCampaign", "equals", "Spring"),)),
]


def parse(compiled):
    return sqlglot.parse_one(inline_binds(compiled), read="postgres")


@pytest.mark.parametrize("shape", list(AggregateShape))
@pytest.mark.parametrize("dimensions,filters", CASES)
def test_aggregate_parses(catalog, dimensions, filters, shape):
    builder = build_mode_builders(catalog)[select_mode(catalog, dimensions)]
    compiled = builder.build(AggregateRequest(
        date_range=RANGE,
        dimensions=dimensions,
        filters=filters,
        shape=shape,
        order_by="page_views",
        limit=100,
    ))
    tree = parse(compiled)
    assert isinstance(tree, exp.Select)
    projected = tree.named_selects
    for dimension in dimensions:
        assert dimension in projected


def test_inline_binds_leaves_casts_alone(catalog):
    builder = build_mode_builders(catalog)[select_mode(catalog, ("countryCode",))]
    compiled = builder.build(AggregateRequest(
        date_range=RANGE,
        dimensions=("countryCode",),
        filters=(FilterClause("countryCode", "equals", "DK"),),
    ))
    inlined = inline_binds(compiled)
    assert "::text" in inlined
    assert "CAST('2026-02-04' AS date)" in inlined
    assert "LOWER('DK')" in inlined
