"""
Dimension Catalog Tests
=======================

WHAT: Resolution of dimension ids to SQL per query mode.
WHY: Every builder trusts the catalog; a wrong alias or a missing mode
     entry silently changes which rows a report counts.

REFERENCES:
- onpage/query/catalog.py
"""

import pytest

from onpage.query.catalog import (
    Aliases,
    ColumnRef,
    DimensionCatalog,
    DimensionDef,
    FUNNEL_ALIASES,
    QueryMode,
    Stage,
    build_default_catalog,
    derive_funnel_definitions,
)
from onpage.query.errors import ErrorCode, UnknownDimension


class TestCatalogContents:
    """The default catalog covers the tracker schema."""

    def test_entry_dimensions(self, catalog):
        expected = {
            "entryUrlPath", "entryPageType", "entryProduct", "entryUtmSource", "entryCampaign",
            "entryAdset", "entryAd", "entryWebmasterId", "entryUtmTerm", "entryKeyword",
            "entryPlacement", "entryReferrer", "funnelId", "entryCountryCode", "entryDeviceType",
            "entryOsName", "entryBrowserName", "entryBotScore", "visitNumber", "date",
        }
        assert catalog.ids(QueryMode.ENTRY) == expected

    def test_page_view_dimensions(self, catalog):
        ids = catalog.ids(QueryMode.PAGE_VIEW)
        for dim in ("urlPath", "countryCode", "deviceType", "campaign", "localHour", "timezone", "date"):
            assert dim in ids
        assert "funnelStep" not in ids

    def test_funnel_map_has_entry_dimensions_and_step(self, catalog):
        ids = catalog.ids(QueryMode.FUNNEL)
        assert "funnelStep" in ids
        assert "entryCountryCode" in ids
        assert "deviceType" not in ids

    def test_entry_only(self, catalog):
        assert catalog.is_entry_only("entryCountryCode")
        assert not catalog.is_entry_only("countryCode")
        # In both maps
        assert not catalog.is_entry_only("date")
        assert not catalog.is_entry_only("funnelId")

    def test_enriched_dimensions(self, catalog):
        for dim in ("campaign", "adset", "ad", "entryCampaign", "entryAdset", "entryAd"):
            assert catalog.is_enriched(dim)
        assert not catalog.is_enriched("utmSource")


class TestResolve:
    """resolve() renders templates with the mode's aliases."""

    def test_page_view_column(self, catalog):
        resolved = catalog.resolve("countryCode", QueryMode.PAGE_VIEW)
        assert resolved.expression == "s.country_code"
        assert resolved.group_by == ("s.country_code",)
        assert not resolved.is_window

    def test_url_path_strips_protocol(self, catalog):
        resolved = catalog.resolve("urlPath", QueryMode.PAGE_VIEW)
        assert "REGEXP_REPLACE(pv.url_path" in resolved.expression

    def test_date_differs_per_mode(self, catalog):
        assert catalog.resolve("date", QueryMode.ENTRY).expression == "s.created_at::date"
        assert catalog.resolve("date", QueryMode.PAGE_VIEW).expression == "pv.viewed_at::date"
        funnel = catalog.resolve("date", QueryMode.FUNNEL, FUNNEL_ALIASES)
        assert funnel.expression == "pv.viewed_at::date"
        assert funnel.stage is Stage.STEP

    def test_funnel_entry_dimension_reads_cte(self, catalog):
        resolved = catalog.resolve("entryCountryCode", QueryMode.FUNNEL, FUNNEL_ALIASES)
        assert resolved.expression == "ms.country_code"

    def test_funnel_step_reads_live_page_view(self, catalog):
        resolved = catalog.resolve("funnelStep", QueryMode.FUNNEL, FUNNEL_ALIASES)
        assert "pv.url_path" in resolved.expression
        assert resolved.stage is Stage.STEP

    def test_visit_number_groups_by_partition(self, catalog):
        resolved = catalog.resolve("visitNumber", QueryMode.PAGE_VIEW)
        assert resolved.is_window
        assert resolved.group_by == ("s.visitor_id", "s.created_at")
        assert "DENSE_RANK()" in resolved.expression
        # Filter form has no window function
        assert "OVER" not in resolved.filter_expression

    def test_funnel_visit_number_is_projected_by_cte(self, catalog):
        resolved = catalog.resolve("visitNumber", QueryMode.FUNNEL, FUNNEL_ALIASES)
        assert resolved.expression == "ms.visit_number"
        assert resolved.cte_projection.endswith("AS visit_number")
        assert not resolved.is_window

    def test_unknown_dimension_raises(self, catalog):
        with pytest.raises(UnknownDimension) as exc_info:
            catalog.resolve("nope", QueryMode.PAGE_VIEW)
        err = exc_info.value
        assert err.code is ErrorCode.UNKNOWN_DIMENSION
        assert err.field_name == "dimensions"
        assert "urlPath" in err.suggestion

    def test_entry_dimension_not_in_page_view_mode(self, catalog):
        with pytest.raises(UnknownDimension):
            catalog.resolve("entryCountryCode", QueryMode.PAGE_VIEW)
        assert catalog.try_resolve("entryCountryCode", QueryMode.PAGE_VIEW) is None


class TestSyntheticCatalog:
    """Builders accept any catalog value object."""

    def test_custom_aliases(self):
        definition = DimensionDef("shoe", "{pv}.shoe_size", columns=(ColumnRef("pv", "shoe_size"),))
        catalog = DimensionCatalog.from_definitions(entry=[definition], page_view=[definition])
        assert catalog.resolve("shoe", QueryMode.ENTRY, Aliases(pv="x", s="y")).expression == "x.shoe_size"
        assert catalog.resolve("shoe", QueryMode.FUNNEL, FUNNEL_ALIASES).expression == "ms.shoe_size"

    def test_derived_funnel_map_keeps_overrides(self):
        derived = {d.id: d for d in derive_funnel_definitions([])}
        assert set(derived) == {"funnelStep", "date", "visitNumber"}

    def test_default_catalog_is_rebuildable(self):
        assert build_default_catalog() == build_default_catalog()
