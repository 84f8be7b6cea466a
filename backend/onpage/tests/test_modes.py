"""
Query Mode Builder Tests
========================

WHAT: Mode selection and the aggregate SQL each builder emits.
WHY: The mode decides the row granularity (session, page view, funnel
     page view). Picking the wrong one silently changes every count.

REFERENCES:
- onpage/query/modes.py
- onpage/query/builder.py
"""

from datetime import date

import pytest

from onpage.query.builder import SqlBuilder, and_join, date_range_sql
from onpage.query.catalog import QueryMode
from onpage.query.errors import UnknownDimension
from onpage.query.filters import FilterClause
from onpage.query.model import DateRange
from onpage.query.modes import (
    AggregateRequest,
    AggregateShape,
    EntryModeBuilder,
    FunnelModeBuilder,
    PageViewModeBuilder,
    build_mode_builders,
    normalized_source_sql,
    select_mode,
)

from .helpers import bind_names


RANGE = DateRange(start=date(2026, 2, 4), end=date(2026, 2, 6))


def build(catalog, dimensions, filters=(), shape=AggregateShape.METRICS, **kwargs):
    mode = select_mode(catalog, dimensions)
    builder = build_mode_builders(catalog)[mode]
    return builder.build(AggregateRequest(
        date_range=RANGE,
        dimensions=tuple(dimensions),
        filters=tuple(filters),
        shape=shape,
        **kwargs,
    ))


class TestSqlBuilder:
    def test_bind_names_are_sequential(self):
        sql = SqlBuilder(RANGE.start, RANGE.end)
        assert sql.bind("a") == ":p1"
        assert sql.bind_list(["x", "y"]) == "(:p2)"
        assert sql.bind("b") == ":p3"
        compiled = sql.finish("SELECT 1")
        assert compiled.params == {
            "start_date": RANGE.start, "end_date": RANGE.end, "p1": "a", "p2": ["x", "y"], "p3": "b",
        }
        assert compiled.expanding == ("p2",)

    def test_to_text_declares_expanding_binds(self):
        sql = SqlBuilder()
        compiled = sql.finish(f"SELECT 1 WHERE x IN {sql.bind_list([1, 2])}")
        clause = compiled.to_text()
        assert clause._bindparams["p1"].expanding is True

    def test_date_range_is_half_open(self):
        fragment = date_range_sql("pv.viewed_at")
        assert fragment == (
            "pv.viewed_at >= CAST(:start_date AS date) "
            "AND pv.viewed_at < CAST(:end_date AS date) + INTERVAL '1 day'"
        )

    def test_and_join_skips_empty(self):
        assert and_join(["a", "", None, "b"]) == "a AND b"


class TestSelectMode:
    """funnelStep -> funnel; entry-only -> entry; otherwise page view."""

    def test_page_view_dimensions(self, catalog):
        assert select_mode(catalog, ["countryCode", "urlPath"]) is QueryMode.PAGE_VIEW

    def test_entry_dimension(self, catalog):
        assert select_mode(catalog, ["entryCountryCode"]) is QueryMode.ENTRY

    def test_entry_parent_key(self, catalog):
        assert select_mode(catalog, ["date"], {"entryUtmSource": "google"}) is QueryMode.ENTRY

    def test_funnel_step_always_wins(self, catalog):
        assert select_mode(catalog, ["entryCountryCode", "funnelStep"]) is QueryMode.FUNNEL
        assert select_mode(catalog, ["date"], ["funnelStep"]) is QueryMode.FUNNEL

    def test_shared_dimensions_stay_page_view(self, catalog):
        assert select_mode(catalog, ["date", "funnelId", "visitNumber"]) is QueryMode.PAGE_VIEW

    def test_page_view_query_never_uses_entry_cte(self, catalog):
        compiled = build(catalog, ["countryCode"])
        assert "entry_pv" not in compiled.sql
        assert "FROM tracker_page_views pv" in compiled.sql

    def test_funnel_query_uses_matching_sessions(self, catalog):
        compiled = build(catalog, ["funnelStep"])
        assert "matching_sessions AS (" in compiled.sql
        assert "JOIN matching_sessions ms ON pv.session_id = ms.session_id" in compiled.sql


class TestMetricsShape:
    def test_page_view_metrics(self, catalog):
        sql = build(catalog, ["countryCode"]).sql
        assert 's.country_code AS "countryCode"' in sql
        for alias in ("page_views", "unique_visitors", "bounced_count", "active_time_count",
                      "total_active_time", "scroll_past_hero", "form_views", "form_starters"):
            assert f"AS {alias}" in sql
        assert "LEFT JOIN LATERAL" in sql
        assert "tracker_raw_heartbeats" in sql
        assert "GROUP BY s.country_code" in sql
        assert "pv.viewed_at >= CAST(:start_date AS date)" in sql

    def test_entry_mode_uses_session_dates(self, catalog):
        sql = build(catalog, ["entryDeviceType"]).sql
        assert sql.startswith("WITH entry_pv AS (SELECT DISTINCT ON (session_id)")
        assert "FROM entry_pv pv" in sql
        assert "s.created_at >= CAST(:start_date AS date)" in sql

    def test_bounce_threshold(self, catalog):
        sql = build(catalog, ["countryCode"]).sql
        assert "< 5)" in sql

    def test_order_and_limit_are_bound(self, catalog):
        compiled = build(catalog, ["countryCode"], order_by="page_views", direction="DESC", limit=50)
        assert "ORDER BY page_views DESC NULLS LAST" in compiled.sql
        assert compiled.sql.rstrip().endswith("LIMIT :p1")
        assert compiled.params["p1"] == 50

    def test_window_dimension_skips_database_limit(self, catalog):
        compiled = build(catalog, ["visitNumber"], order_by="page_views", limit=50)
        assert "LIMIT" not in compiled.sql
        assert "GROUP BY s.visitor_id, s.created_at" in compiled.sql

    def test_product_join_when_grouped(self, catalog):
        sql = build(catalog, ["product"]).sql
        assert "LEFT JOIN app_url_classifications uc ON pv.url_path = uc.url_path" in sql
        assert "COALESCE(ap.name, 'Unclassified')" in sql

    def test_product_join_when_filtered(self, catalog):
        sql = build(catalog, ["countryCode"], [FilterClause("product", "equals", "Shoes")]).sql
        assert "LEFT JOIN app_products ap" in sql

    def test_no_product_join_otherwise(self, catalog):
        assert "app_url_classifications" not in build(catalog, ["countryCode"]).sql

    def test_every_bind_is_supplied(self, catalog):
        compiled = build(
            catalog,
            ["campaign"],
            [FilterClause("campaign", "equals", "Spring"), FilterClause("visitNumber", "equals", "1")],
            order_by="page_views",
            limit=10,
        )
        assert bind_names(compiled.sql) <= set(compiled.params)


class TestEnrichedSelect:
    def test_sidecar_and_display_name(self, catalog):
        sql = build(catalog, ["campaign"]).sql
        assert 's.utm_campaign::text AS "_campaign_id"' in sql
        assert "COALESCE(MAX(mas.campaign_name), s.utm_campaign::text, 'Unknown') AS \"campaign\"" in sql
        assert "GROUP BY s.utm_campaign" in sql

    def test_join_uses_most_specific_level(self, catalog):
        builder = PageViewModeBuilder(catalog)
        compiled = builder.build(AggregateRequest(date_range=RANGE, dimensions=("ad",)))
        assert "s.utm_campaign::text = mas.campaign_id::text" in compiled.sql
        assert "s.utm_content::text = mas.adset_id::text" in compiled.sql
        assert "s.utm_medium::text = mas.ad_id::text" in compiled.sql

    def test_campaign_join_only_keys_campaign(self, catalog):
        sql = build(catalog, ["campaign"]).sql
        assert "mas.adset_id" not in sql
        assert "GROUP BY campaign_id)" in sql

    def test_no_join_without_enriched_dimension(self, catalog):
        assert "marketing_merged_ads_spending" not in build(catalog, ["countryCode"]).sql


class TestFunnelBuilder:
    def test_session_and_step_filters_are_split(self, catalog):
        builder = FunnelModeBuilder(catalog)
        session, step = builder.split_filters([
            FilterClause("entryCountryCode", "equals", "DK"),
            FilterClause("funnelStep", "contains", "checkout"),
            FilterClause("date", "equals", "2026-02-05"),
            FilterClause("deviceType", "equals", "mobile"),
        ])
        assert [f.field for f in session] == ["entryCountryCode"]
        assert [f.field for f in step] == ["funnelStep", "date"]

    def test_session_filters_land_in_cte(self, catalog):
        sql = build(catalog, ["funnelStep"], [FilterClause("entryCountryCode", "equals", "DK")]).sql
        cte, main = sql.split("\nSELECT ", 1)
        assert "LOWER(s.country_code::text) = LOWER(:p1)" in cte
        assert "s.created_at >= CAST(:start_date AS date)" in cte
        assert "country_code" not in main.split("WHERE", 1)[1]

    def test_step_filters_land_in_main_query(self, catalog):
        sql = build(catalog, ["funnelStep"], [FilterClause("funnelStep", "contains", "checkout")]).sql
        main = sql.split("\nSELECT ", 1)[1]
        assert "LOWER(REGEXP_REPLACE(pv.url_path" in main

    def test_cte_projects_grouped_entry_columns(self, catalog):
        sql = build(catalog, ["entryCountryCode", "funnelStep"]).sql
        assert "matching_sessions AS (SELECT pv.session_id, s.country_code FROM entry_pv pv" in sql
        assert 'ms.country_code AS "entryCountryCode"' in sql

    def test_cte_projects_visit_number(self, catalog):
        sql = build(catalog, ["visitNumber", "funnelStep"]).sql
        assert "DENSE_RANK() OVER (PARTITION BY s.visitor_id ORDER BY s.created_at) AS visit_number" in sql
        assert 'ms.visit_number AS "visitNumber"' in sql

    def test_cte_projects_enrichment_keys(self, catalog):
        sql = build(catalog, ["entryAdset", "funnelStep"]).sql
        cte = sql.split("\nSELECT ", 1)[0]
        assert "s.utm_campaign" in cte
        assert "s.utm_content" in cte
        assert "ms.utm_content::text = mas.adset_id::text" in sql

    def test_page_view_dimension_is_rejected(self, catalog):
        with pytest.raises(UnknownDimension):
            build(catalog, ["deviceType", "funnelStep"])


class TestAttributionShapes:
    def test_tracking_shape(self, catalog):
        sql = build(catalog, ["deviceType"], shape=AggregateShape.TRACKING).sql
        assert "AS tracking_source" in sql
        assert "COALESCE(s.utm_campaign::text, '') AS tracking_campaign_id" in sql
        assert "COUNT(DISTINCT s.visitor_id) AS unique_visitors" in sql
        assert "AS page_views" not in sql
        assert "LATERAL" not in sql

    def test_visitors_shape(self, catalog):
        sql = build(catalog, ["deviceType"], shape=AggregateShape.VISITORS).sql
        assert "s.visitor_id::text AS visitor_id" in sql
        assert "s.visitor_id IS NOT NULL" in sql
        assert sql.rstrip().endswith("GROUP BY s.device_type, s.visitor_id")

    def test_shapes_ignore_order_and_limit(self, catalog):
        sql = build(catalog, ["deviceType"], shape=AggregateShape.TRACKING, order_by="page_views", limit=5).sql
        assert "ORDER BY" not in sql
        assert "LIMIT" not in sql

    def test_source_normalization(self):
        sql = normalized_source_sql("s.utm_source")
        assert "WHEN LOWER(s.utm_source) IN ('google', 'adwords') THEN 'google'" in sql
        assert "WHEN LOWER(s.utm_source) IN ('facebook', 'meta') THEN 'facebook'" in sql
        assert sql.endswith("ELSE LOWER(COALESCE(s.utm_source, '')) END")


def test_builder_classes_map_to_modes(catalog):
    builders = build_mode_builders(catalog)
    assert isinstance(builders[QueryMode.ENTRY], EntryModeBuilder)
    assert isinstance(builders[QueryMode.PAGE_VIEW], PageViewModeBuilder)
    assert isinstance(builders[QueryMode.FUNNEL], FunnelModeBuilder)
