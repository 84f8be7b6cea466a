"""
Detail Query Tests
==================

WHAT: Data + count query pairs for drill-through requests.
WHY: The record list behind a cell must count the same thing the cell
     counted (page views, sessions or visitors) and page through it.
"""

from datetime import date

import pytest

from onpage.query.detail import CLASSIFIED_UNKNOWN, DetailQueryBuilder
from onpage.query.errors import InvalidRequest
from onpage.query.model import DateRange, DetailQuery
from onpage.query.modes import ENTRY_CTE, FIRST_PAGE_VIEW_SELECT

from .helpers import bind_names


@pytest.fixture
def builder(catalog):
    return DetailQueryBuilder(catalog)


def _query(date_range, filters=None, metric=None, page=1, page_size=100):
    return DetailQuery(
        date_range=date_range,
        dimension_filters=filters or {},
        metric_id=metric,
        page=page,
        page_size=page_size,
    )


class TestCountingModes:
    def test_plain_page_views(self, builder, date_range):
        queries = builder.build(_query(date_range, {"deviceType": "phone"}))
        assert not queries.session_scoped
        assert queries.data.sql.startswith("SELECT pv.page_view_id AS id")
        assert "ORDER BY pv.viewed_at DESC" in queries.data.sql
        assert queries.count.sql.startswith("SELECT COUNT(*) AS total")

    def test_unique_visitors(self, builder, date_range):
        queries = builder.build(_query(date_range, {"deviceType": "phone"}, metric="uniqueVisitors"))
        assert "DISTINCT ON (s.visitor_id)" in queries.data.sql
        assert "COUNT(DISTINCT s.visitor_id) AS total" in queries.count.sql

    def test_entry_dimension_scopes_to_sessions(self, builder, date_range):
        queries = builder.build(_query(date_range, {"entryUtmSource": "google"}))
        assert queries.session_scoped
        assert "DISTINCT ON (pv.session_id)" in queries.data.sql
        assert "pv.session_id IN (SELECT fpv.session_id FROM" in queries.data.sql
        assert "LOWER(s2.utm_source::text) = LOWER(" in queries.data.sql
        assert queries.count.sql.startswith("SELECT COUNT(*) AS total FROM (SELECT DISTINCT ON (session_id)")

    def test_entry_dimensions_share_one_sub_filter(self, builder, date_range):
        queries = builder.build(_query(date_range, {"entryUtmSource": "google", "entryCountryCode": "DK"}))
        assert queries.data.sql.count("pv.session_id IN (") == 1
        assert "LOWER(s2.country_code::text)" in queries.data.sql

    def test_session_scoped_unique_visitors(self, builder, date_range):
        queries = builder.build(_query(date_range, {"entryDeviceType": "phone"}, metric="uniqueVisitors"))
        assert "COUNT(DISTINCT s2.visitor_id) AS total" in queries.count.sql

    def test_sub_filter_uses_entry_mode_first_page_view(self, builder, date_range):
        queries = builder.build(_query(date_range, {"entryUtmSource": "google"}))
        assert f"({FIRST_PAGE_VIEW_SELECT}) fpv" in queries.data.sql
        assert FIRST_PAGE_VIEW_SELECT in ENTRY_CTE


class TestConditions:
    def test_unknown_is_null(self, builder, date_range):
        queries = builder.build(_query(date_range, {"countryCode": "Unknown"}))
        assert "s.country_code IS NULL" in queries.data.sql
        assert "Unknown" not in queries.data.params.values()

    def test_unknown_bot_score_tests_raw_score(self, builder, date_range):
        queries = builder.build(_query(date_range, {"botScore": "Unknown"}))
        assert "s.bot_score IS NULL" in queries.data.sql
        assert "END IS NULL" not in queries.data.sql

    def test_unknown_entry_bot_score_in_sub_filter(self, builder, date_range):
        queries = builder.build(_query(date_range, {"entryBotScore": "Unknown"}))
        assert queries.session_scoped
        assert "s2.bot_score IS NULL" in queries.count.sql

    def test_case_insensitive_match(self, builder, date_range):
        queries = builder.build(_query(date_range, {"countryCode": "dk"}))
        assert "LOWER(s.country_code::text) = LOWER(:p1)" in queries.data.sql
        assert queries.data.params["p1"] == "dk"

    def test_product_dimension_adds_join(self, builder, date_range):
        queries = builder.build(_query(date_range, {"product": "Glow Serum"}))
        assert "LEFT JOIN app_products ap ON" in queries.data.sql
        assert "LOWER(COALESCE(ap.name, 'Unclassified')::text)" in queries.data.sql

    def test_entry_product_joins_inside_sub_filter(self, builder, date_range):
        queries = builder.build(_query(date_range, {"entryProduct": "Glow Serum"}))
        assert "fpv.url_path = uc.url_path" in queries.data.sql

    def test_classified_product(self, builder, date_range):
        queries = builder.build(_query(date_range, {"classifiedProduct": "7"}))
        assert "ap_f.id::text = :p1" in queries.data.sql
        assert queries.data.params["p1"] == "7"

    def test_classified_country(self, builder, date_range):
        queries = builder.build(_query(date_range, {"classifiedCountry": "DK"}))
        assert "uc_f.country_code = :p1" in queries.data.sql

    def test_classified_unknown(self, builder, date_range):
        queries = builder.build(_query(date_range, {"classifiedProduct": "Unknown"}))
        assert CLASSIFIED_UNKNOWN in queries.data.sql

    def test_unknown_dimension_is_dropped(self, builder, date_range):
        queries = builder.build(_query(date_range, {"noSuchThing": "x"}))
        assert "x" not in queries.data.params.values()

    def test_metric_filter(self, builder, date_range):
        queries = builder.build(_query(date_range, {"deviceType": "phone"}, metric="formViews"))
        assert "COALESCE(ev.form_view, false) = true" in queries.data.sql
        assert "COALESCE(ev.form_view, false) = true" in queries.count.sql

    def test_session_metric_filter_in_count(self, builder, date_range):
        queries = builder.build(_query(date_range, {"entryDeviceType": "phone"}, metric="formStarters"))
        assert "e.action = 'started'" in queries.count.sql


class TestPagination:
    def test_limit_and_offset_binds(self, builder, date_range):
        queries = builder.build(_query(date_range, {"deviceType": "phone"}, page=3, page_size=50))
        params = queries.data.params
        assert "LIMIT :p2 OFFSET :p3" in queries.data.sql
        assert params["p2"] == 50
        assert params["p3"] == 100

    def test_count_does_not_carry_paging_params(self, builder, date_range):
        queries = builder.build(_query(date_range, {"deviceType": "phone"}, page=2))
        assert set(queries.count.params) == bind_names(queries.count.sql)
        assert set(queries.data.params) == bind_names(queries.data.sql)

    def test_page_size_bounds(self, date_range):
        with pytest.raises(InvalidRequest):
            _query(date_range, page_size=50001).validate()
        with pytest.raises(InvalidRequest):
            _query(date_range, page=0).validate()

    def test_reversed_range_is_rejected(self):
        query = DetailQuery(date_range=DateRange(start=date(2026, 2, 6), end=date(2026, 2, 4)))
        with pytest.raises(InvalidRequest) as excinfo:
            query.validate()
        assert excinfo.value.field_name == "dateRange"
