"""Pytest configuration for on-page engine tests

WHAT: Shared fixtures (catalog, date range, fake stores, service factory)
WHY: Every test builds SQL against the same catalog and runs services
     against in-memory stores instead of PostgreSQL / MariaDB
REFERENCES:
    - onpage/query/catalog.py: build_default_catalog
    - onpage/services/report_service.py: OnPageReportService
    - onpage/tests/helpers.py: FakeStore
"""

import os
from datetime import date

import pytest

# Engines are never created in tests; make sure a stray .env is not needed.
os.environ.setdefault("LOG_LEVEL", "WARNING")

from onpage.query.catalog import build_default_catalog
from onpage.query.model import DateRange
from onpage.services.report_service import OnPageReportService

from .helpers import FakeStore


@pytest.fixture(scope="session")
def catalog():
    return build_default_catalog()


@pytest.fixture
def date_range():
    return DateRange(start=date(2026, 2, 4), end=date(2026, 2, 6))


@pytest.fixture
def make_service(catalog):
    """Factory: make_service(behavioral=FakeStore(...), conversion=FakeStore(...))."""
    def factory(behavioral=None, conversion=None, **kwargs):
        return OnPageReportService(
            catalog=catalog,
            behavioral=behavioral or FakeStore(),
            conversion=conversion or FakeStore(),
            **kwargs,
        )

    return factory
