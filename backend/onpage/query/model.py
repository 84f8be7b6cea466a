"""
Request-scoped query objects.

These are the engine-side counterparts of the HTTP schemas in
`onpage/schemas.py`. Routers convert validated pydantic models into these
dataclasses; services and builders only ever see these.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Optional, Tuple

from .errors import ErrorCode, InvalidRequest
from .filters import FilterClause, parent_filter_clauses
from .metrics import CONVERSION_METRICS


MAX_DETAIL_PAGE_SIZE = 50000
DEFAULT_DETAIL_PAGE_SIZE = 100
DEFAULT_ROW_LIMIT = 1000
MAX_ROW_LIMIT = 10000


@dataclass(frozen=True)
class DateRange:
    start: date
    end: date

    def validate(self) -> None:
        if self.start > self.end:
            raise InvalidRequest(
                code=ErrorCode.INVALID_DATE_RANGE,
                message="dateRange.start must be on or before dateRange.end",
                field_name="dateRange",
            )


@dataclass(frozen=True)
class ReportQuery:
    """
    One level of a hierarchical report.

    `dimensions` is the full drill path; `depth` picks the dimension being
    grouped; `parent_filters` pin the values of already-expanded levels.
    """
    date_range: DateRange
    dimensions: Tuple[str, ...]
    depth: int = 0
    parent_filters: Dict[str, str] = field(default_factory=dict)
    filters: Tuple[FilterClause, ...] = ()
    sort_by: Optional[str] = None
    sort_direction: str = "DESC"
    metrics: Tuple[str, ...] = ()
    limit: int = DEFAULT_ROW_LIMIT

    @property
    def current_dimension(self) -> str:
        return self.dimensions[self.depth]

    @property
    def wants_conversions(self) -> bool:
        return any(m in CONVERSION_METRICS for m in self.metrics) or (self.sort_by in CONVERSION_METRICS)

    def all_filters(self) -> Tuple[FilterClause, ...]:
        return tuple(parent_filter_clauses(self.parent_filters)) + tuple(self.filters)

    def validate(self) -> None:
        """Raise InvalidRequest before any query is issued."""
        self.date_range.validate()
        if not self.dimensions:
            raise InvalidRequest(
                code=ErrorCode.MISSING_REQUIRED_FIELD,
                message="At least one dimension is required",
                field_name="dimensions",
            )
        if not 0 <= self.depth < len(self.dimensions):
            raise InvalidRequest(
                code=ErrorCode.OUT_OF_RANGE,
                message=f"depth must be between 0 and {len(self.dimensions) - 1}",
                field_name="depth",
            )
        if self.sort_direction not in ("ASC", "DESC"):
            raise InvalidRequest(
                code=ErrorCode.INVALID_FIELD_TYPE,
                message="sortDirection must be ASC or DESC",
                field_name="sortDirection",
            )
        if not 1 <= self.limit <= MAX_ROW_LIMIT:
            raise InvalidRequest(
                code=ErrorCode.OUT_OF_RANGE,
                message=f"limit must be between 1 and {MAX_ROW_LIMIT}",
                field_name="limit",
            )


@dataclass(frozen=True)
class FlatQuery:
    """All dimensions grouped together, raw counts only."""
    date_range: DateRange
    dimensions: Tuple[str, ...]
    filters: Tuple[FilterClause, ...] = ()

    def validate(self) -> None:
        self.date_range.validate()
        if not self.dimensions:
            raise InvalidRequest(
                code=ErrorCode.MISSING_REQUIRED_FIELD,
                message="At least one dimension is required",
                field_name="dimensions",
            )


@dataclass(frozen=True)
class DetailQuery:
    """Drill-through to the underlying page-view records of one cell."""
    date_range: DateRange
    dimension_filters: Dict[str, str] = field(default_factory=dict)
    metric_id: Optional[str] = None
    page: int = 1
    page_size: int = DEFAULT_DETAIL_PAGE_SIZE

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    def validate(self) -> None:
        self.date_range.validate()
        if self.page < 1:
            raise InvalidRequest(
                code=ErrorCode.OUT_OF_RANGE,
                message="page must be at least 1",
                field_name="pagination.page",
            )
        if not 1 <= self.page_size <= MAX_DETAIL_PAGE_SIZE:
            raise InvalidRequest(
                code=ErrorCode.OUT_OF_RANGE,
                message=f"pageSize must be between 1 and {MAX_DETAIL_PAGE_SIZE}",
                field_name="pagination.pageSize",
            )
