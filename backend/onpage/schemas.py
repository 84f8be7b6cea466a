"""Pydantic schemas for on-page analysis request/response payloads.

Request bodies are camelCase JSON. Each request model converts itself into
the engine-side dataclass (`to_query()`), so nothing below the router sees
pydantic types.
"""

from datetime import date
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from .query.filters import FilterClause
from .query.model import (
    DEFAULT_DETAIL_PAGE_SIZE,
    DEFAULT_ROW_LIMIT,
    MAX_DETAIL_PAGE_SIZE,
    MAX_ROW_LIMIT,
    DateRange,
    DetailQuery,
    FlatQuery,
    ReportQuery,
)


class DateRangeModel(BaseModel):
    """Inclusive calendar-day range."""

    start: date = Field(description="First day (inclusive)", examples=["2026-02-04"])
    end: date = Field(description="Last day (inclusive)", examples=["2026-02-06"])

    @model_validator(mode="after")
    def check_order(self) -> "DateRangeModel":
        if self.start > self.end:
            raise ValueError("start must be on or before end")
        return self

    def to_range(self) -> DateRange:
        return DateRange(start=self.start, end=self.end)


class FilterModel(BaseModel):
    """Table filter. Same field -> OR, different fields -> AND."""

    field: str = Field(description="Dimension id", examples=["countryCode"])
    operator: Literal["equals", "not_equals", "contains", "not_contains"] = Field(
        description="Comparison operator (case-insensitive)"
    )
    value: str = Field(description="Value; 'Unknown' matches missing values", examples=["DK"])

    def to_clause(self) -> FilterClause:
        return FilterClause(field=self.field, operator=self.operator, value=self.value)


class ReportQueryRequest(BaseModel):
    """One level of a hierarchical report."""

    date_range: DateRangeModel = Field(alias="dateRange")
    dimensions: List[str] = Field(
        min_length=1,
        description="Full drill path, outermost first",
        examples=[["countryCode", "utmSource"]],
    )
    depth: int = Field(default=0, ge=0, description="Index into dimensions of the level being grouped")
    parent_filters: Dict[str, str] = Field(
        default_factory=dict,
        alias="parentFilters",
        description="Values of the already expanded levels, keyed by dimension id",
    )
    filters: List[FilterModel] = Field(default_factory=list)
    sort_by: Optional[str] = Field(default=None, alias="sortBy", examples=["pageViews"])
    sort_direction: Literal["ASC", "DESC"] = Field(default="DESC", alias="sortDirection")
    metrics: List[str] = Field(
        default_factory=list,
        description="Requested metric ids; conversion metrics trigger attribution",
    )
    limit: int = Field(default=DEFAULT_ROW_LIMIT, ge=1, le=MAX_ROW_LIMIT)

    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {
            "example": {
                "dateRange": {"start": "2026-02-04", "end": "2026-02-06"},
                "dimensions": ["countryCode", "utmSource"],
                "depth": 1,
                "parentFilters": {"countryCode": "DK"},
                "metrics": ["pageViews", "trials"],
            }
        },
    }

    @model_validator(mode="after")
    def check_depth(self) -> "ReportQueryRequest":
        if self.depth >= len(self.dimensions):
            raise ValueError(f"depth must be less than the number of dimensions ({len(self.dimensions)})")
        return self

    def to_query(self) -> ReportQuery:
        return ReportQuery(
            date_range=self.date_range.to_range(),
            dimensions=tuple(self.dimensions),
            depth=self.depth,
            parent_filters=dict(self.parent_filters),
            filters=tuple(f.to_clause() for f in self.filters),
            sort_by=self.sort_by,
            sort_direction=self.sort_direction,
            metrics=tuple(self.metrics),
            limit=self.limit,
        )


class FlatQueryRequest(BaseModel):
    """All dimensions grouped together (no drill-down)."""

    date_range: DateRangeModel = Field(alias="dateRange")
    dimensions: List[str] = Field(min_length=1)
    filters: List[FilterModel] = Field(default_factory=list)

    model_config = {"populate_by_name": True}

    def to_query(self) -> FlatQuery:
        return FlatQuery(
            date_range=self.date_range.to_range(),
            dimensions=tuple(self.dimensions),
            filters=tuple(f.to_clause() for f in self.filters),
        )


class PaginationModel(BaseModel):
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=DEFAULT_DETAIL_PAGE_SIZE, ge=1, le=MAX_DETAIL_PAGE_SIZE, alias="pageSize")

    model_config = {"populate_by_name": True}


class DetailRequest(BaseModel):
    """Drill-through into the page views behind one report cell."""

    date_range: DateRangeModel = Field(alias="dateRange")
    dimension_filters: Dict[str, str] = Field(
        default_factory=dict,
        alias="dimensionFilters",
        description="Dimension values identifying the cell",
    )
    metric_id: Optional[str] = Field(
        default=None,
        alias="metricId",
        description="Clicked metric (scrollPastHero, formViews, formStarters, uniqueVisitors)",
    )
    pagination: PaginationModel = Field(default_factory=PaginationModel)

    model_config = {"populate_by_name": True}

    @field_validator("dimension_filters")
    @classmethod
    def drop_blank_keys(cls, value: Dict[str, str]) -> Dict[str, str]:
        return {k: v for k, v in value.items() if k}

    def to_query(self) -> DetailQuery:
        return DetailQuery(
            date_range=self.date_range.to_range(),
            dimension_filters=dict(self.dimension_filters),
            metric_id=self.metric_id,
            page=self.pagination.page,
            page_size=self.pagination.page_size,
        )


# =============================================================================
# RESPONSES
# =============================================================================

class ReportRow(BaseModel):
    key: str = Field(description="Parent values and this row's id joined with '::'")
    attribute: str = Field(description="Display value of the grouped dimension")
    depth: int
    has_children: bool = Field(alias="hasChildren")
    metrics: Dict[str, Union[int, float]]

    model_config = {"populate_by_name": True}


class ReportResponse(BaseModel):
    rows: List[ReportRow]
    dimension: str
    depth: int
    mode: str = Field(description="entry, pageView or funnel")
    attribution: Optional[str] = Field(default=None, description="direct or tracking; null without conversion metrics")


class FlatResponse(BaseModel):
    rows: List[Dict[str, Any]]
    mode: str


class DetailResponse(BaseModel):
    records: List[Dict[str, Any]]
    total: int
    page: int
    page_size: int = Field(alias="pageSize")

    model_config = {"populate_by_name": True}


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status", examples=["ok"])


class ErrorResponse(BaseModel):
    """Error body for 400 / 502 responses."""

    code: str
    error: str
    category: str
    retryable: bool
    field: Optional[str] = None
    suggestion: Optional[str] = None
