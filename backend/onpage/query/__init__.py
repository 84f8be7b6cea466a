"""
Drill-Down Query Engine
=======================

Translates report requests into SQL for the behavioral store (PostgreSQL)
and the conversion store (MariaDB).

ARCHITECTURE OVERVIEW
---------------------
```
ReportQuery / FlatQuery / DetailQuery   (model.py)
    |
    v
DimensionCatalog                        (catalog.py)
    |   id -> SQL expression per mode (entry / pageView / funnel)
    v
FilterCompiler                          (filters.py)
    |   same field OR, different fields AND, "Unknown" -> IS NULL
    v
Mode builders                           (modes.py)
    |   entry_pv CTE / all page views / matching_sessions CTE
    |   + EnrichedDimensionResolver     (enrichment.py)
    v
CompiledQuery                           (builder.py)
    |   SQL text + named binds, run through SQLAlchemy text()
    v
Row normalizer                          (normalizer.py)
```

Conversion-store SQL lives in conversion.py, drill-through SQL in
detail.py, metric formulas in metrics.py and the error taxonomy in
errors.py.

COMPONENTS
----------
- builder.py: named bind parameters, CompiledQuery
- catalog.py: dimension definitions and mode-aware resolution
- filters.py: filter compilation
- modes.py: aggregate SQL per mode and output shape
- enrichment.py: display-name join for tracking ids
- conversion.py: CRM direct / tracking / visitor queries
- detail.py: paginated page-view drill-through
- normalizer.py: row coercion, collapsing, report rows
- metrics.py: additive columns and derived rates
- model.py: request-scoped query dataclasses
- errors.py: QueryError family
"""

# Re-export main components for clean imports

from .builder import CompiledQuery, SqlBuilder

from .catalog import (
    DimensionCatalog,
    DimensionDef,
    QueryMode,
    ResolvedDimension,
    build_default_catalog,
)

from .errors import (
    DownstreamUnavailable,
    ErrorCategory,
    ErrorCode,
    InvalidRequest,
    QueryError,
    UnknownDimension,
)

from .filters import FilterClause, FilterCompiler, UNKNOWN

from .model import DateRange, DetailQuery, FlatQuery, ReportQuery

from .modes import AggregateRequest, AggregateShape, build_mode_builders, select_mode

__all__ = [
    # builder.py
    "CompiledQuery",
    "SqlBuilder",
    # catalog.py
    "DimensionCatalog",
    "DimensionDef",
    "QueryMode",
    "ResolvedDimension",
    "build_default_catalog",
    # errors.py
    "DownstreamUnavailable",
    "ErrorCategory",
    "ErrorCode",
    "InvalidRequest",
    "QueryError",
    "UnknownDimension",
    # filters.py
    "FilterClause",
    "FilterCompiler",
    "UNKNOWN",
    # model.py
    "DateRange",
    "DetailQuery",
    "FlatQuery",
    "ReportQuery",
    # modes.py
    "AggregateRequest",
    "AggregateShape",
    "build_mode_builders",
    "select_mode",
]
