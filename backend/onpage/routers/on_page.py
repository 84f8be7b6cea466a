"""
On-page analysis router
-----------------------
Purpose:
- Expose the drill-down engine: hierarchical report levels, flat grouped
  counts, and the page-view drill-through behind a report cell.
Design choices:
- Handlers only translate between pydantic models and engine dataclasses.
- Validation and datastore errors are raised as QueryError subclasses and
  mapped to 400 / 502 by the handlers registered in main.py.
"""

from fastapi import APIRouter, Depends

from ..deps import get_report_service
from ..schemas import (
    DetailRequest,
    DetailResponse,
    ErrorResponse,
    FlatQueryRequest,
    FlatResponse,
    ReportQueryRequest,
    ReportResponse,
    ReportRow,
)
from ..services.report_service import OnPageReportService


router = APIRouter(prefix="/on-page-analysis", tags=["on-page"])

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid request or unknown dimension"},
    502: {"model": ErrorResponse, "description": "A datastore is temporarily unavailable"},
}


@router.post(
    "/query",
    response_model=ReportResponse,
    responses=ERROR_RESPONSES,
    summary="Aggregate one report level",
)
async def query_report(
    payload: ReportQueryRequest,
    service: OnPageReportService = Depends(get_report_service),
) -> ReportResponse:
    result = await service.run_report(payload.to_query())
    return ReportResponse(
        rows=[ReportRow(**row) for row in result.rows],
        dimension=result.dimension,
        depth=result.depth,
        mode=result.mode.value,
        attribution=result.attribution.value if result.attribution else None,
    )


@router.post(
    "/flat",
    response_model=FlatResponse,
    responses=ERROR_RESPONSES,
    summary="Raw counts grouped by all dimensions",
)
async def query_flat(
    payload: FlatQueryRequest,
    service: OnPageReportService = Depends(get_report_service),
) -> FlatResponse:
    result = await service.run_flat(payload.to_query())
    return FlatResponse(rows=result.rows, mode=result.mode.value)


@router.post(
    "/detail",
    response_model=DetailResponse,
    responses=ERROR_RESPONSES,
    summary="Page-view records behind a report cell",
)
async def query_detail(
    payload: DetailRequest,
    service: OnPageReportService = Depends(get_report_service),
) -> DetailResponse:
    result = await service.run_detail(payload.to_query())
    return DetailResponse(
        records=result.records,
        total=result.total,
        page=result.page,
        page_size=result.page_size,
    )
