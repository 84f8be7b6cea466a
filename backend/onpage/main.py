"""FastAPI application entrypoint.

Configures CORS, logging and error mapping, includes the on-page router,
and exposes a healthcheck endpoint.

Run with:
    uvicorn onpage.main:app --app-dir backend --reload
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .database import dispose_engines
from .deps import get_settings
from .query.errors import DownstreamUnavailable, ErrorCode, InvalidRequest
from .routers import on_page as on_page_router
from . import schemas


logger = logging.getLogger(__name__)


def _validation_body(exc: RequestValidationError) -> dict:
    """First pydantic error as a field-level message in the QueryError shape."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = [str(part) for part in first.get("loc", ()) if part != "body"]
    return {
        "code": ErrorCode.INVALID_FIELD_TYPE.value,
        "error": first.get("msg", "Invalid request"),
        "category": "schema",
        "retryable": False,
        "field": ".".join(location) or None,
    }


def create_app() -> FastAPI:
    settings = get_settings()
    logging.basicConfig(level=settings.LOG_LEVEL)

    app = FastAPI(
        title="On-Page Analytics API",
        description="""
        Drill-down reporting over on-page behavior with CRM conversion attribution.

        - **/on-page-analysis/query**: one level of a hierarchical report
        - **/on-page-analysis/flat**: raw counts grouped by several dimensions
        - **/on-page-analysis/detail**: page-view records behind a report cell
        """,
        version="1.0.0",
    )

    # Trust X-Forwarded-Proto from the load balancer
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    # BACKEND_CORS_ORIGINS is a comma-separated list
    allowed_origins = [o.strip() for o in settings.BACKEND_CORS_ORIGINS.split(",") if o.strip()]
    logger.info(f"[CORS] Allowed origins: {allowed_origins}")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(InvalidRequest)
    async def invalid_request_handler(request: Request, exc: InvalidRequest):
        logger.info("[REQUEST] Rejected %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content=_validation_body(exc))

    @app.exception_handler(DownstreamUnavailable)
    async def downstream_handler(request: Request, exc: DownstreamUnavailable):
        logger.warning("[REQUEST] %s failed, %s store unavailable: %s", request.url.path, exc.store, exc)
        return JSONResponse(status_code=502, content=exc.to_dict())

    app.include_router(on_page_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
        description="Liveness probe. Does not touch either datastore.",
    )
    def health():
        return schemas.HealthResponse(status="ok")

    @app.on_event("shutdown")
    async def shutdown_event():
        """Close pooled datastore connections."""
        await dispose_engines()
        logger.info("[SHUTDOWN] Database engines disposed")

    return app


app = create_app()
