"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Optional

from fastapi import Depends
from pydantic_settings import BaseSettings, SettingsConfigDict

from .query.catalog import DimensionCatalog, build_default_catalog
from .query.model import DEFAULT_ROW_LIMIT


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"
    LOG_LEVEL: str = "INFO"

    # Behavioral store (PostgreSQL, tracker_* tables)
    BEHAVIORAL_DATABASE_URL: Optional[str] = None
    # Conversion store (MariaDB CRM)
    CONVERSION_DATABASE_URL: Optional[str] = None

    # Pooling
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_RECYCLE_SECONDS: int = 3600
    DB_POOL_TIMEOUT_SECONDS: float = 10.0

    # Per-statement limit; surfaces as a retryable 502
    QUERY_TIMEOUT_SECONDS: float = 30.0

    REPORT_ROW_LIMIT: int = DEFAULT_ROW_LIMIT

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


@lru_cache()
def get_catalog() -> DimensionCatalog:
    """Dimension catalog, built once per process."""
    return build_default_catalog()


def get_behavioral_store(settings: Settings = Depends(get_settings)):
    from .database import get_behavioral_engine
    from .services.stores import BehavioralStore

    return BehavioralStore(get_behavioral_engine(), timeout_seconds=settings.QUERY_TIMEOUT_SECONDS)


def get_conversion_store(settings: Settings = Depends(get_settings)):
    from .database import get_conversion_engine
    from .services.stores import ConversionStore

    return ConversionStore(get_conversion_engine(), timeout_seconds=settings.QUERY_TIMEOUT_SECONDS)


def get_report_service(
    settings: Settings = Depends(get_settings),
    catalog: DimensionCatalog = Depends(get_catalog),
    behavioral=Depends(get_behavioral_store),
    conversion=Depends(get_conversion_store),
):
    from .services.report_service import OnPageReportService

    return OnPageReportService(
        catalog=catalog,
        behavioral=behavioral,
        conversion=conversion,
        row_limit=settings.REPORT_ROW_LIMIT,
    )
