"""
Datastore repositories.

WHAT:
    BehavioralStore and ConversionStore execute CompiledQuery objects and
    return plain dict rows. Every call has a deadline; failures that a
    retry could fix become DownstreamUnavailable.

WHY:
    Services depend on this small seam (`fetch_all`) rather than on
    engines, so tests substitute in-memory fakes and the report service
    never sees driver exceptions.

ERROR CLASSIFICATION:
    asyncio deadline / pool checkout timeout   -> DownstreamUnavailable(QUERY_TIMEOUT / POOL_EXHAUSTED)
    OperationalError / InterfaceError / OSError
    / invalidated connections                  -> DownstreamUnavailable
    anything else (ProgrammingError, ...)      -> propagates (server bug)

Cancellation of the awaiting task propagates into the driver call, which
cancels the in-flight statement.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncEngine

from ..query.builder import CompiledQuery
from ..query.errors import DownstreamUnavailable, ErrorCode


logger = logging.getLogger(__name__)


class SqlStore:
    """Executes read-only text() queries against one engine."""

    label = "store"

    def __init__(self, engine: AsyncEngine, timeout_seconds: float = 30.0):
        self.engine = engine
        self.timeout_seconds = timeout_seconds

    async def _execute(self, query: CompiledQuery) -> List[Dict[str, Any]]:
        async with self.engine.connect() as conn:
            result = await conn.execute(query.to_text(), query.params)
            return [dict(row) for row in result.mappings().all()]

    async def fetch_all(self, query: CompiledQuery) -> List[Dict[str, Any]]:
        started = time.monotonic()
        try:
            rows = await asyncio.wait_for(self._execute(query), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise self._unavailable(ErrorCode.QUERY_TIMEOUT, "query timed out", exc) from exc
        except PoolTimeoutError as exc:
            raise self._unavailable(ErrorCode.POOL_EXHAUSTED, "connection pool exhausted", exc) from exc
        except (OperationalError, InterfaceError) as exc:
            raise self._unavailable(ErrorCode.DATABASE_UNAVAILABLE, "database unavailable", exc) from exc
        except DBAPIError as exc:
            if exc.connection_invalidated:
                raise self._unavailable(ErrorCode.DATABASE_UNAVAILABLE, "connection lost", exc) from exc
            raise
        except OSError as exc:
            raise self._unavailable(ErrorCode.DATABASE_UNAVAILABLE, "network error", exc) from exc

        logger.debug(
            "[STORE] %s returned %d rows in %.0f ms",
            self.label, len(rows), (time.monotonic() - started) * 1000,
        )
        return rows

    def _unavailable(self, code: ErrorCode, reason: str, exc: BaseException) -> DownstreamUnavailable:
        logger.warning("[STORE] %s %s: %s", self.label, reason, exc)
        return DownstreamUnavailable(code=code, store=self.label, details={"reason": reason})


class BehavioralStore(SqlStore):
    """tracker_* tables (PostgreSQL)."""
    label = "behavioral"


class ConversionStore(SqlStore):
    """CRM tables (MariaDB)."""
    label = "conversion"
