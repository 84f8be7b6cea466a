"""Shared test doubles for the on-page engine tests.

WHAT: In-memory store fakes and a bind-inlining helper for SQL parsing.
WHY: Services only depend on `fetch_all(CompiledQuery)`, so tests can run
     the full report pipeline without either database.
"""

import asyncio
import re
from datetime import date, datetime
from typing import Any, Callable, Iterable, List, Optional, Sequence, Tuple

from onpage.query.builder import CompiledQuery


Rows = List[dict]


class FakeStore:
    """
    Records every query and answers from a routing table.

    `routes` is a list of (sql substring, rows); the first route whose
    substring occurs in the SQL wins. Unmatched queries return [].
    """

    def __init__(
        self,
        routes: Sequence[Tuple[str, Rows]] = (),
        delay: float = 0.0,
        error: Optional[BaseException] = None,
        responder: Optional[Callable[[CompiledQuery], Rows]] = None,
    ):
        self.routes = list(routes)
        self.delay = delay
        self.error = error
        self.responder = responder
        self.queries: List[CompiledQuery] = []
        self.cancelled = 0
        self.completed = 0

    async def fetch_all(self, query: CompiledQuery) -> Rows:
        self.queries.append(query)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        if self.error is not None:
            raise self.error
        self.completed += 1
        if self.responder is not None:
            return [dict(r) for r in self.responder(query)]
        for needle, rows in self.routes:
            if needle in query.sql:
                return [dict(r) for r in rows]
        return []

    def sql_containing(self, needle: str) -> List[str]:
        return [q.sql for q in self.queries if needle in q.sql]


# Markers that tell the query shapes apart
METRICS_SQL = "AS page_views"
TRACKING_SQL = "AS tracking_source"
VISITORS_SQL = "AS visitor_id"
CRM_DIRECT_SQL = "AS dimension_value"
CRM_TRACKING_SQL = "AS campaign_id"
CRM_VISITORS_SQL = "AS ff_vid"


def metric_row(dimension: str, value: Any, page_views: int, unique_visitors: Optional[int] = None, **extra) -> dict:
    """Behavioral METRICS row with sensible zero defaults."""
    row = {
        dimension: value,
        "page_views": page_views,
        "unique_visitors": page_views if unique_visitors is None else unique_visitors,
        "bounced_count": 0,
        "active_time_count": 0,
        "total_active_time": 0,
        "scroll_past_hero": 0,
        "form_views": 0,
        "form_starters": 0,
    }
    row.update(extra)
    return row


_BIND = re.compile(r"(?<!:):([A-Za-z_]\w*)")


def _literal(value: Any) -> str:
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, datetime):
        return f"'{value.isoformat(sep=' ')}'"
    if isinstance(value, date):
        return f"'{value.isoformat()}'"
    if isinstance(value, (list, tuple)):
        return ", ".join(_literal(v) for v in value) or "NULL"
    return "'" + str(value).replace("'", "''") + "'"


def inline_binds(query: CompiledQuery) -> str:
    """Replace `:name` binds with SQL literals (casts like `::text` are left alone)."""
    def substitute(match):
        name = match.group(1)
        if name not in query.params:
            raise KeyError(f"unbound parameter :{name}")
        return _literal(query.params[name])

    return _BIND.sub(substitute, query.sql)


def bind_names(sql: str) -> Iterable[str]:
    return set(_BIND.findall(sql))
