"""
SQL Builder
===========

Named-parameter bookkeeping for hand-assembled SQL.

WHAT:
    SqlBuilder hands out bind names (`:p1`, `:p2`, ...) for values as they
    are encountered, so fragments produced by different components (filter
    compiler, enrichment resolver, mode builders) can be concatenated in any
    order without anyone counting placeholders.

    CompiledQuery is the immutable result: the SQL string, the parameter
    dict, and the names of list-valued (expanding) binds.

WHY:
    Every query in this package is rendered through SQLAlchemy `text()`.
    Named binds keep values out of the SQL string entirely and make
    fragments composable. Date bounds always use the fixed names
    `:start_date` / `:end_date` so catalog expressions may reference them.

NOTE:
    Casts on bind parameters are written `CAST(:name AS type)`. The
    `:name::type` form does not survive `text()` bind parsing.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import bindparam, text
from sqlalchemy.sql.elements import TextClause


@dataclass(frozen=True)
class CompiledQuery:
    """A finished SQL statement plus its parameters."""
    sql: str
    params: Dict[str, Any] = field(default_factory=dict)
    expanding: Tuple[str, ...] = ()

    def to_text(self) -> TextClause:
        """Render as a SQLAlchemy TextClause with expanding binds declared."""
        clause = text(self.sql)
        if self.expanding:
            clause = clause.bindparams(*(bindparam(name, expanding=True) for name in self.expanding))
        return clause


class SqlBuilder:
    """Allocates named bind parameters for one statement."""

    START_DATE = "start_date"
    END_DATE = "end_date"

    def __init__(self, start_date: Optional[date] = None, end_date: Optional[date] = None, prefix: str = "p"):
        self._prefix = prefix
        self._counter = 0
        self._params: Dict[str, Any] = {}
        self._expanding: List[str] = []
        if start_date is not None:
            self._params[self.START_DATE] = start_date
        if end_date is not None:
            self._params[self.END_DATE] = end_date

    def bind(self, value: Any) -> str:
        """Register a scalar value and return its placeholder (`:pN`)."""
        self._counter += 1
        name = f"{self._prefix}{self._counter}"
        self._params[name] = value
        return f":{name}"

    def bind_list(self, values: Iterable[Any]) -> str:
        """Register a list for an `IN` clause and return `(:pN)`."""
        self._counter += 1
        name = f"{self._prefix}{self._counter}"
        self._params[name] = list(values)
        self._expanding.append(name)
        return f"(:{name})"

    def bind_named(self, name: str, value: Any) -> str:
        """Register a value under a fixed name."""
        self._params[name] = value
        return f":{name}"

    @property
    def params(self) -> Dict[str, Any]:
        return dict(self._params)

    def finish(self, sql: str) -> CompiledQuery:
        return CompiledQuery(sql=sql, params=dict(self._params), expanding=tuple(self._expanding))


def date_range_sql(column: str) -> str:
    """Half-open day range on a timestamp column using the fixed date binds."""
    return (
        f"{column} >= CAST(:{SqlBuilder.START_DATE} AS date) "
        f"AND {column} < CAST(:{SqlBuilder.END_DATE} AS date) + INTERVAL '1 day'"
    )


def and_join(clauses: Iterable[str]) -> str:
    """AND together the non-empty clauses."""
    parts = [c for c in clauses if c]
    return " AND ".join(parts)
