"""
Query Error Taxonomy
====================

Error classification for the drill-down query engine.

WHY THIS FILE EXISTS
--------------------
A report request can fail in exactly two ways that a caller cares about:

    1. The request itself is wrong (bad date range, unknown dimension,
       depth outside the dimension list). The caller must fix it and
       nothing was sent to a datastore.

    2. A datastore could not answer in time (pool exhausted, statement
       timeout, connection refused). The caller may retry as-is.

Everything else (SQL programming errors, driver bugs) is a genuine
server fault and propagates untouched so FastAPI turns it into a 500.

Buckets that cannot be attributed to a conversion are NOT errors: the
attribution matcher simply leaves them at zero.

RELATED FILES
-------------
- onpage/main.py: maps QueryError subclasses to HTTP status codes
- onpage/services/stores.py: classifies driver errors into DownstreamUnavailable
- onpage/query/catalog.py: raises UnknownDimension
"""

from dataclasses import dataclass, field as dataclass_field
from enum import Enum
from typing import Any, Dict, Optional


# =============================================================================
# ERROR CLASSIFICATION ENUMS
# =============================================================================

class ErrorCategory(Enum):
    """
    Categories of errors for classification and handling.

    WHAT: Separates caller mistakes from infrastructure trouble.

    WHY: The category decides the HTTP status and whether a retry can help.
    """
    SCHEMA = "schema"              # Request shape, types, ranges
    SEMANTIC = "semantic"          # Valid shape, impossible combination
    RESOURCE = "resource"          # Datastore pool, timeouts, connectivity


class ErrorCode(Enum):
    """
    Machine-readable error codes.

    WHAT: Stable identifiers for monitoring and client-side handling.
    """
    # Schema errors
    MISSING_REQUIRED_FIELD = "ERR_001"
    INVALID_FIELD_TYPE = "ERR_002"
    INVALID_DATE_RANGE = "ERR_003"

    # Catalog errors
    UNKNOWN_DIMENSION = "ERR_011"
    OUT_OF_RANGE = "ERR_016"

    # Resource errors
    QUERY_TIMEOUT = "ERR_030"
    DATABASE_UNAVAILABLE = "ERR_031"
    POOL_EXHAUSTED = "ERR_032"


# =============================================================================
# QUERY ERROR EXCEPTIONS
# =============================================================================

@dataclass(eq=False)
class QueryError(Exception):
    """
    Base exception for query engine failures.

    WHAT: Carries the error code, a user-facing message and optional
          field/suggestion metadata.

    ATTRIBUTES:
        code: ErrorCode (machine-readable)
        message: User-friendly message
        category: ErrorCategory
        field_name: Offending request field, if any
        suggestion: How to fix it, if known
        retryable: Whether repeating the same request can succeed
        details: Extra debug information (never shown to end users)
    """
    code: ErrorCode
    message: str
    category: ErrorCategory = ErrorCategory.SCHEMA
    field_name: Optional[str] = None
    suggestion: Optional[str] = None
    retryable: bool = False
    details: Dict[str, Any] = dataclass_field(default_factory=dict)

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def __str__(self) -> str:
        if self.field_name:
            return f"[{self.code.value}] {self.field_name}: {self.message}"
        return f"[{self.code.value}] {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        """Structured representation for logs and JSON error bodies."""
        result: Dict[str, Any] = {
            "code": self.code.value,
            "error": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.field_name:
            result["field"] = self.field_name
        if self.suggestion:
            result["suggestion"] = self.suggestion
        return result


@dataclass(eq=False)
class InvalidRequest(QueryError):
    """The request is malformed or references something the catalog lacks."""
    code: ErrorCode = ErrorCode.INVALID_FIELD_TYPE
    message: str = "Invalid request"
    category: ErrorCategory = ErrorCategory.SCHEMA


@dataclass(eq=False)
class UnknownDimension(InvalidRequest):
    """A dimension id has no expression in the active query mode."""
    code: ErrorCode = ErrorCode.UNKNOWN_DIMENSION
    message: str = "Unknown dimension"
    category: ErrorCategory = ErrorCategory.SEMANTIC
    field_name: Optional[str] = "dimensions"


@dataclass(eq=False)
class DownstreamUnavailable(QueryError):
    """A datastore failed to answer. Safe to retry; never retried internally."""
    code: ErrorCode = ErrorCode.DATABASE_UNAVAILABLE
    message: str = "The data source is temporarily unavailable. Please try again."
    category: ErrorCategory = ErrorCategory.RESOURCE
    retryable: bool = True
    store: Optional[str] = None


def unknown_dimension(dimension_id: str, mode_label: str, valid=()) -> UnknownDimension:
    """Build an UnknownDimension with a suggestion listing valid ids."""
    suggestion = None
    if valid:
        suggestion = "Valid options are: " + ", ".join(sorted(valid))
    return UnknownDimension(
        message=f"Dimension '{dimension_id}' is not available in {mode_label} mode",
        suggestion=suggestion,
        details={"dimension": dimension_id, "mode": mode_label},
    )
