"""
Error types raised by the notegraph query subsystem.

Syntax errors carry the character offset of the offending token; plan
errors carry an optional "did you mean" suggestion. Storage errors from
SQLAlchemy are never wrapped.
"""
from typing import List, Optional


class QueryError(Exception):
    """Base class for errors raised deliberately by the query subsystem."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class _PositionedError(QueryError):

    def __init__(self, message: str, position: int = 0,
                 expected: Optional[str] = None, got: Optional[str] = None):
        super().__init__(message)
        self.position = position
        self.expected = expected
        self.got = got

    def __str__(self):
        return f"{self.message} (at position {self.position})"


class GraphParseError(_PositionedError):
    """Malformed graph DSL input."""
    pass


class QueryParseError(_PositionedError):
    """Malformed textual unified query."""
    pass


class PlanError(QueryError):
    """
    A query that parsed but does not match the schema.

    Attributes:
        suggestion: "Did you mean ..." hint, if a close match exists
        available: Known names in scope, for callers that list them
    """

    def __init__(self, message: str, suggestion: Optional[str] = None,
                 available: Optional[List[str]] = None):
        super().__init__(message)
        self.suggestion = suggestion
        self.available = available or []

    def __str__(self):
        if self.suggestion:
            return f"{self.message}. {self.suggestion}"
        return self.message


class RegistryError(QueryError):
    """Malformed saved-query definitions, or an unknown saved query name."""
    pass
