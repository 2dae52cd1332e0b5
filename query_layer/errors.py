"""Error taxonomy for the query layer.

Driver errors (``oracledb.Error``) are never wrapped; they propagate as-is so
callers can inspect ORA- codes for constraint violations and the like.
"""
from typing import Any, Dict, Optional


class QueryLayerError(Exception):
    """Base class for every error raised by the query layer."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class NotFoundError(QueryLayerError):
    """Unknown table, or a table without a usable primary key."""


class ValidationError(QueryLayerError):
    """Structured input that cannot be turned into safe SQL."""


class EmptyDataError(QueryLayerError):
    """No valid columns remain after filtering write data against the schema."""


class NoRowsAffectedError(QueryLayerError):
    """An update or delete matched nothing.

    This covers both a missing record and an optimistic-lock version conflict;
    the two cannot be told apart from the statement result.
    """


class TransactionTimeoutError(QueryLayerError, TimeoutError):
    """The caller stopped waiting for a transaction.

    The underlying unit of work is not cancelled and may still commit or roll
    back after this is raised.
    """


class QueryTimeoutError(QueryLayerError, TimeoutError):
    """The caller stopped waiting for a single statement."""
