"""Helpers for working with database/SQLAlchemy errors."""

from __future__ import annotations

from sqlalchemy.exc import DBAPIError, SQLAlchemyError

_SERIALIZATION_SQLSTATES = {"40001", "40P01"}


def _sqlstate(exc: SQLAlchemyError) -> str | None:
    orig = getattr(exc, "orig", None)
    if orig is None:
        return None
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def is_serialization_failure(exc: SQLAlchemyError) -> bool:
    """Return ``True`` if ``exc`` signals a retryable concurrency conflict.

    Covers Postgres serialization failures and deadlocks as well as SQLite's
    ``database is locked`` error.
    """

    if not isinstance(exc, DBAPIError):
        return False

    if _sqlstate(exc) in _SERIALIZATION_SQLSTATES:
        return True

    message = str(getattr(exc, "orig", exc)).lower()
    return "database is locked" in message or "could not serialize" in message
