"""Structured errors raised by ordered list operations."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from sqlalchemy.exc import DBAPIError, IntegrityError


logger = logging.getLogger(__name__)

# SQLSTATE codes that mean "somebody else holds the scope, try again".
CONTENTION_SQLSTATES = {
    "55P03",  # lock_not_available (lock_timeout expired)
    "40P01",  # deadlock_detected
    "40001",  # serialization_failure
}


def build_error_payload(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    payload = {"error": {"code": code, "message": message}}
    if details is not None:
        payload["error"]["details"] = details
    return payload


class ListKeeperError(Exception):
    """Base error with a standardized, serializable shape."""

    code = "listkeeper_error"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details
        self.payload = build_error_payload(self.code, message, details)


class ConfigurationError(ListKeeperError):
    """Scope or column configuration that cannot be resolved against the model."""

    code = "configuration_error"


class ContentionError(ListKeeperError):
    """The scope lock could not be acquired in time. Retry the whole operation."""

    code = "contention"
    retryable = True

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, orig: Optional[BaseException] = None):
        super().__init__(message, details)
        self.orig = orig


class ConstraintError(ListKeeperError):
    """The store rejected a write; the operation was rolled back."""

    code = "constraint_violation"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None, orig: Optional[BaseException] = None):
        super().__init__(message, details)
        self.orig = orig


def _sqlstate(exc: DBAPIError) -> Optional[str]:
    orig = exc.orig
    # psycopg / asyncpg expose sqlstate, psycopg2 exposes pgcode
    for attr in ("sqlstate", "pgcode"):
        value = getattr(orig, attr, None)
        if value:
            return str(value)
    return None


def is_contention(exc: BaseException) -> bool:
    """Return True when a store error means the scope lock was not obtained."""
    if not isinstance(exc, DBAPIError):
        return False
    if _sqlstate(exc) in CONTENTION_SQLSTATES:
        return True
    return "database is locked" in str(exc.orig).lower()


@contextmanager
def translate_store_errors(operation: str, details: Optional[Dict[str, Any]] = None) -> Iterator[None]:
    """Map store failures onto the library taxonomy; anything else propagates as-is."""
    try:
        yield
    except IntegrityError as exc:
        raise ConstraintError(
            f"{operation} rejected by the store: {exc.orig}",
            details,
            orig=exc,
        ) from exc
    except DBAPIError as exc:
        if not is_contention(exc):
            raise
        logger.warning("Contention during %s (%s): %s", operation, details, exc.orig)
        raise ContentionError(
            f"{operation} could not lock the list; retry the operation",
            details,
            orig=exc,
        ) from exc
