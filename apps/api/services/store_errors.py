"""Structured classification of database driver errors.

Drivers expose machine-readable codes on the wrapped exception (``sqlstate`` for
PostgreSQL, ``sqlite_errorcode`` for SQLite); classification branches on those codes
so a reworded driver message cannot change billing behaviour.
"""

from __future__ import annotations

from typing import Optional, Union

from sqlalchemy.exc import DBAPIError, IntegrityError


PG_UNIQUE_VIOLATION = "23505"
PG_TRANSIENT_STATES = {
    "40001",  # serialization_failure
    "40P01",  # deadlock_detected
    "55P03",  # lock_not_available (lock_timeout)
}

SQLITE_BUSY = 5
SQLITE_LOCKED = 6
SQLITE_CONSTRAINT_PRIMARYKEY = 1555
SQLITE_CONSTRAINT_UNIQUE = 2067


def _driver_code(exc: DBAPIError) -> Optional[Union[str, int]]:
    orig = getattr(exc, "orig", None)
    if orig is None:
        return None
    for attr in ("sqlstate", "pgcode", "sqlite_errorcode"):
        value = getattr(orig, attr, None)
        if value is not None:
            return value
    cause = getattr(orig, "__cause__", None)
    return getattr(cause, "sqlstate", None)


def is_unique_violation(exc: BaseException) -> bool:
    """Return True when ``exc`` is a unique/primary-key constraint violation."""
    if not isinstance(exc, IntegrityError):
        return False
    code = _driver_code(exc)
    return code in (PG_UNIQUE_VIOLATION, SQLITE_CONSTRAINT_UNIQUE, SQLITE_CONSTRAINT_PRIMARYKEY)


def is_transient_store_error(exc: BaseException) -> bool:
    """Return True for lock timeouts, deadlocks and serialization conflicts."""
    if not isinstance(exc, DBAPIError) or isinstance(exc, IntegrityError):
        return False
    code = _driver_code(exc)
    if isinstance(code, int):
        # Extended SQLite codes carry the primary code in the low byte.
        return (code & 0xFF) in (SQLITE_BUSY, SQLITE_LOCKED)
    return code in PG_TRANSIENT_STATES
