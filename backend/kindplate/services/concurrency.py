# Overview: Shared helpers for conditional writes and retry on lock/optimistic conflicts.

from __future__ import annotations

import logging
import time

from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db

logger = logging.getLogger(__name__)


def begin_immediate() -> None:
    """
    Take the SQLite write lock up front.

    SQLite upgrades a read lock to a write lock lazily, which makes two
    writers that both read first fail with "database is locked". Starting
    with BEGIN IMMEDIATE serializes them on the busy timeout instead.
    Other databases rely on row-level locking of the conditional UPDATE.
    """
    if db.engine.dialect.name != "sqlite":
        return
    raw = db.session.connection().connection.dbapi_connection
    if not raw.in_transaction:
        db.session.execute(text("BEGIN IMMEDIATE"))


def conditional_update(stmt) -> int:
    """
    Execute a guarded UPDATE and return the number of rows it changed.

    The WHERE clause carries the precondition (expected status, enough
    quantity). 1 means we won; 0 means the precondition no longer holds.
    """
    result = db.session.execute(stmt.execution_options(synchronize_session=False))
    return result.rowcount


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (locks, busy database) and StaleDataError
    (optimistic version_id conflicts). Domain errors propagate untouched.
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            logger.info("Retrying after concurrency conflict (attempt %s): %s", attempt + 1, exc)
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc


def run_in_transaction(func, *, attempts: int = 3):
    """Run func inside a write transaction, commit, and retry on conflicts."""
    def _op():
        begin_immediate()
        try:
            result = func()
            db.session.commit()
            return result
        except Exception:
            db.session.rollback()
            raise
    return run_with_retry(_op, attempts=attempts)
