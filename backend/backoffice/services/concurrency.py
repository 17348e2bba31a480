# Overview: Service-layer helpers for concurrency; retry and row locking around database work.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


RETRYABLE_ERRORS = (OperationalError, StaleDataError)


def lock_for_update(query):
    """
    SELECT ... FOR UPDATE on backends that support it.

    SQLite drops the clause; there the first write of the transaction takes
    the database lock instead.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.05):
    """
    Call func(), retrying on busy-database and stale-version errors.

    The session is rolled back before every retry, so func must redo all
    of its work from scratch. The last error is re-raised once attempts
    run out; any other exception propagates immediately.
    """
    name = getattr(func, "__name__", repr(func))
    attempt = 1
    while True:
        try:
            return func()
        except RETRYABLE_ERRORS as exc:
            db.session.rollback()
            if attempt >= attempts:
                current_app.logger.error("Giving up on %s after %d attempts", name, attempts)
                raise
            current_app.logger.warning(
                "Write conflict in %s (attempt %d/%d): %s",
                name, attempt, attempts, exc.__class__.__name__,
            )
            time.sleep(backoff_base * (2 ** (attempt - 1)))
            attempt += 1
