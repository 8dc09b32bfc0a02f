# Overview: Row locks and conflict retries for card reservation, wallet debits, and order snapshots.

"""
Contention points in digicards:
- card stock: two orders reserving the same AVAILABLE cards
  (lock_for_update with skip_locked, then a conditional UPDATE)
- wallets: concurrent reveals debiting one balance
  (lock_for_update plus Wallet.version_id)
- order snapshots: fulfillment and reveal rewriting delivery_files
  (Order.version_id / CardOrder.version_id)

Writers wrap their unit of work in run_with_retry so a lost race is
replayed from a clean session instead of surfacing to the customer.
"""

from __future__ import annotations

import logging
import time

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (OperationalError, StaleDataError)


def lock_for_update(query, *, skip_locked: bool = False):
    """
    SELECT ... FOR UPDATE, optionally skipping rows another reservation holds.

    NOTE: SQLite ignores both clauses; the conditional UPDATEs and version
    columns still catch conflicts there.
    """
    if skip_locked:
        return query.with_for_update(skip_locked=True)
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Call func, replaying it after a deadlock, a locked database, or a
    version_id mismatch. Each replay starts after a rollback, so func must
    re-read whatever rows it changes. The last failure propagates.
    """
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except RETRYABLE_ERRORS as exc:
            db.session.rollback()
            if attempt >= attempts:
                logger.warning("Giving up after %s conflicting attempt(s): %s", attempt, exc.__class__.__name__)
                raise
            logger.info("Write conflict on attempt %s (%s); retrying", attempt, exc.__class__.__name__)
            time.sleep(backoff_base * (2 ** (attempt - 1)))


def commit_with_retry(*, attempts: int = 3, backoff_base: float = 0.1):
    """Commit pending card or wallet changes, retrying on write conflicts."""
    return run_with_retry(db.session.commit, attempts=attempts, backoff_base=backoff_base)
