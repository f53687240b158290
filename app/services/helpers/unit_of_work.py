"""
Write path shared by the journey services.

Every mutating journey operation runs as one unit of work:

    lock journey → read → validate → mutate → recompute → commit

A ConcurrencyConflictError raised by the store (another writer bumped the
journey version first) re-runs the whole sequence, up to
JOURNEY_WRITE_MAX_RETRIES retries with linear backoff. Any other failure
rolls back and propagates.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from flask import current_app, has_app_context

from app.core.exceptions import ConcurrencyConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_DEFAULT_MAX_RETRIES = 3
_DEFAULT_BACKOFF_SECONDS = 0.05


def _setting(key, default):
    if has_app_context():
        return current_app.config.get(key, default)
    return default


def run_journey_write(repo, journey_id: str | None, operation: str, fn: Callable[[], T]) -> T:
    """Run fn inside the journey's lock and commit, retrying store conflicts."""
    max_retries = int(_setting("JOURNEY_WRITE_MAX_RETRIES", _DEFAULT_MAX_RETRIES))
    backoff = float(_setting("JOURNEY_WRITE_RETRY_BACKOFF", _DEFAULT_BACKOFF_SECONDS))

    attempt = 0
    while True:
        try:
            with repo.journey_lock(journey_id):
                try:
                    with repo.guard():
                        result = fn()
                        repo.commit()
                    return result
                except Exception:
                    repo.rollback()
                    raise
        except ConcurrencyConflictError as exc:
            if not exc.retryable or attempt >= max_retries:
                logger.warning("%s gave up after %d attempt(s): %s", operation, attempt + 1, exc,
                               extra={"journey_id": journey_id})
                raise
            attempt += 1
            logger.info("%s conflicted, retry %d/%d", operation, attempt, max_retries,
                        extra={"journey_id": journey_id})
            if backoff:
                time.sleep(backoff * attempt)
