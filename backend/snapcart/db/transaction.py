from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from snapcart.core import metrics
from snapcart.core.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

# serialization_failure, deadlock_detected
_RETRYABLE_SQLSTATES = {"40001", "40P01"}


def is_write_conflict(exc: BaseException) -> bool:
    """True for transient conflicts that a fresh attempt of the same transaction can resolve."""
    if not isinstance(exc, DBAPIError) or isinstance(exc, IntegrityError):
        return False
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code in _RETRYABLE_SQLSTATES:
        return True
    return "database is locked" in str(orig or exc).lower()


def _backoff_delay(attempt: int) -> float:
    schedule = settings.db_retry_backoff_seconds or [0.0]
    idx = min(max(1, attempt) - 1, len(schedule) - 1)
    return float(schedule[idx])


async def run_atomic(
    session: AsyncSession,
    operation: Callable[[], Awaitable[T]],
    *,
    label: str,
    attempts: int | None = None,
) -> T:
    """Run `operation` and commit it as one unit of work.

    Any exception rolls the whole unit back and propagates. Write conflicts are
    retried from scratch, so `operation` must re-read everything it touches.
    """
    max_attempts = max(1, int(attempts if attempts is not None else settings.db_retry_attempts))
    attempt = 0
    while True:
        attempt += 1
        try:
            result = await operation()
            await session.commit()
            return result
        except Exception as exc:
            await session.rollback()
            if not is_write_conflict(exc) or attempt >= max_attempts:
                raise
            delay = _backoff_delay(attempt)
            metrics.record_transaction_retry()
            logger.warning(
                "write conflict in %s, retrying",
                label,
                extra={"attempt": attempt, "retry_in_seconds": delay},
            )
            await asyncio.sleep(delay)
