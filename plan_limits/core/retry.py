"""
Bounded retry for contended writes.

Lock timeouts and serialization failures surface as OperationalError. They are
retried a few times with linear backoff, then escalated as StorageConflictError
so one evaluation fails instead of the whole process.
"""

import logging
import time
from typing import Callable, Optional, TypeVar

from sqlalchemy.exc import OperationalError

from plan_limits.core.config import settings
from plan_limits.core.errors import StorageConflictError
from plan_limits.core.metrics import storage_retries_total

logger = logging.getLogger("plan_limits.storage")

T = TypeVar("T")


def _compute_backoff(attempt: int, base: float) -> float:
    """Linear backoff: base, 2*base, 3*base, ..."""
    return max(0.0, base) * attempt


def with_write_retry(
    operation: str,
    fn: Callable[[], T],
    max_attempts: Optional[int] = None,
    backoff_seconds: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run `fn`, retrying on OperationalError up to max_attempts times."""
    attempts = max(1, max_attempts if max_attempts is not None else settings.STATE_WRITE_MAX_ATTEMPTS)
    base = backoff_seconds if backoff_seconds is not None else settings.STATE_WRITE_BACKOFF_SECONDS

    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except OperationalError as exc:
            if attempt >= attempts:
                logger.error(
                    "[storage] RETRIES_EXHAUSTED",
                    extra={"op": operation, "attempts": attempt, "error": str(exc.orig or exc)},
                )
                raise StorageConflictError(
                    f"{operation} failed after {attempt} attempts",
                    operation=operation,
                    attempts=attempt,
                ) from exc
            storage_retries_total.inc({"op": operation})
            logger.warning(
                "[storage] RETRY",
                extra={"op": operation, "attempt": attempt, "error": str(exc.orig or exc)},
            )
            sleep(_compute_backoff(attempt, base))

    raise AssertionError("unreachable")
