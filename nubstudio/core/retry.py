"""Exponential backoff for transient database errors.

Usage:
    from nubstudio.core.retry import with_retry

    user = await with_retry(lambda: repo.get_by_email(email), on_retry=db.rollback)

Only transient failures (dropped connections, lock wait timeouts, asyncio
timeouts) are retried. Anything else propagates immediately. When retries
are exhausted the last error is wrapped in ``InternalError``.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError

from nubstudio.core.errors import InternalError
from nubstudio.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 0.2
DEFAULT_MAX_DELAY = 2.0


def is_transient(exc: BaseException) -> bool:
    """Check if a database error is worth retrying."""
    if isinstance(exc, asyncio.TimeoutError):
        return True
    if isinstance(exc, OperationalError):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return False


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = DEFAULT_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    on_retry: Callable[[], Awaitable[None]] | None = None,
    label: str = "db_operation",
) -> T:
    """Run ``operation`` up to ``attempts`` times with exponential backoff.

    Args:
        operation: factory returning a fresh awaitable per attempt.
        on_retry: awaited before each new attempt (typically ``session.rollback``
            so the session leaves the failed transaction).
        label: operation name for the logs.
    """
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except Exception as exc:
            if not is_transient(exc):
                raise
            if attempt == attempts:
                logger.error(
                    "retry_exhausted",
                    operation=label,
                    attempts=attempts,
                    error_type=type(exc).__name__,
                )
                raise InternalError() from exc

            delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
            delay = delay * (0.5 + random.random())
            logger.warning(
                "retryable_error",
                operation=label,
                attempt=attempt,
                max_attempts=attempts,
                retry_in=round(delay, 3),
                error_type=type(exc).__name__,
            )
            if on_retry is not None:
                await on_retry()
            await asyncio.sleep(delay)

    raise InternalError()  # pragma: no cover
