"""Bounded retries for side effects that run after a transaction commits."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from ridedispatch.domain.errors import DependencyFailure

logger = logging.getLogger(__name__)


async def after_commit(
    description: str,
    operation: Callable[[], Awaitable[Any]],
    *,
    attempts: int = 3,
    backoff_seconds: float = 0.2,
) -> bool:
    """
    Run *operation* until it succeeds or *attempts* are used up.

    Returns False when it never succeeded.  The committed status already
    supersedes whatever the operation would have cleaned up (a stale job is
    discarded by the worker, a stale lease expires), so the failure is
    logged rather than raised.
    """
    for attempt in range(1, attempts + 1):
        try:
            await operation()
            return True
        except DependencyFailure:
            if attempt == attempts:
                logger.exception(
                    "Giving up on %s after %d attempts", description, attempts
                )
                return False
            logger.warning("%s failed (attempt %d/%d)", description, attempt, attempts)
            await asyncio.sleep(backoff_seconds * attempt)
    return False
