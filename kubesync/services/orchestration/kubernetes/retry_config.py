"""
Retry-on-conflict for read-modify-write updates.

Only single-volume removal uses this. The main deployment update path makes
no resource-version precondition and never retries.
"""

from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)
import logging
from typing import Callable

from ....errors import ConflictError

logger = logging.getLogger(__name__)


def create_conflict_retry(
    max_attempts: int = 5,
    min_wait: float = 0.01,
    max_wait: float = 1.0
) -> Callable:
    """
    Create a retry decorator that re-runs a whole read-modify-write cycle on conflict.

    - 1st retry: wait ~min_wait
    - each next retry doubles the wait, bounded by max_wait

    Args:
        max_attempts: Total attempts including the first one
        min_wait: Minimum wait time in seconds
        max_wait: Maximum wait time in seconds

    Example:
        >>> @create_conflict_retry(max_attempts=3)
        ... async def remove_volume():
        ...     deployment = await session.get_resource(DEPLOYMENT, name)
        ...     ...
        ...     await session.update_resource(DEPLOYMENT, deployment)
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=min_wait, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(ConflictError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )
