"""
Storage retry helper
Retries transient MongoDB failures with exponential backoff
"""

import asyncio
import logging
from functools import wraps
from typing import Awaitable, Callable, Optional, ParamSpec, TypeVar

from pymongo.errors import AutoReconnect, ConnectionFailure, ExecutionTimeout, NetworkTimeout

from app.config import get_settings
from app.utils.exceptions import PersistenceError

logger = logging.getLogger(__name__)

P = ParamSpec("P")
R = TypeVar("R")

TRANSIENT_ERRORS = (AutoReconnect, ConnectionFailure, ExecutionTimeout, NetworkTimeout)


def retry(
    max_attempts: Optional[int] = None,
    backoff_seconds: Optional[float] = None
) -> Callable[[Callable[P, Awaitable[R]]], Callable[P, Awaitable[R]]]:
    """
    Decorator for retrying storage operations with exponential backoff.

    Only transient driver errors are retried. Once the attempts are used up
    the failure surfaces as PersistenceError. Anything else (duplicate keys,
    domain errors) propagates untouched on the first failure.

    Args:
        max_attempts: Maximum number of attempts (defaults to settings)
        backoff_seconds: Initial backoff time in seconds (defaults to settings)
    """

    def decorator(func: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            settings = get_settings()
            attempts = max_attempts or settings.PERSISTENCE_RETRY_ATTEMPTS
            backoff = (
                backoff_seconds
                if backoff_seconds is not None
                else settings.PERSISTENCE_RETRY_BACKOFF_SECONDS
            )

            for attempt in range(attempts):
                try:
                    return await func(*args, **kwargs)
                except TRANSIENT_ERRORS as e:
                    if attempt < attempts - 1:
                        wait_time = backoff * (2 ** attempt)
                        logger.warning(
                            f"Attempt {attempt + 1}/{attempts} failed for {func.__name__}: {e}. "
                            f"Retrying in {wait_time}s..."
                        )
                        await asyncio.sleep(wait_time)
                    else:
                        logger.error(f"All {attempts} attempts failed for {func.__name__}: {e}")
                        raise PersistenceError(func.__name__) from e

            raise PersistenceError(func.__name__)

        return wrapper

    return decorator
