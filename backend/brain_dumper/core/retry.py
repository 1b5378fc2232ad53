"""
Retry helpers with exponential backoff for provider calls.
"""
import asyncio
from functools import wraps
from typing import Callable, Optional, Tuple, Type

import structlog

from ..config import settings
from .exceptions import TransientNetworkError

logger = structlog.get_logger(__name__)


def retry_async_with_backoff(
    max_retries: Optional[int] = None,
    base_delay: Optional[float] = None,
    max_delay: Optional[float] = None,
    exceptions: Tuple[Type[Exception], ...] = (TransientNetworkError,),
    on_retry: Optional[Callable[[int, Exception], None]] = None,
):
    """
    Decorator for retrying coroutines with exponential backoff.

    Only the listed exception types are retried; everything else propagates
    on the first failure. Defaults come from settings so tests can shrink them.
    """

    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            attempts = max_retries if max_retries is not None else settings.RETRY_MAX_ATTEMPTS
            first_delay = base_delay if base_delay is not None else settings.RETRY_BASE_DELAY
            delay_cap = max_delay if max_delay is not None else settings.RETRY_MAX_DELAY

            for attempt in range(attempts):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= attempts - 1:
                        logger.error(
                            "Retries exhausted",
                            operation=func.__name__,
                            attempts=attempts,
                            error=str(e)
                        )
                        raise
                    delay = min(first_delay * (2 ** attempt), delay_cap)
                    logger.warning(
                        "Retrying after transient failure",
                        operation=func.__name__,
                        attempt=attempt + 1,
                        max_attempts=attempts,
                        delay_seconds=delay,
                        error=str(e)
                    )
                    if on_retry:
                        on_retry(attempt + 1, e)
                    await asyncio.sleep(delay)

        return wrapper

    return decorator
