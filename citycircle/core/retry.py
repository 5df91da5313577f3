"""
Retry with exponential backoff for calls to remote collaborators.

Only transport-level failures are retried (timeouts, connection errors, 5xx).
A 4xx answer means the request itself is wrong and is raised immediately.
"""
import random
import time
import logging
from typing import Callable, TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar('T')


def should_retry_error(error: Exception) -> bool:
    if isinstance(error, httpx.TimeoutException):
        return True

    if isinstance(error, httpx.HTTPStatusError):
        return 500 <= error.response.status_code < 600

    if isinstance(error, (httpx.NetworkError, httpx.ConnectError)):
        return True

    return False


def retry_sync_with_backoff(
    func: Callable[..., T],
    *args,
    max_attempts: int = 3,
    initial_delay: float = 0.2,
    max_delay: float = 5.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs
) -> T:
    """
    Call func(*args, **kwargs), retrying retryable errors.

    Raises the last exception once max_attempts is exhausted.
    """
    last_exception = None

    for attempt in range(1, max_attempts + 1):
        try:
            return func(*args, **kwargs)
        except Exception as e:
            last_exception = e

            if not should_retry_error(e):
                logger.debug(f"Error {e!r} is not retryable, stopping")
                raise

            if attempt >= max_attempts:
                logger.warning(f"Max attempts ({max_attempts}) reached, giving up")
                break

            delay = min(initial_delay * (exponential_base ** (attempt - 1)), max_delay)
            if jitter:
                delay += delay * 0.1 * random.random()

            logger.info(
                f"Attempt {attempt}/{max_attempts} failed: {e!r}. "
                f"Retrying in {delay:.2f}s"
            )
            sleep(delay)

    raise last_exception
