import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from socialgraph.errors import NetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def call_with_deadline(
    factory: Callable[[], Awaitable[T]], timeout: float
) -> T:
    """Run a remote call under a deadline.

    A timeout or dropped connection is reported as a retryable
    ``NetworkError``; every other error propagates unchanged.
    """
    try:
        async with asyncio.timeout(timeout):
            return await factory()
    except TimeoutError as e:
        raise NetworkError(f"deadline of {timeout}s exceeded") from e
    except ConnectionError as e:
        raise NetworkError(e) from e


async def fetch_with_retry(
    factory: Callable[[], Awaitable[T]],
    *,
    timeout: float,
    attempts: int,
    backoff: float,
    description: str,
) -> T:
    """Run a read-only remote call, retrying network failures.

    Only ``NetworkError`` is retried; the last one is re-raised once
    ``attempts`` is used up.
    """
    for attempt in range(1, attempts + 1):
        try:
            return await call_with_deadline(factory, timeout)
        except NetworkError as e:
            if attempt >= attempts:
                logger.warning("%s failed after %d attempts: %s", description, attempt, e)
                raise
            logger.info("%s failed (attempt %d/%d), retrying", description, attempt, attempts)
            await asyncio.sleep(backoff * attempt)
    raise AssertionError("unreachable")
