"""
Bounded retry for storage writes.

Only transient connectivity failures are retried, with delays of
``base * 2**attempt`` (0.5 s, 1 s, 2 s by default). Anything else surfaces
at once as ``StorageFatalError``.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

from lib.errors import StorageError, StorageFatalError, StorageTransientError
from lib.settings import STORAGE_RETRY_ATTEMPTS, STORAGE_RETRY_BASE_S

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Lower-cased fragments seen in driver/ORM connectivity errors
TRANSIENT_MARKERS = (
    "can't reach database",
    "connection refused",
    "connection reset",
    "connection closed",
    "server has closed the connection",
    "timed out",
    "econnrefused",
    "econnreset",
    "etimedout",
    "p1001",
    "p1017",
)


def backoff_delay(attempt: int, base: float = STORAGE_RETRY_BASE_S) -> float:
    return base * (2 ** attempt)


def is_transient_storage_error(error: BaseException) -> bool:
    if isinstance(error, StorageTransientError):
        return True
    if isinstance(error, StorageError):
        return False
    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True
    message = str(error).lower()
    return any(marker in message for marker in TRANSIENT_MARKERS)


async def with_storage_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    retries: int = STORAGE_RETRY_ATTEMPTS,
    base: float = STORAGE_RETRY_BASE_S,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    label: str = "storage",
) -> T:
    """Run ``operation``; on a transient failure wait and try again, at most ``retries`` more times."""
    last_error: BaseException | None = None
    for attempt in range(retries + 1):
        try:
            return await operation()
        except Exception as e:
            if not is_transient_storage_error(e):
                if isinstance(e, StorageFatalError):
                    raise
                raise StorageFatalError(
                    "Saving failed. Please try again or contact support if it keeps happening.",
                    meta={"operation": label, "error": repr(e)},
                ) from e
            last_error = e
            if attempt >= retries:
                break
            delay = backoff_delay(attempt, base)
            logger.warning(f"[Retry] {label} attempt {attempt + 1}/{retries + 1} failed: {e}; retry in {delay:.1f}s")
            await sleep(delay)

    raise StorageTransientError(
        "Could not reach the database. Check the connection and try again in a moment.",
        meta={"operation": label, "attempts": retries + 1, "error": repr(last_error)},
    ) from last_error
