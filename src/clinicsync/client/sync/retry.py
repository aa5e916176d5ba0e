"""Exponential backoff for remote reads.

Only connectivity failures are retried; a rejected request or a local
store failure propagates on the first attempt.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from typing import TypeVar

from clinicsync.client.remote import RemoteUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_INITIAL_BACKOFF = 1.0  # seconds
DEFAULT_MAX_BACKOFF = 30.0  # seconds

NETWORK_EXCEPTIONS: tuple[type[Exception], ...] = (
    RemoteUnavailableError,
    ConnectionError,
    TimeoutError,
)


def backoff_delays(initial: float, ceiling: float, factor: float = 2.0) -> Iterator[float]:
    """Yield ``initial``, ``initial * factor``, ... capped at ``ceiling``."""
    delay = initial
    while True:
        yield min(delay, ceiling)
        delay *= factor


def retry_with_backoff(
    func: Callable[[], T],
    max_retries: int = DEFAULT_MAX_RETRIES,
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
    max_backoff: float = DEFAULT_MAX_BACKOFF,
    describe: str = "remote call",
) -> T:
    """Call ``func`` until it succeeds or ``max_retries`` retries are used.

    Raises:
        The last network exception once retries are exhausted.
    """
    delays = backoff_delays(initial_backoff, max_backoff)
    attempt = 0
    while True:
        attempt += 1
        try:
            return func()
        except NETWORK_EXCEPTIONS as e:
            if attempt > max_retries:
                logger.error("%s failed after %d attempts: %s", describe, attempt, e)
                raise
            delay = next(delays)
            logger.warning("%s failed (%s), retry %d in %.1fs", describe, e, attempt, delay)
            time.sleep(delay)
