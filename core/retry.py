"""
core/retry.py -- Bounded retry for transient backend failures.

Only the exception types the caller names as transient are retried; anything
else propagates on the first attempt. The budget is a total attempt count, so
attempts=1 means "no retry". Backoff doubles after each failure:

    attempt 1 fails -> sleep backoff
    attempt 2 fails -> sleep backoff * 2
    ...
    attempt N fails -> re-raise the last error

The caller decides what the final failure means (registries and stores wrap it
in BackendUnavailableError so verification fails closed).
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

logger = logging.getLogger("tokengate.retry")

T = TypeVar("T")


def call_with_retry(
    fn: Callable[[], T],
    *,
    attempts: int,
    backoff_seconds: float,
    transient: tuple[type[BaseException], ...],
    label: str = "backend call",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call fn(), retrying transient failures up to `attempts` total calls."""
    if attempts < 1:
        raise ValueError("attempts must be at least 1")
    attempt = 1
    while True:
        try:
            return fn()
        except transient as exc:
            if attempt >= attempts:
                raise
            delay = backoff_seconds * (2 ** (attempt - 1))
            logger.warning(
                "%s failed (attempt %d/%d): %s -- retrying in %.3fs",
                label,
                attempt,
                attempts,
                exc.__class__.__name__,
                delay,
            )
            sleep(delay)
            attempt += 1
