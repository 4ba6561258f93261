"""Bounded retry for local storage write conflicts.

Outbound messaging is never retried; only optimistic-concurrency conflicts
and transient sqlite lock errors go through here.
"""
from __future__ import annotations

import functools
import logging
import random
import time
from collections.abc import Callable
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry_on_conflict(
    retry_on: tuple[type[Exception], ...],
    max_retries: int = 5,
    base_delay: float = 0.01,
    max_delay: float = 0.25,
    jitter: bool = True,
    retry_if: Callable[[Exception], bool] | None = None,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Re-run the wrapped call when it raises one of ``retry_on``.

    Args:
        retry_on: Exception types that mean "somebody else wrote first, try again".
        max_retries: Attempts after the first one (0 disables retrying).
        base_delay: First sleep in seconds; doubles per attempt up to ``max_delay``.
        jitter: Spread sleeps by +/-25% so two racing writers do not collide again.
        retry_if: Extra predicate; a matching exception it rejects is re-raised at once.
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            attempt = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except retry_on as exc:
                    if retry_if is not None and not retry_if(exc):
                        raise
                    if attempt >= max_retries:
                        logger.error(
                            "[retry] %s gave up after %d attempts: %s",
                            func.__name__,
                            attempt + 1,
                            exc,
                        )
                        raise
                    delay = min(base_delay * (2**attempt), max_delay)
                    if jitter:
                        delay = delay * (0.75 + random.random() * 0.5)
                    attempt += 1
                    logger.warning(
                        "[retry] %s conflict (%s), attempt %d/%d in %.3fs",
                        func.__name__,
                        exc,
                        attempt,
                        max_retries,
                        delay,
                    )
                    time.sleep(delay)

        return wrapper

    return decorator
