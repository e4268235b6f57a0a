from __future__ import annotations

import logging
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_retry(
    operation: Callable[[int], T],
    *,
    attempts: int,
    should_retry: Callable[[Exception], bool],
    on_retry: Callable[[int, Exception], None] | None = None,
) -> T:
    """Run ``operation(attempt)`` up to ``attempts`` times.

    Only errors accepted by ``should_retry`` trigger another attempt; anything
    else, or the last failure once the budget is spent, is re-raised.
    """
    if attempts <= 0:
        msg = "attempts must be > 0"
        raise ValueError(msg)

    for attempt in range(1, attempts + 1):
        try:
            return operation(attempt)
        except Exception as exc:
            if attempt >= attempts or not should_retry(exc):
                raise
            logger.info("Attempt %d/%d failed with retryable error: %s", attempt, attempts, exc)
            if on_retry is not None:
                on_retry(attempt, exc)

    raise AssertionError("unreachable")
