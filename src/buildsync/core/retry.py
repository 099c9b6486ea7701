"""Retry logic with exponential backoff.

This module provides:
- retry_with_backoff: Bounded attempts, ``base ** attempt`` seconds between them
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from buildsync.core.config import RetryPolicy

logger = logging.getLogger(__name__)

# Default retry configuration
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE = 2.0  # seconds, raised to the attempt number


def retry_with_backoff(
    func: Callable[[], Any],
    policy: RetryPolicy | None = None,
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,),
    description: str = "operation",
    should_stop: Callable[[], bool] | None = None,
) -> Any:
    """Execute a function with bounded exponential backoff retry.

    After failed attempt ``n`` (1-based) waits ``policy.backoff_base ** n``
    seconds; no wait follows the last attempt.

    Args:
        func: Function to execute.
        policy: Attempt count and backoff base (default 3 attempts, base 2).
        retryable_exceptions: Tuple of exception types to retry on.
        description: Label used in log messages.
        should_stop: Optional check evaluated before each retry; when it
            returns True the last exception is raised without waiting.

    Returns:
        Result of the function.

    Raises:
        The last exception if all attempts fail.
    """
    policy = policy or RetryPolicy(DEFAULT_MAX_ATTEMPTS, DEFAULT_BACKOFF_BASE)

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return func()
        except retryable_exceptions as e:
            if attempt == policy.max_attempts or (should_stop and should_stop()):
                logger.error(
                    f"{description} failed after {attempt} attempt(s): {e}"
                )
                raise

            delay = policy.delay_after(attempt)
            logger.warning(
                f"{description}: attempt {attempt}/{policy.max_attempts} failed: {e}. "
                f"Retrying in {delay:.1f}s..."
            )
            time.sleep(delay)

    # max_attempts < 1
    raise ValueError("RetryPolicy.max_attempts must be at least 1")
