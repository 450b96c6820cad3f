"""Retry with exponential backoff for transient warehouse errors."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from typing import TypeVar

from pydantic import BaseModel, Field

from .errors import TRANSIENT_ERRORS

logger = logging.getLogger("strata.retry")

T = TypeVar("T")


class RetryConfig(BaseModel):
    """Tuneable parameters for retry behaviour."""

    max_retries: int = Field(default=2, ge=0, description="Retries after the first attempt.")
    base_delay: float = Field(default=1.0, ge=0.0, description="Base delay in seconds.")
    max_delay: float = Field(default=30.0, ge=0.0, description="Upper bound on delay in seconds.")
    jitter: bool = Field(default=True, description="Randomise the delay within [0.5x, 1.5x].")


def compute_delay(attempt: int, config: RetryConfig) -> float:
    """Return the backoff delay for *attempt* (0-based) given *config*."""
    delay: float = min(config.base_delay * (2**attempt), config.max_delay)
    if config.jitter:
        delay *= random.uniform(0.5, 1.5)  # noqa: S311
    return delay


def retry_with_backoff(
    fn: Callable[[], T],
    config: RetryConfig,
    retryable_exceptions: tuple[type[Exception], ...] = TRANSIENT_ERRORS,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call *fn* until it succeeds or retries run out.

    Only exceptions in *retryable_exceptions* are retried; anything else
    propagates immediately. The last retryable exception is re-raised once
    attempts are exhausted.
    """
    last_exception: Exception | None = None

    for attempt in range(config.max_retries + 1):
        try:
            return fn()
        except retryable_exceptions as exc:
            last_exception = exc
            if attempt >= config.max_retries:
                break
            delay = compute_delay(attempt, config)
            logger.warning(
                "Retry %d/%d after %.1fs: %s",
                attempt + 1,
                config.max_retries,
                delay,
                exc,
            )
            sleep(delay)

    assert last_exception is not None  # noqa: S101
    raise last_exception
