"""Backoff retry for reference-keyed ledger writes.

A write that fails with :class:`StoreUnavailableError` may or may not have
committed.  :func:`retry_unknown_outcome` therefore looks the write up by
its reference before every repeat and only applies it again when nothing
was recorded.  Errors that are not store failures are never retried.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from pydantic import BaseModel, Field

from ledger_engine.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryConfig(BaseModel):
    """Tuneable parameters for retry behaviour."""

    max_retries: int = Field(default=2, ge=0, description="Repeat attempts after the first failure.")
    base_delay: float = Field(default=0.2, gt=0.0, description="First backoff delay in seconds.")
    max_delay: float = Field(default=5.0, gt=0.0, description="Upper bound on any single delay.")
    jitter: bool = Field(default=True, description="Randomise each delay within [0.5x, 1.5x].")


def _compute_delay(attempt: int, config: RetryConfig) -> float:
    """Return the backoff delay for *attempt* given *config*."""
    delay: float = min(config.base_delay * (2**attempt), config.max_delay)
    if config.jitter:
        delay *= random.uniform(0.5, 1.5)  # noqa: S311
    return delay


async def retry_unknown_outcome(
    apply: Callable[[], Awaitable[T]],
    recover: Callable[[], Awaitable[T | None]],
    config: RetryConfig,
    *,
    reference: str = "",
) -> T:
    """Run *apply*, retrying store failures without applying twice.

    Parameters
    ----------
    apply:
        Performs the write.  Must be keyed on *reference* so that the store
        can find it afterwards.
    recover:
        Looks the write up by its reference; returns the recorded result or
        ``None``.  Called before a repeat only when the previous failure
        left the outcome unknown.
    config:
        Retry parameters (see :class:`RetryConfig`).
    reference:
        Used in log messages only.

    Raises
    ------
    StoreUnavailableError
        The last store failure once attempts are exhausted.  Its outcome is
        unknown to the caller, who must look the reference up again later.
    """
    failure: StoreUnavailableError | None = None

    for attempt in range(config.max_retries + 1):
        if failure is not None and failure.outcome_unknown:
            try:
                prior = await recover()
            except StoreUnavailableError as exc:
                prior = None
                failure = exc
            else:
                if prior is not None:
                    logger.info("Write %s committed before the failure; not repeating it", reference)
                    return prior
                failure = None
        if failure is None:
            try:
                return await apply()
            except StoreUnavailableError as exc:
                failure = exc

        if attempt >= config.max_retries:
            break
        delay = _compute_delay(attempt, config)
        logger.warning(
            "Retry %d/%d for %s after %.1fs: %s",
            attempt + 1,
            config.max_retries,
            reference,
            delay,
            failure,
        )
        await asyncio.sleep(delay)

    assert failure is not None  # noqa: S101
    raise failure
