"""Tenacity retry policies for archive pulls and embedding provider calls.

Both policies use full-jitter exponential backoff and re-raise the original
exception once attempts are exhausted so callers can categorise failures:

- ``create_fetch_retry_policy`` retries :class:`TransientFetchError` (and the
  transport errors the archive sources map onto it).
- ``create_embedding_retry_policy`` retries :class:`EmbeddingProviderError`
  only when the error is flagged ``retryable``.

Example:
    >>> policy = create_fetch_retry_policy(max_attempts=3, sleep=lambda _: None)
    >>> for attempt in policy:
    ...     with attempt:
    ...         pass
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from .errors import EmbeddingProviderError, TransientFetchError

__all__ = ("create_embedding_retry_policy", "create_fetch_retry_policy")

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], None]


def _sleep_kwargs(sleep: Optional[SleepFn]) -> dict:
    return {"sleep": sleep} if sleep is not None else {}


def create_fetch_retry_policy(
    max_attempts: int = 5,
    *,
    multiplier: float = 0.5,
    max_wait: float = 30.0,
    sleep: Optional[SleepFn] = None,
) -> Retrying:
    """Create the retry policy used for archive ``list``/``changes_since`` calls.

    Args:
        max_attempts: Total attempts, including the first call.
        multiplier: Base of the jittered exponential backoff, in seconds.
        max_wait: Upper bound for any single backoff sleep.
        sleep: Optional sleep function (tests pass a no-op).

    Returns:
        Configured Tenacity ``Retrying`` object for use in retry loops.
    """

    return Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_random_exponential(multiplier=multiplier, max=max_wait),
        retry=retry_if_exception_type(TransientFetchError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
        **_sleep_kwargs(sleep),
    )


def _is_retryable_provider_error(exc: BaseException) -> bool:
    return isinstance(exc, EmbeddingProviderError) and exc.retryable


def create_embedding_retry_policy(
    max_attempts: int = 3,
    *,
    multiplier: float = 0.5,
    max_wait: float = 10.0,
    sleep: Optional[SleepFn] = None,
) -> Retrying:
    """Create the retry policy wrapped around each embedding batch call.

    Non-retryable provider errors (bad credentials, malformed responses) fail
    on the first attempt.
    """

    return Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_random_exponential(multiplier=multiplier, max=max_wait),
        retry=retry_if_exception(_is_retryable_provider_error),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
        **_sleep_kwargs(sleep),
    )
