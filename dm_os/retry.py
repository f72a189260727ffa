"""Bounded retry for one-shot narrator calls.

Wraps a single async operation (structured-data sub-requests, title
generation). Streaming exchanges are never wrapped: a failed stream is
terminal for its turn.

    generate = with_retry(RetryPolicy(attempts=3))(narrator.generate)
    text = await generate(prompt, schema)
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from dm_os.narrator import NarratorError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently to retry.

    attempts:  total tries, including the first. At least 1.
    delay:     seconds to wait after the first failure.
    backoff:   multiplier applied to the delay after each failure
               (1.0 gives a fixed delay).
    max_delay: upper bound for any single wait.
    retry_on:  exception types considered transient. An exception whose
               `retryable` attribute is False is never retried.
    """

    attempts: int = 3
    delay: float = 1.0
    backoff: float = 2.0
    max_delay: float = 30.0
    retry_on: tuple[type[BaseException], ...] = (NarratorError,)

    def should_retry(self, exc: BaseException) -> bool:
        if not isinstance(exc, self.retry_on):
            return False
        return getattr(exc, "retryable", True) is not False


def with_retry(
    policy: RetryPolicy | None = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorate an async callable so transient failures are re-attempted.

    After the last attempt the final exception propagates unchanged; the
    caller treats it as terminal for that one operation.
    """
    policy = policy or RetryPolicy()
    attempts = max(1, policy.attempts)

    def decorate(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        name = getattr(fn, "__qualname__", repr(fn))

        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            delay = policy.delay
            for attempt in range(1, attempts + 1):
                try:
                    return await fn(*args, **kwargs)
                except Exception as exc:
                    if attempt >= attempts or not policy.should_retry(exc):
                        raise
                    logger.warning(
                        "%s attempt %d/%d failed (%s): %s; retrying in %.1fs",
                        name, attempt, attempts, type(exc).__name__, exc, delay,
                    )
                    await asyncio.sleep(delay)
                    delay = min(delay * policy.backoff, policy.max_delay)
            raise AssertionError("unreachable")

        return wrapper

    return decorate
