"""Bounded retries with exponential backoff.

Confluence indexes new pages asynchronously, so a page that was just created
may be invisible to a title search for a few seconds, and transient transport
failures are common on large uploads. ``retry_with_backoff`` absorbs both:
it retries on selected exceptions and, through ``retry_condition``, on
results that look stale (for example a search that returned nothing).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from publish_confluence.errors import RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_INITIAL_BACKOFF = 1.0
DEFAULT_MULTIPLIER = 2.0


def backoff_delay(
    attempt: int,
    *,
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
    multiplier: float = DEFAULT_MULTIPLIER,
    wait_first: bool = False,
) -> float:
    """Return the delay in seconds to wait before ``attempt`` (0-based)."""

    if wait_first:
        return initial_backoff * multiplier**attempt
    if attempt == 0:
        return 0.0
    return initial_backoff * multiplier ** (attempt - 1)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
    multiplier: float = DEFAULT_MULTIPLIER,
    retry_condition: Optional[Callable[[T], bool]] = None,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    wait_first: bool = False,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    log: Optional[logging.Logger] = None,
    description: str = "operation",
) -> T:
    """Run ``operation`` until it succeeds or ``max_attempts`` is reached.

    Args:
        operation: Zero-argument coroutine factory, invoked once per attempt.
        max_attempts: Total number of attempts, at least 1.
        initial_backoff: Delay in seconds before the first retry.
        multiplier: Factor applied to the delay after every attempt.
        retry_condition: Predicate over a successful result; ``True`` means
            the result is not acceptable yet and the operation is retried.
        retry_on: Exception types that trigger a retry. Anything else
            propagates immediately.
        wait_first: Also wait before the first attempt (1s, 2s, 4s instead
            of 0s, 1s, 2s with the defaults).
        sleep: Awaitable used for the delays.
        log: Logger for retry diagnostics.
        description: Human readable name of the operation for log lines.

    Returns:
        The first acceptable result.

    Raises:
        The last exception raised by ``operation`` once attempts are
        exhausted, or ``RetryExhaustedError`` when the final attempt returned
        a result that ``retry_condition`` still rejected.
    """

    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    log = log or logger
    last_error: Optional[BaseException] = None

    for attempt in range(max_attempts):
        delay = backoff_delay(
            attempt,
            initial_backoff=initial_backoff,
            multiplier=multiplier,
            wait_first=wait_first,
        )
        if delay > 0:
            log.debug("Waiting %.1fs before %s attempt %d/%d", delay, description, attempt + 1, max_attempts)
            await sleep(delay)

        try:
            result = await operation()
        except retry_on as exc:
            last_error = exc
            log.debug("%s attempt %d/%d failed: %s", description, attempt + 1, max_attempts, exc)
            continue

        if retry_condition is not None and retry_condition(result):
            log.debug("%s attempt %d/%d returned a stale result", description, attempt + 1, max_attempts)
            last_error = None
            if attempt == max_attempts - 1:
                raise RetryExhaustedError(max_attempts, result, description)
            continue

        return result

    assert last_error is not None
    raise last_error
