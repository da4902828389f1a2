"""
Exponential backoff retry logic for payment provider calls.

Retries transient failures (429 rate limits, 5xx, network errors) with
exponential backoff. Permanent failures (4xx client errors) are never
retried. Callers pick the budget: reads get several attempts, while charge
and refund creation get at most one extra attempt, and only because the
transaction id travels as the provider's idempotency key.
"""

import asyncio
import logging
from typing import Any, Callable

from payment_gateway.errors import ProviderError, RateLimitError

logger = logging.getLogger("payment_gateway.retry")

MAX_RETRIES = 3
BASE_DELAY = 0.5
MAX_DELAY = 30.0


async def with_retry(
    func: Callable[..., Any],
    *args: Any,
    max_retries: int = MAX_RETRIES,
    base_delay: float = BASE_DELAY,
    **kwargs: Any,
) -> Any:
    """
    Execute an async function with exponential backoff on retriable errors.

    Args:
        func: Async callable to execute.
        max_retries: Maximum number of retry attempts (0 = single attempt).
        base_delay: First backoff delay in seconds, doubled per attempt.

    Returns:
        The result of the function call.

    Raises:
        ProviderError: On permanent failure or exhausted retries.
    """
    delay = base_delay
    last_error = None

    for attempt in range(max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except ProviderError as e:
            last_error = e
            if not e.retriable:
                raise

            if attempt < max_retries:
                sleep_for = min(delay, MAX_DELAY)
                if isinstance(e, RateLimitError) and e.retry_after:
                    sleep_for = min(e.retry_after, MAX_DELAY)

                logger.warning(
                    "Retriable error on attempt %d/%d: %s - sleeping %.1fs",
                    attempt + 1,
                    max_retries + 1,
                    e,
                    sleep_for,
                )
                await asyncio.sleep(sleep_for)
                delay = min(delay * 2, MAX_DELAY)
            else:
                logger.error("Exhausted %d retries for provider call: %s", max_retries, e)
                raise

    raise last_error or ProviderError("Unknown error after retries")
