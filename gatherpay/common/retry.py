"""Exponential backoff with jitter, shared by adapters, committer and DLQ."""

import asyncio
import random

from gatherpay.common.config import settings
from gatherpay.common.errors import TransientError
from gatherpay.common.logging import logger
from gatherpay.common.metrics import retries_total


def backoff_delay_ms(attempt: int, base_ms: int, cap_ms: int, rng: random.Random | None = None) -> float:
    """Return `min(cap, base * 2**attempt)` with equal jitter.

    Half of the delay is fixed, the other half uniformly random, so retries of
    many transactions failing together spread out without collapsing to zero.
    """

    rng = rng or random
    delay = min(cap_ms, base_ms * (2 ** max(0, attempt)))
    return delay / 2 + rng.uniform(0, delay / 2)


async def call_with_retries(
    fn,
    *,
    attempts: int,
    base_ms: int,
    cap_ms: int,
    dependency: str,
    retry_on: tuple[type[BaseException], ...] = (TransientError,),
    rng: random.Random | None = None,
):
    """Await `fn()` up to `attempts` times, sleeping between transient failures.

    The last exception is re-raised once attempts are exhausted; exceptions not
    listed in `retry_on` propagate immediately.
    """

    for attempt in range(attempts):
        try:
            return await fn()
        except retry_on as exc:
            if attempt == attempts - 1:
                raise
            retries_total.labels(service=settings.service_name, dependency=dependency).inc()
            delay_ms = backoff_delay_ms(attempt, base_ms, cap_ms, rng)
            logger.warning(
                "retrying dependency=%s attempt=%s/%s backoff_ms=%.0f error=%s",
                dependency,
                attempt + 1,
                attempts,
                delay_ms,
                exc,
            )
            await asyncio.sleep(delay_ms / 1000)
    raise ValueError("attempts must be >= 1")
