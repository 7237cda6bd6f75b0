"""Backoff policy for transient embedding provider failures.

A reindex item gets a bounded number of attempts and a bounded amount of
sleeping. Whichever budget runs out first ends the retries and the last
transient failure propagates to the caller. The reindexer then stores the
document lexical-only with no vector, and a later missing-embeddings pass
fills the vector in.
"""

import asyncio
import inspect
import random
from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog

from ..errors import EmbeddingTransientFailure

logger = structlog.get_logger("retry_handler")

JITTER_FRACTION = 0.1


@dataclass
class RetryConfig:
    """Backoff policy.

    ``max_attempts`` counts the first call. Delays start at ``base_delay``,
    grow by ``exponential_base`` and are capped at ``max_delay``, then
    jittered and floored at ``min_delay``. ``max_total_delay`` bounds the
    summed sleep (``None`` disables the bound).
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 8.0
    exponential_base: float = 2.0
    jitter: bool = True
    min_delay: float = 0.1
    max_total_delay: Optional[float] = 20.0
    retryable_exceptions: tuple = (EmbeddingTransientFailure,)


class RetryHandler:
    def __init__(self, config: Optional[RetryConfig] = None):
        self.config = config or RetryConfig()

    def _calculate_delay(self, attempt: int) -> float:
        """Sleep before attempt number ``attempt + 2`` (zero-based ``attempt``)."""
        cfg = self.config
        delay = min(cfg.base_delay * cfg.exponential_base ** attempt, cfg.max_delay)
        if cfg.jitter:
            delay *= 1 + random.uniform(-JITTER_FRACTION, JITTER_FRACTION)
        return max(delay, cfg.min_delay)

    def _next_delay(self, attempt: int, slept: float) -> Optional[float]:
        """Delay before the next attempt, or None when a budget is spent."""
        cfg = self.config
        if attempt + 1 >= cfg.max_attempts:
            return None
        delay = self._calculate_delay(attempt)
        if cfg.max_total_delay is not None and slept + delay > cfg.max_total_delay:
            return None
        return delay

    async def execute_with_retry(
        self,
        func: Callable,
        *args,
        operation_name: str = "unknown",
        **kwargs
    ) -> Any:
        """Call ``func`` until it succeeds or the retry budgets are spent.

        Exceptions outside ``retryable_exceptions`` are raised on the first
        occurrence.
        """
        attempt = 0
        slept = 0.0
        while True:
            try:
                if inspect.iscoroutinefunction(func):
                    result = await func(*args, **kwargs)
                else:
                    result = func(*args, **kwargs)
            except self.config.retryable_exceptions as e:
                delay = self._next_delay(attempt, slept)
                if delay is None:
                    logger.error(
                        "Giving up on operation",
                        operation=operation_name,
                        attempts=attempt + 1,
                        slept_seconds=round(slept, 3),
                        error=str(e)
                    )
                    raise
                logger.warning(
                    "Transient failure, backing off",
                    operation=operation_name,
                    attempt=attempt + 1,
                    max_attempts=self.config.max_attempts,
                    delay_seconds=round(delay, 3),
                    status_code=getattr(e, "status_code", None),
                    error=str(e)
                )
                await asyncio.sleep(delay)
                slept += delay
                attempt += 1
                continue

            if attempt:
                logger.info("Operation recovered after retry", operation=operation_name, attempts=attempt + 1)
            return result
