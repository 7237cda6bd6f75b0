"""Circuit breaker in front of the embedding provider.

While the provider keeps failing transiently (rate limits, 5xx, timeouts)
there is no point in spending every reindex item's retry budget on it. After
``failure_threshold`` consecutive transient failures the breaker opens and
rejects calls immediately with ``CircuitBreakerError``. Once
``recovery_timeout`` seconds have passed, exactly one call is let through as
a probe (HALF_OPEN): success closes the breaker, failure reopens it and
restarts the timeout. Calls arriving while the probe is in flight are
rejected.

Only ``expected_exception`` counts as a failure. Other exceptions, such as a
rejected credential, pass through untouched because they are not a sign of
provider overload.
"""

import asyncio
import inspect
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

import structlog

logger = structlog.get_logger("circuit_breaker")


class CircuitBreakerState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerError(Exception):
    """Raised instead of calling the provider while the breaker is open."""

    def __init__(self, name: str, retry_after: float):
        super().__init__(f"Circuit breaker {name} is open, retry in {retry_after:.1f}s")
        self.name = name
        self.retry_after = retry_after


class CircuitBreaker:
    """Consecutive-failure breaker for one downstream dependency.

    Parameters
    - failure_threshold: Consecutive counted failures that open the breaker
    - recovery_timeout: Seconds the breaker stays open before a probe
    - expected_exception: Exception type(s) counted as failures
    - name: Identifier used in logs and errors
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        expected_exception: type = Exception,
        name: str = "circuit_breaker"
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self.name = name

        self.state = CircuitBreakerState.CLOSED
        self.failure_count = 0
        self.opened_at: Optional[float] = None
        self.rejected_calls = 0
        self._probe_in_flight = False
        self._lock = asyncio.Lock()

    def retry_after(self) -> float:
        """Seconds until an open breaker admits a probe (0 when not open)."""
        if self.state != CircuitBreakerState.OPEN or self.opened_at is None:
            return 0.0
        return max(0.0, self.recovery_timeout - (time.monotonic() - self.opened_at))

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        """Run ``func`` if the breaker admits the call."""
        await self._admit()

        try:
            if inspect.iscoroutinefunction(func):
                result = await func(*args, **kwargs)
            else:
                result = func(*args, **kwargs)
        except self.expected_exception:
            await self._record(success=False)
            raise
        except BaseException:
            # Not a provider failure; release the probe slot without a verdict
            self._probe_in_flight = False
            raise

        await self._record(success=True)
        return result

    async def _admit(self) -> None:
        async with self._lock:
            if self.state == CircuitBreakerState.OPEN and self.retry_after() == 0.0:
                self._transition(CircuitBreakerState.HALF_OPEN)

            if self.state == CircuitBreakerState.CLOSED:
                return
            if self.state == CircuitBreakerState.HALF_OPEN and not self._probe_in_flight:
                self._probe_in_flight = True
                return

            self.rejected_calls += 1
            logger.debug("Circuit breaker rejected call", name=self.name, state=self.state.value)
            raise CircuitBreakerError(self.name, self.retry_after())

    async def _record(self, success: bool) -> None:
        async with self._lock:
            probing = self._probe_in_flight
            self._probe_in_flight = False

            if success:
                self.failure_count = 0
                if self.state != CircuitBreakerState.CLOSED:
                    self._transition(CircuitBreakerState.CLOSED)
                return

            self.failure_count += 1
            if probing or self.failure_count >= self.failure_threshold:
                self.opened_at = time.monotonic()
                self._transition(CircuitBreakerState.OPEN, failure_count=self.failure_count)

    def _transition(self, new_state: CircuitBreakerState, **context: Any) -> None:
        if new_state == self.state:
            return
        log = logger.warning if new_state == CircuitBreakerState.OPEN else logger.info
        log(
            "Circuit breaker state changed",
            name=self.name,
            from_state=self.state.value,
            to_state=new_state.value,
            **context
        )
        self.state = new_state
        if new_state == CircuitBreakerState.CLOSED:
            self.opened_at = None

    def get_state(self) -> CircuitBreakerState:
        return self.state

    def get_stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout,
            "retry_after": round(self.retry_after(), 3),
            "rejected_calls": self.rejected_calls,
        }

    async def force_close(self) -> None:
        """Close the breaker regardless of recent failures (operator action)."""
        async with self._lock:
            self.failure_count = 0
            self._probe_in_flight = False
            self._transition(CircuitBreakerState.CLOSED)
