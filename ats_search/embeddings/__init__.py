"""Embedding provider client with retry and circuit breaker protection."""

from .circuit_breaker import CircuitBreaker, CircuitBreakerError, CircuitBreakerState
from .client import EmbeddingClient
from .retry import RetryConfig, RetryHandler

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerError",
    "CircuitBreakerState",
    "EmbeddingClient",
    "RetryConfig",
    "RetryHandler",
]
