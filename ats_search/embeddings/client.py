"""Embedding provider client.

Talks to an OpenAI-compatible ``/embeddings`` endpoint over ``httpx``.

Failure classification
- 429, 5xx, timeouts, transport errors: ``EmbeddingTransientFailure``,
  retried with exponential backoff and counted by the circuit breaker
- 401, 403, 404, missing API key, wrong output dimension: structural
  ``EmbeddingUnavailable``; the capability is absent
- 400, 422 and other 4xx: ``EmbeddingUnavailable(structural=False)``; the
  input was rejected, other inputs may still succeed
"""

import time
from typing import Any, Dict, Optional

import httpx
import numpy as np
import structlog

from ..common.metrics import MetricsCollector
from ..errors import EmbeddingTransientFailure, EmbeddingUnavailable
from .circuit_breaker import CircuitBreaker, CircuitBreakerError
from .retry import RetryConfig, RetryHandler

logger = structlog.get_logger("embedding_client")

STRUCTURAL_STATUS_CODES = (401, 403, 404)


class EmbeddingClient:
    """Computes fixed-dimension float32 vectors for text.

    Parameters
    - api_key: Provider credential; ``None`` makes every call fail structurally
    - model: Provider model name
    - dimension: Expected vector length, also sent as ``dimensions``
    - base_url: Provider API root (``.../v1``)
    - max_chars: Inputs are truncated to this many characters
    - timeout: Per-request timeout in seconds
    - retry_config: Backoff policy for transient failures
    - circuit_breaker: Breaker shared by all calls of this client
    - http_client: Injected ``httpx.AsyncClient`` (tests); owned otherwise
    - metrics: Optional collector for per-call counters
    """

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "text-embedding-3-small",
        dimension: int = 1536,
        base_url: str = "https://api.openai.com/v1",
        max_chars: int = 8000,
        timeout: float = 30.0,
        retry_config: Optional[RetryConfig] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.dimension = dimension
        self.base_url = base_url.rstrip("/")
        self.max_chars = max_chars
        self.timeout = timeout
        self.retry_handler = RetryHandler(retry_config or RetryConfig())
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            expected_exception=EmbeddingTransientFailure,
            name="embedding_provider",
        )
        self.metrics = metrics
        self._owns_client = http_client is None
        self._http_client = http_client

    @classmethod
    def from_config(cls, config, metrics: Optional[MetricsCollector] = None) -> "EmbeddingClient":
        """Build a client from an ``EmbeddingConfig``."""
        retry_config = RetryConfig(
            max_attempts=config.ats_embedding_retry_attempts,
            base_delay=config.ats_embedding_retry_base_delay,
            max_delay=config.ats_embedding_retry_max_delay,
            max_total_delay=config.ats_embedding_retry_max_total_delay,
        )
        breaker = CircuitBreaker(
            failure_threshold=config.ats_embedding_breaker_threshold,
            recovery_timeout=config.ats_embedding_breaker_recovery,
            expected_exception=EmbeddingTransientFailure,
            name="embedding_provider",
        )
        return cls(
            api_key=config.ats_openai_api_key,
            model=config.ats_embedding_model,
            dimension=config.ats_vector_dimension,
            base_url=config.ats_embedding_base_url,
            max_chars=config.ats_embedding_max_chars,
            timeout=config.ats_embedding_timeout,
            retry_config=retry_config,
            circuit_breaker=breaker,
            metrics=metrics,
        )

    @property
    def configured(self) -> bool:
        """Whether a provider credential is present."""
        return bool(self.api_key)

    def truncate(self, text: str) -> str:
        """Keep the first ``max_chars`` characters of ``text``."""
        if len(text) > self.max_chars:
            return text[:self.max_chars]
        return text

    async def embed(self, text: str, owner: Optional[str] = None) -> np.ndarray:
        """Embed ``text`` and return a float32 vector of ``dimension`` length.

        ``owner`` is only used as log context (e.g. ``CANDIDATE:42``).
        """
        if not self.configured:
            raise EmbeddingUnavailable("Embedding API key is not configured")

        payload = self.truncate(text)
        if not payload.strip():
            raise EmbeddingUnavailable("Cannot embed blank text", structural=False)

        start_time = time.time()
        status = "ok"
        try:
            return await self.retry_handler.execute_with_retry(
                self.circuit_breaker.call,
                self._request_embedding,
                payload,
                operation_name=f"embed_{self.model}",
            )
        except CircuitBreakerError as e:
            status = "circuit_open"
            logger.warning("Embedding skipped, provider circuit open", owner=owner, retry_after=round(e.retry_after, 1))
            raise EmbeddingTransientFailure(str(e)) from e
        except EmbeddingTransientFailure as e:
            status = "transient"
            logger.error("Embedding failed after retries", owner=owner, error=str(e))
            raise
        except EmbeddingUnavailable as e:
            status = "unavailable"
            logger.error(
                "Embedding unavailable",
                owner=owner,
                structural=e.structural,
                error=str(e)
            )
            raise
        finally:
            if self.metrics is not None:
                self.metrics.record_embedding(self.model, status, time.time() - start_time)

    async def _request_embedding(self, text: str) -> np.ndarray:
        """Single provider attempt; classifies failures into our taxonomy."""
        client = self._get_http_client()
        try:
            response = await client.post(
                f"{self.base_url}/embeddings",
                json=self._build_payload(text),
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.TimeoutException as e:
            raise EmbeddingTransientFailure(f"Embedding request timed out: {e}") from e
        except httpx.TransportError as e:
            raise EmbeddingTransientFailure(f"Embedding transport error: {e}") from e

        status = response.status_code
        if status == 429 or status >= 500:
            raise EmbeddingTransientFailure(
                f"Embedding provider returned status {status}", status_code=status
            )
        if status in STRUCTURAL_STATUS_CODES:
            raise EmbeddingUnavailable(f"Embedding provider returned status {status}")
        if status >= 400:
            raise EmbeddingUnavailable(
                f"Embedding provider rejected input with status {status}",
                structural=False,
            )

        try:
            vector = response.json()["data"][0]["embedding"]
            result = np.asarray(vector, dtype=np.float32)
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise EmbeddingUnavailable(
                f"Malformed embedding response: {e}", structural=False
            ) from e

        if result.shape != (self.dimension,):
            raise EmbeddingUnavailable(
                f"Embedding dimension mismatch: expected {self.dimension}, got {result.size}"
            )
        return result

    def _build_payload(self, text: str) -> Dict[str, Any]:
        return {
            "model": self.model,
            "input": text,
            "dimensions": self.dimension,
        }

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def close(self) -> None:
        """Close the owned HTTP client."""
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None
