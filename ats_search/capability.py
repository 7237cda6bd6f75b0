"""Vector capability tracking and lexical-only fallback.

The process starts with the vector capability enabled and drops it when a
structural failure is observed: no API key, rejected credentials, unknown
model, missing ``vector`` extension/column, or a dimension mismatch. Once
degraded, the reindexer stores NULL vectors and the query engine skips the
vector branch. There is no auto-heal; an operator re-provisions and then
restarts the process or calls ``reset()``.
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog

from .common.metrics import MetricsCollector
from .errors import EmbeddingUnavailable, StorageUnavailable

logger = structlog.get_logger("capability")


@dataclass
class CapabilityState:
    """Process-wide capability flags; injected rather than global."""
    vector_available: bool = True
    reason: Optional[str] = None
    degraded_at: Optional[datetime] = None


class DegradationController:
    """Owns the transition from hybrid to lexical-only operation."""

    def __init__(
        self,
        state: Optional[CapabilityState] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.state = state or CapabilityState()
        self.metrics = metrics
        self._lock = threading.Lock()
        self._publish()

    @property
    def vector_enabled(self) -> bool:
        return self.state.vector_available

    def degrade(self, reason: str) -> None:
        """Disable the vector capability; the first reason is kept."""
        with self._lock:
            if not self.state.vector_available:
                return
            self.state.vector_available = False
            self.state.reason = reason
            self.state.degraded_at = datetime.now(timezone.utc)
        logger.warning("Vector capability disabled, running lexical-only", reason=reason)
        self._publish()

    def probe(self, embedding_client) -> bool:
        """Startup check of the embedding provider configuration."""
        if not embedding_client.configured:
            self.degrade("embedding API key is not configured")
        return self.vector_enabled

    def handle_embedding_failure(self, exc: Exception) -> bool:
        """Degrade on structural embedding failures.

        Returns whether the failure was structural.
        """
        if isinstance(exc, EmbeddingUnavailable) and exc.structural:
            self.degrade(f"embedding unavailable: {exc}")
            return True
        return False

    def handle_storage_failure(self, exc: Exception) -> bool:
        """Degrade when the vector storage path is structurally absent."""
        if isinstance(exc, StorageUnavailable):
            self.degrade(f"vector storage unavailable: {exc}")
            return True
        return False

    def reset(self) -> None:
        """Re-enable the vector capability (operator action)."""
        with self._lock:
            self.state.vector_available = True
            self.state.reason = None
            self.state.degraded_at = None
        logger.info("Vector capability reset")
        self._publish()

    def snapshot(self) -> Dict[str, Any]:
        return {
            "vector_available": self.state.vector_available,
            "reason": self.state.reason,
            "degraded_at": self.state.degraded_at.isoformat() if self.state.degraded_at else None,
        }

    def _publish(self) -> None:
        if self.metrics is not None:
            self.metrics.set_vector_degraded(not self.state.vector_available)
