"""Prometheus metrics for the search service.

All series live on the collector's own registry so tests can build isolated
collectors. Label sets are fixed here; callers only pass label values drawn
from small enums (source types, outcomes, search modes).
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest
import structlog

logger = structlog.get_logger("metrics")


class MetricsCollector:
    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()
        reg = self.registry

        # HTTP surface
        self.request_count = Counter(
            "http_requests_total", "HTTP requests served", ["method", "endpoint", "status"], registry=reg
        )
        self.request_duration = Histogram(
            "http_request_duration_seconds", "HTTP request latency", ["method", "endpoint"], registry=reg
        )

        # Embedding provider, one observation per logical call including retries
        self.embedding_requests = Counter(
            "ats_embedding_requests_total", "Embedding calls by final status", ["model_name", "status"], registry=reg
        )
        self.embedding_duration = Histogram(
            "ats_embedding_duration_seconds", "Embedding latency including retries", ["model_name"], registry=reg
        )

        # Query engine
        self.search_requests = Counter(
            "ats_search_requests_total", "Searches by execution mode", ["mode"], registry=reg
        )
        self.search_duration = Histogram(
            "ats_search_duration_seconds", "Search latency by execution mode", ["mode"], registry=reg
        )

        # Reindex pipeline and document store
        self.reindex_outcomes = Counter(
            "ats_reindex_total", "Reindex requests by outcome", ["source_type", "outcome"], registry=reg
        )
        self.reindex_dropped = Counter(
            "ats_reindex_dropped_total", "Pending reindex triggers evicted from a full queue",
            ["source_type"], registry=reg
        )
        self.store_operations = Counter(
            "ats_store_operations_total", "Search document writes", ["operation", "source_type"], registry=reg
        )
        self.vector_degraded = Gauge(
            "ats_vector_degraded", "1 while semantic search is unavailable", registry=reg
        )

    def record_http_request(self, method: str, endpoint: str, status: int, duration: float) -> None:
        self.request_count.labels(method=method, endpoint=endpoint, status=status).inc()
        self.request_duration.labels(method=method, endpoint=endpoint).observe(duration)

    def record_embedding(self, model_name: str, status: str, duration: float) -> None:
        """``status`` is one of ok, transient, unavailable, circuit_open."""
        self.embedding_requests.labels(model_name=model_name, status=status).inc()
        self.embedding_duration.labels(model_name=model_name).observe(duration)

    def record_search(self, mode: str, duration: float) -> None:
        self.search_requests.labels(mode=mode).inc()
        self.search_duration.labels(mode=mode).observe(duration)

    def record_reindex(self, source_type: str, outcome: str) -> None:
        self.reindex_outcomes.labels(source_type=source_type, outcome=outcome).inc()

    def record_reindex_dropped(self, source_type: str) -> None:
        self.reindex_dropped.labels(source_type=source_type).inc()

    def record_store_operation(self, operation: str, source_type: str) -> None:
        self.store_operations.labels(operation=operation, source_type=source_type).inc()

    def set_vector_degraded(self, degraded: bool) -> None:
        self.vector_degraded.set(int(degraded))

    def get_metrics(self) -> str:
        return generate_latest(self.registry).decode("utf-8")


_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector(service_name: str = "ats-search") -> MetricsCollector:
    """Process-wide collector; created on first use."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector(service_name)
        logger.debug("Metrics collector created", service=service_name)
    return _metrics_collector
