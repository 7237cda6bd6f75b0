"""Tests for the HTTP surface."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from prometheus_client import CollectorRegistry

from ats_search.api.main import create_app
from ats_search.common.metrics import MetricsCollector
from ats_search.errors import StorageQueryError
from ats_search.indexer.reindexer import Reindexer
from ats_search.models import BatchResult, ReindexReason, SourceType


@pytest.fixture
def mock_reindexer():
    reindexer = MagicMock(spec=Reindexer)
    reindexer.queue_depth = 3
    reindexer.reindex_all = AsyncMock(return_value=BatchResult(processed=2))
    reindexer.reindex_missing_embeddings = AsyncMock(return_value=BatchResult(processed=1, lexical_only=1))
    return reindexer


@pytest.fixture
def client(engine, store, controller, mock_reindexer):
    app = create_app(lifespan_handler=None)
    app.state.engine = engine
    app.state.store = store
    app.state.controller = controller
    app.state.reindexer = mock_reindexer
    app.state.metrics_collector = MetricsCollector("test", registry=CollectorRegistry())
    return TestClient(app)


def test_search_returns_fused_results(client, store):
    store.vector_results = [(SourceType.CANDIDATE, "A", 0.9)]
    store.lexical_results = [(SourceType.CANDIDATE, "B", 0.5)]

    response = client.post("/api/v1/search", json={"query": "python", "limit": 5})

    assert response.status_code == 200
    body = response.json()
    assert [r["source_id"] for r in body["results"]] == ["A", "B"]
    assert body["total"] == 2
    assert body["degraded"] is False


def test_search_reports_degraded_mode(client, store, controller):
    controller.degrade("no key")
    store.lexical_results = [(SourceType.JOB, "7", 0.5)]

    body = client.post("/api/v1/search", json={"query": "python"}).json()

    assert body["degraded"] is True
    assert body["results"][0]["vector_score"] == 0.0


def test_invalid_limit_is_bad_request(client):
    response = client.post("/api/v1/search", json={"query": "python", "limit": 0})
    assert response.status_code == 400


def test_unknown_source_type_is_bad_request(client):
    response = client.post("/api/v1/search", json={"query": "python", "source_types": ["SPACESHIP"]})
    assert response.status_code == 400


def test_search_forwards_query_time_filters(client, engine):
    engine.search = AsyncMock(return_value=[])

    response = client.post("/api/v1/search", json={
        "query": "python",
        "metadata_filter": {"status": "active"},
        "permissions": {"teams": ["emea"]},
    })

    assert response.status_code == 200
    kwargs = engine.search.await_args.kwargs
    assert kwargs["metadata_filter"] == {"status": "active"}
    assert kwargs["permissions"] == {"teams": ["emea"]}


def test_search_rejects_non_object_permissions(client):
    response = client.post("/api/v1/search", json={"query": "python", "permissions": ["emea"]})
    assert response.status_code == 422


def test_reindex_trigger_is_accepted(client, mock_reindexer):
    response = client.post("/api/v1/reindex", json={
        "source_type": "candidate",
        "source_id": "42",
        "trigger": "cv-upload",
    })

    assert response.status_code == 202
    assert response.json()["source_type"] == "CANDIDATE"
    mock_reindexer.on_entity_changed.assert_called_once_with(SourceType.CANDIDATE, "42", ReindexReason.CV_UPLOAD, None)


def test_reindex_trigger_rejects_unknown_reason(client, mock_reindexer):
    response = client.post("/api/v1/reindex", json={"source_type": "JOB", "source_id": "1", "trigger": "teleport"})
    assert response.status_code == 400
    mock_reindexer.on_entity_changed.assert_not_called()


def test_bulk_reindex(client, mock_reindexer):
    body = client.post("/api/v1/reindex/job").json()
    assert body["processed"] == 2
    mock_reindexer.reindex_all.assert_awaited_once_with(SourceType.JOB)

    body = client.post("/api/v1/reindex/job?missing_only=true").json()
    assert body["lexical_only"] == 1


def test_bulk_reindex_storage_failure(client, mock_reindexer):
    mock_reindexer.reindex_all.side_effect = StorageQueryError("connection refused")
    assert client.post("/api/v1/reindex/job").status_code == 503


def test_capabilities_and_reset(client, controller):
    controller.degrade("no key")
    assert client.get("/api/v1/capabilities").json()["vector_available"] is False

    assert client.post("/api/v1/capabilities/reset").json()["vector_available"] is True
    assert controller.vector_enabled


def test_stats(client):
    body = client.get("/api/v1/stats").json()
    assert body["index"]["total"] == 0
    assert body["capabilities"]["vector_available"] is True
    assert body["reindex_queue_depth"] == 3


def test_health_and_metrics(client):
    health = client.get("/health")
    assert health.status_code == 200
    assert health.json()["status"] == "healthy"

    metrics = client.get("/metrics")
    assert "http_requests_total" in metrics.text


def test_health_without_store_is_unavailable():
    client = TestClient(create_app(lifespan_handler=None))
    assert client.get("/health").status_code == 503
