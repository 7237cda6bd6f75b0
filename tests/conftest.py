"""Shared fakes and fixtures."""

import hashlib
import uuid
from unittest.mock import AsyncMock
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pytest

from ats_search.capability import CapabilityState, DegradationController
from ats_search.errors import EmbeddingUnavailable, EntityFetchFailed, StorageUnavailable
from ats_search.indexer.reindexer import Reindexer
from ats_search.indexer.sources import EntitySource
from ats_search.models import DocumentFields, SearchDocument, SourceType
from ats_search.search.engine import HybridQueryEngine
from ats_search.search_store.base import SearchDocumentStore

DIMENSION = 4


def text_vector(text: str, dimension: int = DIMENSION) -> np.ndarray:
    """Deterministic unit vector derived from ``text``."""
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    vector = np.frombuffer(digest[:dimension], dtype=np.uint8).astype(np.float32) + 1.0
    return vector / np.linalg.norm(vector)


def jsonb_contains(value: Any, pattern: Any) -> bool:
    """PostgreSQL ``@>`` semantics for JSON objects, arrays and scalars."""
    if isinstance(pattern, dict):
        return isinstance(value, dict) and all(
            key in value and jsonb_contains(value[key], sub) for key, sub in pattern.items()
        )
    if isinstance(pattern, list):
        return isinstance(value, list) and all(
            any(jsonb_contains(item, sub) for item in value) for sub in pattern
        )
    return value == pattern


class FakePool:
    """Minimal stand-in for ``asyncpg.Pool`` around one mocked connection."""

    def __init__(self):
        self.conn = AsyncMock()
        self.conn.execute.return_value = "OK"
        self.expire_connections = AsyncMock()
        self.close = AsyncMock()

    def acquire(self):
        return self

    async def __aenter__(self):
        return self.conn

    async def __aexit__(self, *exc):
        return False


class FakeEmbeddingClient:
    """Stands in for ``EmbeddingClient``; set ``error`` to make calls fail."""

    def __init__(self, dimension: int = DIMENSION, configured: bool = True):
        self.dimension = dimension
        self.configured = configured
        self.error: Optional[Exception] = None
        self.calls: List[Tuple[str, Optional[str]]] = []

    async def embed(self, text: str, owner: Optional[str] = None) -> np.ndarray:
        self.calls.append((text, owner))
        if not self.configured:
            raise EmbeddingUnavailable("Embedding API key is not configured")
        if self.error is not None:
            raise self.error
        return text_vector(text, self.dimension)

    async def close(self) -> None:
        pass


class InMemorySearchStore(SearchDocumentStore):
    """Dictionary-backed store with the same key semantics as the real one.

    ``vector_results``/``lexical_results`` override the computed search
    results; ``*_error`` attributes make the corresponding call raise.
    """

    def __init__(self, controller: DegradationController, vector_column: bool = True):
        self.controller = controller
        self.vector_column = vector_column
        self.documents: Dict[Tuple[SourceType, str], SearchDocument] = {}
        self.vector_results: Optional[List[Tuple[SourceType, str, float]]] = None
        self.lexical_results: Optional[List[Tuple[SourceType, str, float]]] = None
        self.vector_search_error: Optional[Exception] = None
        self.lexical_search_error: Optional[Exception] = None
        self.upsert_error: Optional[Exception] = None
        self.calls: List[str] = []

    async def provision(self) -> bool:
        self.calls.append("provision")
        if not self.vector_column:
            self.controller.handle_storage_failure(StorageUnavailable("extension \"vector\" is not available"))
            return False
        return True

    async def upsert(self, source_type: SourceType, source_id: str, fields: DocumentFields) -> str:
        self.calls.append("upsert")
        if self.upsert_error is not None and self.controller.vector_enabled:
            error, self.upsert_error = self.upsert_error, None
            raise error

        key = (SourceType.parse(source_type), str(source_id))
        now = datetime.now(timezone.utc)
        existing = self.documents.get(key)
        embedding = fields.embedding if self.controller.vector_enabled and self.vector_column else None
        self.documents[key] = SearchDocument(
            id=existing.id if existing else uuid.uuid4().hex,
            source_type=key[0],
            source_id=key[1],
            text=fields.text,
            title=fields.title,
            html=fields.html,
            metadata=dict(fields.metadata),
            permissions=dict(fields.permissions),
            embedding=embedding,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        return self.documents[key].id

    async def delete(self, source_type: SourceType, source_id: str) -> bool:
        self.calls.append("delete")
        return self.documents.pop((SourceType.parse(source_type), str(source_id)), None) is not None

    async def get(self, source_type: SourceType, source_id: str) -> Optional[SearchDocument]:
        return self.documents.get((SourceType.parse(source_type), str(source_id)))

    def _filtered(self, source_types=None, metadata_filter=None, permissions=None) -> List[SearchDocument]:
        docs = list(self.documents.values())
        if source_types:
            allowed = {SourceType.parse(t) for t in source_types}
            docs = [d for d in docs if d.source_type in allowed]
        if metadata_filter:
            docs = [d for d in docs if jsonb_contains(d.metadata, metadata_filter)]
        if permissions:
            docs = [d for d in docs if jsonb_contains(d.permissions, permissions)]
        return docs

    async def vector_search(self, vector, limit, source_types=None, metadata_filter=None, permissions=None):
        self.calls.append("vector_search")
        if self.vector_search_error is not None:
            raise self.vector_search_error
        if self.vector_results is not None:
            return self.vector_results[:limit]

        scored = []
        for doc in self._filtered(source_types, metadata_filter, permissions):
            if doc.embedding is None:
                continue
            similarity = float(np.dot(vector, doc.embedding) / (np.linalg.norm(vector) * np.linalg.norm(doc.embedding)))
            scored.append((doc.source_type, doc.source_id, similarity))
        scored.sort(key=lambda row: row[2], reverse=True)
        return scored[:limit]

    async def lexical_search(self, query, limit, source_types=None, metadata_filter=None, permissions=None):
        self.calls.append("lexical_search")
        if self.lexical_search_error is not None:
            raise self.lexical_search_error
        if self.lexical_results is not None:
            return self.lexical_results[:limit]

        terms = query.lower().split()
        scored = []
        for doc in self._filtered(source_types, metadata_filter, permissions):
            words = f"{doc.title or ''} {doc.text}".lower().split()
            if all(term in words for term in terms):
                rank = sum(words.count(term) for term in terms) / (len(words) or 1)
                scored.append((doc.source_type, doc.source_id, rank))
        scored.sort(key=lambda row: row[2], reverse=True)
        return scored[:limit]

    async def list_missing_embeddings(self, source_type=None, limit=None):
        keys = [
            key for key, doc in self.documents.items()
            if doc.embedding is None and doc.text and (source_type is None or key[0] == source_type)
        ]
        return keys[:limit] if limit is not None else keys

    async def get_index_stats(self) -> Dict[str, Any]:
        by_type: Dict[str, Dict[str, int]] = {}
        for doc in self.documents.values():
            entry = by_type.setdefault(doc.source_type.value, {"total": 0, "embedded": 0})
            entry["total"] += 1
            entry["embedded"] += int(doc.embedding is not None)
        return {
            "total": len(self.documents),
            "embedded": sum(e["embedded"] for e in by_type.values()),
            "by_source_type": by_type,
            "vector_column": self.vector_column,
            "vector_dimension": DIMENSION,
        }

    async def health_check(self) -> bool:
        return True


class FakeEntitySource(EntitySource):
    """Entities keyed by ``(SourceType, id)``; missing keys raise ``EntityFetchFailed``."""

    def __init__(self):
        self.entities: Dict[Tuple[SourceType, str], Dict[str, Any]] = {}
        self.fetch_calls: List[Tuple[SourceType, str]] = []
        self.errors: Dict[Tuple[SourceType, str], Exception] = {}

    def put(self, source_type: SourceType, source_id: str, **row: Any) -> None:
        self.entities[(source_type, source_id)] = {"id": source_id, **row}

    def remove(self, source_type: SourceType, source_id: str) -> None:
        self.entities.pop((source_type, source_id), None)

    async def fetch(self, source_type: SourceType, source_id: str) -> Dict[str, Any]:
        key = (SourceType.parse(source_type), str(source_id))
        self.fetch_calls.append(key)
        if key in self.errors:
            raise self.errors[key]
        if key not in self.entities:
            raise EntityFetchFailed(f"{key[0].value} {key[1]} not found")
        return dict(self.entities[key])

    async def list_ids(self, source_type: SourceType) -> List[str]:
        return sorted(sid for (stype, sid) in self.entities if stype == SourceType.parse(source_type))


@pytest.fixture
def controller():
    return DegradationController(CapabilityState())


@pytest.fixture
def store(controller):
    return InMemorySearchStore(controller)


@pytest.fixture
def source():
    return FakeEntitySource()


@pytest.fixture
def embedder():
    return FakeEmbeddingClient()


@pytest.fixture
def reindexer(store, source, embedder, controller):
    return Reindexer(store, source, embedder, controller, workers=2, queue_size=100, batch_delay=0)


@pytest.fixture
def engine(store, embedder, controller):
    return HybridQueryEngine(store, embedder, controller, max_limit=200, overfetch_factor=2)
