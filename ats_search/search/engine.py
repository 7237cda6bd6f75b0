"""Hybrid query engine.

Answers a free-text query by running two branches concurrently and fusing
their results:

- vector branch: embed the query, then cosine nearest neighbours
- lexical branch: ``plainto_tsquery`` full-text match ranked by ``ts_rank``

Each branch over-fetches ``limit * overfetch_factor`` candidates so that
fusion can promote documents ranked low by one branch but high by the other.
A failing branch contributes nothing instead of failing the query; only
invalid caller input raises (``InvalidQuery``).
"""

import asyncio
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import structlog

from ..capability import DegradationController
from ..common.logging import log_performance
from ..common.metrics import MetricsCollector
from ..embeddings.client import EmbeddingClient
from ..errors import EmbeddingError, InvalidQuery, StorageError
from ..models import SearchHit, SourceType
from ..search_store.base import ScoredKey, SearchDocumentStore
from .fusion import DEFAULT_LEXICAL_WEIGHT, DEFAULT_VECTOR_WEIGHT, WeightedScoreFusion

logger = structlog.get_logger("query_engine")

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


@dataclass
class FusionWeights:
    """Branch weights; they are not normalized."""
    vector: float = DEFAULT_VECTOR_WEIGHT
    lexical: float = DEFAULT_LEXICAL_WEIGHT


def prepare_query(query: Optional[str]) -> str:
    """Strip control characters and collapse whitespace."""
    if not query:
        return ""
    return " ".join(_CONTROL_CHARS.sub(" ", query).split())


class HybridQueryEngine:
    """Read-only search over ``search_documents``.

    Parameters
    - store: Search document store
    - embedding_client: Embeds the query text
    - controller: Skips the vector branch while degraded
    - default_weights: Weights used when a query does not pass its own
    - max_limit: Largest accepted ``limit``
    - overfetch_factor: Per-branch candidates as a multiple of ``limit``
    - metrics: Optional collector
    """

    def __init__(
        self,
        store: SearchDocumentStore,
        embedding_client: EmbeddingClient,
        controller: DegradationController,
        default_weights: Optional[FusionWeights] = None,
        max_limit: int = 200,
        overfetch_factor: int = 2,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.embedding_client = embedding_client
        self.controller = controller
        self.default_weights = default_weights or FusionWeights()
        self.max_limit = max_limit
        self.overfetch_factor = max(1, overfetch_factor)
        self.metrics = metrics

    async def search(
        self,
        query: Optional[str],
        limit: int = 10,
        weights: Optional[FusionWeights] = None,
        source_types: Optional[Sequence[Any]] = None,
        metadata_filter: Optional[Dict[str, Any]] = None,
        permissions: Optional[Dict[str, Any]] = None
    ) -> List[SearchHit]:
        """Return at most ``limit`` hits ordered by descending fused score.

        ``metadata_filter`` and ``permissions`` restrict both branches to
        documents whose JSON objects contain the given key/value pairs.
        """
        if isinstance(limit, bool) or not isinstance(limit, int):
            raise InvalidQuery("limit must be an integer")
        if limit < 1:
            raise InvalidQuery("limit must be >= 1")
        if limit > self.max_limit:
            raise InvalidQuery(f"limit must be <= {self.max_limit}")

        weights = weights or self.default_weights
        if weights.vector < 0 or weights.lexical < 0:
            raise InvalidQuery("weights must be non-negative")

        types = None
        if source_types:
            try:
                types = [SourceType.parse(t) for t in source_types]
            except ValueError as e:
                raise InvalidQuery(f"Unknown source type: {e}")
        for name, value in (("metadata_filter", metadata_filter), ("permissions", permissions)):
            if value is not None and not isinstance(value, dict):
                raise InvalidQuery(f"{name} must be an object")
        scope = {
            "source_types": types,
            "metadata_filter": metadata_filter or None,
            "permissions": permissions or None,
        }

        text = prepare_query(query)
        if not text:
            return []

        start_time = time.time()
        candidates = limit * self.overfetch_factor
        use_vector = self.controller.vector_enabled

        if use_vector:
            vector_rows, lexical_rows = await asyncio.gather(
                self._vector_branch(text, candidates, scope),
                self._lexical_branch(text, candidates, scope),
            )
        else:
            vector_rows = []
            lexical_rows = await self._lexical_branch(text, candidates, scope)

        fusion = WeightedScoreFusion(weights.vector, weights.lexical)
        hits = fusion.fuse_results(vector_rows, lexical_rows, limit=limit)

        mode = "hybrid" if use_vector else "lexical"
        duration = time.time() - start_time
        if self.metrics is not None:
            self.metrics.record_search(mode, duration)
        log_performance(
            "search",
            duration * 1000,
            mode=mode,
            limit=limit,
            vector_count=len(vector_rows),
            lexical_count=len(lexical_rows),
            result_count=len(hits)
        )
        return hits

    async def _vector_branch(
        self,
        text: str,
        candidates: int,
        scope: Dict[str, Any]
    ) -> List[ScoredKey]:
        try:
            vector = await self.embedding_client.embed(text, owner="query")
        except EmbeddingError as e:
            structural = self.controller.handle_embedding_failure(e)
            logger.warning(
                "Query embedding failed, using lexical results only",
                structural=structural,
                error=str(e)
            )
            return []

        try:
            return await self.store.vector_search(vector, candidates, **scope)
        except StorageError as e:
            structural = self.controller.handle_storage_failure(e)
            logger.warning(
                "Vector search failed, using lexical results only",
                structural=structural,
                error=str(e)
            )
            return []

    async def _lexical_branch(
        self,
        text: str,
        candidates: int,
        scope: Dict[str, Any]
    ) -> List[ScoredKey]:
        try:
            return await self.store.lexical_search(text, candidates, **scope)
        except StorageError as e:
            logger.warning("Lexical search failed, using vector results only", error=str(e))
            return []
