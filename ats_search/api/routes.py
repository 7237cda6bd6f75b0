"""API routes for the search service."""

import time
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from ..capability import DegradationController
from ..errors import InvalidQuery, StorageError
from ..indexer.reindexer import Reindexer
from ..models import ReindexReason, SourceType
from ..search.engine import FusionWeights, HybridQueryEngine
from ..search_store.base import SearchDocumentStore

logger = structlog.get_logger("search_service.api")

router = APIRouter()


class WeightsModel(BaseModel):
    """Fusion weights override."""
    vector: float = Field(0.6, description="Weight of the vector similarity")
    lexical: float = Field(0.4, description="Weight of the normalized full-text rank")


class SearchRequest(BaseModel):
    """Request model for search endpoint."""
    query: str = Field(..., description="Search query")
    limit: int = Field(10, description="Maximum number of results")
    weights: Optional[WeightsModel] = Field(None, description="Fusion weights override")
    source_types: Optional[List[str]] = Field(None, description="Restrict results to these source types")
    metadata_filter: Optional[Dict[str, Any]] = Field(None, description="Only documents whose metadata contains these pairs")
    permissions: Optional[Dict[str, Any]] = Field(None, description="Only documents whose permissions contain these pairs")


class SearchResult(BaseModel):
    """Search result model."""
    source_type: str = Field(..., description="Source entity type")
    source_id: str = Field(..., description="Source entity ID")
    score: float = Field(..., description="Fused relevance score")
    vector_score: float = Field(..., description="Cosine similarity")
    lexical_score: float = Field(..., description="Normalized full-text rank")


class SearchResponse(BaseModel):
    """Response model for search endpoint."""
    results: List[SearchResult] = Field(..., description="Search results")
    total: int = Field(..., description="Number of results")
    degraded: bool = Field(..., description="Whether the vector branch is disabled")
    latency_ms: float = Field(..., description="Search latency in milliseconds")


class ReindexRequest(BaseModel):
    """Request model for a single reindex trigger."""
    source_type: str = Field(..., description="Source entity type")
    source_id: str = Field(..., description="Source entity ID")
    trigger: str = Field("update", description="Reindex reason")
    changed_fields: Optional[List[str]] = Field(None, description="Fields changed by the mutation")


def get_engine(request: Request) -> HybridQueryEngine:
    return request.app.state.engine


def get_reindexer(request: Request) -> Reindexer:
    return request.app.state.reindexer


def get_store(request: Request) -> SearchDocumentStore:
    return request.app.state.store


def get_controller(request: Request) -> DegradationController:
    return request.app.state.controller


def _parse_source_type(value: str) -> SourceType:
    try:
        return SourceType.parse(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown source type: {value}")


@router.post("/search", response_model=SearchResponse)
async def search(
    request: SearchRequest,
    engine: HybridQueryEngine = Depends(get_engine),
    controller: DegradationController = Depends(get_controller)
):
    """Perform hybrid search."""
    start_time = time.time()
    weights = None
    if request.weights is not None:
        weights = FusionWeights(vector=request.weights.vector, lexical=request.weights.lexical)

    try:
        hits = await engine.search(
            request.query,
            limit=request.limit,
            weights=weights,
            source_types=request.source_types,
            metadata_filter=request.metadata_filter,
            permissions=request.permissions
        )
    except InvalidQuery as e:
        raise HTTPException(status_code=400, detail=str(e))

    latency_ms = (time.time() - start_time) * 1000
    logger.info(
        "Search completed",
        results_count=len(hits),
        latency_ms=latency_ms,
        degraded=not controller.vector_enabled
    )

    return SearchResponse(
        results=[
            SearchResult(
                source_type=hit.source_type.value,
                source_id=hit.source_id,
                score=hit.score,
                vector_score=hit.vector_score,
                lexical_score=hit.lexical_score,
            )
            for hit in hits
        ],
        total=len(hits),
        degraded=not controller.vector_enabled,
        latency_ms=latency_ms
    )


@router.post("/reindex", status_code=202)
async def trigger_reindex(
    request: ReindexRequest,
    reindexer: Reindexer = Depends(get_reindexer)
) -> Dict[str, Any]:
    """Enqueue a reindex trigger and return immediately."""
    source_type = _parse_source_type(request.source_type)
    try:
        reason = ReindexReason(request.trigger)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown trigger: {request.trigger}")

    reindexer.on_entity_changed(source_type, request.source_id, reason, request.changed_fields)
    return {
        "status": "accepted",
        "source_type": source_type.value,
        "source_id": request.source_id,
        "trigger": reason.value,
    }


@router.post("/reindex/{source_type}")
async def reindex_source_type(
    source_type: str,
    missing_only: bool = Query(False, description="Only re-embed documents without a vector"),
    reindexer: Reindexer = Depends(get_reindexer)
) -> Dict[str, Any]:
    """Reindex every entity of a type, or only those without a vector."""
    parsed = _parse_source_type(source_type)
    try:
        if missing_only:
            result = await reindexer.reindex_missing_embeddings(parsed)
        else:
            result = await reindexer.reindex_all(parsed)
    except StorageError as e:
        logger.error("Bulk reindex failed", source_type=parsed.value, error=str(e))
        raise HTTPException(status_code=503, detail=f"Bulk reindex failed: {e}")

    return result.to_dict()


@router.post("/provision")
async def provision(
    store: SearchDocumentStore = Depends(get_store)
) -> Dict[str, Any]:
    """Create or update the search schema."""
    try:
        vector_available = await store.provision()
    except StorageError as e:
        logger.error("Provisioning failed", error=str(e))
        raise HTTPException(status_code=503, detail=f"Provisioning failed: {e}")
    return {"vector_available": vector_available}


@router.get("/capabilities")
async def get_capabilities(
    controller: DegradationController = Depends(get_controller)
) -> Dict[str, Any]:
    return controller.snapshot()


@router.post("/capabilities/reset")
async def reset_capabilities(
    controller: DegradationController = Depends(get_controller)
) -> Dict[str, Any]:
    """Re-enable the vector capability after the operator fixed its cause."""
    controller.reset()
    return controller.snapshot()


@router.get("/stats")
async def get_stats(
    store: SearchDocumentStore = Depends(get_store),
    reindexer: Reindexer = Depends(get_reindexer),
    controller: DegradationController = Depends(get_controller)
) -> Dict[str, Any]:
    """Index statistics."""
    try:
        index_stats = await store.get_index_stats()
    except StorageError as e:
        logger.error("Failed to get index stats", error=str(e))
        raise HTTPException(status_code=503, detail=f"Failed to get index stats: {e}")

    return {
        "index": index_stats,
        "capabilities": controller.snapshot(),
        "reindex_queue_depth": reindexer.queue_depth,
    }
