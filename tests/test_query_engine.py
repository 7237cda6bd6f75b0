"""Tests for the hybrid query engine."""

import pytest

from .conftest import text_vector

from ats_search.errors import (
    EmbeddingTransientFailure,
    EmbeddingUnavailable,
    InvalidQuery,
    StorageQueryError,
    StorageUnavailable,
)
from ats_search.models import DocumentFields, SourceType
from ats_search.search.engine import FusionWeights, prepare_query


def seed_results(store):
    store.vector_results = [(SourceType.CANDIDATE, "A", 0.9), (SourceType.CANDIDATE, "B", 0.4)]
    store.lexical_results = [(SourceType.CANDIDATE, "B", 0.8), (SourceType.CANDIDATE, "C", 0.4)]


@pytest.mark.asyncio
async def test_hybrid_search_fuses_both_branches(engine, store):
    seed_results(store)

    hits = await engine.search("python developer", limit=10)

    assert [hit.source_id for hit in hits] == ["B", "A", "C"]
    assert [hit.score for hit in hits] == pytest.approx([0.64, 0.54, 0.2])


@pytest.mark.asyncio
async def test_limit_truncates_results(engine, store):
    seed_results(store)
    hits = await engine.search("python", limit=2)
    assert [hit.source_id for hit in hits] == ["B", "A"]


@pytest.mark.asyncio
async def test_branches_overfetch(engine, store):
    store.vector_results = [(SourceType.JOB, str(i), 1.0 - i / 100) for i in range(50)]
    store.lexical_results = []
    hits = await engine.search("data", limit=5)
    assert len(hits) == 5


@pytest.mark.asyncio
@pytest.mark.parametrize("query", ["", "   ", "\t\n"])
async def test_blank_query_returns_empty_without_calls(engine, store, embedder, query):
    assert await engine.search(query) == []
    assert embedder.calls == []
    assert store.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize("limit", [0, -1, 201])
async def test_invalid_limit_raises(engine, limit):
    with pytest.raises(InvalidQuery):
        await engine.search("python", limit=limit)


@pytest.mark.asyncio
async def test_negative_weights_raise(engine):
    with pytest.raises(InvalidQuery):
        await engine.search("python", weights=FusionWeights(vector=-1.0, lexical=0.4))


@pytest.mark.asyncio
async def test_unknown_source_type_raises(engine):
    with pytest.raises(InvalidQuery):
        await engine.search("python", source_types=["SPACESHIP"])


@pytest.mark.asyncio
async def test_transient_embedding_failure_returns_lexical_only(engine, store, embedder, controller):
    seed_results(store)
    embedder.error = EmbeddingTransientFailure("rate limited", status_code=429)

    hits = await engine.search("python")

    assert [hit.source_id for hit in hits] == ["B", "C"]
    assert all(hit.vector_score == 0.0 for hit in hits)
    assert controller.vector_enabled
    assert "vector_search" not in store.calls


@pytest.mark.asyncio
async def test_structural_embedding_failure_degrades(engine, store, embedder, controller):
    seed_results(store)
    embedder.error = EmbeddingUnavailable("invalid api key")

    hits = await engine.search("python")
    assert [hit.source_id for hit in hits] == ["B", "C"]
    assert not controller.vector_enabled

    embedder.calls.clear()
    await engine.search("python")
    assert embedder.calls == []


@pytest.mark.asyncio
async def test_degraded_engine_skips_vector_branch(engine, store, embedder, controller):
    seed_results(store)
    controller.degrade("no key")

    hits = await engine.search("python")

    assert [hit.source_id for hit in hits] == ["B", "C"]
    assert [hit.score for hit in hits] == pytest.approx([0.4, 0.2])
    assert embedder.calls == []
    assert "vector_search" not in store.calls


@pytest.mark.asyncio
async def test_vector_storage_unavailable_degrades(engine, store, controller):
    seed_results(store)
    store.vector_search_error = StorageUnavailable("column embedding does not exist")

    hits = await engine.search("python")
    assert [hit.source_id for hit in hits] == ["B", "C"]
    assert not controller.vector_enabled


@pytest.mark.asyncio
async def test_lexical_failure_keeps_vector_results(engine, store, controller):
    seed_results(store)
    store.lexical_search_error = StorageQueryError("syntax error")

    hits = await engine.search("python")
    assert [hit.source_id for hit in hits] == ["A", "B"]
    assert controller.vector_enabled


@pytest.mark.asyncio
async def test_both_branches_failing_returns_empty(engine, store, embedder):
    embedder.error = EmbeddingTransientFailure("down")
    store.lexical_search_error = StorageQueryError("down")
    assert await engine.search("python") == []


@pytest.mark.asyncio
async def test_indexed_documents_are_found(reindexer, engine, source):
    source.put(SourceType.CANDIDATE, "1", first_name="Ada", last_name="Lovelace", technical_skills=["python"])
    source.put(SourceType.CANDIDATE, "2", first_name="Alan", last_name="Turing", technical_skills=["haskell"])
    await reindexer.reindex(SourceType.CANDIDATE, "1", "create")
    await reindexer.reindex(SourceType.CANDIDATE, "2", "create")

    hits = {hit.source_id: hit for hit in await engine.search("python")}
    assert hits["1"].lexical_score == pytest.approx(1.0)
    assert hits["1"].vector_score > 0
    assert hits["2"].lexical_score == 0.0


def test_prepare_query_collapses_whitespace_and_controls():
    assert prepare_query("  senior\x00 python\n\tdev  ") == "senior python dev"
    assert prepare_query(None) == ""


async def seed_permissioned_candidates(store):
    for source_id, teams, status in (("A", ["emea"], "active"), ("B", ["apac"], "active"), ("C", ["emea"], "archived")):
        await store.upsert(SourceType.CANDIDATE, source_id, DocumentFields(
            text="python developer",
            metadata={"status": status},
            permissions={"teams": teams, "visibility": "internal"},
            embedding=text_vector("python developer"),
        ))


@pytest.mark.asyncio
async def test_permissions_restrict_both_branches(engine, store):
    await seed_permissioned_candidates(store)

    unrestricted = await engine.search("python developer")
    restricted = await engine.search("python developer", permissions={"teams": ["emea"]})

    assert {hit.source_id for hit in unrestricted} == {"A", "B", "C"}
    assert {hit.source_id for hit in restricted} == {"A", "C"}
    assert all(hit.vector_score > 0 and hit.lexical_score > 0 for hit in restricted)


@pytest.mark.asyncio
async def test_metadata_filter_combines_with_permissions(engine, store):
    await seed_permissioned_candidates(store)

    hits = await engine.search(
        "python developer",
        metadata_filter={"status": "active"},
        permissions={"visibility": "internal", "teams": ["emea"]},
    )

    assert [hit.source_id for hit in hits] == ["A"]


@pytest.mark.asyncio
async def test_non_object_filter_is_rejected(engine):
    with pytest.raises(InvalidQuery):
        await engine.search("python", permissions=["emea"])
