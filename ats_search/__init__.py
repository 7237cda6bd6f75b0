"""Hybrid search and embedding synchronization for the ATS platform.

Subpackages:
- ``ats_search.common``: configuration, logging, metrics, and events.
- ``ats_search.embeddings``: embedding provider client with retry/backoff.
- ``ats_search.search_store``: search document store abstractions and the
  PostgreSQL/pgvector backend.
- ``ats_search.indexer``: reindexer that keeps search documents in sync with
  their source entities.
- ``ats_search.search``: hybrid query engine and score fusion.
- ``ats_search.api``: FastAPI application exposing search and admin routes.

Notes:
- Components receive their collaborators explicitly (store, embedding client,
  degradation controller) so they can be wired differently in tests.
"""

__version__ = "0.1.0"
