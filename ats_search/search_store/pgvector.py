"""PostgreSQL implementation of the search document store.

Rows live in ``search_documents``. The lexical representation is a generated
``tsvector`` column so it can never drift from ``title``/``text``. Vectors
are stored in a pgvector ``vector(D)`` column that is provisioned on a best
effort basis; when pgvector is missing the store keeps serving lexical
queries and the degradation controller switches the process to
lexical-only.

Connection management
- A shared asyncpg pool is created on demand and reused across calls
- Each new connection gets a JSONB codec and, when the ``vector`` type
  exists, the pgvector codec
- Queries are funneled through ``_execute_query`` for uniform error handling
"""

import json
import re
import uuid
from typing import Any, Dict, List, Optional, Sequence

import asyncpg
import numpy as np
import structlog
from asyncpg import Connection, Pool
from pgvector.asyncpg import register_vector

from ..capability import DegradationController
from ..common.metrics import MetricsCollector
from ..errors import StorageConnectionError, StorageError, StorageQueryError, StorageUnavailable
from ..models import DocumentFields, SearchDocument, SourceKey, SourceType
from .base import ScoredKey, SearchDocumentStore

logger = structlog.get_logger("search_store.pgvector")

TABLE_NAME = "search_documents"
UNIQUE_CONSTRAINT = "search_documents_source_unique"

# Raised by PostgreSQL when the vector column, type, operator or table is absent
STRUCTURAL_ERRORS = (
    asyncpg.exceptions.UndefinedColumnError,
    asyncpg.exceptions.UndefinedFunctionError,
    asyncpg.exceptions.UndefinedObjectError,
    asyncpg.exceptions.UndefinedTableError,
)

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")

BASE_COLUMNS = "id, source_type, source_id, title, text, html, metadata, permissions, created_at, updated_at"


def _scope_conditions(
    args: List[Any],
    source_types: Optional[Sequence[SourceType]],
    metadata_filter: Optional[Dict[str, Any]],
    permissions: Optional[Dict[str, Any]]
) -> str:
    """Append filter parameters to ``args`` and return the matching SQL."""
    conditions = []
    if source_types:
        args.append([SourceType.parse(t).value for t in source_types])
        conditions.append(f"AND source_type = ANY(${len(args)}::text[])")
    if metadata_filter:
        args.append(metadata_filter)
        conditions.append(f"AND metadata @> ${len(args)}::jsonb")
    if permissions:
        args.append(permissions)
        conditions.append(f"AND permissions @> ${len(args)}::jsonb")
    return " ".join(conditions)


class PgSearchDocumentStore(SearchDocumentStore):
    """asyncpg + pgvector store for ``search_documents``."""

    def __init__(
        self,
        dsn: str,
        controller: DegradationController,
        vector_dimension: int = 1536,
        pool_size: int = 10,
        max_queries: int = 50000,
        command_timeout: int = 60,
        text_config: str = "simple",
        metrics: Optional[MetricsCollector] = None,
        pool: Optional[Pool] = None,
    ):
        """Configure the store.

        Parameters
        - dsn: PostgreSQL DSN including database and credentials
        - controller: Receives structural vector-storage failures
        - vector_dimension: Dimension D of the ``vector(D)`` column
        - pool_size: Max size of asyncpg connection pool
        - max_queries: Queries per connection before recycling
        - command_timeout: Seconds to allow per DB command
        - text_config: Text search configuration for ``tsv`` and queries
        - metrics: Optional collector for store operation counters
        - pool: Pre-built pool (tests); created lazily otherwise
        """
        if not _IDENTIFIER.match(text_config):
            raise ValueError(f"Invalid text search configuration: {text_config!r}")

        self.dsn = dsn
        self.controller = controller
        self.vector_dimension = vector_dimension
        self.pool_size = pool_size
        self.max_queries = max_queries
        self.command_timeout = command_timeout
        self.text_config = text_config
        self.metrics = metrics
        self._pool: Optional[Pool] = pool
        self._vector_column: Optional[bool] = None

    async def _init_connection(self, conn: Connection) -> None:
        """Register JSONB and (when installed) pgvector codecs."""
        await conn.set_type_codec(
            "jsonb",
            encoder=json.dumps,
            decoder=json.loads,
            schema="pg_catalog",
        )
        has_vector_type = await conn.fetchval("SELECT 1 FROM pg_type WHERE typname = 'vector'")
        if has_vector_type:
            await register_vector(conn)

    async def _get_pool(self) -> Pool:
        """Get or create connection pool."""
        if self._pool is None:
            try:
                self._pool = await asyncpg.create_pool(
                    self.dsn,
                    min_size=1,
                    max_size=self.pool_size,
                    max_queries=self.max_queries,
                    command_timeout=self.command_timeout,
                    init=self._init_connection,
                )
                logger.info("Created search store connection pool", pool_size=self.pool_size)
            except Exception as e:
                logger.error("Failed to create search store connection pool", error=str(e))
                raise StorageConnectionError(f"Failed to create connection pool: {e}") from e

        return self._pool

    async def _execute_query(
        self,
        query: str,
        *args: Any,
        fetch: bool = False,
        fetch_one: bool = False,
        vector_path: bool = False
    ) -> Any:
        """Execute a query with error handling.

        Structural errors on the vector path become ``StorageUnavailable``;
        every other failure is wrapped in ``StorageQueryError``.
        """
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                if fetch_one:
                    return await conn.fetchrow(query, *args)
                if fetch:
                    return await conn.fetch(query, *args)
                return await conn.execute(query, *args)
        except STRUCTURAL_ERRORS as e:
            if vector_path:
                logger.error("Vector storage unavailable", error=str(e))
                raise StorageUnavailable(f"Vector storage unavailable: {e}") from e
            logger.error("Query execution failed", query=query, error=str(e))
            raise StorageQueryError(f"Query failed: {e}") from e
        except StorageError:
            raise
        except Exception as e:
            logger.error("Query execution failed", query=query, error=str(e))
            raise StorageQueryError(f"Query failed: {e}") from e

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    async def provision(self) -> bool:
        """Idempotently create the schema; the vector part is best effort."""
        await self._provision_lexical()
        available = await self._provision_vector()
        logger.info(
            "Search store provisioned",
            table=TABLE_NAME,
            vector_available=available,
            vector_dimension=self.vector_dimension
        )
        return available

    async def _provision_lexical(self) -> None:
        await self._execute_query(f"""
            CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
                id TEXT PRIMARY KEY,
                source_type TEXT NOT NULL,
                source_id TEXT NOT NULL,
                title TEXT,
                text TEXT NOT NULL DEFAULT '',
                html TEXT,
                metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
                permissions JSONB NOT NULL DEFAULT '{{}}'::jsonb,
                tsv TSVECTOR GENERATED ALWAYS AS (
                    to_tsvector('{self.text_config}'::regconfig,
                                coalesce(title, '') || ' ' || coalesce(text, ''))
                ) STORED,
                created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                CONSTRAINT {UNIQUE_CONSTRAINT} UNIQUE (source_type, source_id)
            )
        """)
        await self._execute_query(
            f"CREATE INDEX IF NOT EXISTS {TABLE_NAME}_tsv_idx ON {TABLE_NAME} USING GIN (tsv)"
        )
        await self._execute_query(
            f"CREATE INDEX IF NOT EXISTS {TABLE_NAME}_source_type_idx ON {TABLE_NAME} (source_type)"
        )

    async def _provision_vector(self) -> bool:
        try:
            await self._execute_query("CREATE EXTENSION IF NOT EXISTS vector")
            # Connections opened before the extension existed lack the codec
            pool = await self._get_pool()
            await pool.expire_connections()

            await self._execute_query(
                f"ALTER TABLE {TABLE_NAME} "
                f"ADD COLUMN IF NOT EXISTS embedding vector({self.vector_dimension})"
            )

            existing_dimension = await self._get_embedding_dimension()
            if existing_dimension != self.vector_dimension:
                raise StorageUnavailable(
                    f"embedding column has dimension {existing_dimension}, "
                    f"expected {self.vector_dimension}; rebuild the index"
                )

            await self._execute_query(
                f"CREATE INDEX IF NOT EXISTS {TABLE_NAME}_embedding_idx ON {TABLE_NAME} "
                f"USING ivfflat (embedding vector_cosine_ops) WITH (lists = 100)"
            )
        except StorageError as e:
            unavailable = e if isinstance(e, StorageUnavailable) else StorageUnavailable(str(e))
            logger.warning("Vector provisioning failed, continuing lexical-only", error=str(e))
            self.controller.handle_storage_failure(unavailable)
            self._vector_column = None
            return False

        self._vector_column = True
        return True

    async def _get_embedding_dimension(self) -> Optional[int]:
        row = await self._execute_query(
            """
            SELECT a.atttypmod
            FROM pg_attribute a
            JOIN pg_class c ON c.oid = a.attrelid
            WHERE c.relname = $1 AND pg_table_is_visible(c.oid)
              AND a.attname = 'embedding' AND NOT a.attisdropped
            """,
            TABLE_NAME,
            fetch_one=True
        )
        if row is None:
            return None
        return row["atttypmod"]

    async def _has_vector_column(self) -> bool:
        """Whether ``embedding`` exists; cached after the first lookup."""
        if self._vector_column is None:
            self._vector_column = (await self._get_embedding_dimension()) is not None
        return self._vector_column

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert(self, source_type: SourceType, source_id: str, fields: DocumentFields) -> str:
        """Insert or overwrite a document in one atomic statement.

        While the vector capability is disabled no vector is written; a
        surviving ``embedding`` column is set NULL so that a stale vector
        never outlives the text it was computed from.
        """
        source_type = SourceType.parse(source_type)
        vector_enabled = self.controller.vector_enabled
        args = [
            uuid.uuid4().hex,
            source_type.value,
            str(source_id),
            fields.title,
            fields.text or "",
            fields.html,
            fields.metadata or {},
            fields.permissions or {},
        ]

        if vector_enabled or await self._has_vector_column():
            embedding = None
            if vector_enabled and fields.embedding is not None:
                embedding = self._ensure_vector_dimension(fields.embedding)
            query = f"""
                INSERT INTO {TABLE_NAME}
                    (id, source_type, source_id, title, text, html, metadata, permissions, embedding)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                ON CONFLICT ON CONSTRAINT {UNIQUE_CONSTRAINT} DO UPDATE SET
                    title = EXCLUDED.title,
                    text = EXCLUDED.text,
                    html = EXCLUDED.html,
                    metadata = EXCLUDED.metadata,
                    permissions = EXCLUDED.permissions,
                    embedding = EXCLUDED.embedding,
                    updated_at = clock_timestamp()
                RETURNING id
            """
            row = await self._execute_query(query, *args, embedding, fetch_one=True, vector_path=True)
        else:
            query = f"""
                INSERT INTO {TABLE_NAME}
                    (id, source_type, source_id, title, text, html, metadata, permissions)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                ON CONFLICT ON CONSTRAINT {UNIQUE_CONSTRAINT} DO UPDATE SET
                    title = EXCLUDED.title,
                    text = EXCLUDED.text,
                    html = EXCLUDED.html,
                    metadata = EXCLUDED.metadata,
                    permissions = EXCLUDED.permissions,
                    updated_at = clock_timestamp()
                RETURNING id
            """
            row = await self._execute_query(query, *args, fetch_one=True)

        if self.metrics is not None:
            self.metrics.record_store_operation("upsert", source_type.value)

        logger.debug(
            "Upserted search document",
            source_type=source_type.value,
            source_id=source_id,
            document_id=row["id"],
            has_embedding=fields.embedding is not None and vector_enabled
        )
        return row["id"]

    async def delete(self, source_type: SourceType, source_id: str) -> bool:
        source_type = SourceType.parse(source_type)
        result = await self._execute_query(
            f"DELETE FROM {TABLE_NAME} WHERE source_type = $1 AND source_id = $2",
            source_type.value,
            str(source_id)
        )

        # asyncpg returns the command tag, e.g. "DELETE 1"
        deleted = result.split()[-1] != "0"

        if self.metrics is not None:
            self.metrics.record_store_operation("delete", source_type.value)

        if deleted:
            logger.info("Deleted search document", source_type=source_type.value, source_id=source_id)
        else:
            logger.debug(
                "Search document not found for deletion",
                source_type=source_type.value,
                source_id=source_id
            )
        return deleted

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, source_type: SourceType, source_id: str) -> Optional[SearchDocument]:
        source_type = SourceType.parse(source_type)
        has_vector = await self._has_vector_column()
        columns = BASE_COLUMNS + (", embedding" if has_vector else "")
        row = await self._execute_query(
            f"SELECT {columns} FROM {TABLE_NAME} WHERE source_type = $1 AND source_id = $2",
            source_type.value,
            str(source_id),
            fetch_one=True,
            vector_path=has_vector
        )
        if row is None:
            return None

        embedding = row["embedding"] if has_vector else None
        return SearchDocument(
            id=row["id"],
            source_type=SourceType(row["source_type"]),
            source_id=row["source_id"],
            text=row["text"],
            title=row["title"],
            html=row["html"],
            metadata=row["metadata"] or {},
            permissions=row["permissions"] or {},
            embedding=np.asarray(embedding, dtype=np.float32) if embedding is not None else None,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def vector_search(
        self,
        vector: np.ndarray,
        limit: int,
        source_types: Optional[Sequence[SourceType]] = None,
        metadata_filter: Optional[Dict[str, Any]] = None,
        permissions: Optional[Dict[str, Any]] = None
    ) -> List[ScoredKey]:
        """Cosine nearest neighbours over rows that have a vector."""
        if not self.controller.vector_enabled:
            raise StorageUnavailable("Vector capability is disabled")

        query_vector = self._ensure_vector_dimension(vector)
        args: List[Any] = [query_vector, limit]
        scope = _scope_conditions(args, source_types, metadata_filter, permissions)

        rows = await self._execute_query(
            f"""
            SELECT source_type, source_id, 1 - (embedding <=> $1) AS score
            FROM {TABLE_NAME}
            WHERE embedding IS NOT NULL {scope}
            ORDER BY embedding <=> $1
            LIMIT $2
            """,
            *args,
            fetch=True,
            vector_path=True
        )
        return [(SourceType(row["source_type"]), row["source_id"], float(row["score"])) for row in rows]

    async def lexical_search(
        self,
        query: str,
        limit: int,
        source_types: Optional[Sequence[SourceType]] = None,
        metadata_filter: Optional[Dict[str, Any]] = None,
        permissions: Optional[Dict[str, Any]] = None
    ) -> List[ScoredKey]:
        """``plainto_tsquery`` matches ranked with ``ts_rank``."""
        args: List[Any] = [query, limit]
        scope = _scope_conditions(args, source_types, metadata_filter, permissions)

        tsquery = f"plainto_tsquery('{self.text_config}'::regconfig, $1)"
        rows = await self._execute_query(
            f"""
            SELECT source_type, source_id, ts_rank(tsv, {tsquery}) AS score
            FROM {TABLE_NAME}
            WHERE tsv @@ {tsquery} {scope}
            ORDER BY score DESC
            LIMIT $2
            """,
            *args,
            fetch=True
        )
        return [(SourceType(row["source_type"]), row["source_id"], float(row["score"])) for row in rows]

    async def list_missing_embeddings(
        self,
        source_type: Optional[SourceType] = None,
        limit: Optional[int] = None
    ) -> List[SourceKey]:
        args: List[Any] = []
        conditions = ["embedding IS NULL", "text <> ''"]
        if source_type is not None:
            args.append(SourceType.parse(source_type).value)
            conditions.append(f"source_type = ${len(args)}")
        limit_clause = ""
        if limit is not None:
            args.append(limit)
            limit_clause = f"LIMIT ${len(args)}"

        rows = await self._execute_query(
            f"""
            SELECT source_type, source_id FROM {TABLE_NAME}
            WHERE {' AND '.join(conditions)}
            ORDER BY updated_at
            {limit_clause}
            """,
            *args,
            fetch=True,
            vector_path=True
        )
        return [(SourceType(row["source_type"]), row["source_id"]) for row in rows]

    async def get_index_stats(self) -> Dict[str, Any]:
        has_vector = await self._has_vector_column()
        embedded_expr = "COUNT(embedding)" if has_vector else "0"
        rows = await self._execute_query(
            f"""
            SELECT source_type, COUNT(*) AS total, {embedded_expr} AS embedded
            FROM {TABLE_NAME}
            GROUP BY source_type
            ORDER BY source_type
            """,
            fetch=True
        )

        by_source_type = {
            row["source_type"]: {"total": int(row["total"]), "embedded": int(row["embedded"])}
            for row in rows
        }
        return {
            "total": sum(item["total"] for item in by_source_type.values()),
            "embedded": sum(item["embedded"] for item in by_source_type.values()),
            "by_source_type": by_source_type,
            "vector_column": has_vector,
            "vector_dimension": self.vector_dimension,
        }

    async def health_check(self) -> bool:
        try:
            await self._execute_query("SELECT 1", fetch_one=True)
            return True
        except StorageError as e:
            logger.error("Health check failed", error=str(e))
            return False

    async def close(self) -> None:
        """Close the connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("Closed search store connection pool")

    def _ensure_vector_dimension(self, vector: Any) -> np.ndarray:
        """Ensure a vector matches the configured dimensionality."""
        array = np.asarray(vector, dtype=np.float32)
        if array.ndim != 1:
            raise ValueError("Vector must be one-dimensional")
        if array.shape[0] != self.vector_dimension:
            raise ValueError(
                f"Expected vector dimension {self.vector_dimension}, got {array.shape[0]}"
            )
        return array
