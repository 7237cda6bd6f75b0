"""Access to the source-of-truth entity records.

The reindexer never trusts event payloads for content; it re-reads the
current row through an ``EntitySource`` so that whatever it indexes is the
latest committed state.
"""

import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional

import asyncpg
import structlog
from asyncpg import Pool

from ..errors import EntityFetchFailed, StorageConnectionError, StorageQueryError
from ..models import SourceType

logger = structlog.get_logger("indexer.sources")

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")


class EntitySource(ABC):
    """Read access to source entities."""

    @abstractmethod
    async def fetch(self, source_type: SourceType, source_id: str) -> Dict[str, Any]:
        """Return the current row of an entity.

        Raises ``EntityFetchFailed`` when the entity no longer exists.
        """
        pass

    @abstractmethod
    async def list_ids(self, source_type: SourceType) -> List[str]:
        """Return the ids of every entity of ``source_type``."""
        pass

    async def close(self) -> None:
        pass


class PostgresEntitySource(EntitySource):
    """Reads entities from PostgreSQL tables keyed by an ``id`` column.

    Parameters
    - dsn: Source database DSN
    - tables: ``SourceType`` value -> table name (optionally schema-qualified)
    - pool_size: Max size of the asyncpg pool
    - command_timeout: Seconds to allow per DB command
    - pool: Pre-built pool (tests); created lazily otherwise
    """

    def __init__(
        self,
        dsn: str,
        tables: Mapping[str, str],
        pool_size: int = 5,
        command_timeout: int = 60,
        pool: Optional[Pool] = None,
    ):
        self.dsn = dsn
        self.tables: Dict[SourceType, str] = {}
        for key, table in tables.items():
            if not _IDENTIFIER.match(table):
                raise ValueError(f"Invalid table name for {key}: {table!r}")
            self.tables[SourceType.parse(key)] = table
        self.pool_size = pool_size
        self.command_timeout = command_timeout
        self._pool: Optional[Pool] = pool

    async def _get_pool(self) -> Pool:
        if self._pool is None:
            try:
                self._pool = await asyncpg.create_pool(
                    self.dsn,
                    min_size=1,
                    max_size=self.pool_size,
                    command_timeout=self.command_timeout,
                )
                logger.info("Created entity source connection pool", pool_size=self.pool_size)
            except Exception as e:
                logger.error("Failed to create entity source connection pool", error=str(e))
                raise StorageConnectionError(f"Failed to create connection pool: {e}") from e
        return self._pool

    def _table_for(self, source_type: SourceType) -> str:
        source_type = SourceType.parse(source_type)
        table = self.tables.get(source_type)
        if table is None:
            raise ValueError(f"No source table configured for {source_type.value}")
        return table

    async def fetch(self, source_type: SourceType, source_id: str) -> Dict[str, Any]:
        table = self._table_for(source_type)
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(f"SELECT * FROM {table} WHERE id::text = $1", str(source_id))
        except Exception as e:
            logger.error(
                "Failed to fetch source entity",
                source_type=str(source_type),
                source_id=source_id,
                error=str(e)
            )
            raise StorageQueryError(f"Failed to fetch {source_type} {source_id}: {e}") from e

        if row is None:
            raise EntityFetchFailed(f"{SourceType.parse(source_type).value} {source_id} not found")
        return dict(row)

    async def list_ids(self, source_type: SourceType) -> List[str]:
        table = self._table_for(source_type)
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                rows = await conn.fetch(f"SELECT id::text AS id FROM {table} ORDER BY id")
        except Exception as e:
            logger.error("Failed to list source entity ids", source_type=str(source_type), error=str(e))
            raise StorageQueryError(f"Failed to list {source_type} ids: {e}") from e
        return [row["id"] for row in rows]

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("Closed entity source connection pool")
