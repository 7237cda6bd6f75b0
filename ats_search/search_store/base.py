"""Search document store interface.

Defines the contract the reindexer and the query engine depend on,
independent of the backing implementation. All methods are asynchronous.

Searches accept optional containment filters on the ``metadata`` and
``permissions`` JSON objects: a document matches when its object contains
every key/value pair of the filter.

Invariants every implementation must keep
- At most one document per ``(source_type, source_id)``, also under
  concurrent upserts of the same key
- ``upsert`` overwrites every field and keeps the document id stable
- ``delete`` is idempotent
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..models import DocumentFields, SearchDocument, SourceKey, SourceType

ScoredKey = Tuple[SourceType, str, float]


class SearchDocumentStore(ABC):
    """Abstract base class for search document stores."""

    @abstractmethod
    async def provision(self) -> bool:
        """Create the table, lexical index and (best effort) vector column.

        Returns whether the vector path is usable. Never raises because the
        vector extension is missing; that is reported to the degradation
        controller instead.
        """
        pass

    @abstractmethod
    async def upsert(self, source_type: SourceType, source_id: str, fields: DocumentFields) -> str:
        """Insert or fully overwrite the document of a key.

        Returns the document id.
        """
        pass

    @abstractmethod
    async def delete(self, source_type: SourceType, source_id: str) -> bool:
        """Delete the document of a key.

        Returns ``True`` if a row was removed, ``False`` if none existed.
        """
        pass

    @abstractmethod
    async def get(self, source_type: SourceType, source_id: str) -> Optional[SearchDocument]:
        """Fetch the document of a key, or ``None``."""
        pass

    @abstractmethod
    async def vector_search(
        self,
        vector: np.ndarray,
        limit: int,
        source_types: Optional[Sequence[SourceType]] = None,
        metadata_filter: Optional[Dict[str, Any]] = None,
        permissions: Optional[Dict[str, Any]] = None
    ) -> List[ScoredKey]:
        """Nearest documents by cosine distance.

        Returns ``(source_type, source_id, 1 - distance)`` tuples ordered by
        ascending distance; documents without a vector are excluded.
        """
        pass

    @abstractmethod
    async def lexical_search(
        self,
        query: str,
        limit: int,
        source_types: Optional[Sequence[SourceType]] = None,
        metadata_filter: Optional[Dict[str, Any]] = None,
        permissions: Optional[Dict[str, Any]] = None
    ) -> List[ScoredKey]:
        """Full-text matches ordered by descending rank.

        Returns ``(source_type, source_id, rank)`` tuples.
        """
        pass

    @abstractmethod
    async def list_missing_embeddings(
        self,
        source_type: Optional[SourceType] = None,
        limit: Optional[int] = None
    ) -> List[SourceKey]:
        """Keys of documents with non-empty text and no vector."""
        pass

    @abstractmethod
    async def get_index_stats(self) -> Dict[str, Any]:
        """Document counts, overall and per source type."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the store is reachable."""
        pass

    async def close(self) -> None:
        """Release held resources."""
        pass
