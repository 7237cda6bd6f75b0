"""Exception hierarchy for the search subsystem.

Embedding and storage errors distinguish *structural* unavailability (the
capability is absent and retrying is pointless) from transient failures.
Structural errors drive the degradation controller; transient ones are
retried or tolerated per call.
"""

from typing import Optional


class SearchError(Exception):
    """Base exception for search and indexing operations."""
    pass


class EmbeddingError(SearchError):
    """Base exception for embedding provider failures."""
    pass


class EmbeddingUnavailable(EmbeddingError):
    """Embedding cannot be computed and retrying will not help.

    ``structural`` is ``True`` when the capability itself is absent (missing
    credential, rejected credential, unknown model, dimension mismatch) and
    ``False`` for per-input rejections such as malformed requests.
    """

    def __init__(self, message: str, structural: bool = True):
        super().__init__(message)
        self.structural = structural


class EmbeddingTransientFailure(EmbeddingError):
    """Rate limiting, timeout, or provider-side error; safe to retry."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class StorageError(SearchError):
    """Base exception for search document store operations."""
    pass


class StorageUnavailable(StorageError):
    """Vector column, extension or index is structurally absent."""
    pass


class StorageConnectionError(StorageError):
    """Connection error to the backing database."""
    pass


class StorageQueryError(StorageError):
    """Query error in the backing database."""
    pass


class EntityFetchFailed(SearchError):
    """Source entity vanished before it could be re-fetched."""
    pass


class InvalidQuery(SearchError):
    """Caller supplied invalid search input (e.g. a non-positive limit)."""
    pass
