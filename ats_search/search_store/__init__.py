"""Search document storage (``search_documents``)."""

from .base import ScoredKey, SearchDocumentStore
from .factory import SearchStoreType, create_search_store
from .pgvector import PgSearchDocumentStore

__all__ = [
    "PgSearchDocumentStore",
    "ScoredKey",
    "SearchDocumentStore",
    "SearchStoreType",
    "create_search_store",
]
