"""Core types shared by the store, the reindexer and the query engine."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import numpy as np


class SourceType(str, Enum):
    """Kinds of source entities that own a search document."""
    CANDIDATE = "CANDIDATE"
    JOB = "JOB"
    CLIENT_CONTACT = "CLIENT_CONTACT"
    CLIENT = "CLIENT"
    PROJECT = "PROJECT"
    DOCUMENT = "DOCUMENT"

    @classmethod
    def parse(cls, value: Any) -> "SourceType":
        """Accept enum members, exact values, or lower/kebab-case spellings."""
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().upper().replace("-", "_")
        return cls(normalized)


class ReindexReason(str, Enum):
    """Why a reindex was requested.

    Only ``DELETE`` carries delete intent; every other reason re-fetches the
    entity and rebuilds its document.
    """
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    CV_UPLOAD = "cv-upload"
    COMPETENCE_FILE_UPLOAD = "competence-file-upload"
    SKILL_UPDATE = "skill-update"
    PROFILE_UPDATE = "profile-update"
    MANUAL = "manual"

    @property
    def is_delete(self) -> bool:
        return self is ReindexReason.DELETE


class ReindexOutcome(str, Enum):
    """Result of processing one reindex request."""
    INDEXED = "indexed"
    INDEXED_LEXICAL_ONLY = "indexed_lexical_only"
    DELETED = "deleted"
    FAILED = "failed"


SourceKey = Tuple[SourceType, str]


@dataclass
class DocumentFields:
    """Fields written by a single upsert.

    Every upsert overwrites all of them; ``embedding`` is ``None`` when the
    vector could not be (or was not) computed.
    """
    text: str
    title: Optional[str] = None
    html: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    permissions: Dict[str, Any] = field(default_factory=dict)
    embedding: Optional[np.ndarray] = None


@dataclass
class SearchDocument:
    """Row image of ``search_documents``."""
    id: str
    source_type: SourceType
    source_id: str
    text: str
    title: Optional[str] = None
    html: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    permissions: Dict[str, Any] = field(default_factory=dict)
    embedding: Optional[np.ndarray] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None


@dataclass
class SearchHit:
    """One fused search result.

    ``score`` is a relative ranking signal. ``vector_score`` is the cosine
    similarity and ``lexical_score`` the max-normalized full-text rank, both
    before weighting; ``lexical_rank`` is the raw full-text rank.
    """
    source_type: SourceType
    source_id: str
    score: float
    vector_score: float = 0.0
    lexical_score: float = 0.0
    lexical_rank: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_type": self.source_type.value,
            "source_id": self.source_id,
            "score": self.score,
            "vector_score": self.vector_score,
            "lexical_score": self.lexical_score,
            "lexical_rank": self.lexical_rank,
        }


@dataclass
class BatchResult:
    """Aggregate counters of a batch reindex."""
    processed: int = 0
    failed: int = 0
    lexical_only: int = 0
    failures: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "failed": self.failed,
            "lexical_only": self.lexical_only,
            "failures": list(self.failures),
        }
