"""Result fusion for hybrid search.

Combines vector similarity and full-text rank into one relevance score:

    final = vector_weight * vector_similarity + lexical_weight * lexical_rank / max_lexical_rank

Vector similarities are used as returned by the store (``1 - cosine
distance``). Lexical ranks are divided by the largest rank of the result set
so they land in ``[0, 1]``. A key missing from one branch scores 0 there.
Weights are applied as given and need not sum to 1, so the fused score is a
relative ranking signal rather than a probability.
"""

from dataclasses import dataclass
from typing import Dict, Hashable, List, Optional, Sequence

import structlog

from ..models import SearchHit
from ..search_store.base import ScoredKey

logger = structlog.get_logger("search_fusion")

DEFAULT_VECTOR_WEIGHT = 0.6
DEFAULT_LEXICAL_WEIGHT = 0.4


@dataclass
class FusedScore:
    """Fused score of one key with its inputs."""
    key: Hashable
    score: float
    vector_score: float
    lexical_score: float
    lexical_rank: float


def normalize_lexical(lexical_scores: Dict[Hashable, float]) -> Dict[Hashable, float]:
    """Divide every rank by the maximum rank; all zeros if the max is not positive."""
    if not lexical_scores:
        return {}
    max_rank = max(lexical_scores.values())
    if max_rank <= 0:
        return {key: 0.0 for key in lexical_scores}
    return {key: rank / max_rank for key, rank in lexical_scores.items()}


def fuse_scores(
    vector_scores: Dict[Hashable, float],
    lexical_scores: Dict[Hashable, float],
    vector_weight: float = DEFAULT_VECTOR_WEIGHT,
    lexical_weight: float = DEFAULT_LEXICAL_WEIGHT,
    limit: Optional[int] = None
) -> List[FusedScore]:
    """Fuse two score maps into one list sorted by descending score.

    Ties keep their first-seen order: vector keys in the order given, then
    lexical-only keys in the order given.
    """
    normalized = normalize_lexical(lexical_scores)

    keys = list(vector_scores)
    keys.extend(key for key in lexical_scores if key not in vector_scores)

    fused = []
    for key in keys:
        vector_score = float(vector_scores.get(key, 0.0))
        lexical_score = normalized.get(key, 0.0)
        fused.append(FusedScore(
            key=key,
            score=vector_weight * vector_score + lexical_weight * lexical_score,
            vector_score=vector_score,
            lexical_score=lexical_score,
            lexical_rank=float(lexical_scores.get(key, 0.0)),
        ))

    fused.sort(key=lambda item: item.score, reverse=True)
    if limit is not None:
        fused = fused[:limit]
    return fused


class WeightedScoreFusion:
    """Weighted score fusion over store result rows."""

    def __init__(
        self,
        vector_weight: float = DEFAULT_VECTOR_WEIGHT,
        lexical_weight: float = DEFAULT_LEXICAL_WEIGHT
    ):
        if vector_weight < 0 or lexical_weight < 0:
            raise ValueError("Fusion weights must be non-negative")
        self.vector_weight = vector_weight
        self.lexical_weight = lexical_weight

    def fuse_results(
        self,
        vector_results: Sequence[ScoredKey],
        lexical_results: Sequence[ScoredKey],
        limit: Optional[int] = None
    ) -> List[SearchHit]:
        """Fuse ``(source_type, source_id, score)`` rows into search hits."""
        vector_scores: Dict[Hashable, float] = {}
        for source_type, source_id, score in vector_results:
            vector_scores.setdefault((source_type, source_id), score)

        lexical_scores: Dict[Hashable, float] = {}
        for source_type, source_id, score in lexical_results:
            lexical_scores.setdefault((source_type, source_id), score)

        fused = fuse_scores(
            vector_scores,
            lexical_scores,
            vector_weight=self.vector_weight,
            lexical_weight=self.lexical_weight,
            limit=limit
        )

        logger.debug(
            "Weighted score fusion completed",
            vector_count=len(vector_results),
            lexical_count=len(lexical_results),
            fused_count=len(fused),
            vector_weight=self.vector_weight,
            lexical_weight=self.lexical_weight
        )

        return [
            SearchHit(
                source_type=item.key[0],
                source_id=item.key[1],
                score=item.score,
                vector_score=item.vector_score,
                lexical_score=item.lexical_score,
                lexical_rank=item.lexical_rank,
            )
            for item in fused
        ]
