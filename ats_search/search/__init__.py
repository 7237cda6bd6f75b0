"""Hybrid (vector + full-text) query engine."""

from .engine import FusionWeights, HybridQueryEngine, prepare_query
from .fusion import FusedScore, WeightedScoreFusion, fuse_scores, normalize_lexical

__all__ = [
    "FusedScore",
    "FusionWeights",
    "HybridQueryEngine",
    "WeightedScoreFusion",
    "fuse_scores",
    "normalize_lexical",
    "prepare_query",
]
