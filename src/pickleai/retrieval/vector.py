"""Vector similarity scoring for context retrieval."""

from __future__ import annotations

from typing import Iterable, Sequence

import numpy as np
from loguru import logger

from pickleai.types import ContextEntry, SemanticMatch


def cosine_similarity(a: Sequence[float] | np.ndarray, b: Sequence[float] | np.ndarray) -> float:
    """``dot(a, b) / (|a| * |b|)``; 0.0 when either vector is empty or zero.

    Vectors of different length (e.g. written by an embedder with other
    dimensions) are not comparable and score 0.0.
    """
    va = np.asarray(a, dtype=np.float64).ravel()
    vb = np.asarray(b, dtype=np.float64).ravel()
    if va.size == 0 or vb.size == 0:
        return 0.0
    if va.size != vb.size:
        logger.warning("Cannot compare embeddings of length {} and {}", va.size, vb.size)
        return 0.0
    magnitude = float(np.linalg.norm(va)) * float(np.linalg.norm(vb))
    if magnitude == 0.0:
        return 0.0
    score = float(np.dot(va, vb)) / magnitude
    return max(-1.0, min(1.0, score))


def rank_by_similarity(
    query_vector: Sequence[float] | np.ndarray,
    entries: Iterable[ContextEntry],
    limit: int,
) -> list[SemanticMatch]:
    """Score entries against the query; highest score first, newer entry on ties."""
    matches = [
        SemanticMatch(entry=e, similarity_score=cosine_similarity(query_vector, e.embedding))
        for e in entries
    ]
    matches.sort(key=lambda m: (m.similarity_score, m.entry.timestamp), reverse=True)
    return matches[: max(0, limit)]
