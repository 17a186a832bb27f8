"""Similarity scoring."""

from pickleai.retrieval.vector import cosine_similarity, rank_by_similarity

__all__ = ["cosine_similarity", "rank_by_similarity"]
