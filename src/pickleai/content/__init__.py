"""External content retrieval."""

from pickleai.content.retrieval import WebContentRetriever

__all__ = ["WebContentRetriever"]
