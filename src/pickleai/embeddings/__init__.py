"""Embedding providers and abstractions."""

from pickleai.embeddings.backends import (
    EmbeddingBackend,
    HashEmbedder,
    OllamaEmbedder,
    OpenAIEmbedder,
    create_embedder,
)

__all__ = [
    "EmbeddingBackend",
    "OpenAIEmbedder",
    "OllamaEmbedder",
    "HashEmbedder",
    "create_embedder",
]
