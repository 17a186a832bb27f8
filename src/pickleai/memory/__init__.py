"""Semantic context memory."""

from pickleai.memory.context_store import ContextStore

__all__ = ["ContextStore"]
