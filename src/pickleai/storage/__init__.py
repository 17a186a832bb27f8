"""Persistence backends."""

from pickleai.storage.kv_store import KeyValueStore, MemoryKVStore, SQLiteKVStore

__all__ = ["KeyValueStore", "MemoryKVStore", "SQLiteKVStore"]
