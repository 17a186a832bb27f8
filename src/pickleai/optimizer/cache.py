"""Time-boxed response cache for AI and content calls."""

from __future__ import annotations

import time
from typing import Any, Callable

from loguru import logger

from pickleai.config import CacheConfig
from pickleai.exceptions import PersistenceError
from pickleai.storage.kv_store import KeyValueStore
from pickleai.types import CacheEntry
from pickleai.utils import json_dumps, json_loads


class ResponseCache:
    """TTL cache over a key-value store.

    Expiry is lazy: an entry is evicted by the read that finds it stale.
    Storage failures never propagate; reads degrade to a miss and writes to a
    no-op.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        config: CacheConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.kv = kv
        self.config = config or CacheConfig()
        self._clock = clock

    def get(self, key: str) -> Any | None:
        if not self.config.enabled:
            return None
        try:
            raw = self.kv.get(self._format_key(key))
            if raw is None:
                return None
            entry = CacheEntry.model_validate(json_loads(raw))
        except (PersistenceError, ValueError) as e:
            logger.warning("Cache read failed for {}: {}", key, e)
            return None

        if self._clock() > entry.expires_at:
            self.remove(key)
            return None
        logger.debug("Cache hit for key: {}", key)
        return entry.value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        if not self.config.enabled:
            return
        ttl = self.config.default_ttl if ttl is None else ttl
        entry = CacheEntry(key=key, value=value, expires_at=self._clock() + ttl)
        try:
            self.kv.set(self._format_key(key), json_dumps(entry.model_dump(mode="json")))
        except (PersistenceError, TypeError) as e:
            logger.warning("Cache write failed for {}: {}", key, e)
            return
        logger.debug("Cached key {} for {}s", key, ttl)

    def remove(self, key: str) -> None:
        try:
            self.kv.remove(self._format_key(key))
        except PersistenceError as e:
            logger.warning("Cache eviction failed for {}: {}", key, e)

    def clear_all(self, namespace: str = "") -> int:
        """Remove every cached entry, or only those whose key starts with ``namespace``."""
        try:
            keys = self.kv.keys(self._format_key(namespace))
            for k in keys:
                self.kv.remove(k)
        except PersistenceError as e:
            logger.warning("Cache clear failed: {}", e)
            return 0
        if keys:
            logger.info("Cleared {} cache entries", len(keys))
        return len(keys)

    def ttl_for_endpoint(self, endpoint: str) -> float:
        if "playerRecommendations" in endpoint:
            return self.config.player_recommendations_ttl
        if "challenges" in endpoint:
            return self.config.challenges_ttl
        if "schedule" in endpoint:
            return self.config.schedule_recommendations_ttl
        if "skill" in endpoint:
            return self.config.skill_analysis_ttl
        if "chat" in endpoint:
            return self.config.chat_ttl
        return self.config.default_ttl

    def _format_key(self, key: str) -> str:
        return f"{self.config.prefix}{key}"
